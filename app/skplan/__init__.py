import logging
import os

from flask import Flask, g
from dotenv import load_dotenv

from app.skplan.auth import load_current_actor
from app.skplan.config import check_production, load_settings
from app.skplan.db import init_db
from app.skplan.errors import PlanningError
from app.skplan.routes import bp as routes_bp
from app.skplan.modules.planning_documents.admin import bp as planning_bp
from app.skplan.modules.planning_documents.service import build_services

logger = logging.getLogger(__name__)


def create_app() -> Flask:
    load_dotenv()
    settings = load_settings()
    check_production(settings)

    app = Flask(__name__)
    app.config.from_mapping(settings.as_flask_config())

    init_db(app)
    _dispose_engine_after_fork(app)

    if settings.storage_backend == "s3" and settings.s3.missing():
        # uploads will fail with StorageError until this is fixed
        app.logger.error("S3 storage selected but not configured; missing %s", ", ".join(settings.s3.missing()))

    app.extensions["skplan"] = build_services(app)

    app.register_blueprint(routes_bp)
    app.register_blueprint(planning_bp, url_prefix="/api/planning")
    app.before_request(load_current_actor)
    _register_error_handlers(app)

    logger.info("create_app() complete (env=%s, storage=%s)", settings.env, settings.storage_backend)
    return app


def _dispose_engine_after_fork(app: Flask) -> None:
    # gunicorn --preload forks after the pool exists; children must not share its sockets
    if not hasattr(os, "register_at_fork"):
        return

    def _in_child() -> None:
        engine = app.extensions.get("sqlalchemy_engine")
        if engine is not None:
            engine.dispose(close=False)
            app.logger.info("Reset DB pool in forked worker (pid=%s)", os.getpid())

    os.register_at_fork(after_in_child=_in_child)


def _register_error_handlers(app: Flask) -> None:
    @app.errorhandler(PlanningError)
    def _planning_error(e: PlanningError):
        rid = getattr(g, "request_id", None)
        log = app.logger.exception if e.http_status >= 500 else app.logger.info
        log("%s (request_id=%s): %s", type(e).__name__, rid, e.message)
        return {
            "error": type(e).__name__,
            "message": e.message,
            "details": {k: str(v) for k, v in e.context.items()},
            "request_id": rid,
        }, e.http_status

    @app.errorhandler(413)
    def _too_large(e):
        return {"error": "ValidationError", "message": "Upload too large."}, 413

    @app.errorhandler(500)
    def _internal(e):
        rid = getattr(g, "request_id", None)
        app.logger.exception("Unhandled 500 (request_id=%s)", rid)
        return {"error": "InternalServerError", "request_id": rid}, 500
