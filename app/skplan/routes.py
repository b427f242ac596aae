from flask import Blueprint, current_app
from sqlalchemy import text

from app.skplan.db import transaction
from app.skplan.errors import StorageError

bp = Blueprint("routes", __name__)


@bp.get("/health")
def health():
    """Readiness check. Returns JSON; one database round trip."""
    try:
        with transaction(current_app.extensions["sqlalchemy_sessionmaker"]) as s:
            s.execute(text("SELECT 1"))
    except StorageError as e:
        current_app.logger.warning("health: database unreachable: %s", e.message)
        return {"ok": False, "database": "unreachable"}, 503
    return {"ok": True, "database": "ok"}


@bp.get("/healthz")
def healthz():
    """
    Liveness check. No DB access, minimal overhead.
    """
    return "ok", 200
