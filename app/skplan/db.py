from __future__ import annotations

from collections.abc import Generator
from contextlib import contextmanager

from flask import Flask
from sqlalchemy import create_engine, event
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session, sessionmaker

from app.skplan.errors import StorageError

# failures that mean "the database is not reachable right now"
UNAVAILABLE = (OperationalError, InterfaceError, PoolTimeoutError)


def engine_options(db_url: str, timeout: int) -> dict[str, object]:
    """Keyword arguments for ``create_engine``; every wait on the database is bounded by ``timeout`` seconds."""
    options: dict[str, object] = {"pool_pre_ping": True}
    if db_url.startswith("postgres"):
        options.update(
            pool_size=5,
            max_overflow=10,
            pool_recycle=1800,
            pool_timeout=timeout,
            connect_args={
                "connect_timeout": timeout,
                "options": f"-c statement_timeout={timeout * 1000}",
            },
        )
    elif db_url.startswith("sqlite"):
        # auto-save timers write from their own threads
        options["connect_args"] = {"timeout": timeout, "check_same_thread": False}
    return options


def make_sessionmaker(engine) -> sessionmaker:
    return sessionmaker(bind=engine, class_=Session, autoflush=False, expire_on_commit=False)


def init_db(app: Flask) -> None:
    db_url = app.config["DATABASE_URL"]
    engine = create_engine(db_url, **engine_options(db_url, int(app.config["DB_STATEMENT_TIMEOUT_SECONDS"])))

    if app.debug:
        @event.listens_for(engine, "checkout")
        def _log_checkout(dbapi_connection, connection_record, connection_proxy):  # type: ignore[no-redef]
            app.logger.debug("db connection checked out")

    app.extensions["sqlalchemy_engine"] = engine
    app.extensions["sqlalchemy_sessionmaker"] = make_sessionmaker(engine)


@contextmanager
def transaction(sm: sessionmaker) -> Generator[Session, None, None]:
    """
    One unit of work on a fresh session: commit when the block exits cleanly, roll back otherwise.

    Each call opens its own session, so timer threads may use it too. Connectivity
    problems come out as StorageError; IntegrityError is left alone for the store
    to turn into a ConflictError.
    """
    s: Session = sm()
    try:
        yield s
        s.commit()
    except UNAVAILABLE as e:
        s.rollback()
        raise StorageError(f"Database unavailable: {e}") from e
    except Exception:
        s.rollback()
        raise
    finally:
        s.close()


@contextmanager
def session_scope(app: Flask) -> Generator[Session, None, None]:
    with transaction(app.extensions["sqlalchemy_sessionmaker"]) as s:
        yield s
