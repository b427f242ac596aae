from __future__ import annotations

from collections.abc import Generator
from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from app.skplan.db import engine_options, make_sessionmaker

# scripts run once and may wait on a busy database longer than a request would
SCRIPT_TIMEOUT_SECONDS = 60


def create_script_engine(db_url: str) -> Engine:
    return create_engine(db_url, **engine_options(db_url, SCRIPT_TIMEOUT_SECONDS))


@contextmanager
def script_session(db_url: str) -> Generator[Session, None, None]:
    """Commit-or-rollback session on a throwaway engine."""
    engine = create_script_engine(db_url)
    s: Session = make_sessionmaker(engine)()
    try:
        yield s
        s.commit()
    except Exception:
        s.rollback()
        raise
    finally:
        s.close()
        engine.dispose()
