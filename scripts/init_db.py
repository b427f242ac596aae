"""
Create the planning tables directly from the ORM metadata (local development).

Deployed databases go through Alembic instead (scripts/release.py).

Usage:
  python scripts/init_db.py
"""

import os
import sys
from pathlib import Path

# Ensure repo root is on sys.path when running as a script (Windows-friendly).
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from scripts._db_utils import create_script_engine  # noqa: E402
from app.skplan.models import Base  # noqa: E402


def create_tables(*, database_url: str | None = None) -> None:
    db_url = (database_url or os.environ.get("DATABASE_URL") or "sqlite:///skplan.db").strip()
    engine = create_script_engine(db_url)
    try:
        Base.metadata.create_all(bind=engine)
    finally:
        engine.dispose()
    print(f"Initialized database: {', '.join(sorted(Base.metadata.tables))}")


def main() -> None:
    create_tables(database_url=None)


if __name__ == "__main__":
    main()
