"""
Remove planning document records that no slot points at.

An approval whose cleanup step failed leaves the superseded pending record
behind. This walks every (kind, year) slot and deletes such leftovers. Safe to
run repeatedly.

Usage:
  python scripts/reconcile_documents.py            # dry run
  python scripts/reconcile_documents.py --apply
"""

from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from sqlalchemy import select  # noqa: E402

from scripts._db_utils import script_session  # noqa: E402
from app.skplan.modules.planning_documents.models import PlanningDocument, PlanningSlot  # noqa: E402


def reconcile(db_url: str, *, apply: bool) -> int:
    removed = 0
    with script_session(db_url) as s:
        canonical = {(sl.kind, sl.year): sl.current_document_id for sl in s.scalars(select(PlanningSlot)).all()}
        for doc in s.scalars(select(PlanningDocument).order_by(PlanningDocument.created_at.asc())).all():
            if canonical.get((doc.kind, doc.year)) == doc.id:
                continue
            print(f"stale {doc.kind}/{doc.year}: {doc.id} ({doc.status}, superseded_by={doc.superseded_by})")
            if apply:
                s.delete(doc)
            removed += 1
    return removed


def main() -> None:
    parser = argparse.ArgumentParser(description="Delete non-canonical planning document records.")
    parser.add_argument("--apply", action="store_true", help="Delete (default is a dry run).")
    args = parser.parse_args()

    db_url = (os.environ.get("DATABASE_URL") or "sqlite:///skplan.db").strip()
    n = reconcile(db_url, apply=args.apply)
    print(f"{'Removed' if args.apply else 'Would remove'} {n} stale record(s).")


if __name__ == "__main__":
    main()
