"""
Persistence for planning documents.

``DocumentStore`` is the interface the workflow consumes; ``SqlDocumentStore``
implements it on SQLAlchemy. Every write is conditional: it names the state it
expects to replace and fails with ``ConflictError`` if a concurrent writer got
there first. Nothing here retries.

Writes take ``events``: callables that add activity rows to the same session,
so a change and its audit record commit together or not at all.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from datetime import datetime
from typing import Any

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from app.skplan.db import transaction
from app.skplan.errors import ConflictError
from app.skplan.modules.planning_documents.models import (
    DocumentKind,
    DocumentStatus,
    PlanningDocument,
    PlanningSlot,
)

logger = logging.getLogger(__name__)

RETIRE_DELETE = "delete"
RETIRE_SUPERSEDE = "supersede"

EventWriter = Callable[[Session], Any]


def _write_events(s: Session, events: Sequence[EventWriter]) -> None:
    for write in events:
        write(s)


class DocumentStore:
    def get_slot(self, kind: DocumentKind, year: int) -> PlanningSlot | None:
        raise NotImplementedError

    def get(self, kind: DocumentKind, year: int) -> PlanningDocument | None:
        raise NotImplementedError

    def get_by_id(self, doc_id: str) -> PlanningDocument | None:
        raise NotImplementedError

    def list_for(self, kind: DocumentKind, year: int) -> list[PlanningDocument]:
        raise NotImplementedError

    def create(
        self,
        doc: PlanningDocument,
        *,
        replaces: str | None = None,
        replaced_status: DocumentStatus | None = None,
        retire: str = RETIRE_DELETE,
        events: Sequence[EventWriter] = (),
    ) -> str:
        raise NotImplementedError

    def conditional_update(
        self,
        doc_id: str,
        expected_status: DocumentStatus,
        patch: dict[str, Any],
        *,
        expected_revision: int | None = None,
        events: Sequence[EventWriter] = (),
    ) -> PlanningDocument:
        raise NotImplementedError

    def release_slot(
        self,
        kind: DocumentKind,
        year: int,
        doc_id: str,
        expected_status: DocumentStatus,
        *,
        events: Sequence[EventWriter] = (),
    ) -> None:
        raise NotImplementedError

    def delete(self, doc_id: str) -> bool:
        raise NotImplementedError

    def set_roster(
        self, kind: DocumentKind, year: int, roster: list[dict], *, events: Sequence[EventWriter] = ()
    ) -> PlanningSlot:
        raise NotImplementedError


class SqlDocumentStore(DocumentStore):
    def __init__(self, sm: sessionmaker) -> None:
        self._sm = sm

    # reads

    def get_slot(self, kind: DocumentKind, year: int) -> PlanningSlot | None:
        with transaction(self._sm) as s:
            return s.get(PlanningSlot, (kind.value, year))

    def get(self, kind: DocumentKind, year: int) -> PlanningDocument | None:
        """Canonical document for (kind, year): the one the slot points at."""
        with transaction(self._sm) as s:
            slot = s.get(PlanningSlot, (kind.value, year))
            if not slot or not slot.current_document_id:
                return None
            return s.get(PlanningDocument, slot.current_document_id)

    def get_by_id(self, doc_id: str) -> PlanningDocument | None:
        with transaction(self._sm) as s:
            return s.get(PlanningDocument, doc_id)

    def list_for(self, kind: DocumentKind, year: int) -> list[PlanningDocument]:
        with transaction(self._sm) as s:
            stmt = (
                select(PlanningDocument)
                .where(PlanningDocument.kind == kind.value, PlanningDocument.year == year)
                .order_by(PlanningDocument.created_at.asc())
            )
            return list(s.scalars(stmt).all())

    # writes

    def _ensure_slot(self, kind: DocumentKind, year: int) -> None:
        # Slots are never deleted, so creating one outside the caller's transaction is safe.
        try:
            with transaction(self._sm) as s:
                if s.get(PlanningSlot, (kind.value, year)) is not None:
                    return
                s.add(PlanningSlot(kind=kind.value, year=year, current_document_id=None, roster=[]))
        except IntegrityError:
            # A concurrent writer created it first; the row exists either way.
            logger.debug("slot %s/%s created concurrently", kind.value, year)

    def create(
        self,
        doc: PlanningDocument,
        *,
        replaces: str | None = None,
        replaced_status: DocumentStatus | None = None,
        retire: str = RETIRE_DELETE,
        events: Sequence[EventWriter] = (),
    ) -> str:
        """
        Insert ``doc`` and make it canonical for its (kind, year), atomically.

        The slot must currently point at ``replaces`` (None: not initiated). The
        replaced document, which must still be in ``replaced_status``, is deleted
        or marked superseded in the same transaction.
        """
        kind = DocumentKind(doc.kind)
        self._ensure_slot(kind, doc.year)
        with transaction(self._sm) as s:
            if replaces is not None:
                conds = [
                    PlanningDocument.id == replaces,
                    PlanningDocument.superseded_by.is_(None),
                ]
                if replaced_status is not None:
                    conds.append(PlanningDocument.status == replaced_status.value)
                if retire == RETIRE_DELETE:
                    res = s.execute(delete(PlanningDocument).where(*conds))
                else:
                    res = s.execute(
                        update(PlanningDocument)
                        .where(*conds)
                        .values(superseded_by=doc.id, revision=PlanningDocument.revision + 1)
                    )
                if res.rowcount != 1:
                    raise ConflictError("Replaced document changed concurrently.", document_id=replaces)

            s.add(doc)
            s.flush()

            pointer = (
                PlanningSlot.current_document_id.is_(None)
                if replaces is None
                else PlanningSlot.current_document_id == replaces
            )
            res = s.execute(
                update(PlanningSlot)
                .where(PlanningSlot.kind == kind.value, PlanningSlot.year == doc.year, pointer)
                .values(current_document_id=doc.id, updated_at=datetime.utcnow())
            )
            if res.rowcount != 1:
                raise ConflictError(
                    f"{kind.value}/{doc.year} was changed concurrently.", kind=kind.value, year=doc.year
                )
            _write_events(s, events)
        return doc.id

    def conditional_update(
        self,
        doc_id: str,
        expected_status: DocumentStatus,
        patch: dict[str, Any],
        *,
        expected_revision: int | None = None,
        events: Sequence[EventWriter] = (),
    ) -> PlanningDocument:
        conds = [
            PlanningDocument.id == doc_id,
            PlanningDocument.status == expected_status.value,
            PlanningDocument.superseded_by.is_(None),
        ]
        if expected_revision is not None:
            conds.append(PlanningDocument.revision == expected_revision)
        with transaction(self._sm) as s:
            res = s.execute(
                update(PlanningDocument)
                .where(*conds)
                .values(**patch, revision=PlanningDocument.revision + 1)
                .execution_options(synchronize_session=False)
            )
            if res.rowcount != 1:
                raise ConflictError(
                    f"Document {doc_id} is no longer {expected_status.value} at the expected revision.",
                    document_id=doc_id,
                )
            updated = s.get(PlanningDocument, doc_id, populate_existing=True)
            _write_events(s, events)
            return updated

    def release_slot(
        self,
        kind: DocumentKind,
        year: int,
        doc_id: str,
        expected_status: DocumentStatus,
        *,
        events: Sequence[EventWriter] = (),
    ) -> None:
        with transaction(self._sm) as s:
            res = s.execute(
                delete(PlanningDocument).where(
                    PlanningDocument.id == doc_id,
                    PlanningDocument.status == expected_status.value,
                    PlanningDocument.superseded_by.is_(None),
                )
            )
            if res.rowcount != 1:
                raise ConflictError("Document changed concurrently.", document_id=doc_id)
            res = s.execute(
                update(PlanningSlot)
                .where(
                    PlanningSlot.kind == kind.value,
                    PlanningSlot.year == year,
                    PlanningSlot.current_document_id == doc_id,
                )
                .values(current_document_id=None, updated_at=datetime.utcnow())
            )
            if res.rowcount != 1:
                raise ConflictError(f"{kind.value}/{year} was changed concurrently.", kind=kind.value, year=year)
            _write_events(s, events)

    def delete(self, doc_id: str) -> bool:
        with transaction(self._sm) as s:
            res = s.execute(delete(PlanningDocument).where(PlanningDocument.id == doc_id))
            return res.rowcount == 1

    def set_roster(
        self, kind: DocumentKind, year: int, roster: list[dict], *, events: Sequence[EventWriter] = ()
    ) -> PlanningSlot:
        self._ensure_slot(kind, year)
        with transaction(self._sm) as s:
            slot = s.get(PlanningSlot, (kind.value, year))
            slot.roster = roster
            slot.updated_at = datetime.utcnow()
            s.flush()
            _write_events(s, events)
            return slot
