"""
Planning document workflow.

Lifecycle (per kind and year):

    not_initiated -> open_for_editing -> pending_approval -> approved | rejected
    rejected -> open_for_editing   (re-initiate: new id, default content, roster kept)
    approved -> not_initiated      (reset: destructive)

WorkflowEngine is the only writer of ``status``. Every guard is checked twice:
once here against a fresh read (for a clear error), and again by the store's
conditional write (so that a concurrent winner turns the loser into a
ConflictError instead of a double transition).
"""

from __future__ import annotations

import functools
import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import date, datetime
from typing import TYPE_CHECKING, Any

from flask import Flask, current_app

from app.skplan.audit import ActivityAuditLog
from app.skplan.errors import InvalidStateError, StorageError, ValidationError
from app.skplan.modules.planning_documents.autosave import AutoSaveCoordinator
from app.skplan.modules.planning_documents.content import default_content, migrate_content
from app.skplan.modules.planning_documents.models import (
    DocumentKind,
    DocumentStatus,
    PlanningDocument,
    PlanningSlot,
)
from app.skplan.modules.planning_documents.store import (
    RETIRE_DELETE,
    RETIRE_SUPERSEDE,
    DocumentStore,
    EventWriter,
    SqlDocumentStore,
)
from app.skplan.rbac import Action, Actor, authorize
from app.skplan.storage import BlobStore, blob_store_from_config

if TYPE_CHECKING:
    from app.skplan.modules.planning_documents.evidence import ApprovalEvidenceManager

logger = logging.getLogger(__name__)

# action -> (allowed source states, target state)
TRANSITIONS: dict[Action, tuple[frozenset[DocumentStatus], DocumentStatus]] = {
    Action.INITIATE: (
        frozenset({DocumentStatus.NOT_INITIATED, DocumentStatus.REJECTED}),
        DocumentStatus.OPEN_FOR_EDITING,
    ),
    Action.CLOSE_EDITING: (frozenset({DocumentStatus.OPEN_FOR_EDITING}), DocumentStatus.PENDING_APPROVAL),
    Action.APPROVE: (frozenset({DocumentStatus.PENDING_APPROVAL}), DocumentStatus.APPROVED),
    Action.REJECT: (frozenset({DocumentStatus.PENDING_APPROVAL}), DocumentStatus.REJECTED),
    Action.RESET: (frozenset({DocumentStatus.APPROVED}), DocumentStatus.NOT_INITIATED),
}


def validate_transition(action: Action, current: DocumentStatus) -> DocumentStatus:
    sources, target = TRANSITIONS[action]
    if current not in sources:
        raise InvalidStateError(
            f"Cannot {action.value} a document that is {current.value}.",
            action=action.value,
            status=current.value,
        )
    return target


def coerce_kind(value: DocumentKind | str) -> DocumentKind:
    try:
        return DocumentKind(value)
    except ValueError:
        raise ValidationError(f"Unknown document kind: {value!r}") from None


def coerce_year(value: int | str) -> int:
    try:
        year = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid year: {value!r}") from None
    if year < 2000 or year > 2100:
        raise ValidationError(f"Year out of range: {year}")
    return year


def validate_roster(roster: Any) -> list[dict]:
    if not isinstance(roster, list):
        raise ValidationError("Roster must be a list.")
    cleaned = []
    for i, member in enumerate(roster):
        if not isinstance(member, dict):
            raise ValidationError(f"Roster entry {i} must be an object.")
        name = str(member.get("name") or "").strip()
        role = str(member.get("role") or "").strip()
        if not name or not role:
            raise ValidationError(f"Roster entry {i} needs a name and a role.")
        cleaned.append({"name": name, "role": role})
    return cleaned


def new_document_id() -> str:
    return uuid.uuid4().hex


def _iso(value: datetime | date | None) -> str | None:
    return value.isoformat() if value else None


def document_to_dict(kind: DocumentKind, year: int, doc: PlanningDocument | None, slot: PlanningSlot | None) -> dict:
    roster = list(slot.roster) if slot and slot.roster else []
    if doc is None:
        return {
            "id": None,
            "kind": kind.value,
            "year": year,
            "status": DocumentStatus.NOT_INITIATED.value,
            "editing_open": False,
            "roster": roster,
        }
    return {
        "id": doc.id,
        "kind": doc.kind,
        "year": doc.year,
        "status": doc.status,
        "editing_open": doc.editing_open,
        "revision": doc.revision,
        "content": migrate_content(kind, doc.content),
        "roster": roster,
        "initiated_by": doc.initiated_by,
        "initiated_at": _iso(doc.initiated_at),
        "closed_by": doc.closed_by,
        "closed_at": _iso(doc.closed_at),
        "approved_by": doc.approved_by,
        "approved_at": _iso(doc.approved_at),
        "kk_approved_at": _iso(doc.kk_approved_at),
        "evidence_ref": doc.evidence_ref,
        "rejected_by": doc.rejected_by,
        "rejected_at": _iso(doc.rejected_at),
        "rejection_reason": doc.rejection_reason,
        "last_edited_by": doc.last_edited_by,
        "last_edited_at": _iso(doc.last_edited_at),
    }


class WorkflowEngine:
    def __init__(
        self,
        store: DocumentStore,
        audit: ActivityAuditLog,
        *,
        clock: Callable[[], datetime] = datetime.utcnow,
    ) -> None:
        self.store = store
        self.audit = audit
        self._clock = clock

    # reads

    def current(self, kind: DocumentKind, year: int) -> tuple[PlanningDocument | None, DocumentStatus]:
        doc = self.store.get(kind, year)
        return doc, DocumentStatus(doc.status) if doc else DocumentStatus.NOT_INITIATED

    def require_status(self, kind: DocumentKind, year: int, action: Action) -> PlanningDocument | None:
        doc, status = self.current(kind, year)
        validate_transition(action, status)
        return doc

    def view(self, kind: DocumentKind | str, year: int | str) -> dict:
        kind, year = coerce_kind(kind), coerce_year(year)
        doc, slot = self.store.get(kind, year), self.store.get_slot(kind, year)
        if doc is not None and doc.status == DocumentStatus.APPROVED.value:
            # an approve whose second phase failed leaves the pending record behind
            try:
                self._sweep(kind, year, doc.id)
            except StorageError as e:
                logger.warning("view %s/%s: stale record sweep failed: %s", kind.value, year, e)
        return document_to_dict(kind, year, doc, slot)

    # transitions

    def initiate(self, kind: DocumentKind | str, year: int | str, actor: Actor) -> PlanningDocument:
        kind, year = coerce_kind(kind), coerce_year(year)
        authorize(actor, Action.INITIATE)
        prior = self.require_status(kind, year, Action.INITIATE)

        now = self._clock()
        doc = PlanningDocument(
            id=new_document_id(),
            kind=kind.value,
            year=year,
            status=DocumentStatus.OPEN_FOR_EDITING.value,
            editing_open=True,
            content=default_content(kind),
            revision=1,
            initiated_by=actor.name,
            initiated_by_id=actor.id,
            initiated_at=now,
            created_at=now,
        )
        event = self._event(
            kind,
            actor,
            "Initiated",
            f"{kind.module} {year} opened for editing" + (" (re-initiated after rejection)" if prior else ""),
            doc.id,
            details={"replaced_id": prior.id} if prior else None,
        )
        # From rejected: the old record goes in the same transaction that creates the new one.
        self.store.create(
            doc,
            replaces=prior.id if prior else None,
            replaced_status=DocumentStatus.REJECTED if prior else None,
            retire=RETIRE_DELETE,
            events=[event],
        )
        logger.info("initiated %s/%s id=%s by=%s", kind.value, year, doc.id, actor.id)
        return doc

    def close_editing(self, kind: DocumentKind | str, year: int | str, actor: Actor) -> PlanningDocument:
        kind, year = coerce_kind(kind), coerce_year(year)
        authorize(actor, Action.CLOSE_EDITING)
        doc = self.require_status(kind, year, Action.CLOSE_EDITING)

        now = self._clock()
        updated = self.store.conditional_update(
            doc.id,
            DocumentStatus.OPEN_FOR_EDITING,
            {
                "status": DocumentStatus.PENDING_APPROVAL.value,
                "editing_open": False,
                "closed_by": actor.name,
                "closed_by_id": actor.id,
                "closed_at": now,
            },
            events=[
                self._event(
                    kind, actor, "Editing Closed", f"{kind.module} {year} submitted for approval", doc.id, status="pending"
                )
            ],
        )
        logger.info("closed editing %s/%s id=%s by=%s", kind.value, year, doc.id, actor.id)
        return updated

    def approve(
        self,
        kind: DocumentKind | str,
        year: int | str,
        actor: Actor,
        *,
        evidence_ref: str,
        approved_on: date,
        evidence_filename: str | None = None,
    ) -> PlanningDocument:
        """
        Two-phase replace: create the approved record (new id) and repoint the
        slot at it, then delete the old pending record. The old record is never
        removed before the new one is committed; if the delete fails the stale
        record is superseded and ``reconcile`` removes it later.
        """
        kind, year = coerce_kind(kind), coerce_year(year)
        authorize(actor, Action.APPROVE)
        if not evidence_ref:
            raise ValidationError("Approval evidence is required.")
        if not isinstance(approved_on, date):
            raise ValidationError("Approval date is required.")
        if isinstance(approved_on, datetime):
            approved_on = approved_on.date()
        old = self.require_status(kind, year, Action.APPROVE)

        now = self._clock()
        doc = PlanningDocument(
            id=new_document_id(),
            kind=kind.value,
            year=year,
            status=DocumentStatus.APPROVED.value,
            editing_open=False,
            content=migrate_content(kind, old.content),
            revision=1,
            initiated_by=old.initiated_by,
            initiated_by_id=old.initiated_by_id,
            initiated_at=old.initiated_at,
            closed_by=old.closed_by,
            closed_by_id=old.closed_by_id,
            closed_at=old.closed_at,
            approved_by=actor.name,
            approved_by_id=actor.id,
            approved_at=now,
            kk_approved_at=approved_on,
            evidence_ref=evidence_ref,
            last_edited_by=old.last_edited_by,
            last_edited_by_id=old.last_edited_by_id,
            last_edited_at=old.last_edited_at,
            created_at=now,
        )
        details = {"replaced_id": old.id, "evidence_ref": evidence_ref}
        if evidence_filename:
            details["evidence_filename"] = evidence_filename
        self.store.create(
            doc,
            replaces=old.id,
            replaced_status=DocumentStatus.PENDING_APPROVAL,
            retire=RETIRE_SUPERSEDE,
            events=[
                self._event(
                    kind,
                    actor,
                    "Approved",
                    f"{kind.module} {year} approved (approval date {approved_on.isoformat()})",
                    doc.id,
                    details=details,
                )
            ],
        )
        try:
            self.store.delete(old.id)
        except StorageError as e:
            logger.warning(
                "approve %s/%s: stale pending record %s left for reconcile: %s", kind.value, year, old.id, e
            )

        logger.info("approved %s/%s id=%s (was %s) by=%s", kind.value, year, doc.id, old.id, actor.id)
        return doc

    def reject(self, kind: DocumentKind | str, year: int | str, actor: Actor, reason: str) -> PlanningDocument:
        kind, year = coerce_kind(kind), coerce_year(year)
        authorize(actor, Action.REJECT)
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("Rejection requires a reason.")
        doc = self.require_status(kind, year, Action.REJECT)

        now = self._clock()
        updated = self.store.conditional_update(
            doc.id,
            DocumentStatus.PENDING_APPROVAL,
            {
                "status": DocumentStatus.REJECTED.value,
                "editing_open": False,
                "rejection_reason": reason,
                "rejected_by": actor.name,
                "rejected_by_id": actor.id,
                "rejected_at": now,
            },
            events=[self._event(kind, actor, "Rejected", f"{kind.module} {year} rejected: {reason}", doc.id)],
        )
        logger.info("rejected %s/%s id=%s by=%s", kind.value, year, doc.id, actor.id)
        return updated

    def reset(self, kind: DocumentKind | str, year: int | str, actor: Actor) -> None:
        kind, year = coerce_kind(kind), coerce_year(year)
        authorize(actor, Action.RESET)
        doc = self.require_status(kind, year, Action.RESET)

        event = self._event(kind, actor, "Reset", f"Approved {kind.module} {year} removed; back to not initiated", doc.id)
        self.store.release_slot(kind, year, doc.id, DocumentStatus.APPROVED, events=[event])
        logger.info("reset %s/%s id=%s by=%s", kind.value, year, doc.id, actor.id)

    # maintenance

    def set_roster(self, kind: DocumentKind | str, year: int | str, actor: Actor, roster: Any) -> list[dict]:
        kind, year = coerce_kind(kind), coerce_year(year)
        authorize(actor, Action.SET_ROSTER)
        cleaned = validate_roster(roster)
        event = self._event(kind, actor, "Roster Updated", f"{kind.module} {year} roster has {len(cleaned)} members", None)
        slot = self.store.set_roster(kind, year, cleaned, events=[event])
        return list(slot.roster)

    def reconcile(self, kind: DocumentKind | str, year: int | str, actor: Actor) -> int:
        """Delete records for (kind, year) that are not canonical. Idempotent."""
        kind, year = coerce_kind(kind), coerce_year(year)
        authorize(actor, Action.RECONCILE)
        slot = self.store.get_slot(kind, year)
        removed = self._sweep(kind, year, slot.current_document_id if slot else None)
        logger.info("reconcile %s/%s removed=%s by=%s", kind.value, year, removed, actor.id)
        return removed

    def _sweep(self, kind: DocumentKind, year: int, canonical: str | None) -> int:
        removed = 0
        for doc in self.store.list_for(kind, year):
            if doc.id != canonical and self.store.delete(doc.id):
                removed += 1
                logger.info("reconcile %s/%s removed stale %s record %s", kind.value, year, doc.status, doc.id)
        return removed

    def _event(
        self,
        kind: DocumentKind,
        actor: Actor,
        action: str,
        description: str,
        doc_id: str | None,
        *,
        status: str = "completed",
        details: dict | None = None,
    ) -> EventWriter:
        """Activity row for a transition, written by the store inside the same transaction."""
        return functools.partial(
            self.audit.record,
            module=kind.module,
            title=f"{kind.module} {action}",
            description=description,
            actor=actor,
            status=status,
            entity_id=doc_id,
            details=details,
        )


@dataclass
class PlanningServices:
    store: DocumentStore
    audit: ActivityAuditLog
    engine: WorkflowEngine
    blobs: BlobStore
    evidence: ApprovalEvidenceManager
    debounce_seconds: float
    max_patch_attempts: int

    def edit_session(self, kind: DocumentKind | str, year: int | str, actor: Actor, **kwargs: Any) -> AutoSaveCoordinator:
        """Auto-save session on the canonical document, with the configured debounce and retry limits."""
        kwargs.setdefault("debounce_seconds", self.debounce_seconds)
        kwargs.setdefault("max_attempts", self.max_patch_attempts)
        return AutoSaveCoordinator.open(self.store, self.audit, coerce_kind(kind), coerce_year(year), actor, **kwargs)


def build_services(app: Flask) -> PlanningServices:
    from app.skplan.modules.planning_documents.evidence import ApprovalEvidenceManager

    sm = app.extensions["sqlalchemy_sessionmaker"]
    store = SqlDocumentStore(sm)
    audit = ActivityAuditLog(sm, max_page=int(app.config.get("ACTIVITY_PAGE_MAX") or 100))
    engine = WorkflowEngine(store, audit)
    blobs = blob_store_from_config(app.config)
    return PlanningServices(
        store=store,
        audit=audit,
        engine=engine,
        blobs=blobs,
        evidence=ApprovalEvidenceManager(engine, blobs),
        debounce_seconds=float(app.config.get("AUTOSAVE_DEBOUNCE_SECONDS") or 2.0),
        max_patch_attempts=int(app.config.get("AUTOSAVE_MAX_PATCH_ATTEMPTS") or 5),
    )


def services(app: Flask | None = None) -> PlanningServices:
    app = app or current_app
    return app.extensions["skplan"]
