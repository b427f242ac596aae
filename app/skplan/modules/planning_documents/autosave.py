"""
Debounced, field-level auto-save for one editing session.

Each editable unit is a patch stream named by its content path. Edits to a
stream restart that stream's timer; when it expires only the buffered paths are
written, on top of a fresh read of the document, with a revision check so that
another editor's concurrent change to a different field is never overwritten.

A buffered value is dropped only after it has been written, or after the
fresh content showed it can never apply (it then moves to ``rejected_streams``).
Failed flushes keep the buffer for a retry; timer-driven failures are logged
and kept in ``last_error`` because there is no caller to raise to.
"""

from __future__ import annotations

import copy
import functools
import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from app.skplan.audit import ActivityAuditLog
from app.skplan.errors import ConflictError, InvalidStateError, PlanningError, ValidationError
from app.skplan.modules.planning_documents.content import (
    apply_patches,
    diff_paths,
    migrate_content,
    parse_path,
    recompute_derived,
)
from app.skplan.modules.planning_documents.models import DocumentKind, DocumentStatus, PlanningDocument
from app.skplan.modules.planning_documents.store import DocumentStore
from app.skplan.rbac import Action, Actor, authorize

logger = logging.getLogger(__name__)

DEFAULT_DEBOUNCE_SECONDS = 2.0
DEFAULT_MAX_PATCH_ATTEMPTS = 5


@dataclass(eq=False)
class PendingEdit:
    value: Any
    timer: Any = None


class AutoSaveCoordinator:
    def __init__(
        self,
        store: DocumentStore,
        audit: ActivityAuditLog | None,
        *,
        document: PlanningDocument,
        actor: Actor,
        debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS,
        max_attempts: int = DEFAULT_MAX_PATCH_ATTEMPTS,
        timer_factory: Callable[..., Any] = threading.Timer,
        clock: Callable[[], datetime] = datetime.utcnow,
    ) -> None:
        authorize(actor, Action.EDIT_CONTENT)
        self.store = store
        self.audit = audit
        self.actor = actor
        self.document_id = document.id
        self.kind = DocumentKind(document.kind)
        self.year = document.year
        self.baseline = migrate_content(self.kind, document.content)
        self.debounce_seconds = debounce_seconds
        self.max_attempts = max_attempts
        self._timer_factory = timer_factory
        self._clock = clock

        self._pending: dict[str, PendingEdit] = {}
        self._lock = threading.RLock()
        self._flush_lock = threading.Lock()
        self.rejected_streams: dict[str, str] = {}
        self.last_error: PlanningError | None = None

    @classmethod
    def open(
        cls,
        store: DocumentStore,
        audit: ActivityAuditLog | None,
        kind: DocumentKind,
        year: int,
        actor: Actor,
        **kwargs: Any,
    ) -> "AutoSaveCoordinator":
        """Start a session on the canonical document, which must be open for editing."""
        authorize(actor, Action.EDIT_CONTENT)
        doc = store.get(kind, year)
        if doc is None or not doc.editing_open:
            status = doc.status if doc else DocumentStatus.NOT_INITIATED.value
            raise InvalidStateError(f"{kind.value}/{year} is not open for editing ({status}).", status=status)
        return cls(store, audit, document=doc, actor=actor, **kwargs)

    @property
    def pending_streams(self) -> list[str]:
        with self._lock:
            return list(self._pending)

    @property
    def has_pending(self) -> bool:
        with self._lock:
            return bool(self._pending)

    def edit(self, stream: str, value: Any) -> None:
        """Buffer the latest value for ``stream`` and (re)start its timer. Never raises."""
        try:
            parse_path(stream)
        except ValidationError as e:
            logger.warning("autosave %s: rejected edit path %r: %s", self.document_id, stream, e.message)
            self.rejected_streams[stream] = e.message
            return
        with self._lock:
            previous = self._pending.pop(stream, None)
            if previous and previous.timer is not None:
                previous.timer.cancel()
            entry = PendingEdit(value=copy.deepcopy(value))
            # re-inserted at the end: buffered paths apply in edit order
            self._pending[stream] = entry
            entry.timer = self._timer_factory(self.debounce_seconds, self._on_timer, args=(stream,))
            entry.timer.daemon = True
            entry.timer.start()

    def _on_timer(self, stream: str) -> None:
        try:
            self.flush(stream)
        except PlanningError as e:
            self.last_error = e
            logger.warning(
                "autosave %s: flush of %s failed, edit kept for retry: %s", self.document_id, stream, e.message or e
            )

    def flush(self, stream: str | None = None) -> PlanningDocument | None:
        """
        Write buffered edits now: one stream, or all of them as a single patch.

        Paths that cannot be applied to the current content (a row index past the
        end of its list, a non-numeric amount) are moved to ``rejected_streams``
        and the rest are still written. Raises InvalidStateError if the document is
        no longer open for editing and StorageError if the store is unreachable;
        either way the buffer is kept.
        """
        doc, _ = self._flush(stream)
        return doc

    def _flush(self, stream: str | None) -> tuple[PlanningDocument | None, dict[str, str]]:
        with self._flush_lock:
            with self._lock:
                if stream is None:
                    items = list(self._pending.items())
                else:
                    entry = self._pending.get(stream)
                    items = [(stream, entry)] if entry else []
                for _, entry in items:
                    if entry.timer is not None:
                        entry.timer.cancel()
            if not items:
                return None, {}

            doc, rejected = self._write({path: entry.value for path, entry in items})

            with self._lock:
                for path, entry in items:
                    # an edit that arrived mid-flush replaced the entry; keep it
                    if self._pending.get(path) is not entry:
                        continue
                    del self._pending[path]
                    if path in rejected:
                        self.rejected_streams[path] = rejected[path]
                    else:
                        self.rejected_streams.pop(path, None)
            self.last_error = None

        for path, reason in rejected.items():
            logger.warning("autosave %s: dropped edit %r: %s", self.document_id, path, reason)
        return doc, rejected

    def _apply(self, content: dict, patches: dict[str, Any]) -> tuple[dict, dict[str, Any], dict[str, str]]:
        applied: dict[str, Any] = {}
        rejected: dict[str, str] = {}
        for path, value in patches.items():
            trial = copy.deepcopy(content)
            try:
                apply_patches(trial, {path: value})
                recompute_derived(self.kind, trial)
            except ValidationError as e:
                rejected[path] = e.message
                continue
            content = trial
            applied[path] = value
        return content, applied, rejected

    def _write(self, patches: dict[str, Any]) -> tuple[PlanningDocument | None, dict[str, str]]:
        for attempt in range(1, self.max_attempts + 1):
            doc = self.store.get_by_id(self.document_id)
            if doc is None or doc.superseded_by is not None:
                raise InvalidStateError(f"Document {self.document_id} no longer exists.", document_id=self.document_id)
            if not doc.editing_open or doc.status != DocumentStatus.OPEN_FOR_EDITING.value:
                raise InvalidStateError(
                    f"Document {self.document_id} is {doc.status}; edits are closed.",
                    document_id=self.document_id,
                    status=doc.status,
                )
            content, applied, rejected = self._apply(migrate_content(self.kind, doc.content), patches)
            if not applied:
                return None, rejected
            events = []
            if self.audit is not None:
                events.append(
                    functools.partial(
                        self.audit.record,
                        module=self.kind.module,
                        title=f"{self.kind.module} Updated",
                        description=f"{len(applied)} field(s) saved on {self.kind.module} {self.year}",
                        actor=self.actor,
                        status="ongoing",
                        entity_id=self.document_id,
                        details={"paths": sorted(applied)},
                    )
                )
            try:
                updated = self.store.conditional_update(
                    doc.id,
                    DocumentStatus.OPEN_FOR_EDITING,
                    {
                        "content": content,
                        "last_edited_by": self.actor.name,
                        "last_edited_by_id": self.actor.id,
                        "last_edited_at": self._clock(),
                    },
                    expected_revision=doc.revision,
                    events=events,
                )
                return updated, rejected
            except ConflictError:
                # Another write landed between our read and write; re-read and re-apply our paths only.
                logger.debug("autosave %s: revision moved, retrying (attempt %s)", self.document_id, attempt)
        raise ConflictError(
            f"Document {self.document_id} kept changing; {len(patches)} edit(s) still buffered.",
            document_id=self.document_id,
        )

    def save_snapshot(self, snapshot: dict) -> PlanningDocument | None:
        """
        Manual "save now" from a whole-content snapshot. Only the paths that differ
        from what this session loaded are written, through the same patch path.
        """
        changes = diff_paths(self.baseline, snapshot)
        if not changes:
            return self.flush()
        for path in changes:
            parse_path(path)
        with self._lock:
            for path, value in changes.items():
                self._buffer(path, value)
        doc = self.flush()
        self.baseline = copy.deepcopy(snapshot)
        return doc

    def patch_now(self, patches: dict[str, Any]) -> PlanningDocument | None:
        """
        Buffer several paths without timers and write them immediately. Valid
        paths are saved even when another one is rejected; the rejection is then
        raised as ValidationError.
        """
        for path in patches:
            parse_path(path)
        with self._lock:
            for path, value in patches.items():
                self._buffer(path, value)
        doc, rejected = self._flush(None)
        mine = {path: reason for path, reason in rejected.items() if path in patches}
        if mine:
            raise ValidationError(
                "; ".join(f"{path}: {reason}" for path, reason in mine.items()), paths=sorted(mine)
            )
        return doc

    def _buffer(self, stream: str, value: Any) -> None:
        previous = self._pending.pop(stream, None)
        if previous and previous.timer is not None:
            previous.timer.cancel()
        self._pending[stream] = PendingEdit(value=copy.deepcopy(value))

    def close(self) -> None:
        """
        End the session: stop timers and write everything still buffered. If the
        write fails the buffer stays intact and the error propagates.
        """
        with self._lock:
            for entry in self._pending.values():
                if entry.timer is not None:
                    entry.timer.cancel()
        self.flush()
