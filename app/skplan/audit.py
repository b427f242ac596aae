"""
Append-only activity log with filter-bound, cursor-stable pagination.

Events are ordered by (timestamp, seq) descending. A cursor names the last key a
reader has seen; the next page is everything strictly older. Anything appended
later sorts above every issued key, so it can never shift or leak into a page
requested with an existing cursor.
"""

from __future__ import annotations

import base64
import hashlib
import json
import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Any

from flask import g, has_request_context
from sqlalchemy import and_, func, or_, select
from sqlalchemy.orm import Session, sessionmaker

from app.skplan.db import transaction
from app.skplan.errors import NotFoundError, ValidationError
from app.skplan.models import ActivityEvent
from app.skplan.rbac import Actor

logger = logging.getLogger(__name__)

EVENT_STATUSES = ("pending", "ongoing", "completed")

# pg_advisory_xact_lock key shared by every writer of activity_events
APPEND_LOCK_KEY = 7261001


def lock_appends(s: Session) -> None:
    """
    Serialize appends until the surrounding transaction ends.

    Keys are handed out and committed in the same order, so an event can never
    commit below a key a reader has already been given. Only Postgres needs
    it; sqlite is the single-process development database.
    """
    if s.get_bind().dialect.name == "postgresql":
        s.execute(select(func.pg_advisory_xact_lock(APPEND_LOCK_KEY)))


@dataclass(frozen=True)
class ActivityFilter:
    module: str | None = None
    date_from: date | None = None
    date_to: date | None = None

    def __post_init__(self) -> None:
        if self.date_from and self.date_to and self.date_from > self.date_to:
            raise ValidationError("date_from must not be after date_to.")

    def fingerprint(self) -> str:
        raw = "|".join(
            [
                self.module or "",
                self.date_from.isoformat() if self.date_from else "",
                self.date_to.isoformat() if self.date_to else "",
            ]
        )
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:16]


@dataclass(frozen=True)
class ActivityPage:
    events: list[ActivityEvent]
    next_cursor: str | None
    has_more: bool


def encode_cursor(timestamp: datetime, seq: int, fingerprint: str) -> str:
    payload = json.dumps({"ts": timestamp.isoformat(), "seq": seq, "f": fingerprint}, separators=(",", ":"))
    return base64.urlsafe_b64encode(payload.encode("utf-8")).decode("ascii").rstrip("=")


def decode_cursor(token: str) -> tuple[datetime, int, str]:
    try:
        padded = token + "=" * (-len(token) % 4)
        data = json.loads(base64.urlsafe_b64decode(padded.encode("ascii")))
        return datetime.fromisoformat(data["ts"]), int(data["seq"]), str(data["f"])
    except (ValueError, KeyError, TypeError) as e:
        raise ValidationError("Malformed cursor.") from e


def event_to_dict(ev: ActivityEvent) -> dict[str, Any]:
    return {
        "id": ev.id,
        "module": ev.module,
        "title": ev.title,
        "description": ev.description,
        "status": ev.status,
        "actor": {"id": ev.actor_id, "name": ev.actor_name, "role": ev.actor_role},
        "entity_id": ev.entity_id,
        "details": json.loads(ev.details_json) if ev.details_json else None,
        "timestamp": ev.timestamp.isoformat(),
        "time_ago": format_time_ago(ev.timestamp),
    }


class ActivityAuditLog:
    def __init__(
        self,
        sm: sessionmaker,
        *,
        max_page: int = 100,
        clock: Callable[[], datetime] = datetime.utcnow,
    ) -> None:
        self._sm = sm
        self.max_page = max_page
        self._clock = clock

    def append(self, **fields: Any) -> ActivityEvent:
        """Write one event in its own transaction. Takes the same fields as ``record``."""
        with transaction(self._sm) as s:
            return self.record(s, **fields)

    def record(
        self,
        s: Session,
        *,
        module: str,
        title: str,
        actor: Actor,
        description: str = "",
        status: str = "completed",
        entity_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> ActivityEvent:
        """
        Add one event to the caller's session, so it commits or rolls back with
        the change it describes. Call it last in the transaction: on Postgres it
        takes the append lock, which is held until commit.
        """
        if status not in EVENT_STATUSES:
            raise ValidationError(f"Unknown activity status: {status!r}")
        rid = getattr(g, "request_id", None) if has_request_context() else None
        lock_appends(s)
        latest = s.scalar(select(func.max(ActivityEvent.timestamp)))
        now = self._clock()
        ev = ActivityEvent(
            id=uuid.uuid4().hex,
            timestamp=max(now, latest) if latest else now,
            request_id=rid,
            module=module,
            title=title,
            description=description,
            status=status,
            actor_id=actor.id,
            actor_name=actor.name,
            actor_role=actor.role.value,
            entity_id=entity_id,
            details_json=json.dumps(details, sort_keys=True, default=str) if details else None,
        )
        s.add(ev)
        s.flush()
        logger.debug("activity appended: module=%s title=%s seq=%s", module, title, ev.seq)
        return ev

    def query_page(
        self,
        flt: ActivityFilter | None = None,
        limit: int = 20,
        cursor: str | None = None,
    ) -> ActivityPage:
        flt = flt or ActivityFilter()
        if limit < 1 or limit > self.max_page:
            raise ValidationError(f"limit must be between 1 and {self.max_page}.")

        conditions = []
        if flt.module:
            conditions.append(ActivityEvent.module == flt.module)
        if flt.date_from:
            conditions.append(ActivityEvent.timestamp >= datetime.combine(flt.date_from, time.min))
        if flt.date_to:
            # inclusive: everything before the start of the following day
            conditions.append(ActivityEvent.timestamp < datetime.combine(flt.date_to + timedelta(days=1), time.min))
        if cursor:
            ts, seq, fp = decode_cursor(cursor)
            if fp != flt.fingerprint():
                raise ValidationError("Cursor was issued for a different filter; request the first page again.")
            conditions.append(
                or_(
                    ActivityEvent.timestamp < ts,
                    and_(ActivityEvent.timestamp == ts, ActivityEvent.seq < seq),
                )
            )

        stmt = (
            select(ActivityEvent)
            .where(*conditions)
            .order_by(ActivityEvent.timestamp.desc(), ActivityEvent.seq.desc())
            .limit(limit + 1)
        )
        with transaction(self._sm) as s:
            rows = list(s.scalars(stmt).all())

        has_more = len(rows) > limit
        events = rows[:limit]
        next_cursor = None
        if events:
            last = events[-1]
            next_cursor = encode_cursor(last.timestamp, last.seq, flt.fingerprint())
        return ActivityPage(events=events, next_cursor=next_cursor, has_more=has_more)

    def recent(self, limit: int = 10) -> list[ActivityEvent]:
        return self.query_page(None, limit=limit).events

    def get(self, event_id: str) -> ActivityEvent:
        with transaction(self._sm) as s:
            ev = s.scalar(select(ActivityEvent).where(ActivityEvent.id == event_id))
        if ev is None:
            raise NotFoundError(f"Activity event {event_id} not found.", event_id=event_id)
        return ev


@dataclass
class ActivityFeed:
    """
    Reader state for one activity list. Changing the filter drops the held cursor.
    """

    log: ActivityAuditLog
    flt: ActivityFilter = field(default_factory=ActivityFilter)
    page_size: int = 20
    cursor: str | None = None
    exhausted: bool = False

    def set_filter(self, flt: ActivityFilter) -> None:
        if flt != self.flt:
            self.flt = flt
            self.cursor = None
            self.exhausted = False

    def next_page(self) -> ActivityPage:
        if self.exhausted:
            return ActivityPage(events=[], next_cursor=self.cursor, has_more=False)
        page = self.log.query_page(self.flt, limit=self.page_size, cursor=self.cursor)
        if page.next_cursor:
            self.cursor = page.next_cursor
        self.exhausted = not page.has_more
        return page


def format_time_ago(when: datetime, now: datetime | None = None) -> str:
    now = now or datetime.utcnow()
    seconds = int((now - when).total_seconds())
    if seconds < 60:
        return "Just now"
    if seconds < 3600:
        n = seconds // 60
        unit = "minute"
    elif seconds < 86400:
        n = seconds // 3600
        unit = "hour"
    elif seconds < 2592000:
        n = seconds // 86400
        unit = "day"
    else:
        n = seconds // 604800
        unit = "week"
    return f"{n} {unit}{'s' if n > 1 else ''} ago"
