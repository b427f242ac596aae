from datetime import date, datetime, timedelta
from types import SimpleNamespace

import pytest

from app.skplan import create_app
from app.skplan.audit import ActivityAuditLog, ActivityFeed, ActivityFilter, format_time_ago, lock_appends
from app.skplan.db import transaction
from app.skplan.errors import NotFoundError, ValidationError
from app.skplan.models import Base
from app.skplan.rbac import Actor, Role

SECRETARY = Actor(id="u-sec", name="Sam Secretary", role=Role.SECRETARY)


@pytest.fixture()
def sm(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")

    app = create_app()
    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)
    return app.extensions["sqlalchemy_sessionmaker"]


class StepClock:
    def __init__(self, start):
        self.now = start

    def __call__(self):
        return self.now


def _append(log, title, module="Budget"):
    return log.append(module=module, title=title, actor=SECRETARY)


def test_pages_are_disjoint_and_stable_under_appends(sm):
    log = ActivityAuditLog(sm)
    for i in range(5):
        _append(log, f"event {i}")

    page1 = log.query_page(limit=2)
    assert [e.title for e in page1.events] == ["event 4", "event 3"]
    assert page1.has_more is True

    # newer activity must not shift the pages that follow
    _append(log, "event 5")
    _append(log, "event 6")

    page2 = log.query_page(limit=2, cursor=page1.next_cursor)
    page3 = log.query_page(limit=2, cursor=page2.next_cursor)
    assert [e.title for e in page2.events] == ["event 2", "event 1"]
    assert [e.title for e in page3.events] == ["event 0"]
    assert page3.has_more is False

    seen = [e.id for p in (page1, page2, page3) for e in p.events]
    assert len(seen) == len(set(seen)) == 5


def test_same_instant_events_are_ordered_by_sequence(sm):
    clock = StepClock(datetime(2025, 1, 10, 9, 0, 0))
    log = ActivityAuditLog(sm, clock=clock)
    for i in range(4):
        _append(log, f"tie {i}")

    page1 = log.query_page(limit=3)
    page2 = log.query_page(limit=3, cursor=page1.next_cursor)
    assert [e.title for e in page1.events + page2.events] == ["tie 3", "tie 2", "tie 1", "tie 0"]


def test_clock_skew_never_reorders_history(sm):
    clock = StepClock(datetime(2025, 1, 10, 9, 0, 0))
    log = ActivityAuditLog(sm, clock=clock)
    first = _append(log, "first")
    clock.now = datetime(2025, 1, 10, 8, 0, 0)
    second = _append(log, "second")
    assert second.timestamp >= first.timestamp
    assert [e.title for e in log.recent(2)] == ["second", "first"]


def test_module_and_inclusive_date_filters(sm):
    clock = StepClock(datetime(2025, 1, 9, 23, 59, 0))
    log = ActivityAuditLog(sm, clock=clock)
    _append(log, "before", module="Budget")
    clock.now = datetime(2025, 1, 10, 0, 0, 0)
    _append(log, "start of day", module="Budget")
    clock.now = datetime(2025, 1, 10, 12, 0, 0)
    _append(log, "midday abyip", module="ABYIP")
    clock.now = datetime(2025, 1, 10, 23, 59, 59)
    _append(log, "end of day", module="Budget")
    clock.now = datetime(2025, 1, 11, 0, 0, 0)
    _append(log, "after", module="Budget")

    day = ActivityFilter(date_from=date(2025, 1, 10), date_to=date(2025, 1, 10))
    assert [e.title for e in log.query_page(day).events] == ["end of day", "midday abyip", "start of day"]

    budget_day = ActivityFilter(module="Budget", date_from=date(2025, 1, 10), date_to=date(2025, 1, 10))
    assert [e.title for e in log.query_page(budget_day).events] == ["end of day", "start of day"]

    assert [e.title for e in log.query_page(ActivityFilter(module="ABYIP")).events] == ["midday abyip"]


def test_cursor_is_bound_to_its_filter(sm):
    log = ActivityAuditLog(sm)
    for i in range(3):
        _append(log, f"event {i}")
    page = log.query_page(ActivityFilter(module="Budget"), limit=1)
    with pytest.raises(ValidationError):
        log.query_page(ActivityFilter(module="CBYDP"), limit=1, cursor=page.next_cursor)
    with pytest.raises(ValidationError):
        log.query_page(limit=1, cursor="not-a-cursor")


def test_limit_and_filter_validation(sm):
    log = ActivityAuditLog(sm, max_page=10)
    with pytest.raises(ValidationError):
        log.query_page(limit=0)
    with pytest.raises(ValidationError):
        log.query_page(limit=11)
    with pytest.raises(ValidationError):
        ActivityFilter(date_from=date(2025, 2, 1), date_to=date(2025, 1, 1))
    with pytest.raises(ValidationError):
        log.append(module="Budget", title="x", actor=SECRETARY, status="done")


def test_feed_restarts_when_filter_changes(sm):
    log = ActivityAuditLog(sm)
    for i in range(3):
        _append(log, f"budget {i}", module="Budget")
        _append(log, f"cbydp {i}", module="CBYDP")

    feed = ActivityFeed(log, page_size=2)
    assert [e.title for e in feed.next_page().events] == ["cbydp 2", "budget 2"]

    feed.set_filter(ActivityFilter(module="Budget"))
    assert feed.cursor is None
    assert [e.title for e in feed.next_page().events] == ["budget 2", "budget 1"]
    assert [e.title for e in feed.next_page().events] == ["budget 0"]
    assert feed.exhausted is True
    assert feed.next_page().events == []


def test_actor_is_a_snapshot(sm):
    log = ActivityAuditLog(sm)
    ev = log.append(module="Budget", title="Budget Updated", actor=SECRETARY, details={"paths": ["sk_resolution_no"]})
    stored = log.recent(1)[0]
    assert stored.id == ev.id
    assert (stored.actor_id, stored.actor_name, stored.actor_role) == ("u-sec", "Sam Secretary", "secretary")
    assert log.get(ev.id).title == "Budget Updated"
    with pytest.raises(NotFoundError):
        log.get("missing")


class RecordingSession:
    def __init__(self, dialect):
        self.dialect = dialect
        self.statements = []

    def get_bind(self):
        return SimpleNamespace(dialect=SimpleNamespace(name=self.dialect))

    def execute(self, statement):
        self.statements.append(statement)


def test_appends_are_serialized_on_postgres_only():
    pg = RecordingSession("postgresql")
    lock_appends(pg)
    assert len(pg.statements) == 1
    assert "pg_advisory_xact_lock" in str(pg.statements[0])

    lite = RecordingSession("sqlite")
    lock_appends(lite)
    assert lite.statements == []


def test_record_commits_with_the_callers_transaction(sm):
    log = ActivityAuditLog(sm)
    with pytest.raises(RuntimeError):
        with transaction(sm) as s:
            log.record(s, module="Budget", title="Budget Initiated", actor=SECRETARY)
            raise RuntimeError("change failed")
    assert log.recent(5) == []

    with transaction(sm) as s:
        log.record(s, module="Budget", title="Budget Initiated", actor=SECRETARY)
    assert [e.title for e in log.recent(5)] == ["Budget Initiated"]


def test_format_time_ago():
    now = datetime(2025, 1, 10, 12, 0, 0)
    assert format_time_ago(now - timedelta(seconds=30), now) == "Just now"
    assert format_time_ago(now - timedelta(minutes=1), now) == "1 minute ago"
    assert format_time_ago(now - timedelta(minutes=5), now) == "5 minutes ago"
    assert format_time_ago(now - timedelta(hours=3), now) == "3 hours ago"
    assert format_time_ago(now - timedelta(days=2), now) == "2 days ago"
    assert format_time_ago(now - timedelta(days=45), now) == "6 weeks ago"
