from datetime import date

import pytest

from app.skplan import create_app
from app.skplan.errors import InvalidStateError, PermissionDeniedError, ValidationError
from app.skplan.models import Base
from app.skplan.modules.planning_documents.evidence import parse_approval_date
from app.skplan.modules.planning_documents.models import DocumentKind, DocumentStatus
from app.skplan.modules.planning_documents.service import services
from app.skplan.rbac import Actor, Role

CHAIR = Actor(id="u-chair", name="Carla Chair", role=Role.CHAIRPERSON)
TREASURER = Actor(id="u-tres", name="Tess Treasurer", role=Role.TREASURER)

BUDGET = DocumentKind.BUDGET
PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 64


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    monkeypatch.setenv("EVIDENCE_MAX_BYTES", "1024")

    app = create_app()
    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)

    engine_ = services(app).engine
    engine_.initiate(BUDGET, 2025, CHAIR)
    engine_.close_editing(BUDGET, 2025, CHAIR)
    return app


@pytest.fixture()
def svc(app):
    return services(app)


def _stored_files(tmp_path):
    root = tmp_path / "storage"
    return [p for p in root.rglob("*") if p.is_file()] if root.exists() else []


def test_approve_with_evidence_stores_image_and_date(svc, tmp_path):
    doc = svc.evidence.approve(
        BUDGET, 2025, CHAIR, payload=PNG, content_type="image/png", approved_on="2025-01-10"
    )
    assert doc.status == "approved"
    assert doc.kk_approved_at == date(2025, 1, 10)
    assert doc.evidence_ref.startswith("local://evidence/budget/2025/")
    assert doc.evidence_ref.endswith(".png")

    files = _stored_files(tmp_path)
    assert len(files) == 1
    assert files[0].read_bytes() == PNG


def test_evidence_filename_is_sanitized_and_recorded(svc):
    doc = svc.evidence.approve(
        BUDGET,
        2025,
        CHAIR,
        payload=PNG,
        content_type="image/png",
        approved_on="2025-01-10",
        filename="../KK minutes/approval scan.png",
    )
    event = svc.audit.recent(1)[0]
    assert event.title == "Budget Approved"
    assert event.entity_id == doc.id
    assert '"evidence_filename": "KK_minutes_approval_scan.png"' in event.details_json


@pytest.mark.parametrize(
    "payload,content_type,approved_on",
    [
        (None, "image/png", "2025-01-10"),
        (b"", "image/png", "2025-01-10"),
        (PNG, "image/png", None),
        (PNG, "image/png", ""),
        (PNG, "image/png", "01/10/2025"),
        (b"%PDF-1.7 minutes", "application/pdf", "2025-01-10"),
        (PNG, None, "2025-01-10"),
        (b"\x00" * 2048, "image/jpeg", "2025-01-10"),
    ],
)
def test_invalid_evidence_leaves_document_pending(svc, tmp_path, payload, content_type, approved_on):
    with pytest.raises(ValidationError):
        svc.evidence.approve(
            BUDGET, 2025, CHAIR, payload=payload, content_type=content_type, approved_on=approved_on
        )
    assert svc.engine.current(BUDGET, 2025)[1] == DocumentStatus.PENDING_APPROVAL
    assert _stored_files(tmp_path) == []


def test_non_chair_cannot_approve(svc, tmp_path):
    with pytest.raises(PermissionDeniedError):
        svc.evidence.approve(
            BUDGET, 2025, TREASURER, payload=PNG, content_type="image/png", approved_on="2025-01-10"
        )
    assert _stored_files(tmp_path) == []


def test_wrong_state_uploads_nothing(svc, tmp_path):
    with pytest.raises(InvalidStateError):
        svc.evidence.approve(
            BUDGET, 2024, CHAIR, payload=PNG, content_type="image/png", approved_on="2024-01-10"
        )
    assert _stored_files(tmp_path) == []


def test_back_dated_and_future_dates_are_accepted():
    assert parse_approval_date("2019-12-31") == date(2019, 12, 31)
    assert parse_approval_date("2099-01-01") == date(2099, 1, 1)
    assert parse_approval_date(date(2025, 1, 10)) == date(2025, 1, 10)
