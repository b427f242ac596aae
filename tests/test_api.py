import io

import pytest

from app.skplan import create_app
from app.skplan.models import Base

PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 64


def _headers(role, actor_id=None, name=None):
    return {
        "X-Actor-Id": actor_id or f"u-{role}",
        "X-Actor-Name": name or role.title(),
        "X-Actor-Role": role,
    }


CHAIR = _headers("chairperson", name="Carla Chair")
SECRETARY = _headers("secretary", name="Sam Secretary")
ADMIN = _headers("admin", name="Ada Admin")


@pytest.fixture()
def client(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")

    app = create_app()
    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)
    return app.test_client()


def test_budget_vertical_slice_initiates_edits_approves_and_logs(client):
    r = client.post("/api/planning/budget/2025/initiate", headers=CHAIR)
    assert r.status_code == 201
    assert r.json["status"] == "open_for_editing"
    assert r.json["editing_open"] is True
    first_id = r.json["id"]

    r = client.patch(
        "/api/planning/budget/2025/content",
        json={"patches": {"sk_resolution_no": "2025-003", "programs[0].items[0].amount": "1,500"}},
        headers=SECRETARY,
    )
    assert r.status_code == 200
    assert r.json["content"]["sk_resolution_no"] == "2025-003"
    assert r.json["content"]["programs"][0]["mooe_total"] == 1500
    assert r.json["last_edited_by"] == "Sam Secretary"

    r = client.post("/api/planning/budget/2025/close", headers=CHAIR)
    assert r.status_code == 200
    assert r.json["status"] == "pending_approval"

    # edits are refused once editing is closed
    r = client.patch(
        "/api/planning/budget/2025/content",
        json={"patches": {"sk_resolution_no": "late"}},
        headers=SECRETARY,
    )
    assert r.status_code == 409
    assert r.json["error"] == "InvalidStateError"

    r = client.post(
        "/api/planning/budget/2025/approve",
        data={"evidence": (io.BytesIO(PNG), "kk-approval.png", "image/png"), "approved_on": "2025-01-10"},
        content_type="multipart/form-data",
        headers=CHAIR,
    )
    assert r.status_code == 200
    assert r.json["status"] == "approved"
    assert r.json["kk_approved_at"] == "2025-01-10"
    assert r.json["id"] != first_id
    assert r.json["content"]["sk_resolution_no"] == "2025-003"

    r = client.get("/api/planning/activity?module=Budget&limit=2", headers=SECRETARY)
    assert r.status_code == 200
    assert [e["title"] for e in r.json["events"]] == ["Budget Approved", "Budget Editing Closed"]
    assert r.json["has_more"] is True

    r = client.get(f"/api/planning/activity?module=Budget&limit=10&cursor={r.json['next_cursor']}", headers=SECRETARY)
    assert [e["title"] for e in r.json["events"]] == ["Budget Updated", "Budget Initiated"]
    assert r.json["has_more"] is False


def test_approve_without_evidence_is_rejected(client):
    client.post("/api/planning/budget/2025/initiate", headers=CHAIR)
    client.post("/api/planning/budget/2025/close", headers=CHAIR)

    r = client.post(
        "/api/planning/budget/2025/approve",
        data={"approved_on": "2025-01-10"},
        content_type="multipart/form-data",
        headers=CHAIR,
    )
    assert r.status_code == 400
    assert r.json["error"] == "ValidationError"

    r = client.get("/api/planning/budget/2025", headers=CHAIR)
    assert r.json["status"] == "pending_approval"


def test_permission_and_state_errors_map_to_status_codes(client):
    r = client.post("/api/planning/budget/2025/initiate", headers=SECRETARY)
    assert r.status_code == 403
    assert r.json["error"] == "PermissionDeniedError"

    assert client.post("/api/planning/budget/2025/initiate", headers=CHAIR).status_code == 201
    r = client.post("/api/planning/budget/2025/initiate", headers=CHAIR)
    assert r.status_code == 409

    r = client.post("/api/planning/annual_report/2025/initiate", headers=CHAIR)
    assert r.status_code == 400


def test_reconcile_route_checks_role(client):
    assert client.post("/api/planning/budget/2025/initiate", headers=CHAIR).status_code == 201

    r = client.post("/api/planning/budget/2025/reconcile", headers=SECRETARY)
    assert r.status_code == 403
    assert r.json["error"] == "PermissionDeniedError"

    r = client.post("/api/planning/budget/2025/reconcile", headers=ADMIN)
    assert r.status_code == 200
    assert r.json["removed"] == 0
    assert r.json["document"]["status"] == "open_for_editing"


def test_reject_then_reinitiate_keeps_roster(client):
    roster = [{"name": "Carla Chair", "role": "SK Chairperson"}]
    r = client.put("/api/planning/investment_program/2026/roster", json={"roster": roster}, headers=CHAIR)
    assert r.status_code == 200

    client.post("/api/planning/investment_program/2026/initiate", headers=CHAIR)
    client.post("/api/planning/investment_program/2026/close", headers=CHAIR)

    r = client.post("/api/planning/investment_program/2026/reject", json={}, headers=CHAIR)
    assert r.status_code == 400

    r = client.post("/api/planning/investment_program/2026/reject", json={"reason": "Missing PPAs"}, headers=CHAIR)
    assert r.status_code == 200
    assert r.json["status"] == "rejected"
    assert r.json["rejection_reason"] == "Missing PPAs"

    r = client.post("/api/planning/investment_program/2026/initiate", headers=CHAIR)
    assert r.status_code == 201
    assert r.json["status"] == "open_for_editing"
    assert r.json["roster"] == roster


def test_activity_rejects_bad_query(client):
    r = client.get("/api/planning/activity?date_from=2025-02-01&date_to=2025-01-01", headers=SECRETARY)
    assert r.status_code == 400
    r = client.get("/api/planning/activity?limit=500", headers=SECRETARY)
    assert r.status_code == 400
    r = client.get("/api/planning/activity?date_from=yesterday", headers=SECRETARY)
    assert r.status_code == 400


def test_activity_event_lookup(client):
    client.post("/api/planning/budget/2025/initiate", headers=CHAIR)
    event = client.get("/api/planning/activity?limit=1", headers=SECRETARY).json["events"][0]
    assert event["actor"] == {"id": "u-chairperson", "name": "Carla Chair", "role": "chairperson"}

    r = client.get(f"/api/planning/activity/{event['id']}", headers=SECRETARY)
    assert r.status_code == 200
    assert r.json["title"] == "Budget Initiated"

    r = client.get("/api/planning/activity/does-not-exist", headers=SECRETARY)
    assert r.status_code == 404
    assert r.json["error"] == "NotFoundError"
