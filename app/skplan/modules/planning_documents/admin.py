from __future__ import annotations

from datetime import date

from flask import Blueprint, g, request

from app.skplan.audit import ActivityFilter, event_to_dict
from app.skplan.errors import ValidationError
from app.skplan.modules.planning_documents.service import services
from app.skplan.rbac import Actor, require_actor

bp = Blueprint("planning", __name__)


def _current_actor() -> Actor:
    a = getattr(g, "current_actor", None)
    if not a:
        raise RuntimeError("No current actor")
    return a


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("Expected a JSON object body.")
    return data


def _parse_date_arg(name: str) -> date | None:
    raw = (request.args.get(name) or "").strip()
    if not raw:
        return None
    try:
        return date.fromisoformat(raw)
    except ValueError:
        raise ValidationError(f"{name} must be YYYY-MM-DD.") from None


def _view(kind: str, year: int) -> dict:
    return services().engine.view(kind, year)


@bp.get("/<kind>/<int:year>")
@require_actor
def get_document(kind: str, year: int):
    return _view(kind, year)


@bp.post("/<kind>/<int:year>/initiate")
@require_actor
def initiate(kind: str, year: int):
    services().engine.initiate(kind, year, _current_actor())
    return _view(kind, year), 201


@bp.post("/<kind>/<int:year>/close")
@require_actor
def close_editing(kind: str, year: int):
    services().engine.close_editing(kind, year, _current_actor())
    return _view(kind, year)


@bp.post("/<kind>/<int:year>/approve")
@require_actor
def approve(kind: str, year: int):
    f = request.files.get("evidence")
    services().evidence.approve(
        kind,
        year,
        _current_actor(),
        payload=f.read() if f else None,
        content_type=(f.mimetype if f else None),
        approved_on=request.form.get("approved_on"),
        filename=f.filename if f else None,
    )
    return _view(kind, year)


@bp.post("/<kind>/<int:year>/reject")
@require_actor
def reject(kind: str, year: int):
    body = _json_body()
    services().engine.reject(kind, year, _current_actor(), body.get("reason") or "")
    return _view(kind, year)


@bp.post("/<kind>/<int:year>/reset")
@require_actor
def reset(kind: str, year: int):
    services().engine.reset(kind, year, _current_actor())
    return _view(kind, year)


@bp.post("/<kind>/<int:year>/reconcile")
@require_actor
def reconcile(kind: str, year: int):
    removed = services().engine.reconcile(kind, year, _current_actor())
    return {"removed": removed, "document": _view(kind, year)}


@bp.put("/<kind>/<int:year>/roster")
@require_actor
def set_roster(kind: str, year: int):
    body = _json_body()
    roster = services().engine.set_roster(kind, year, _current_actor(), body.get("roster"))
    return {"roster": roster}


@bp.patch("/<kind>/<int:year>/content")
@require_actor
def patch_content(kind: str, year: int):
    """Immediate field-level save. Clients debounce locally and send only changed paths."""
    body = _json_body()
    patches = body.get("patches")
    if not isinstance(patches, dict) or not patches:
        raise ValidationError("patches must be a non-empty object of path -> value.")
    services().edit_session(kind, year, _current_actor()).patch_now(patches)
    return _view(kind, year)


@bp.get("/activity")
@require_actor
def list_activity():
    try:
        limit = int(request.args.get("limit") or 20)
    except ValueError:
        raise ValidationError("limit must be an integer.") from None
    flt = ActivityFilter(
        module=(request.args.get("module") or "").strip() or None,
        date_from=_parse_date_arg("date_from"),
        date_to=_parse_date_arg("date_to"),
    )
    page = services().audit.query_page(flt, limit=limit, cursor=request.args.get("cursor") or None)
    return {
        "events": [event_to_dict(e) for e in page.events],
        "next_cursor": page.next_cursor,
        "has_more": page.has_more,
    }


@bp.get("/activity/<event_id>")
@require_actor
def get_activity(event_id: str):
    return event_to_dict(services().audit.get(event_id))
