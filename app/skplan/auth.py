from __future__ import annotations

import uuid

from flask import current_app, g, request

from app.skplan.errors import ValidationError
from app.skplan.rbac import Actor


def load_current_actor() -> None:
    """
    Loads g.current_actor from the identity headers set by the upstream gateway.
    Also assigns a simple per-request request_id (for audit/log correlation).
    """
    if not getattr(g, "request_id", None):
        g.request_id = request.headers.get("X-Request-Id") or uuid.uuid4().hex
    if request.path.startswith(("/static/", "/health", "/healthz")):
        g.current_actor = None
        return

    actor_id = request.headers.get("X-Actor-Id")
    if not actor_id:
        g.current_actor = None
        return

    try:
        g.current_actor = Actor.from_mapping(
            {
                "id": actor_id,
                "name": request.headers.get("X-Actor-Name"),
                "role": request.headers.get("X-Actor-Role"),
            }
        )
    except ValidationError as e:
        current_app.logger.warning("Rejected identity headers (request_id=%s): %s", g.request_id, e.message)
        g.current_actor = None
