from __future__ import annotations

import enum
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from functools import wraps
from typing import Any

from flask import g

from app.skplan.errors import PermissionDeniedError, ValidationError


class Role(str, enum.Enum):
    CHAIRPERSON = "chairperson"
    SECRETARY = "secretary"
    TREASURER = "treasurer"
    COUNCIL_MEMBER = "council_member"
    ADMIN = "admin"


class Action(str, enum.Enum):
    INITIATE = "initiate"
    CLOSE_EDITING = "close_editing"
    APPROVE = "approve"
    REJECT = "reject"
    RESET = "reset"
    EDIT_CONTENT = "edit_content"
    SET_ROSTER = "set_roster"
    RECONCILE = "reconcile"


EDITORS = frozenset({Role.CHAIRPERSON, Role.SECRETARY, Role.TREASURER, Role.COUNCIL_MEMBER})

# Who may do what. Chairperson is listed explicitly on every row it holds; there is no implicit super-role.
# Admin manages user accounts elsewhere; on documents it may only reconcile.
ACTION_ROLES: dict[Action, frozenset[Role]] = {
    Action.INITIATE: frozenset({Role.CHAIRPERSON}),
    Action.CLOSE_EDITING: frozenset({Role.CHAIRPERSON}),
    # The earlier web UI offered Approve to admin accounts only. Here approval is a chairperson
    # action like every other transition.
    Action.APPROVE: frozenset({Role.CHAIRPERSON}),
    Action.REJECT: frozenset({Role.CHAIRPERSON}),
    Action.RESET: frozenset({Role.CHAIRPERSON}),
    Action.SET_ROSTER: frozenset({Role.CHAIRPERSON}),
    Action.EDIT_CONTENT: EDITORS,
    # housekeeping only; never changes which record is canonical
    Action.RECONCILE: frozenset({Role.CHAIRPERSON, Role.ADMIN}),
}


@dataclass(frozen=True)
class Actor:
    """Identity context supplied by the caller. Read-only; never fetched or mutated here."""

    id: str
    name: str
    role: Role

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "Actor":
        actor_id = str(data.get("id") or "").strip()
        name = str(data.get("name") or "").strip()
        raw_role = str(data.get("role") or "").strip().lower()
        if not actor_id:
            raise ValidationError("Actor id is required.")
        try:
            role = Role(raw_role)
        except ValueError:
            raise ValidationError(f"Unknown role: {raw_role!r}") from None
        return cls(id=actor_id, name=name or actor_id, role=role)

    def snapshot(self) -> dict[str, str]:
        return {"id": self.id, "name": self.name, "role": self.role.value}


def actor_can(actor: Actor | None, action: Action) -> bool:
    if actor is None:
        return False
    return actor.role in ACTION_ROLES.get(action, frozenset())


def authorize(actor: Actor | None, action: Action) -> None:
    if not actor_can(actor, action):
        role = actor.role.value if actor else None
        raise PermissionDeniedError(f"Role {role!r} may not {action.value}.", action=action.value, role=role)


def require_actor(fn: Callable[..., Any]) -> Callable[..., Any]:
    @wraps(fn)
    def wrapped(*args: Any, **kwargs: Any):
        actor: Actor | None = getattr(g, "current_actor", None)
        if actor is None:
            return {"error": "Unauthenticated", "message": "Identity headers missing."}, 401
        return fn(*args, **kwargs)

    return wrapped
