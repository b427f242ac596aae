"""
Typed failures raised by the planning core.

Each error carries the HTTP status the API layer maps it to. Callers must be
able to tell "this did not happen" (validation/permission/state) apart from
"this may be retried" (storage).
"""

from __future__ import annotations


class PlanningError(Exception):
    http_status = 500

    def __init__(self, message: str = "", **context: object) -> None:
        super().__init__(message)
        self.message = message
        self.context = context


class ValidationError(PlanningError):
    http_status = 400


class PermissionDeniedError(PlanningError):
    http_status = 403


class NotFoundError(PlanningError):
    http_status = 404


class InvalidStateError(PlanningError):
    http_status = 409


class ConflictError(InvalidStateError):
    """Conditional write lost against a concurrent winner. Re-read before deciding what to do."""


class StorageError(PlanningError):
    http_status = 503
