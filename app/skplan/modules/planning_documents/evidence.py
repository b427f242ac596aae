from __future__ import annotations

import logging
from datetime import date

from werkzeug.utils import secure_filename

from app.skplan.errors import ValidationError
from app.skplan.modules.planning_documents.models import DocumentKind, PlanningDocument
from app.skplan.modules.planning_documents.service import WorkflowEngine, coerce_kind, coerce_year
from app.skplan.rbac import Action, Actor, authorize
from app.skplan.storage import BlobStore

logger = logging.getLogger(__name__)


def parse_approval_date(value: date | str | None) -> date:
    """Approval date from the proof document. Back-dated values are expected."""
    if isinstance(value, date):
        return value
    raw = (value or "").strip()
    if not raw:
        raise ValidationError("Approval date is required.")
    try:
        # HTML <input type="date"> uses YYYY-MM-DD.
        return date.fromisoformat(raw)
    except ValueError:
        raise ValidationError(f"Approval date must be YYYY-MM-DD, got {raw!r}.") from None


class ApprovalEvidenceManager:
    """
    Gatekeeper for the approve transition: nothing is uploaded and nothing
    changes state unless the proof image and approval date are both valid.
    """

    def __init__(self, engine: WorkflowEngine, blobs: BlobStore) -> None:
        self.engine = engine
        self.blobs = blobs

    def approve(
        self,
        kind: DocumentKind | str,
        year: int | str,
        actor: Actor,
        *,
        payload: bytes | None,
        content_type: str | None,
        approved_on: date | str | None,
        filename: str | None = None,
    ) -> PlanningDocument:
        kind, year = coerce_kind(kind), coerce_year(year)
        authorize(actor, Action.APPROVE)
        approval_date = parse_approval_date(approved_on)
        self.blobs.validate(payload, content_type)
        # nothing is uploaded for a document that cannot be approved
        self.engine.require_status(kind, year, Action.APPROVE)

        safe_name = secure_filename(filename or "") or None
        evidence_ref = self.blobs.upload(
            payload, content_type, key_prefix=f"evidence/{kind.value}/{year}", filename=safe_name
        )
        logger.info("evidence stored for %s/%s: %s (%s bytes)", kind.value, year, evidence_ref, len(payload))
        return self.engine.approve(
            kind, year, actor, evidence_ref=evidence_ref, approved_on=approval_date, evidence_filename=safe_name
        )
