from __future__ import annotations

import enum
from datetime import date, datetime

from sqlalchemy import JSON, Boolean, Date, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.skplan.models import Base


class DocumentKind(str, enum.Enum):
    YOUTH_DEVELOPMENT_PLAN = "youth_development_plan"
    INVESTMENT_PROGRAM = "investment_program"
    BUDGET = "budget"

    @property
    def module(self) -> str:
        """Label used for activity events."""
        return _MODULE_LABELS[self]


_MODULE_LABELS = {
    DocumentKind.YOUTH_DEVELOPMENT_PLAN: "CBYDP",
    DocumentKind.INVESTMENT_PROGRAM: "ABYIP",
    DocumentKind.BUDGET: "Budget",
}


class DocumentStatus(str, enum.Enum):
    NOT_INITIATED = "not_initiated"
    OPEN_FOR_EDITING = "open_for_editing"
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    REJECTED = "rejected"


class PlanningSlot(Base):
    """
    One row per (kind, year), created on first use and never deleted.

    This is the implicit NotInitiated record: it keeps the roster across
    re-initiation and reset, and points at the canonical document (if any).
    """

    __tablename__ = "planning_slots"

    kind: Mapped[str] = mapped_column(String(32), primary_key=True)
    year: Mapped[int] = mapped_column(Integer, primary_key=True)

    current_document_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    roster: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)


class PlanningDocument(Base):
    __tablename__ = "planning_documents"
    __table_args__ = (
        Index("idx_planning_documents_kind_year", "kind", "year"),
    )

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    kind: Mapped[str] = mapped_column(String(32), nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)

    # open_for_editing -> pending_approval -> approved | rejected
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    editing_open: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    content: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    # bumped on every write; optimistic token for content patches
    revision: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    # set on the old record by approval; a superseded record accepts no further writes
    superseded_by: Mapped[str | None] = mapped_column(String(32), nullable=True)

    initiated_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    initiated_by_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    initiated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    closed_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    closed_by_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    closed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    approved_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    approved_by_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    kk_approved_at: Mapped[date | None] = mapped_column(Date, nullable=True)  # date on the approval proof
    evidence_ref: Mapped[str | None] = mapped_column(String(1024), nullable=True)

    rejected_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    rejected_by_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    rejected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    last_edited_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    last_edited_by_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    last_edited_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
