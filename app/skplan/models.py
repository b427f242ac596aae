from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class ActivityEvent(Base):
    """
    Append-only activity trail event.

    The actor is a snapshot taken at write time; later profile changes never alter history.
    Ordering key is (timestamp, seq): seq breaks ties between events written in the same instant.
    """

    __tablename__ = "activity_events"
    __table_args__ = (
        Index("idx_activity_events_order", "timestamp", "seq"),
        Index("idx_activity_events_module_order", "module", "timestamp", "seq"),
    )

    seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    id: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)

    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    request_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    module: Mapped[str] = mapped_column(String(64), nullable=False)  # e.g. "Budget"
    title: Mapped[str] = mapped_column(String(255), nullable=False)  # e.g. "Budget Approved"
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="completed")

    actor_id: Mapped[str] = mapped_column(String(128), nullable=False)
    actor_name: Mapped[str] = mapped_column(String(255), nullable=False)
    actor_role: Mapped[str] = mapped_column(String(32), nullable=False)

    entity_id: Mapped[str | None] = mapped_column(String(64), nullable=True)  # planning document id
    details_json: Mapped[str | None] = mapped_column(Text, nullable=True)  # small JSON string


# Ensure module models are imported so Base.metadata includes their tables.
# (Kept at bottom to avoid circular imports.)
from app.skplan.modules.planning_documents.models import PlanningDocument, PlanningSlot  # noqa: E402,F401
