"""Create planning slots, planning documents and activity events.

Revision ID: a0b1c2d3e4f5
Revises:
Create Date: 2026-10-18
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "a0b1c2d3e4f5"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "planning_slots",
        sa.Column("kind", sa.String(32), primary_key=True),
        sa.Column("year", sa.Integer(), primary_key=True),
        sa.Column("current_document_id", sa.String(32), nullable=True),
        sa.Column("roster", sa.JSON(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )

    op.create_table(
        "planning_documents",
        sa.Column("id", sa.String(32), primary_key=True),
        sa.Column("kind", sa.String(32), nullable=False),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(32), nullable=False),
        sa.Column("editing_open", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("content", sa.JSON(), nullable=False),
        sa.Column("revision", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("superseded_by", sa.String(32), nullable=True),
        sa.Column("initiated_by", sa.String(255), nullable=True),
        sa.Column("initiated_by_id", sa.String(128), nullable=True),
        sa.Column("initiated_at", sa.DateTime(), nullable=True),
        sa.Column("closed_by", sa.String(255), nullable=True),
        sa.Column("closed_by_id", sa.String(128), nullable=True),
        sa.Column("closed_at", sa.DateTime(), nullable=True),
        sa.Column("approved_by", sa.String(255), nullable=True),
        sa.Column("approved_by_id", sa.String(128), nullable=True),
        sa.Column("approved_at", sa.DateTime(), nullable=True),
        sa.Column("kk_approved_at", sa.Date(), nullable=True),
        sa.Column("evidence_ref", sa.String(1024), nullable=True),
        sa.Column("rejected_by", sa.String(255), nullable=True),
        sa.Column("rejected_by_id", sa.String(128), nullable=True),
        sa.Column("rejected_at", sa.DateTime(), nullable=True),
        sa.Column("rejection_reason", sa.Text(), nullable=True),
        sa.Column("last_edited_by", sa.String(255), nullable=True),
        sa.Column("last_edited_by_id", sa.String(128), nullable=True),
        sa.Column("last_edited_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("idx_planning_documents_kind_year", "planning_documents", ["kind", "year"])

    op.create_table(
        "activity_events",
        sa.Column("seq", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("id", sa.String(32), nullable=False),
        sa.Column("timestamp", sa.DateTime(), nullable=False),
        sa.Column("request_id", sa.String(64), nullable=True),
        sa.Column("module", sa.String(64), nullable=False),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("status", sa.String(32), nullable=False, server_default="completed"),
        sa.Column("actor_id", sa.String(128), nullable=False),
        sa.Column("actor_name", sa.String(255), nullable=False),
        sa.Column("actor_role", sa.String(32), nullable=False),
        sa.Column("entity_id", sa.String(64), nullable=True),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.UniqueConstraint("id"),
    )
    op.create_index("idx_activity_events_order", "activity_events", ["timestamp", "seq"])
    op.create_index("idx_activity_events_module_order", "activity_events", ["module", "timestamp", "seq"])


def downgrade() -> None:
    op.drop_index("idx_activity_events_module_order", table_name="activity_events")
    op.drop_index("idx_activity_events_order", table_name="activity_events")
    op.drop_table("activity_events")
    op.drop_index("idx_planning_documents_kind_year", table_name="planning_documents")
    op.drop_table("planning_documents")
    op.drop_table("planning_slots")
