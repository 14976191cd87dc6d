"""create trip_notifications ledger

Revision ID: 20261018_01
Revises:
Create Date: 2026-10-18
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20261018_01"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "trip_notifications",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("trip_id", sa.String(length=36), sa.ForeignKey("trips.id", ondelete="CASCADE"), nullable=False),
        sa.Column("task_id", sa.String(length=36), sa.ForeignKey("trip_tasks.id", ondelete="CASCADE"), nullable=True),
        sa.Column("participant_id", sa.String(length=36), sa.ForeignKey("trip_participants.id", ondelete="CASCADE"), nullable=False),
        sa.Column("trigger_type", sa.String(length=30), nullable=False),
        sa.Column("channel", sa.String(length=20), nullable=False, server_default="email"),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("scheduled_at", sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("sent_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("message_subject", sa.String(length=300), nullable=True),
        sa.Column("message_text", sa.Text(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("dedup_key", sa.String(length=300), nullable=True),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("read_at", sa.TIMESTAMP(timezone=True), nullable=True),
    )
    # Atomic claim: one in-app nudge per (trip, task, trigger, participant, day)
    op.create_index("uq_notifications_dedup_key", "trip_notifications", ["dedup_key"], unique=True)
    op.create_index("idx_notifications_trip", "trip_notifications", ["trip_id"])
    op.create_index("idx_notifications_status", "trip_notifications", ["status"])
    op.create_index("idx_notifications_participant", "trip_notifications", ["participant_id"])
    op.create_index(
        "idx_notifications_scheduled",
        "trip_notifications",
        ["scheduled_at"],
        postgresql_where=sa.text("status = 'pending'"),
    )


def downgrade() -> None:
    op.drop_index("idx_notifications_scheduled", table_name="trip_notifications")
    op.drop_index("idx_notifications_participant", table_name="trip_notifications")
    op.drop_index("idx_notifications_status", table_name="trip_notifications")
    op.drop_index("idx_notifications_trip", table_name="trip_notifications")
    op.drop_index("uq_notifications_dedup_key", table_name="trip_notifications")
    op.drop_table("trip_notifications")
