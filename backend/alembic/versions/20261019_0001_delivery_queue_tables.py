"""Create delivery queue tables: primary items, due/recipient/reminder indexes, history."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "delivery_queue_items",
        sa.Column("item_id", sa.String(length=64), nullable=False),
        sa.Column("reminder_id", sa.String(length=128), nullable=False),
        sa.Column("recipient_id", sa.String(length=128), nullable=False),
        sa.Column("due_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("recipient_timezone", sa.String(length=64), nullable=False),
        sa.Column("recipient_display_time", sa.String(length=128), nullable=False),
        sa.Column("message_content", sa.Text(), nullable=False),
        sa.Column("attempt", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False),
        sa.Column("next_retry_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("claimed_attempt", sa.Integer(), nullable=True),
        sa.Column("claimed_at_ms", sa.BigInteger(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("item_id"),
    )
    op.create_index(
        "ix_delivery_queue_items_reminder_id",
        "delivery_queue_items",
        ["reminder_id"],
        unique=False,
    )

    op.create_table(
        "delivery_queue_by_instant",
        sa.Column("due_at_ms", sa.BigInteger(), autoincrement=False, nullable=False),
        sa.Column("item_id", sa.String(length=64), nullable=False),
        sa.PrimaryKeyConstraint("due_at_ms", "item_id"),
    )

    op.create_table(
        "delivery_queue_by_recipient",
        sa.Column("recipient_id", sa.String(length=128), nullable=False),
        sa.Column("item_id", sa.String(length=64), nullable=False),
        sa.PrimaryKeyConstraint("recipient_id", "item_id"),
    )

    op.create_table(
        "delivery_queue_by_reminder",
        sa.Column("reminder_id", sa.String(length=128), nullable=False),
        sa.Column("item_id", sa.String(length=64), nullable=False),
        sa.PrimaryKeyConstraint("reminder_id"),
        sa.UniqueConstraint("item_id"),
    )

    op.create_table(
        "delivery_history",
        sa.Column("outcome", sa.String(length=16), nullable=False),
        sa.Column("item_id", sa.String(length=64), nullable=False),
        sa.Column("reminder_id", sa.String(length=128), nullable=False),
        sa.Column("payload_json", sa.Text(), nullable=False),
        sa.Column("recorded_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("recorded_at_ms", sa.BigInteger(), nullable=False),
        sa.PrimaryKeyConstraint("outcome", "item_id"),
    )
    op.create_index(
        "ix_delivery_history_reminder_id",
        "delivery_history",
        ["reminder_id"],
        unique=False,
    )
    op.create_index(
        "ix_delivery_history_recorded_at_ms",
        "delivery_history",
        ["recorded_at_ms"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_delivery_history_recorded_at_ms", table_name="delivery_history")
    op.drop_index("ix_delivery_history_reminder_id", table_name="delivery_history")
    op.drop_table("delivery_history")
    op.drop_table("delivery_queue_by_reminder")
    op.drop_table("delivery_queue_by_recipient")
    op.drop_table("delivery_queue_by_instant")
    op.drop_index("ix_delivery_queue_items_reminder_id", table_name="delivery_queue_items")
    op.drop_table("delivery_queue_items")
