"""Create reminder status table used by the escalation engine."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20261019_0002"
down_revision = "20261019_0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "delivery_reminders",
        sa.Column("reminder_id", sa.String(length=128), nullable=False),
        sa.Column("recipient_id", sa.String(length=128), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("timezone", sa.String(length=64), nullable=False),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("status_changed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("escalation_rule_json", sa.Text(), nullable=True),
        sa.Column("last_response", sa.String(length=16), nullable=True),
        sa.Column("escalation_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("reminder_id"),
    )
    op.create_index("ix_delivery_reminders_recipient_id", "delivery_reminders", ["recipient_id"], unique=False)
    op.create_index("ix_delivery_reminders_status", "delivery_reminders", ["status"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_delivery_reminders_status", table_name="delivery_reminders")
    op.drop_index("ix_delivery_reminders_recipient_id", table_name="delivery_reminders")
    op.drop_table("delivery_reminders")
