"""Notification pipeline schema.

Revision ID: 001
Revises:
Create Date: 2026-10-19

Creates the notification enums, notifications with its audit trail,
the processed_reminders ledger and recipient opt-outs.
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import ENUM, JSONB

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

notification_type = ENUM(
    "whatsapp", "email", "sms", "push", name="notification_type", create_type=False
)
notification_status = ENUM(
    "pending",
    "scheduled",
    "queued",
    "sending",
    "sent",
    "delivered",
    "read",
    "failed",
    name="notification_status",
    create_type=False,
)
notification_priority = ENUM(
    "high", "normal", "low", name="notification_priority", create_type=False
)
reminder_status = ENUM("sent", "failed", "skipped", name="reminder_status", create_type=False)

ENUMS = [notification_type, notification_status, notification_priority, reminder_status]


def upgrade() -> None:
    bind = op.get_bind()
    for enum in ENUMS:
        enum.create(bind, checkfirst=True)

    op.create_table(
        "notifications",
        sa.Column("notification_id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("tenant_id", sa.Integer(), nullable=False),
        sa.Column("type", notification_type, nullable=False),
        sa.Column("category", sa.Text(), nullable=True),
        sa.Column("priority", notification_priority, server_default="normal", nullable=True),
        sa.Column("recipient_id", sa.Integer(), nullable=True),
        sa.Column("recipient_name", sa.Text(), nullable=True),
        sa.Column("recipient_phone", sa.Text(), nullable=True),
        sa.Column("recipient_email", sa.Text(), nullable=True),
        sa.Column("subject", sa.Text(), nullable=True),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("variables", JSONB(), server_default=sa.text("'{}'::jsonb"), nullable=True),
        sa.Column("media_urls", JSONB(), server_default=sa.text("'[]'::jsonb"), nullable=True),
        sa.Column("reference_type", sa.Text(), nullable=True),
        sa.Column("reference_id", sa.Text(), nullable=True),
        sa.Column("status", notification_status, server_default="pending", nullable=False),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("retry_count", sa.Integer(), server_default="0", nullable=False),
        sa.Column("next_retry_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("retryable", sa.Boolean(), server_default="true", nullable=False),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("read_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("provider", sa.Text(), nullable=True),
        sa.Column("provider_message_id", sa.Text(), nullable=True),
        sa.Column("provider_response", JSONB(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_by", sa.Text(), nullable=True),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True
        ),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True
        ),
        sa.PrimaryKeyConstraint("notification_id", name="pk_notifications"),
    )
    op.create_index(
        "idx_notifications_status_scheduled_at", "notifications", ["status", "scheduled_at"]
    )
    op.create_index("idx_notifications_status_failed_at", "notifications", ["status", "failed_at"])
    op.create_index("idx_notifications_tenant_status", "notifications", ["tenant_id", "status"])
    op.create_index(
        "idx_notifications_provider_message_id", "notifications", ["provider_message_id"]
    )
    op.create_index(
        "idx_notifications_reference", "notifications", ["reference_type", "reference_id"]
    )

    op.create_table(
        "notification_events",
        sa.Column("event_id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column(
            "notification_id",
            sa.Integer(),
            sa.ForeignKey(
                "notifications.notification_id",
                ondelete="CASCADE",
                name="fk_notification_events_notification_id_notifications",
            ),
            nullable=False,
        ),
        sa.Column("event", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("data", JSONB(), nullable=True),
        sa.Column(
            "occurred_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True
        ),
        sa.PrimaryKeyConstraint("event_id", name="pk_notification_events"),
    )
    op.create_index(
        "idx_notification_events_notification_id", "notification_events", ["notification_id"]
    )

    op.create_table(
        "processed_reminders",
        sa.Column("processed_reminder_id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("tenant_id", sa.Integer(), nullable=True),
        sa.Column("event_id", sa.Text(), nullable=False),
        sa.Column("recipient_id", sa.Integer(), nullable=False),
        sa.Column("reminder_type", sa.Text(), nullable=False),
        sa.Column("minutes_before", sa.Integer(), nullable=False),
        sa.Column("status", reminder_status, nullable=False),
        sa.Column("scheduled_for", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "processed_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True
        ),
        sa.Column(
            "notification_id",
            sa.Integer(),
            sa.ForeignKey(
                "notifications.notification_id",
                ondelete="SET NULL",
                name="fk_processed_reminders_notification_id_notifications",
            ),
            nullable=True,
        ),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("details", JSONB(), nullable=True),
        sa.PrimaryKeyConstraint("processed_reminder_id", name="pk_processed_reminders"),
        sa.UniqueConstraint(
            "event_id",
            "recipient_id",
            "reminder_type",
            "minutes_before",
            name="processed_reminders_occurrence_unique",
        ),
    )
    op.create_index(
        "idx_processed_reminders_processed_at", "processed_reminders", ["processed_at"]
    )
    op.create_index("idx_processed_reminders_tenant_id", "processed_reminders", ["tenant_id"])

    op.create_table(
        "recipient_opt_outs",
        sa.Column("opt_out_id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("tenant_id", sa.Integer(), nullable=True),
        sa.Column("channel", notification_type, nullable=False),
        sa.Column("address", sa.Text(), nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True
        ),
        sa.PrimaryKeyConstraint("opt_out_id", name="pk_recipient_opt_outs"),
        sa.UniqueConstraint("channel", "address", name="recipient_opt_outs_address_unique"),
    )


def downgrade() -> None:
    op.drop_table("recipient_opt_outs")
    op.drop_table("processed_reminders")
    op.drop_table("notification_events")
    op.drop_table("notifications")

    bind = op.get_bind()
    for enum in reversed(ENUMS):
        enum.drop(bind, checkfirst=True)
