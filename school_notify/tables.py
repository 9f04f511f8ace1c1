"""SQLAlchemy Core table definitions for the database schema."""

from sqlalchemy import (
    Boolean,
    Column,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    Table,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP

from .enums import (
    notification_priority_enum,
    notification_status_enum,
    notification_type_enum,
    reminder_status_enum,
)

# Naming convention for constraints (helps Alembic generate better names)
convention = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}
metadata = MetaData(naming_convention=convention)


# =====================================================
# 1. NOTIFICATIONS
# =====================================================
notifications = Table(
    "notifications",
    metadata,
    Column("notification_id", Integer, primary_key=True, autoincrement=True),
    Column("tenant_id", Integer, nullable=False),
    Column("type", notification_type_enum, nullable=False),
    Column("category", Text),  # e.g., "training_reminder", "payment_reminder"
    Column("priority", notification_priority_enum, server_default="normal"),
    # Recipient
    Column("recipient_id", Integer),  # Person ID in the owning service
    Column("recipient_name", Text),
    Column("recipient_phone", Text),
    Column("recipient_email", Text),
    # Content
    Column("subject", Text),
    Column("content", Text, nullable=False),
    Column("variables", JSONB, server_default=text("'{}'::jsonb")),
    Column("media_urls", JSONB, server_default=text("'[]'::jsonb")),
    # What caused it (e.g., "event", 42)
    Column("reference_type", Text),
    Column("reference_id", Text),
    # State machine
    Column("status", notification_status_enum, nullable=False, server_default="pending"),
    Column("scheduled_at", TIMESTAMP(timezone=True)),
    Column("retry_count", Integer, nullable=False, server_default="0"),
    Column("next_retry_at", TIMESTAMP(timezone=True)),
    Column("retryable", Boolean, nullable=False, server_default="true"),
    Column("sent_at", TIMESTAMP(timezone=True)),
    Column("delivered_at", TIMESTAMP(timezone=True)),
    Column("read_at", TIMESTAMP(timezone=True)),
    Column("failed_at", TIMESTAMP(timezone=True)),
    # Provider
    Column("provider", Text),  # "whatsapp_cloud", "sendgrid"
    Column("provider_message_id", Text),
    Column("provider_response", JSONB),
    Column("error_message", Text),
    Column("created_by", Text),
    Column("created_at", TIMESTAMP(timezone=True), server_default=func.now()),
    Column("updated_at", TIMESTAMP(timezone=True), server_default=func.now()),
    Index("idx_notifications_status_scheduled_at", "status", "scheduled_at"),
    Index("idx_notifications_status_failed_at", "status", "failed_at"),
    Index("idx_notifications_tenant_status", "tenant_id", "status"),
    Index("idx_notifications_provider_message_id", "provider_message_id"),
    Index("idx_notifications_reference", "reference_type", "reference_id"),
)


# =====================================================
# 2. NOTIFICATION_EVENTS (audit trail)
# =====================================================
notification_events = Table(
    "notification_events",
    metadata,
    Column("event_id", Integer, primary_key=True, autoincrement=True),
    Column(
        "notification_id",
        Integer,
        ForeignKey("notifications.notification_id", ondelete="CASCADE"),
        nullable=False,
    ),
    Column("event", Text, nullable=False),  # NotificationEvent values
    Column("description", Text),
    Column("data", JSONB),
    Column("occurred_at", TIMESTAMP(timezone=True), server_default=func.now()),
    Index("idx_notification_events_notification_id", "notification_id"),
)


# =====================================================
# 3. PROCESSED_REMINDERS (idempotency ledger)
# =====================================================
processed_reminders = Table(
    "processed_reminders",
    metadata,
    Column("processed_reminder_id", Integer, primary_key=True, autoincrement=True),
    Column("tenant_id", Integer),
    Column("event_id", Text, nullable=False),  # "birthday:2026" for birthdays
    Column("recipient_id", Integer, nullable=False),
    Column("reminder_type", Text, nullable=False),
    Column("minutes_before", Integer, nullable=False),
    Column("status", reminder_status_enum, nullable=False),
    Column("scheduled_for", TIMESTAMP(timezone=True)),
    Column("processed_at", TIMESTAMP(timezone=True), server_default=func.now()),
    Column(
        "notification_id",
        Integer,
        ForeignKey("notifications.notification_id", ondelete="SET NULL"),
    ),
    Column("error_message", Text),
    Column("details", JSONB),
    UniqueConstraint(
        "event_id",
        "recipient_id",
        "reminder_type",
        "minutes_before",
        name="processed_reminders_occurrence_unique",
    ),
    Index("idx_processed_reminders_processed_at", "processed_at"),
    Index("idx_processed_reminders_tenant_id", "tenant_id"),
)


# =====================================================
# 4. RECIPIENT_OPT_OUTS
# =====================================================
recipient_opt_outs = Table(
    "recipient_opt_outs",
    metadata,
    Column("opt_out_id", Integer, primary_key=True, autoincrement=True),
    Column("tenant_id", Integer),
    Column("channel", notification_type_enum, nullable=False),
    Column("address", Text, nullable=False),  # Normalized phone or lowercased email
    Column("reason", Text),
    Column("created_at", TIMESTAMP(timezone=True), server_default=func.now()),
    UniqueConstraint("channel", "address", name="recipient_opt_outs_address_unique"),
)


def include_in_migrations(object_, name, type_, reflected, compare_to) -> bool:
    """
    Alembic autogenerate filter.

    The database is shared with the school platform and APScheduler's job
    store; only tables declared here are managed by our migrations.
    """
    if type_ == "table":
        return name in metadata.tables
    table = getattr(object_, "table", None)
    if table is not None:
        return table.name in metadata.tables
    return True
