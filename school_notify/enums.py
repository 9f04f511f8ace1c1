"""SQLAlchemy enum definitions for the database schema."""

import enum

from sqlalchemy import Enum as SQLEnum


# =====================================================
# Python Enum Classes
# =====================================================


class NotificationType(str, enum.Enum):
    whatsapp = "whatsapp"
    email = "email"
    sms = "sms"
    push = "push"


class NotificationStatus(str, enum.Enum):
    pending = "pending"
    scheduled = "scheduled"
    queued = "queued"
    sending = "sending"
    sent = "sent"
    delivered = "delivered"
    read = "read"
    failed = "failed"


class NotificationPriority(str, enum.Enum):
    high = "high"
    normal = "normal"
    low = "low"


class ReminderStatus(str, enum.Enum):
    sent = "sent"
    failed = "failed"
    skipped = "skipped"


class NotificationEvent(str, enum.Enum):
    """Audit trail entries written to notification_events."""

    created = "created"
    queued = "queued"
    sending = "sending"
    sent = "sent"
    failed = "failed"
    retry = "retry"
    delivered = "delivered"
    read = "read"


# =====================================================
# SQLAlchemy Enum Types
# Created by migration 001 (create_type=False)
# =====================================================

notification_type_enum = SQLEnum(
    NotificationType, name="notification_type", create_type=False, native_enum=True
)
notification_status_enum = SQLEnum(
    NotificationStatus,
    name="notification_status",
    create_type=False,
    native_enum=True,
)
notification_priority_enum = SQLEnum(
    NotificationPriority,
    name="notification_priority",
    create_type=False,
    native_enum=True,
)
reminder_status_enum = SQLEnum(
    ReminderStatus, name="reminder_status", create_type=False, native_enum=True
)
