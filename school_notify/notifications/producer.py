"""
Producer entry point: validate a notification request and store it.

Requests with a future scheduled_at are stored as `scheduled` and picked up
by the due sweep; everything else is stored as `pending` and enqueued
immediately.
"""

import logging
from datetime import datetime, timezone
from typing import Any

import sentry_sdk
from pydantic import BaseModel, Field, field_validator, model_validator
from sqlalchemy.ext.asyncio import AsyncConnection

from school_notify.enums import (
    NotificationEvent,
    NotificationPriority,
    NotificationStatus,
    NotificationType,
)

from . import store
from .templates import has_message, load_templates

logger = logging.getLogger(__name__)

# Template key -> messages.yaml field per channel
BODY_FIELD = {
    NotificationType.whatsapp: "whatsapp",
    NotificationType.email: "email_body",
    NotificationType.sms: "whatsapp",
    NotificationType.push: "whatsapp",
}


class NotificationRequest(BaseModel):
    """A producer's request to send one notification."""

    tenant_id: int
    type: NotificationType
    recipient_id: int | None = None
    recipient_name: str | None = None
    recipient_phone: str | None = None
    recipient_email: str | None = None
    subject: str | None = None
    content: str | None = None
    template: str | None = None  # messages.yaml key, used when content is empty
    variables: dict[str, Any] = Field(default_factory=dict)
    media_urls: list[str] = Field(default_factory=list)
    scheduled_at: datetime | None = None
    priority: NotificationPriority = NotificationPriority.normal
    category: str | None = None
    reference_type: str | None = None
    reference_id: str | None = None
    created_by: str | None = None

    @field_validator("priority", mode="before")
    @classmethod
    def normalize_priority(cls, v: Any) -> Any:
        # "urgent" is accepted as an alias of high
        if isinstance(v, str) and v.lower() == "urgent":
            return NotificationPriority.high
        return v

    @field_validator("scheduled_at")
    @classmethod
    def assume_utc(cls, v: datetime | None) -> datetime | None:
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    @field_validator("reference_id", mode="before")
    @classmethod
    def reference_id_as_text(cls, v: Any) -> Any:
        return str(v) if v is not None else v

    @model_validator(mode="after")
    def check_recipient_and_content(self) -> "NotificationRequest":
        if self.type == NotificationType.whatsapp and not self.recipient_phone:
            raise ValueError("recipient_phone is required for whatsapp notifications")
        if self.type == NotificationType.email and not self.recipient_email:
            raise ValueError("recipient_email is required for email notifications")
        if not self.content and not self.template:
            raise ValueError("Either content or template is required")
        if not self.content and not has_message(self.template, BODY_FIELD[self.type]):
            raise ValueError(f"Unknown template for {self.type.value}: {self.template}")
        return self

    def to_values(self, now: datetime | None = None) -> dict[str, Any]:
        """Column values for the notifications table."""
        now = now or datetime.now(timezone.utc)
        content = self.content
        subject = self.subject
        if not content:
            template = load_templates()[self.template]
            content = template[BODY_FIELD[self.type]]
            if self.type == NotificationType.email and not subject:
                subject = template.get("email_subject")

        scheduled = self.scheduled_at is not None and self.scheduled_at > now
        return {
            "tenant_id": self.tenant_id,
            "type": self.type.value,
            "category": self.category or self.template,
            "priority": self.priority.value,
            "recipient_id": self.recipient_id,
            "recipient_name": self.recipient_name,
            "recipient_phone": self.recipient_phone,
            "recipient_email": self.recipient_email,
            "subject": subject,
            "content": content,
            "variables": self.variables,
            "media_urls": self.media_urls,
            "reference_type": self.reference_type,
            "reference_id": self.reference_id,
            "status": (
                NotificationStatus.scheduled.value if scheduled else NotificationStatus.pending.value
            ),
            "scheduled_at": self.scheduled_at,
            "created_by": self.created_by,
        }


async def add_notification(
    conn: AsyncConnection, request: NotificationRequest, now: datetime | None = None
) -> dict[str, Any]:
    """
    Insert a notification inside the caller's transaction.

    Does not enqueue; call enqueue_pending() after the transaction commits.
    """
    notification = await store.insert_notification(conn, request.to_values(now))
    await store.log_event(
        conn,
        notification["notification_id"],
        NotificationEvent.created.value,
        f"Created as {notification['status']}",
        {"category": notification.get("category")},
    )
    return notification


def enqueue_pending(notification: dict[str, Any]) -> bool:
    """
    Enqueue a freshly created `pending` notification. Scheduled ones wait for the sweep.

    A pending row that can't be enqueued now stays pending; the scheduler's
    stranded sweep enqueues it after STRANDED_GRACE_SECONDS.
    """
    from .scheduler import enqueue_dispatch

    if NotificationStatus(notification["status"]) != NotificationStatus.pending:
        return False

    notification_id = notification["notification_id"]
    try:
        enqueued = enqueue_dispatch(notification_id, notification.get("priority"))
    except Exception as e:
        logger.error(f"Failed to enqueue notification {notification_id}: {e}")
        sentry_sdk.capture_exception(e)
        enqueued = False
    if not enqueued:
        logger.warning(f"Notification {notification_id} left pending for the stranded sweep")
    return enqueued


async def create_notification(request: NotificationRequest) -> dict[str, Any]:
    """
    Store a notification and enqueue it if it should go out now.

    Returns:
        The stored notification row
    """
    from school_notify.database import get_transaction

    async with get_transaction() as conn:
        notification = await add_notification(conn, request)

    enqueue_pending(notification)
    logger.info(
        f"Created {request.type.value} notification {notification['notification_id']}"
        f" ({notification['status']}) for tenant {request.tenant_id}"
    )
    return notification
