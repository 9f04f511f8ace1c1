"""Tests for notification creation."""

from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from school_notify.notifications.producer import NotificationRequest, create_notification

NOW = datetime(2026, 3, 2, 15, 0, tzinfo=timezone.utc)


class TestNotificationRequest:
    def test_whatsapp_requires_phone(self):
        with pytest.raises(ValidationError, match="recipient_phone"):
            NotificationRequest(tenant_id=1, type="whatsapp", content="Hola")

    def test_email_requires_address(self):
        with pytest.raises(ValidationError, match="recipient_email"):
            NotificationRequest(tenant_id=1, type="email", content="Hola")

    def test_requires_content_or_template(self):
        with pytest.raises(ValidationError, match="content or template"):
            NotificationRequest(tenant_id=1, type="whatsapp", recipient_phone="3001234567")

    def test_rejects_unknown_template(self):
        with pytest.raises(ValidationError, match="Unknown template"):
            NotificationRequest(
                tenant_id=1, type="whatsapp", recipient_phone="3001234567", template="nope"
            )

    def test_urgent_is_high_priority(self):
        request = NotificationRequest(
            tenant_id=1,
            type="whatsapp",
            recipient_phone="3001234567",
            content="Hola",
            priority="urgent",
        )

        assert request.priority.value == "high"

    def test_naive_scheduled_at_is_utc(self):
        request = NotificationRequest(
            tenant_id=1,
            type="whatsapp",
            recipient_phone="3001234567",
            content="Hola",
            scheduled_at=datetime(2026, 3, 3, 10, 0),
        )

        assert request.scheduled_at.tzinfo == timezone.utc

    def test_reference_id_is_text(self):
        request = NotificationRequest(
            tenant_id=1,
            type="whatsapp",
            recipient_phone="3001234567",
            content="Hola",
            reference_id=42,
        )

        assert request.reference_id == "42"


class TestToValues:
    def test_future_scheduled_at_is_scheduled(self):
        request = NotificationRequest(
            tenant_id=1,
            type="whatsapp",
            recipient_phone="3001234567",
            content="Hola",
            scheduled_at=NOW + timedelta(hours=1),
        )

        assert request.to_values(NOW)["status"] == "scheduled"

    def test_past_or_missing_scheduled_at_is_pending(self):
        past = NotificationRequest(
            tenant_id=1,
            type="whatsapp",
            recipient_phone="3001234567",
            content="Hola",
            scheduled_at=NOW - timedelta(minutes=5),
        )
        now = NotificationRequest(
            tenant_id=1, type="whatsapp", recipient_phone="3001234567", content="Hola"
        )

        assert past.to_values(NOW)["status"] == "pending"
        assert now.to_values(NOW)["status"] == "pending"

    def test_template_supplies_email_subject_and_body(self):
        request = NotificationRequest(
            tenant_id=1,
            type="email",
            recipient_email="ana@example.com",
            template="training_reminder",
            variables={"event_title": "Sub-12"},
        )

        values = request.to_values(NOW)

        assert "{{ event_title }}" in values["subject"]
        assert "{{ attendee_name }}" in values["content"]
        assert values["category"] == "training_reminder"
        assert values["variables"] == {"event_title": "Sub-12"}


class TestCreateNotification:
    @pytest.mark.asyncio
    async def test_pending_notification_is_enqueued(self, fake_db, mock_scheduler):
        request = NotificationRequest(
            tenant_id=1,
            type="whatsapp",
            recipient_phone="3001234567",
            content="Hola",
            priority="high",
        )

        notification = await create_notification(request)

        assert notification["status"] == "pending"
        assert fake_db.events_for(notification["notification_id"]) == ["created"]
        mock_scheduler.add_job.assert_called_once()
        kwargs = mock_scheduler.add_job.call_args[1]
        assert kwargs["id"] == f"dispatch_{notification['notification_id']}"
        assert kwargs["kwargs"]["queue"] == "high"

    @pytest.mark.asyncio
    async def test_scheduled_notification_waits_for_sweep(self, fake_db, mock_scheduler):
        request = NotificationRequest(
            tenant_id=1,
            type="whatsapp",
            recipient_phone="3001234567",
            content="Hola",
            scheduled_at=datetime.now(timezone.utc) + timedelta(days=1),
        )

        notification = await create_notification(request)

        assert notification["status"] == "scheduled"
        mock_scheduler.add_job.assert_not_called()

    @pytest.mark.asyncio
    async def test_enqueue_error_leaves_row_pending(self, fake_db, mock_scheduler):
        mock_scheduler.add_job.side_effect = RuntimeError("job store down")
        request = NotificationRequest(
            tenant_id=1, type="whatsapp", recipient_phone="3001234567", content="Hola"
        )

        with patch("school_notify.notifications.producer.sentry_sdk") as mock_sentry:
            notification = await create_notification(request)

        assert fake_db.status_of(notification["notification_id"]) == "pending"
        mock_sentry.capture_exception.assert_called_once()
