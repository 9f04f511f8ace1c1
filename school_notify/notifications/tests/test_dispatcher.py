"""Tests for the notification dispatcher.

Runs against the in-memory store (fake_db fixture) with a scripted channel
sender, so each test controls exactly what the provider returns.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from school_notify.enums import NotificationType
from school_notify.health import get_health_monitor
from school_notify.notifications.channels import ChannelSender, SendResult, set_sender
from school_notify.notifications.dispatcher import (
    DispatchRetryPolicy,
    dispatch_notification,
    render_notification,
    run_dispatch_job,
)
from school_notify.notifications.scheduler import process_retry_notifications


class ScriptedSender(ChannelSender):
    """Returns queued results in order; repeats the last one."""

    channel = NotificationType.whatsapp
    provider = "fake"

    def __init__(self, *results):
        self.results = list(results)
        self.sent: list[dict] = []

    async def send(self, notification: dict) -> SendResult:
        self.sent.append(notification)
        result = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if isinstance(result, Exception):
            raise result
        return result


OK = SendResult.ok("fake", "msg-1", {"ok": True})
TRANSIENT = SendResult.failure("provider timeout")
PERMANENT = SendResult.failure("bad number", permanent=True)


class TestRetryPolicy:
    def test_retries_transient_failures_until_max_attempts(self):
        policy = DispatchRetryPolicy()

        assert policy.should_retry(1, TRANSIENT)
        assert policy.should_retry(2, TRANSIENT)
        assert not policy.should_retry(3, TRANSIENT)

    def test_never_retries_permanent_failures_or_success(self):
        policy = DispatchRetryPolicy()

        assert not policy.should_retry(1, PERMANENT)
        assert not policy.should_retry(1, OK)

    def test_delays(self):
        policy = DispatchRetryPolicy()

        assert [policy.delay_for(n) for n in (1, 2, 3, 4)] == [60, 300, 900, 900]


class TestRenderNotification:
    def test_renders_content_and_subject(self):
        rendered = render_notification(
            {
                "content": "Hola {{ attendee_name }}",
                "subject": "Aviso {{ event_title }}",
                "variables": {"attendee_name": "Ana", "event_title": "Final"},
            }
        )

        assert rendered["content"] == "Hola Ana"
        assert rendered["subject"] == "Aviso Final"


class TestDispatchNotification:
    @pytest.mark.asyncio
    async def test_success_marks_sent(self, fake_db):
        sender = ScriptedSender(OK)
        set_sender(NotificationType.whatsapp, sender)
        n = fake_db.add(
            status="pending",
            recipient_phone="3001234567",
            content="Hola {{ name }}",
            variables={"name": "Ana"},
        )

        result = await dispatch_notification(n["notification_id"])

        row = fake_db.notifications[n["notification_id"]]
        assert result.success
        assert row["status"] == "sent"
        assert row["provider_message_id"] == "msg-1"
        assert row["sent_at"] is not None
        assert sender.sent[0]["content"] == "Hola Ana"
        assert fake_db.events_for(n["notification_id"]) == ["sending", "sent"]
        assert (await get_health_monitor().get_metrics())["attempts"] == 1

    @pytest.mark.asyncio
    async def test_transient_failure_stays_retryable(self, fake_db):
        set_sender(NotificationType.whatsapp, ScriptedSender(TRANSIENT))
        n = fake_db.add(status="pending", recipient_phone="3001234567")

        result = await dispatch_notification(n["notification_id"])

        row = fake_db.notifications[n["notification_id"]]
        assert not result.success
        assert row["status"] == "failed"
        assert row["retryable"] is True
        assert row["error_message"] == "provider timeout"
        assert row["retry_count"] == 0

    @pytest.mark.asyncio
    async def test_permanent_failure_is_not_retryable(self, fake_db):
        set_sender(NotificationType.whatsapp, ScriptedSender(PERMANENT))
        n = fake_db.add(status="pending", recipient_phone="3001234567")

        await dispatch_notification(n["notification_id"])

        assert fake_db.notifications[n["notification_id"]]["retryable"] is False

    @pytest.mark.asyncio
    async def test_unsupported_channel_fails_permanently(self, fake_db):
        n = fake_db.add(status="pending", type="sms", recipient_phone="3001234567")

        result = await dispatch_notification(n["notification_id"])

        row = fake_db.notifications[n["notification_id"]]
        assert result.permanent
        assert row["status"] == "failed"
        assert row["retryable"] is False
        assert row["error_message"] == "sms channel not implemented"

    @pytest.mark.asyncio
    async def test_not_claimable_returns_none(self, fake_db):
        sender = ScriptedSender(OK)
        set_sender(NotificationType.whatsapp, sender)
        n = fake_db.add(status="sent", recipient_phone="3001234567")

        assert await dispatch_notification(n["notification_id"]) is None
        assert sender.sent == []
        assert fake_db.status_of(n["notification_id"]) == "sent"

    @pytest.mark.asyncio
    async def test_second_dispatch_of_same_notification_is_noop(self, fake_db):
        sender = ScriptedSender(OK)
        set_sender(NotificationType.whatsapp, sender)
        n = fake_db.add(status="pending", recipient_phone="3001234567")

        await dispatch_notification(n["notification_id"])
        await dispatch_notification(n["notification_id"])

        assert len(sender.sent) == 1

    @pytest.mark.asyncio
    async def test_failed_without_retries_left_is_not_claimed(self, fake_db):
        sender = ScriptedSender(OK)
        set_sender(NotificationType.whatsapp, sender)
        n = fake_db.add(status="failed", retry_count=3, recipient_phone="3001234567")

        assert await dispatch_notification(n["notification_id"]) is None
        assert sender.sent == []

    @pytest.mark.asyncio
    async def test_opted_out_recipient_is_permanent_failure(self, fake_db):
        sender = ScriptedSender(OK)
        set_sender(NotificationType.whatsapp, sender)
        fake_db.opt_outs[("whatsapp", "573001234567")] = {"reason": "baja"}
        n = fake_db.add(status="pending", recipient_phone="300 123 4567")

        result = await dispatch_notification(n["notification_id"])

        assert result.permanent
        assert "opted out" in result.error
        assert sender.sent == []

    @pytest.mark.asyncio
    async def test_sender_exception_becomes_failure(self, fake_db):
        set_sender(NotificationType.whatsapp, ScriptedSender(RuntimeError("kaboom")))
        n = fake_db.add(status="pending", recipient_phone="3001234567")

        with patch("school_notify.notifications.dispatcher.sentry_sdk") as mock_sentry:
            result = await dispatch_notification(n["notification_id"])

        assert not result.success
        assert not result.permanent
        assert "kaboom" in fake_db.notifications[n["notification_id"]]["error_message"]
        mock_sentry.capture_exception.assert_called_once()

    @pytest.mark.asyncio
    async def test_timeout_is_transient_failure(self, fake_db):
        class SlowSender(ChannelSender):
            async def send(self, notification):
                await asyncio.sleep(1)
                return OK

        set_sender(NotificationType.whatsapp, SlowSender())
        n = fake_db.add(status="pending", recipient_phone="3001234567")

        result = await dispatch_notification(n["notification_id"], timeout=0.01)

        assert not result.success
        assert not result.permanent
        assert "timed out" in result.error
        assert fake_db.status_of(n["notification_id"]) == "failed"

    @pytest.mark.asyncio
    async def test_failure_with_pending_retry_holds_off_retry_sweep(self, fake_db, mock_scheduler):
        set_sender(NotificationType.whatsapp, ScriptedSender(TRANSIENT))
        n = fake_db.add(status="pending", recipient_phone="3001234567")
        before = datetime.now(timezone.utc)

        await dispatch_notification(n["notification_id"], retry_delay=60)

        row = fake_db.notifications[n["notification_id"]]
        assert row["status"] == "failed"
        assert before + timedelta(seconds=60) <= row["next_retry_at"]
        assert row["next_retry_at"] <= datetime.now(timezone.utc) + timedelta(seconds=60)
        assert await process_retry_notifications(datetime.now(timezone.utc)) == 0
        mock_scheduler.add_job.assert_not_called()

    @pytest.mark.asyncio
    async def test_pending_retry_keeps_later_scheduler_backoff(self, fake_db):
        set_sender(NotificationType.whatsapp, ScriptedSender(TRANSIENT))
        later = datetime.now(timezone.utc) + timedelta(minutes=20)
        n = fake_db.add(status="queued", recipient_phone="3001234567", next_retry_at=later)

        await dispatch_notification(n["notification_id"], retry_delay=60)

        assert fake_db.notifications[n["notification_id"]]["next_retry_at"] == later

    @pytest.mark.asyncio
    async def test_plain_attempt_leaves_next_retry_at_alone(self, fake_db):
        set_sender(NotificationType.whatsapp, ScriptedSender(TRANSIENT))
        n = fake_db.add(status="pending", recipient_phone="3001234567")

        await dispatch_notification(n["notification_id"])

        assert fake_db.notifications[n["notification_id"]]["next_retry_at"] is None


class TestRunDispatchJob:
    @pytest.mark.asyncio
    async def test_transient_failure_is_requeued_with_backoff(self, fake_db, mock_scheduler):
        set_sender(NotificationType.whatsapp, ScriptedSender(TRANSIENT))
        n = fake_db.add(status="queued", recipient_phone="3001234567")

        await run_dispatch_job(n["notification_id"], queue="default", attempt=1)

        assert fake_db.status_of(n["notification_id"]) == "queued"
        assert fake_db.events_for(n["notification_id"])[-1] == "retry"
        kwargs = mock_scheduler.add_job.call_args[1]
        assert kwargs["kwargs"] == {
            "notification_id": n["notification_id"],
            "queue": "default",
            "attempt": 2,
        }

    @pytest.mark.asyncio
    async def test_last_attempt_leaves_failed_for_scheduler(self, fake_db, mock_scheduler):
        set_sender(NotificationType.whatsapp, ScriptedSender(TRANSIENT))
        n = fake_db.add(status="queued", recipient_phone="3001234567")

        await run_dispatch_job(n["notification_id"], attempt=3)

        row = fake_db.notifications[n["notification_id"]]
        assert row["status"] == "failed"
        assert row["retry_count"] == 0
        mock_scheduler.add_job.assert_not_called()

    @pytest.mark.asyncio
    async def test_three_attempts_then_success(self, fake_db, mock_scheduler):
        sender = ScriptedSender(TRANSIENT, TRANSIENT, OK)
        set_sender(NotificationType.whatsapp, sender)
        n = fake_db.add(status="queued", recipient_phone="3001234567")

        for attempt in (1, 2, 3):
            await run_dispatch_job(n["notification_id"], attempt=attempt)

        assert len(sender.sent) == 3
        assert fake_db.status_of(n["notification_id"]) == "sent"
        attempts = [c[1]["kwargs"]["attempt"] for c in mock_scheduler.add_job.call_args_list]
        assert attempts == [2, 3]

    @pytest.mark.asyncio
    async def test_permanent_failure_is_not_retried(self, fake_db, mock_scheduler):
        set_sender(NotificationType.whatsapp, ScriptedSender(PERMANENT))
        n = fake_db.add(status="queued", recipient_phone="3001234567")

        await run_dispatch_job(n["notification_id"], attempt=1)

        assert fake_db.status_of(n["notification_id"]) == "failed"
        mock_scheduler.add_job.assert_not_called()

    @pytest.mark.asyncio
    async def test_no_retry_without_scheduler(self, fake_db, caplog):
        set_sender(NotificationType.whatsapp, ScriptedSender(TRANSIENT))
        n = fake_db.add(status="queued", recipient_phone="3001234567")

        with patch("school_notify.notifications.scheduler._scheduler", None):
            await run_dispatch_job(n["notification_id"], attempt=1)

        assert fake_db.status_of(n["notification_id"]) == "failed"
        assert any("not running" in r.message for r in caplog.records)

    @pytest.mark.asyncio
    async def test_requeue_enqueue_failure_returns_row_to_failed(self, fake_db, mock_scheduler):
        set_sender(NotificationType.whatsapp, ScriptedSender(TRANSIENT))
        n = fake_db.add(status="queued", recipient_phone="3001234567")
        mock_scheduler.add_job.side_effect = RuntimeError("job store down")

        with patch("school_notify.notifications.dispatcher.sentry_sdk") as mock_sentry:
            await run_dispatch_job(n["notification_id"], attempt=1)

        row = fake_db.notifications[n["notification_id"]]
        assert row["status"] == "failed"
        assert row["error_message"] == "Failed to queue dispatch retry"
        assert fake_db.events_for(n["notification_id"]) == ["sending", "failed", "retry", "failed"]
        mock_sentry.capture_exception.assert_called_once()

        # The retry sweep takes over once the in-process delay has passed
        mock_scheduler.add_job.side_effect = None
        assert await process_retry_notifications(row["next_retry_at"]) == 1
        assert fake_db.status_of(n["notification_id"]) == "queued"
