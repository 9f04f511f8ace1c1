"""
Notification dispatcher - claims one notification, renders it, hands it to
its channel sender and records the outcome.

Two entry points:
    dispatch_notification(id) - one attempt, no retry decision
    run_dispatch_job(id, queue, attempt) - APScheduler job wrapper; bounds
        concurrency per queue and applies the short in-process retry policy

Slow retries after the in-process attempts are exhausted belong to the
scheduler's retry sweep (see scheduler.process_retry_notifications).
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import sentry_sdk

from school_notify import config
from school_notify.enums import NotificationEvent, NotificationStatus, NotificationType
from school_notify.health import get_health_monitor

from . import store
from .channels import SendResult, get_sender
from .channels.whatsapp import normalize_phone
from .templates import render_content

logger = logging.getLogger(__name__)


# =============================================================================
# In-process retry policy
# =============================================================================


@dataclass(frozen=True)
class DispatchRetryPolicy:
    """
    Short retries at the worker boundary for transient blips.

    Attempt n (1-based) that fails transiently is retried after
    backoff_seconds[n - 1] until max_attempts is reached.
    """

    max_attempts: int = config.DISPATCH_MAX_ATTEMPTS
    backoff_seconds: tuple[int, ...] = config.DISPATCH_BACKOFF_SECONDS

    def should_retry(self, attempt: int, result: SendResult) -> bool:
        return not result.success and not result.permanent and attempt < self.max_attempts

    def delay_for(self, attempt: int) -> int:
        index = min(attempt, len(self.backoff_seconds)) - 1
        return self.backoff_seconds[max(index, 0)]


DEFAULT_RETRY_POLICY = DispatchRetryPolicy()

_semaphores: dict[str, asyncio.Semaphore] = {}


def get_queue_semaphore(queue: str) -> asyncio.Semaphore:
    """Worker slots for a dispatch queue (QUEUE_WORKERS)."""
    if queue not in _semaphores:
        _semaphores[queue] = asyncio.Semaphore(config.QUEUE_WORKERS.get(queue, 1))
    return _semaphores[queue]


# =============================================================================
# Single attempt
# =============================================================================


def recipient_address(notification: dict) -> str | None:
    """Normalized address used for opt-out lookups, or None for other channels."""
    notification_type = NotificationType(notification["type"])
    if notification_type == NotificationType.whatsapp:
        return normalize_phone(notification.get("recipient_phone")) or None
    if notification_type == NotificationType.email:
        return (notification.get("recipient_email") or "").strip().lower() or None
    return None


def render_notification(notification: dict) -> dict:
    """Copy of the notification with content and subject rendered."""
    variables = notification.get("variables") or {}
    rendered = dict(notification)
    rendered["content"] = render_content(notification.get("content") or "", variables)
    if notification.get("subject"):
        rendered["subject"] = render_content(notification["subject"], variables)
    return rendered


async def _send(notification: dict) -> SendResult:
    from school_notify.database import get_connection

    address = recipient_address(notification)
    if address:
        async with get_connection() as conn:
            opted_out = await store.is_opted_out(conn, notification["type"], address)
        if opted_out:
            return SendResult.failure(
                f"Recipient opted out of {notification['type']} notifications",
                permanent=True,
            )

    sender = get_sender(notification["type"])
    return await sender.send(render_notification(notification))


async def _record_result(
    notification: dict, result: SendResult, retry_delay: int | None = None
) -> None:
    from school_notify.database import get_transaction

    notification_id = notification["notification_id"]
    now = datetime.now(timezone.utc)

    async with get_transaction() as conn:
        if result.success:
            updated = await store.transition(
                conn,
                notification_id,
                [NotificationStatus.sending],
                NotificationStatus.sent,
                values={
                    "sent_at": now,
                    "provider": result.provider,
                    "provider_message_id": result.provider_message_id,
                    "provider_response": result.response,
                    "error_message": None,
                    "next_retry_at": None,
                },
            )
            if updated:
                await store.log_event(
                    conn,
                    notification_id,
                    NotificationEvent.sent.value,
                    f"Sent via {result.provider}",
                    {"provider_message_id": result.provider_message_id},
                )
        else:
            values = {
                "failed_at": now,
                "error_message": result.error,
                "provider": result.provider,
                "provider_response": result.response or None,
            }
            if result.permanent:
                values["retryable"] = False
            elif retry_delay is not None:
                # Keep the retry sweep off this row until the in-process retry has run
                retry_at = now + timedelta(seconds=retry_delay)
                previous = notification.get("next_retry_at")
                values["next_retry_at"] = max(retry_at, previous) if previous else retry_at
            updated = await store.transition(
                conn,
                notification_id,
                [NotificationStatus.sending],
                NotificationStatus.failed,
                values=values,
            )
            if updated:
                await store.log_event(
                    conn,
                    notification_id,
                    NotificationEvent.failed.value,
                    result.error,
                    {"permanent": result.permanent},
                )

    if not updated:
        logger.warning(
            f"Notification {notification_id} left 'sending' before its result was recorded"
        )

    monitor = get_health_monitor()
    if result.success:
        await monitor.record_success()
    else:
        await monitor.record_failure(result.error)


async def dispatch_notification(
    notification_id: int,
    timeout: float = config.DISPATCH_TIMEOUT_SECONDS,
    retry_delay: int | None = None,
) -> SendResult | None:
    """
    Make one delivery attempt.

    Claims the notification (compare-and-swap into `sending`), sends it and
    records `sent` or `failed`. Any error from rendering or sending, and a
    send that runs past `timeout`, becomes a failed attempt.

    `retry_delay` is passed when the caller will retry a transient failure in
    process after that many seconds; the failed row then gets next_retry_at
    so the scheduler retry sweep leaves it alone meanwhile.

    Returns:
        The SendResult, or None if the notification wasn't claimable
        (duplicate enqueue, or already processed).
    """
    from school_notify.database import get_transaction

    async with get_transaction() as conn:
        notification = await store.claim_for_dispatch(conn, notification_id)
        if notification is None:
            logger.info(f"Notification {notification_id} is not dispatchable, skipping")
            return None
        await store.log_event(
            conn,
            notification_id,
            NotificationEvent.sending.value,
            f"Dispatching via {notification['type']}",
        )

    try:
        result = await asyncio.wait_for(_send(notification), timeout=timeout)
    except asyncio.TimeoutError:
        result = SendResult.failure(f"Dispatch timed out after {timeout}s")
    except Exception as e:
        logger.error(f"Error dispatching notification {notification_id}: {e}")
        sentry_sdk.capture_exception(e)
        result = SendResult.failure(f"Unexpected error: {e}")

    await _record_result(notification, result, retry_delay)

    if result.success:
        logger.info(f"Notification {notification_id} sent ({result.provider_message_id})")
    else:
        logger.warning(f"Notification {notification_id} failed: {result.error}")

    return result


# =============================================================================
# Job wrapper - called by APScheduler
# =============================================================================


async def run_dispatch_job(
    notification_id: int,
    queue: str = "default",
    attempt: int = 1,
    policy: DispatchRetryPolicy | None = None,
) -> None:
    """
    Dispatch a notification from a queue and apply the in-process retry policy.

    A transient failure on attempt n < max_attempts moves the notification
    back to `queued` and re-enqueues attempt n + 1 after the policy delay.
    After the last attempt the notification stays `failed` for the
    scheduler's retry sweep.
    """
    from school_notify.database import get_transaction

    from .scheduler import enqueue_dispatch, fail_queued, is_running

    policy = policy or DEFAULT_RETRY_POLICY
    retry_delay = (
        policy.delay_for(attempt) if attempt < policy.max_attempts and is_running() else None
    )

    try:
        async with get_queue_semaphore(queue):
            result = await dispatch_notification(notification_id, retry_delay=retry_delay)

        if result is None or result.success:
            return

        if not policy.should_retry(attempt, result):
            if not result.permanent:
                logger.warning(
                    f"Notification {notification_id} failed {attempt} dispatch attempts,"
                    " leaving it for the scheduler retry sweep"
                )
            return

        if not is_running():
            logger.warning(
                f"Scheduler not running, cannot retry notification {notification_id}"
            )
            return

        async with get_transaction() as conn:
            requeued = await store.transition(
                conn, notification_id, [NotificationStatus.failed], NotificationStatus.queued
            )
            if requeued:
                await store.log_event(
                    conn,
                    notification_id,
                    NotificationEvent.retry.value,
                    f"Dispatch attempt {attempt + 1} in {retry_delay}s",
                    {"attempt": attempt + 1, "delay_seconds": retry_delay},
                )

        if not requeued:
            return

        try:
            enqueued = enqueue_dispatch(
                notification_id,
                queue=queue,
                delay_seconds=retry_delay,
                attempt=attempt + 1,
            )
        except Exception as e:
            logger.error(f"Failed to re-enqueue notification {notification_id}: {e}")
            sentry_sdk.capture_exception(e)
            enqueued = False
        if not enqueued:
            # Back to failed; the retry sweep picks it up after next_retry_at
            await fail_queued(notification_id, "Failed to queue dispatch retry")

    except Exception as e:
        logger.error(f"Dispatch job for notification {notification_id} crashed: {e}")
        sentry_sdk.capture_exception(e)
