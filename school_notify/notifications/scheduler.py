"""
APScheduler-based scheduler for notification delivery.

Periodic jobs:
    notification tick - due-scheduled, retry and stranded sweeps
    reminder tick - event reminders that have become due
    birthday job - daily birthday reminders
    cleanup - daily retention report

Dispatch jobs are one-off "date" jobs keyed by notification id, so enqueuing
the same notification twice collapses into a single job. Jobs are persisted
to PostgreSQL so they survive restarts.
"""

import asyncio
import logging
import random
from datetime import datetime, timedelta, timezone

import pytz
import sentry_sdk
from apscheduler.jobstores.base import JobLookupError
from apscheduler.jobstores.sqlalchemy import SQLAlchemyJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from school_notify import config
from school_notify.enums import NotificationEvent, NotificationStatus

from . import store

logger = logging.getLogger(__name__)


_scheduler: AsyncIOScheduler | None = None

# Job function reference (string so the job store can persist it and the
# dispatcher can import this module)
DISPATCH_JOB = "school_notify.notifications.dispatcher:run_dispatch_job"

JOB_DEFAULTS = {
    "coalesce": True,  # Combine missed runs into one
    "max_instances": 1,
    "misfire_grace_time": 3600,  # Allow 1 hour late execution
}


# =============================================================================
# Scheduler initialization and shutdown
# =============================================================================


def _get_database_url() -> str:
    """Get sync database URL for APScheduler (it uses sync SQLAlchemy)."""
    from school_notify.database import get_sync_database_url, is_configured

    if not is_configured():
        return ""
    database_url = get_sync_database_url()

    # Add connection timeout to prevent hanging when DB is unavailable
    if "?" not in database_url:
        database_url += "?connect_timeout=5"
    elif "connect_timeout" not in database_url:
        database_url += "&connect_timeout=5"

    return database_url


def init_scheduler(
    skip_if_db_unavailable: bool = True, register_jobs: bool = True
) -> AsyncIOScheduler | None:
    """
    Initialize and start the APScheduler.

    Call this during app startup (in FastAPI lifespan).

    Args:
        skip_if_db_unavailable: If True, fall back to an in-memory job store
                                when the DB is unreachable instead of failing.
        register_jobs: Register the periodic sweep jobs.
    """
    global _scheduler

    if _scheduler is not None:
        return _scheduler

    database_url = _get_database_url()

    jobstores = {}
    if database_url:
        jobstores["default"] = SQLAlchemyJobStore(
            url=database_url,
            tablename="apscheduler_jobs",
        )

    _scheduler = AsyncIOScheduler(jobstores=jobstores, job_defaults=JOB_DEFAULTS)

    try:
        _scheduler.start()
        logger.info("Notification scheduler started")
    except Exception as e:
        if skip_if_db_unavailable and "timeout" in str(e).lower():
            logger.warning(
                "Could not connect to database for scheduler: timeout expired."
                " Running in memory-only mode (jobs won't persist)"
            )
            _scheduler = AsyncIOScheduler(jobstores={}, job_defaults=JOB_DEFAULTS)
            _scheduler.start()
        else:
            raise

    if register_jobs:
        register_periodic_jobs()

    return _scheduler


def shutdown_scheduler() -> None:
    """
    Shutdown the scheduler gracefully.

    Call this during app shutdown.
    """
    global _scheduler
    if _scheduler:
        _scheduler.shutdown(wait=True)
        _scheduler = None
        logger.info("Notification scheduler stopped")


def is_running() -> bool:
    return _scheduler is not None


def register_periodic_jobs() -> None:
    """Register (or replace) the periodic sweep jobs."""
    if not _scheduler:
        logger.warning("Scheduler not initialized, cannot register periodic jobs")
        return

    _scheduler.add_job(
        run_notification_tick,
        trigger="interval",
        seconds=config.SCHEDULER_TICK_SECONDS,
        id="notification_tick",
        replace_existing=True,
    )
    _scheduler.add_job(
        run_reminder_tick,
        trigger="interval",
        seconds=config.REMINDER_TICK_SECONDS,
        id="reminder_tick",
        replace_existing=True,
    )

    hour, minute = (int(part) for part in config.BIRTHDAY_REMINDER_TIME.split(":"))
    _scheduler.add_job(
        run_birthday_job,
        trigger="cron",
        hour=hour,
        minute=minute,
        timezone=pytz.timezone(config.SCHOOL_TIMEZONE),
        id="birthday_reminders",
        replace_existing=True,
    )
    _scheduler.add_job(
        run_cleanup_job,
        trigger="cron",
        hour=3,
        minute=30,
        id="notification_cleanup",
        replace_existing=True,
        kwargs={"queue": "cleanup"},
    )
    logger.info("Registered notification, reminder, birthday and cleanup jobs")


# =============================================================================
# Queues
# =============================================================================

QUEUE_FOR_PRIORITY = {
    "high": "high",
    "urgent": "high",
    "low": "low",
}


def queue_for_priority(priority: str | None) -> str:
    """high/urgent -> high, low -> low, anything else -> default."""
    if priority is None:
        return "default"
    return QUEUE_FOR_PRIORITY.get(str(getattr(priority, "value", priority)), "default")


def _dispatch_job_id(notification_id: int) -> str:
    return f"dispatch_{notification_id}"


def enqueue_dispatch(
    notification_id: int,
    priority: str | None = None,
    delay_seconds: float = 0,
    attempt: int = 1,
    queue: str | None = None,
) -> bool:
    """
    Schedule a dispatch job for a notification.

    Args:
        priority: Notification priority; picks the queue unless `queue` is given
        delay_seconds: Run this many seconds from now
        attempt: In-process attempt number passed to the job

    Returns:
        True if the job was scheduled
    """
    if not _scheduler:
        logger.warning(
            f"Scheduler not initialized, cannot enqueue notification {notification_id}"
        )
        return False

    queue = queue or queue_for_priority(priority)
    run_at = datetime.now(timezone.utc) + timedelta(seconds=delay_seconds)

    _scheduler.add_job(
        DISPATCH_JOB,
        trigger="date",
        run_date=run_at,
        id=_dispatch_job_id(notification_id),
        replace_existing=True,
        kwargs={
            "notification_id": notification_id,
            "queue": queue,
            "attempt": attempt,
        },
    )
    logger.info(
        f"Enqueued notification {notification_id} on {queue} in {delay_seconds:.0f}s"
        f" (attempt {attempt})"
    )
    return True


def cancel_dispatch(notification_id: int) -> bool:
    """Remove a pending dispatch job. Returns False if there was none."""
    if not _scheduler:
        return False
    try:
        _scheduler.remove_job(_dispatch_job_id(notification_id))
        return True
    except JobLookupError:
        return False


def has_dispatch_job(notification_id: int) -> bool:
    return bool(_scheduler and _scheduler.get_job(_dispatch_job_id(notification_id)))


def get_queue_size() -> int:
    """Number of dispatch jobs waiting to run."""
    if not _scheduler:
        return 0
    return sum(1 for job in _scheduler.get_jobs() if job.id.startswith("dispatch_"))


# =============================================================================
# Sweeps
# =============================================================================


def backoff_minutes(retry_count: int) -> int:
    """
    Minutes until the scheduler may retry again after retry number `retry_count`.

    5 * 2**n: 10, 20, 40 minutes for retries 1, 2, 3.
    """
    return config.RETRY_BACKOFF_BASE_MINUTES * 2**retry_count


async def fail_queued(notification_id: int, error: str) -> None:
    """Move a `queued` notification whose dispatch job could not be scheduled to `failed`."""
    from school_notify.database import get_transaction

    async with get_transaction() as conn:
        failed = await store.transition(
            conn,
            notification_id,
            [NotificationStatus.queued],
            NotificationStatus.failed,
            values={"failed_at": datetime.now(timezone.utc), "error_message": error},
        )
        if failed:
            await store.log_event(conn, notification_id, NotificationEvent.failed.value, error)


async def process_due_notifications(now: datetime | None = None) -> int:
    """
    Move due `scheduled` notifications to `queued` and enqueue them.

    Each one gets a random 1-30s delay so a large batch doesn't hit the
    provider at once. A failure on one notification is logged and the sweep
    moves on.

    Returns:
        Number of notifications enqueued
    """
    from school_notify.database import get_connection, get_transaction

    now = now or datetime.now(timezone.utc)

    async with get_connection() as conn:
        due = await store.find_due_scheduled(conn, now, config.DUE_BATCH_SIZE)

    processed = 0
    for notification in due:
        notification_id = notification["notification_id"]
        try:
            async with get_transaction() as conn:
                queued = await store.transition(
                    conn,
                    notification_id,
                    [NotificationStatus.scheduled],
                    NotificationStatus.queued,
                )
                if not queued:
                    continue
                await store.log_event(
                    conn,
                    notification_id,
                    NotificationEvent.queued.value,
                    "Scheduled time reached",
                    {"scheduled_at": notification["scheduled_at"].isoformat()},
                )

            delay = random.randint(*config.ENQUEUE_JITTER_SECONDS)
            if not enqueue_dispatch(notification_id, notification.get("priority"), delay):
                await fail_queued(notification_id, "Failed to queue: scheduler not running")
                continue
            processed += 1

        except Exception as e:
            logger.error(f"Failed to queue scheduled notification {notification_id}: {e}")
            sentry_sdk.capture_exception(e)
            try:
                await fail_queued(notification_id, f"Failed to queue: {e}")
            except Exception as mark_error:
                logger.error(
                    f"Could not mark notification {notification_id} failed: {mark_error}"
                )

    if processed:
        logger.info(f"Queued {processed} scheduled notifications")
    return processed


async def process_retry_notifications(now: datetime | None = None) -> int:
    """
    Give failed notifications another go, with exponential backoff.

    Each eligible notification gets retry_count + 1, next_retry_at =
    now + backoff_minutes(retry_count) and goes back to `queued`, then is
    enqueued after RETRY_ENQUEUE_DELAY_SECONDS.

    Returns:
        Number of notifications re-enqueued
    """
    from school_notify.database import get_connection, get_transaction

    now = now or datetime.now(timezone.utc)

    async with get_connection() as conn:
        retryable = await store.find_retryable(conn, now, config.RETRY_BATCH_SIZE)

    processed = 0
    for notification in retryable:
        notification_id = notification["notification_id"]
        try:
            retry_count = notification["retry_count"] + 1
            next_retry_at = now + timedelta(minutes=backoff_minutes(retry_count))

            async with get_transaction() as conn:
                queued = await store.transition(
                    conn,
                    notification_id,
                    [NotificationStatus.failed],
                    NotificationStatus.queued,
                    values={"retry_count": retry_count, "next_retry_at": next_retry_at},
                    expected_retry_count=notification["retry_count"],
                )
                if not queued:
                    continue
                await store.log_event(
                    conn,
                    notification_id,
                    NotificationEvent.retry.value,
                    f"Scheduler retry {retry_count}/{config.MAX_RETRIES}",
                    {
                        "retry_count": retry_count,
                        "next_retry_at": next_retry_at.isoformat(),
                    },
                )

            if not enqueue_dispatch(
                notification_id,
                notification.get("priority"),
                config.RETRY_ENQUEUE_DELAY_SECONDS,
            ):
                await fail_queued(notification_id, "Failed to queue: scheduler not running")
                continue
            processed += 1

        except Exception as e:
            logger.error(f"Failed to retry notification {notification_id}: {e}")
            sentry_sdk.capture_exception(e)
            try:
                await fail_queued(notification_id, f"Failed to queue: {e}")
            except Exception as mark_error:
                logger.error(
                    f"Could not mark notification {notification_id} failed: {mark_error}"
                )

    if processed:
        logger.info(f"Re-queued {processed} failed notifications")
    return processed


async def process_stranded(now: datetime | None = None) -> int:
    """
    Enqueue `pending` and `queued` notifications that have no dispatch job.

    A producer that stored a notification while the scheduler was down (or
    crashed before enqueuing) leaves it pending; a restart on the memory-only
    job store loses the jobs of queued rows. Rows untouched for
    STRANDED_GRACE_SECONDS with no `dispatch_{id}` job are enqueued again.

    Returns:
        Number of notifications enqueued
    """
    from school_notify.database import get_connection

    if not is_running():
        return 0

    now = now or datetime.now(timezone.utc)
    before = now - timedelta(seconds=config.STRANDED_GRACE_SECONDS)

    async with get_connection() as conn:
        stranded = await store.find_stranded(conn, before, config.DUE_BATCH_SIZE)

    processed = 0
    for notification in stranded:
        notification_id = notification["notification_id"]
        if has_dispatch_job(notification_id):
            continue
        try:
            if enqueue_dispatch(notification_id, notification.get("priority")):
                processed += 1
        except Exception as e:
            logger.error(f"Failed to re-enqueue notification {notification_id}: {e}")
            sentry_sdk.capture_exception(e)

    if processed:
        logger.warning(f"Re-enqueued {processed} notifications with no dispatch job")
    return processed


async def run_notification_tick(now: datetime | None = None) -> dict:
    """
    One scheduler tick: due, retry and stranded sweeps, bounded by SWEEP_TIMEOUT_SECONDS.

    Returns:
        {"scheduled_processed": N, "retries_processed": M, "stranded_requeued": P}
    """
    from school_notify.health import get_health_monitor

    stats = {"scheduled_processed": 0, "retries_processed": 0, "stranded_requeued": 0}

    async def _sweep() -> None:
        stats["scheduled_processed"] = await process_due_notifications(now)
        stats["retries_processed"] = await process_retry_notifications(now)
        stats["stranded_requeued"] = await process_stranded(now)

    try:
        await asyncio.wait_for(_sweep(), timeout=config.SWEEP_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        logger.error(f"Notification sweep exceeded {config.SWEEP_TIMEOUT_SECONDS}s, aborted")
        sentry_sdk.capture_message("Notification sweep timed out", level="error")

    await get_health_monitor().set_queue_size(get_queue_size())
    return stats


# =============================================================================
# Reminder jobs - engine imported lazily to avoid circular imports
# =============================================================================


async def run_reminder_tick(tenant_id: int | None = None) -> dict:
    from school_notify.reminders.engine import process_event_reminders

    stats = await process_event_reminders(tenant_id=tenant_id)
    return stats.as_dict()


async def run_birthday_job(tenant_id: int | None = None) -> dict:
    from school_notify.reminders.engine import create_birthday_reminders

    stats = await create_birthday_reminders(tenant_id=tenant_id)
    return stats.as_dict()


async def _run_reminder_processing(
    tenant_id: int | None = None, process_birthdays: bool = False
) -> None:
    try:
        stats = await run_reminder_tick(tenant_id)
        if process_birthdays:
            birthday_stats = await run_birthday_job(tenant_id)
            stats["birthday_reminders"] = birthday_stats["reminders_sent"]
        logger.info(f"Background reminder processing finished: {stats}")
    except Exception as e:
        logger.error(f"Background reminder processing failed: {e}")
        sentry_sdk.capture_exception(e)


def schedule_reminder_processing(
    tenant_id: int | None = None, process_birthdays: bool = False
) -> str | None:
    """
    Run reminder processing in the background as soon as possible.

    Returns:
        The job id, or None if the scheduler isn't running
    """
    if not _scheduler:
        logger.warning("Scheduler not initialized, cannot schedule reminder processing")
        return None

    job_id = f"reminder_processing_{tenant_id or 'all'}"
    _scheduler.add_job(
        _run_reminder_processing,
        trigger="date",
        run_date=datetime.now(timezone.utc),
        id=job_id,
        replace_existing=True,
        kwargs={"tenant_id": tenant_id, "process_birthdays": process_birthdays},
    )
    logger.info(f"Scheduled background reminder processing ({job_id})")
    return job_id


# =============================================================================
# Cleanup queue
# =============================================================================


async def run_cleanup_job(queue: str = "cleanup") -> int:
    """
    Report notifications past the retention period.

    The pipeline never deletes rows; this only counts what an external
    retention job may archive.
    """
    from school_notify.database import get_connection

    from .dispatcher import get_queue_semaphore

    cutoff = datetime.now(timezone.utc) - timedelta(days=config.NOTIFICATION_RETENTION_DAYS)
    async with get_queue_semaphore(queue):
        async with get_connection() as conn:
            count = await store.count_sent_before(conn, cutoff)

    logger.info(
        f"{count} delivered notifications older than {config.NOTIFICATION_RETENTION_DAYS} days"
        " are eligible for archival"
    )
    return count
