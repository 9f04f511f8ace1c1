"""
Reminder engine - turns calendar events and birthdays into notifications.

For every upcoming event, reminder offset and attendee:
    1. scheduled_for = event start - minutes_before
    2. not due yet (scheduled_for > now + horizon) -> skip
    3. long past (scheduled_for < now - grace) -> ledger row "skipped"
    4. claim the ledger row (insert-if-absent); already there -> skip
    5. create the notification in the same transaction; enqueue after commit

A failure in step 5 rolls the claim back and records a "failed" ledger row
instead, so the occurrence is never attempted twice. If even that ledger
write fails, the occurrence is counted as failed and the sweep moves on.
"""

import logging
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Callable

import pytz
import sentry_sdk

from school_notify import config
from school_notify.enums import NotificationPriority, NotificationType, ReminderStatus
from school_notify.errors import EventNotFoundError, RateLimitExceeded
from school_notify.notifications import store
from school_notify.notifications.producer import (
    NotificationRequest,
    add_notification,
    enqueue_pending,
)
from school_notify.rate_limit import ReminderRateLimiter, get_rate_limiter

from . import dedup
from .dedup import ReminderKey
from .source import (
    Attendee,
    CalendarEvent,
    ReminderOffset,
    ReminderSource,
    UpcomingBirthday,
    get_reminder_source,
)

logger = logging.getLogger(__name__)

TEMPLATE_BY_EVENT_TYPE = {
    "training": "training_reminder",
    "match": "match_reminder",
    "tournament": "tournament_reminder",
    "meeting": "meeting_reminder",
    "payment_due": "payment_reminder",
    "birthday": "birthday_reminder",
}
GENERAL_TEMPLATE = "general_event_reminder"
IMMEDIATE_TEMPLATE = "immediate_reminder"

# Offsets this close to the event go on the high-priority queue
HIGH_PRIORITY_MINUTES = 120


@dataclass
class ReminderStats:
    events_processed: int = 0
    reminders_sent: int = 0
    failed_reminders: int = 0
    skipped_reminders: int = 0
    attendees_notified: int = 0
    dry_run: bool = False
    previews: list[dict] = field(default_factory=list)

    def as_dict(self) -> dict:
        data = asdict(self)
        if not self.dry_run:
            data.pop("previews")
        return data


# =============================================================================
# Rendering helpers
# =============================================================================


def template_for_event(event_type: str) -> str:
    return TEMPLATE_BY_EVENT_TYPE.get(event_type, GENERAL_TEMPLATE)


def format_reminder_time(minutes: int) -> str:
    """
    Human-readable lead time in Spanish.

    Examples:
        30 -> "30 minutos", 60 -> "1 hora", 120 -> "2 horas", 2880 -> "2 días"
    """
    if minutes < 60:
        return f"{minutes} minutos"
    if minutes < 1440:
        hours = minutes // 60
        return f"{hours} hora" if hours == 1 else f"{hours} horas"
    days = minutes // 1440
    return f"{days} día" if days == 1 else f"{days} días"


def build_reminder_variables(
    event: CalendarEvent,
    attendee: Attendee,
    minutes_before: int,
    tz_name: str = config.SCHOOL_TIMEZONE,
) -> dict[str, Any]:
    local_start = event.start.astimezone(pytz.timezone(tz_name))
    return {
        "event_title": event.title,
        "event_date": local_start.strftime("%d/%m/%Y"),
        "event_time": local_start.strftime("%H:%M"),
        "event_location": event.location or config.DEFAULT_EVENT_LOCATION,
        "attendee_name": attendee.name,
        "reminder_time": format_reminder_time(minutes_before),
        "calendar_name": event.calendar_name or "",
    }


def choose_channel(preferred: str, phone: str | None, email: str | None) -> NotificationType | None:
    """
    Channel to use for a recipient: the preferred one if they have an
    address for it, else the other one, else None.
    """
    addresses = {NotificationType.whatsapp: phone, NotificationType.email: email}
    try:
        preferred_type = NotificationType(preferred)
    except ValueError:
        preferred_type = NotificationType.whatsapp
    if addresses.get(preferred_type):
        return preferred_type
    for channel, address in addresses.items():
        if address:
            return channel
    return None


def build_reminder_request(
    event: CalendarEvent,
    attendee: Attendee,
    offset: ReminderOffset,
    channel: NotificationType,
    scheduled_for: datetime,
) -> NotificationRequest:
    priority = (
        NotificationPriority.high
        if offset.minutes_before <= HIGH_PRIORITY_MINUTES
        else NotificationPriority.normal
    )
    template = template_for_event(event.event_type)
    return NotificationRequest(
        tenant_id=event.tenant_id,
        type=channel,
        recipient_id=attendee.person_id,
        recipient_name=attendee.name,
        recipient_phone=attendee.phone,
        recipient_email=attendee.email,
        template=template,
        variables=build_reminder_variables(event, attendee, offset.minutes_before),
        scheduled_at=scheduled_for,
        priority=priority,
        category=template,
        reference_type="event",
        reference_id=event.event_id,
        created_by="reminder_engine",
    )


# =============================================================================
# Ledger + notification in one transaction
# =============================================================================


async def _record_skip(
    key: ReminderKey, tenant_id: int, scheduled_for: datetime, reason: str
) -> bool:
    from school_notify.database import get_transaction

    async with get_transaction() as conn:
        claimed = await dedup.claim_reminder(
            conn,
            key,
            ReminderStatus.skipped,
            tenant_id=tenant_id,
            scheduled_for=scheduled_for,
            error_message=reason,
        )
    return claimed is not None


async def _deliver(
    key: ReminderKey,
    tenant_id: int,
    scheduled_for: datetime,
    build_request: Callable[[], NotificationRequest],
    now: datetime,
) -> str:
    """
    Claim one reminder occurrence and create its notification.

    Returns:
        "sent", "duplicate" (already processed) or "failed"
    """
    from school_notify.database import get_transaction

    notification = None
    try:
        async with get_transaction() as conn:
            claimed = await dedup.claim_reminder(
                conn,
                key,
                ReminderStatus.sent,
                tenant_id=tenant_id,
                scheduled_for=scheduled_for,
            )
            if claimed is not None:
                notification = await add_notification(conn, build_request(), now)
                await dedup.attach_notification(conn, claimed, notification["notification_id"])
    except Exception as e:
        logger.error(f"Failed to create reminder {key}: {e}")
        sentry_sdk.capture_exception(e)
        async with get_transaction() as conn:
            recorded = await dedup.claim_reminder(
                conn,
                key,
                ReminderStatus.failed,
                tenant_id=tenant_id,
                scheduled_for=scheduled_for,
                error_message=str(e),
            )
        return "failed" if recorded is not None else "duplicate"

    if notification is None:
        return "duplicate"

    enqueue_pending(notification)
    return "sent"


def _occurrence_error(key: ReminderKey, error: Exception) -> str:
    # The ledger write itself failed; leave the occurrence unclaimed for the next run
    logger.error(f"Reminder {key} could not be processed: {error}")
    sentry_sdk.capture_exception(error)
    return "failed"


def _count_outcome(stats: ReminderStats, outcome: str) -> None:
    if outcome == "sent":
        stats.reminders_sent += 1
    elif outcome == "skipped":
        stats.skipped_reminders += 1
    elif outcome == "failed":
        stats.failed_reminders += 1


# =============================================================================
# Event reminders
# =============================================================================


async def _process_event_occurrence(
    event: CalendarEvent,
    attendee: Attendee,
    offset: ReminderOffset,
    key: ReminderKey,
    scheduled_for: datetime,
    grace_cutoff: datetime,
    now: datetime,
) -> str:
    """Returns "sent", "skipped", "duplicate" or "failed"."""
    if scheduled_for < grace_cutoff:
        skipped = await _record_skip(
            key, event.tenant_id, scheduled_for, "Reminder time already passed"
        )
        return "skipped" if skipped else "duplicate"

    channel = choose_channel(offset.channel, attendee.phone, attendee.email)
    if channel is None:
        skipped = await _record_skip(key, event.tenant_id, scheduled_for, "No phone or email")
        return "skipped" if skipped else "duplicate"

    return await _deliver(
        key,
        event.tenant_id,
        scheduled_for,
        lambda: build_reminder_request(event, attendee, offset, channel, scheduled_for),
        now,
    )


async def process_event_reminders(
    now: datetime | None = None,
    tenant_id: int | None = None,
    dry_run: bool = False,
    source: ReminderSource | None = None,
) -> ReminderStats:
    """
    Create notifications for every event reminder that has become due.

    Safe to run any number of times: each (event, attendee, reminder type,
    offset) is processed once.

    Args:
        tenant_id: Only this school's events
        dry_run: Select and report, write nothing
    """
    from school_notify.database import get_connection

    now = now or datetime.now(timezone.utc)
    source = source or get_reminder_source()
    horizon = now + timedelta(minutes=config.REMINDER_HORIZON_MINUTES)
    grace_cutoff = now - timedelta(minutes=config.REMINDER_GRACE_MINUTES)
    stats = ReminderStats(dry_run=dry_run)

    events = await source.get_upcoming_events(
        now, now + timedelta(days=config.REMINDER_LOOKAHEAD_DAYS), tenant_id
    )

    notified: set[int] = set()
    for event in events:
        stats.events_processed += 1
        attendees = [a for a in event.attendees if a.send_reminders]

        # (key, attendee, offset, scheduled_for) for every due occurrence
        due = []
        for offset in event.reminder_offsets():
            scheduled_for = event.start - timedelta(minutes=offset.minutes_before)
            if scheduled_for > horizon:
                continue
            for attendee in attendees:
                key = ReminderKey(
                    event.event_id, attendee.person_id, offset.reminder_type, offset.minutes_before
                )
                due.append((key, attendee, offset, scheduled_for))

        if dry_run:
            async with get_connection() as conn:
                processed = await dedup.get_processed_keys(conn, [d[0] for d in due])
            for key, attendee, offset, scheduled_for in due:
                stats.previews.append(
                    {
                        "event_id": event.event_id,
                        "event_title": event.title,
                        "recipient_id": attendee.person_id,
                        "recipient_name": attendee.name,
                        "reminder_type": offset.reminder_type,
                        "minutes_before": offset.minutes_before,
                        "channel": offset.channel,
                        "scheduled_for": scheduled_for.isoformat(),
                        "already_processed": key in processed,
                        "stale": scheduled_for < grace_cutoff,
                    }
                )
            continue

        for key, attendee, offset, scheduled_for in due:
            try:
                outcome = await _process_event_occurrence(
                    event, attendee, offset, key, scheduled_for, grace_cutoff, now
                )
            except Exception as e:
                outcome = _occurrence_error(key, e)
            _count_outcome(stats, outcome)
            if outcome == "sent":
                notified.add(attendee.person_id)

    stats.attendees_notified = len(notified)
    if stats.reminders_sent or stats.failed_reminders:
        logger.info(
            f"Event reminders: {stats.reminders_sent} sent, {stats.failed_reminders} failed,"
            f" {stats.skipped_reminders} skipped across {stats.events_processed} events"
        )
    return stats


# =============================================================================
# Birthdays
# =============================================================================


def next_birthday(birth_date: date, today: date) -> date:
    """Next occurrence on or after `today`. Feb 29 falls on Feb 28 in other years."""
    for year in (today.year, today.year + 1):
        try:
            occurrence = birth_date.replace(year=year)
        except ValueError:
            occurrence = date(year, 2, 28)
        if occurrence >= today:
            return occurrence
    raise ValueError(f"No birthday occurrence found for {birth_date}")


def _birthday_time() -> time:
    hour, minute = (int(part) for part in config.BIRTHDAY_REMINDER_TIME.split(":"))
    return time(hour, minute)


def build_birthday_request(
    birthday: UpcomingBirthday, channel: NotificationType, scheduled_for: datetime
) -> NotificationRequest:
    return NotificationRequest(
        tenant_id=birthday.tenant_id,
        type=channel,
        recipient_id=birthday.person_id,
        recipient_name=birthday.name,
        recipient_phone=birthday.phone,
        recipient_email=birthday.email,
        template="birthday_reminder",
        variables={
            "attendee_name": birthday.name,
            "school_name": birthday.school_name or config.FROM_NAME,
        },
        scheduled_at=scheduled_for,
        category="birthday_reminder",
        reference_type="birthday",
        reference_id=str(birthday.person_id),
        created_by="reminder_engine",
    )


async def _process_birthday(
    birthday: UpcomingBirthday, key: ReminderKey, scheduled_for: datetime, now: datetime
) -> str:
    channel = choose_channel("whatsapp", birthday.phone, birthday.email)
    if channel is None:
        skipped = await _record_skip(key, birthday.tenant_id, scheduled_for, "No phone or email")
        return "skipped" if skipped else "duplicate"

    return await _deliver(
        key,
        birthday.tenant_id,
        scheduled_for,
        lambda: build_birthday_request(birthday, channel, scheduled_for),
        now,
    )


async def create_birthday_reminders(
    now: datetime | None = None,
    tenant_id: int | None = None,
    dry_run: bool = False,
    source: ReminderSource | None = None,
) -> ReminderStats:
    """
    Schedule a greeting for every birthday in the next BIRTHDAY_DAYS_AHEAD days.

    Each person gets one greeting per year, sent at BIRTHDAY_REMINDER_TIME
    local time on the day.
    """
    from school_notify.database import get_connection

    now = now or datetime.now(timezone.utc)
    source = source or get_reminder_source()
    tz = pytz.timezone(config.SCHOOL_TIMEZONE)
    today = now.astimezone(tz).date()
    window_end = today + timedelta(days=config.BIRTHDAY_DAYS_AHEAD)
    stats = ReminderStats(dry_run=dry_run)

    birthdays = await source.get_upcoming_birthdays(config.BIRTHDAY_DAYS_AHEAD, tenant_id)

    for birthday in birthdays:
        occurrence = next_birthday(birthday.birth_date, today)
        if occurrence > window_end:
            continue

        stats.events_processed += 1
        scheduled_for = tz.localize(datetime.combine(occurrence, _birthday_time())).astimezone(
            timezone.utc
        )
        key = ReminderKey(f"birthday:{occurrence.year}", birthday.person_id, "birthday", 0)

        if dry_run:
            async with get_connection() as conn:
                already = await dedup.is_reminder_processed(conn, key)
            stats.previews.append(
                {
                    "recipient_id": birthday.person_id,
                    "recipient_name": birthday.name,
                    "birthday": occurrence.isoformat(),
                    "scheduled_for": scheduled_for.isoformat(),
                    "already_processed": already,
                }
            )
            continue

        try:
            outcome = await _process_birthday(birthday, key, scheduled_for, now)
        except Exception as e:
            outcome = _occurrence_error(key, e)
        _count_outcome(stats, outcome)
        if outcome == "sent":
            stats.attendees_notified += 1

    if stats.reminders_sent:
        logger.info(f"Created {stats.reminders_sent} birthday reminders")
    return stats


# =============================================================================
# Manual sends and statistics
# =============================================================================


async def send_immediate_reminder(
    event_id: str,
    tenant_id: int | None = None,
    attendee_ids: list[int] | None = None,
    message: str | None = None,
    requested_by: int | None = None,
    source: ReminderSource | None = None,
    limiter: ReminderRateLimiter | None = None,
) -> dict:
    """
    Send a reminder for an event right now to its attendees (or a subset).

    Rate limited per tenant and per recipient, or per requesting user when
    requested_by is given (one hit for the whole request). Not recorded in
    the ledger, so it can be repeated.

    Returns:
        {"event_id", "notification_ids", "rate_limited", "skipped"}

    Raises:
        EventNotFoundError: If the calendar service has no such event
        RateLimitExceeded: If requested_by is over its limit
    """
    from school_notify.database import get_transaction

    source = source or get_reminder_source()
    limiter = limiter or get_rate_limiter()

    event = await source.get_event(event_id, tenant_id)
    if event is None:
        raise EventNotFoundError(event_id)

    attendees = [a for a in event.attendees if a.send_reminders]
    if attendee_ids:
        wanted = set(attendee_ids)
        attendees = [a for a in attendees if a.person_id in wanted]

    now = datetime.now(timezone.utc)
    offset = ReminderOffset(reminder_type="immediate", minutes_before=0)
    result = {"event_id": event_id, "notification_ids": [], "rate_limited": [], "skipped": []}

    if requested_by is not None:
        await limiter.hit(requested_by, event.tenant_id)

    for attendee in attendees:
        channel = choose_channel("whatsapp", attendee.phone, attendee.email)
        if channel is None:
            result["skipped"].append(attendee.person_id)
            continue

        if requested_by is None:
            try:
                await limiter.hit(attendee.person_id, event.tenant_id)
            except RateLimitExceeded:
                result["rate_limited"].append(attendee.person_id)
                continue

        request = build_reminder_request(event, attendee, offset, channel, now)
        request.priority = NotificationPriority.high
        request.category = IMMEDIATE_TEMPLATE
        if message:
            request.template = IMMEDIATE_TEMPLATE
            request.variables = {**request.variables, "message": message}

        async with get_transaction() as conn:
            notification = await add_notification(conn, request, now)
        enqueue_pending(notification)
        result["notification_ids"].append(notification["notification_id"])

    logger.info(
        f"Immediate reminder for event {event_id}: {len(result['notification_ids'])} sent,"
        f" {len(result['rate_limited'])} rate limited"
    )
    return result


async def get_reminder_stats(
    tenant_id: int | None = None,
    date_from: datetime | None = None,
    date_to: datetime | None = None,
) -> dict:
    """Ledger outcomes plus the status of the notifications reminders created."""
    from school_notify.database import get_connection

    async with get_connection() as conn:
        reminders = await dedup.get_reminder_counts(conn, tenant_id, date_from, date_to)
        notifications = await store.count_by_status(
            conn,
            tenant_id=tenant_id,
            reference_type="event",
            date_from=date_from,
            date_to=date_to,
        )

    return {
        "tenant_id": tenant_id,
        "date_from": date_from.isoformat() if date_from else None,
        "date_to": date_to.isoformat() if date_to else None,
        "reminders": reminders,
        "notifications": notifications,
    }
