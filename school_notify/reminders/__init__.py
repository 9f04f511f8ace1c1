"""
Event and birthday reminders.

process_event_reminders() is run by the scheduler's reminder tick and by
scripts/process_reminders.py; it reads events from a ReminderSource and turns
due reminder offsets into notifications, once per occurrence.
"""

from .dedup import ReminderKey, claim_reminder, get_reminder_counts, is_reminder_processed
from .engine import (
    ReminderStats,
    create_birthday_reminders,
    format_reminder_time,
    get_reminder_stats,
    process_event_reminders,
    send_immediate_reminder,
)
from .source import (
    Attendee,
    CalendarEvent,
    HttpReminderSource,
    ReminderOffset,
    ReminderSource,
    UpcomingBirthday,
    default_reminders,
    get_reminder_source,
    set_reminder_source,
)

__all__ = [
    "ReminderKey",
    "claim_reminder",
    "get_reminder_counts",
    "is_reminder_processed",
    "ReminderStats",
    "create_birthday_reminders",
    "format_reminder_time",
    "get_reminder_stats",
    "process_event_reminders",
    "send_immediate_reminder",
    "Attendee",
    "CalendarEvent",
    "HttpReminderSource",
    "ReminderOffset",
    "ReminderSource",
    "UpcomingBirthday",
    "default_reminders",
    "get_reminder_source",
    "set_reminder_source",
]
