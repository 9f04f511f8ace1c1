"""
Idempotency ledger for reminders (processed_reminders table).

One row per (event_id, recipient_id, reminder_type, minutes_before). Rows are
written with INSERT ... ON CONFLICT DO NOTHING, so the unique constraint is
the only thing deciding who gets to send a reminder.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncConnection

from school_notify.enums import ReminderStatus
from school_notify.tables import processed_reminders


@dataclass(frozen=True)
class ReminderKey:
    """Identifies one reminder occurrence."""

    event_id: str
    recipient_id: int
    reminder_type: str
    minutes_before: int


def _key_condition(key: ReminderKey):
    return and_(
        processed_reminders.c.event_id == key.event_id,
        processed_reminders.c.recipient_id == key.recipient_id,
        processed_reminders.c.reminder_type == key.reminder_type,
        processed_reminders.c.minutes_before == key.minutes_before,
    )


async def claim_reminder(
    conn: AsyncConnection,
    key: ReminderKey,
    status: ReminderStatus,
    tenant_id: int | None = None,
    scheduled_for: datetime | None = None,
    notification_id: int | None = None,
    error_message: str | None = None,
    details: dict | None = None,
) -> int | None:
    """
    Insert the ledger row for `key` unless one exists.

    Returns:
        The new row id, or None if the reminder was already processed
    """
    result = await conn.execute(
        insert(processed_reminders)
        .values(
            event_id=key.event_id,
            recipient_id=key.recipient_id,
            reminder_type=key.reminder_type,
            minutes_before=key.minutes_before,
            tenant_id=tenant_id,
            status=ReminderStatus(status).value,
            scheduled_for=scheduled_for,
            notification_id=notification_id,
            error_message=error_message,
            details=details,
        )
        .on_conflict_do_nothing(constraint="processed_reminders_occurrence_unique")
        .returning(processed_reminders.c.processed_reminder_id)
    )
    row = result.first()
    return row[0] if row else None


async def attach_notification(
    conn: AsyncConnection, processed_reminder_id: int, notification_id: int
) -> None:
    await conn.execute(
        update(processed_reminders)
        .where(processed_reminders.c.processed_reminder_id == processed_reminder_id)
        .values(notification_id=notification_id)
    )


async def is_reminder_processed(conn: AsyncConnection, key: ReminderKey) -> bool:
    result = await conn.execute(
        select(processed_reminders.c.processed_reminder_id).where(_key_condition(key)).limit(1)
    )
    return result.first() is not None


async def get_processed_keys(
    conn: AsyncConnection, keys: Iterable[ReminderKey]
) -> set[ReminderKey]:
    """Which of `keys` already have a ledger row (used by dry runs)."""
    keys = list(keys)
    if not keys:
        return set()
    result = await conn.execute(
        select(
            processed_reminders.c.event_id,
            processed_reminders.c.recipient_id,
            processed_reminders.c.reminder_type,
            processed_reminders.c.minutes_before,
        ).where(or_(*[_key_condition(k) for k in keys]))
    )
    return {
        ReminderKey(row.event_id, row.recipient_id, row.reminder_type, row.minutes_before)
        for row in result
    }


async def get_reminder_counts(
    conn: AsyncConnection,
    tenant_id: int | None = None,
    date_from: datetime | None = None,
    date_to: datetime | None = None,
) -> dict[str, Any]:
    """
    Ledger counts by status and by reminder type.

    Returns:
        {"total": N, "by_status": {"sent": n, ...}, "by_type": {"day_before": n, ...}}
    """
    conditions = []
    if tenant_id is not None:
        conditions.append(processed_reminders.c.tenant_id == tenant_id)
    if date_from:
        conditions.append(processed_reminders.c.processed_at >= date_from)
    if date_to:
        conditions.append(processed_reminders.c.processed_at <= date_to)

    by_status_query = select(
        processed_reminders.c.status, func.count().label("total")
    ).group_by(processed_reminders.c.status)
    by_type_query = select(
        processed_reminders.c.reminder_type, func.count().label("total")
    ).group_by(processed_reminders.c.reminder_type)
    if conditions:
        by_status_query = by_status_query.where(and_(*conditions))
        by_type_query = by_type_query.where(and_(*conditions))

    by_status = {
        str(ReminderStatus(row["status"]).value): row["total"]
        for row in (await conn.execute(by_status_query)).mappings()
    }
    by_type = {
        row["reminder_type"]: row["total"]
        for row in (await conn.execute(by_type_query)).mappings()
    }
    return {
        "total": sum(by_status.values()),
        "by_status": {s.value: by_status.get(s.value, 0) for s in ReminderStatus},
        "by_type": by_type,
    }
