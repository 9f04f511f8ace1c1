"""
Notification persistence using SQLAlchemy Core.

Every status change goes through a compare-and-swap UPDATE (`WHERE status IN
(...)`), so two workers racing on the same row can't both win. Callers own the
connection/transaction.
"""

from datetime import datetime
from typing import Any, Iterable

from sqlalchemy import and_, func, insert, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncConnection

from school_notify.config import MAX_RETRIES
from school_notify.enums import NotificationStatus
from school_notify.tables import notification_events, notifications, recipient_opt_outs

from .state import CLAIMABLE, check_transition


async def insert_notification(conn: AsyncConnection, values: dict[str, Any]) -> dict[str, Any]:
    """Insert a notification row and return it."""
    result = await conn.execute(insert(notifications).values(**values).returning(notifications))
    return dict(result.mappings().first())


async def get_notification(conn: AsyncConnection, notification_id: int) -> dict[str, Any] | None:
    result = await conn.execute(
        select(notifications).where(notifications.c.notification_id == notification_id)
    )
    row = result.mappings().first()
    return dict(row) if row else None


async def list_notifications(
    conn: AsyncConnection,
    status: str | None = None,
    tenant_id: int | None = None,
    limit: int = 50,
) -> list[dict[str, Any]]:
    """List notifications newest first, optionally filtered by status and tenant."""
    query = select(notifications).order_by(notifications.c.notification_id.desc()).limit(limit)
    if status:
        query = query.where(notifications.c.status == status)
    if tenant_id is not None:
        query = query.where(notifications.c.tenant_id == tenant_id)
    result = await conn.execute(query)
    return [dict(row) for row in result.mappings()]


async def transition(
    conn: AsyncConnection,
    notification_id: int,
    from_statuses: Iterable[str],
    to_status: str,
    values: dict[str, Any] | None = None,
    expected_retry_count: int | None = None,
) -> dict[str, Any] | None:
    """
    Move a notification to `to_status` if it is currently in one of `from_statuses`.

    Args:
        values: Extra columns to set in the same UPDATE
        expected_retry_count: Also require retry_count to equal this value

    Returns:
        The updated row, or None if the row was not in an expected status
        (another worker got there first, or it was never in that state).

    Raises:
        InvalidTransitionError: If any from -> to pair is not in the state machine
    """
    from_statuses = list(from_statuses)
    for from_status in from_statuses:
        check_transition(from_status, to_status)

    conditions = [
        notifications.c.notification_id == notification_id,
        notifications.c.status.in_(from_statuses),
    ]
    if expected_retry_count is not None:
        conditions.append(notifications.c.retry_count == expected_retry_count)

    result = await conn.execute(
        update(notifications)
        .where(and_(*conditions))
        .values(status=to_status, updated_at=func.now(), **(values or {}))
        .returning(notifications)
    )
    row = result.mappings().first()
    return dict(row) if row else None


async def claim_for_dispatch(conn: AsyncConnection, notification_id: int) -> dict[str, Any] | None:
    """
    Atomically move a notification into `sending`.

    Claimable: pending or queued, or failed while still retryable with
    retries left.

    Returns:
        The claimed row, or None if the notification isn't claimable.
    """
    result = await conn.execute(
        update(notifications)
        .where(
            and_(
                notifications.c.notification_id == notification_id,
                or_(
                    notifications.c.status.in_([s.value for s in CLAIMABLE]),
                    and_(
                        notifications.c.status == NotificationStatus.failed.value,
                        notifications.c.retryable.is_(True),
                        notifications.c.retry_count < MAX_RETRIES,
                    ),
                ),
            )
        )
        .values(status=NotificationStatus.sending.value, updated_at=func.now())
        .returning(notifications)
    )
    row = result.mappings().first()
    return dict(row) if row else None


async def find_due_scheduled(
    conn: AsyncConnection, now: datetime, limit: int
) -> list[dict[str, Any]]:
    """Scheduled notifications whose time has come, oldest first."""
    result = await conn.execute(
        select(notifications)
        .where(
            and_(
                notifications.c.status == NotificationStatus.scheduled.value,
                notifications.c.scheduled_at <= now,
            )
        )
        .order_by(notifications.c.scheduled_at)
        .limit(limit)
    )
    return [dict(row) for row in result.mappings()]


async def find_retryable(
    conn: AsyncConnection, now: datetime, limit: int
) -> list[dict[str, Any]]:
    """Failed notifications eligible for a scheduler retry, oldest failure first."""
    result = await conn.execute(
        select(notifications)
        .where(
            and_(
                notifications.c.status == NotificationStatus.failed.value,
                notifications.c.retryable.is_(True),
                notifications.c.retry_count < MAX_RETRIES,
                or_(
                    notifications.c.next_retry_at.is_(None),
                    notifications.c.next_retry_at <= now,
                ),
            )
        )
        .order_by(notifications.c.failed_at)
        .limit(limit)
    )
    return [dict(row) for row in result.mappings()]


async def find_stranded(
    conn: AsyncConnection, before: datetime, limit: int
) -> list[dict[str, Any]]:
    """
    Candidates for re-enqueuing: `pending` rows created before `before` and
    `queued` rows last updated before it, oldest first.

    The caller still checks for a live dispatch job before enqueuing.
    """
    result = await conn.execute(
        select(notifications)
        .where(
            or_(
                and_(
                    notifications.c.status == NotificationStatus.pending.value,
                    notifications.c.created_at <= before,
                ),
                and_(
                    notifications.c.status == NotificationStatus.queued.value,
                    notifications.c.updated_at <= before,
                ),
            )
        )
        .order_by(notifications.c.updated_at)
        .limit(limit)
    )
    return [dict(row) for row in result.mappings()]


async def find_by_provider_message_id(
    conn: AsyncConnection, provider_message_id: str
) -> dict[str, Any] | None:
    result = await conn.execute(
        select(notifications).where(notifications.c.provider_message_id == provider_message_id)
    )
    row = result.mappings().first()
    return dict(row) if row else None


async def count_by_status(
    conn: AsyncConnection,
    tenant_id: int | None = None,
    reference_type: str | None = None,
    date_from: datetime | None = None,
    date_to: datetime | None = None,
) -> dict[str, int]:
    """Notification counts grouped by status."""
    query = select(notifications.c.status, func.count().label("total")).group_by(
        notifications.c.status
    )
    if tenant_id is not None:
        query = query.where(notifications.c.tenant_id == tenant_id)
    if reference_type:
        query = query.where(notifications.c.reference_type == reference_type)
    if date_from:
        query = query.where(notifications.c.created_at >= date_from)
    if date_to:
        query = query.where(notifications.c.created_at <= date_to)

    result = await conn.execute(query)
    return {str(NotificationStatus(row["status"]).value): row["total"] for row in result.mappings()}


async def count_sent_before(conn: AsyncConnection, before: datetime) -> int:
    """Number of delivered-or-better notifications older than `before`."""
    result = await conn.execute(
        select(func.count()).where(
            and_(
                notifications.c.status.in_(
                    [
                        NotificationStatus.sent.value,
                        NotificationStatus.delivered.value,
                        NotificationStatus.read.value,
                    ]
                ),
                notifications.c.sent_at < before,
            )
        )
    )
    return result.scalar() or 0


# =============================================================================
# Audit trail
# =============================================================================


async def log_event(
    conn: AsyncConnection,
    notification_id: int,
    event: str,
    description: str | None = None,
    data: dict | None = None,
) -> None:
    """Append an entry to the notification's audit trail."""
    await conn.execute(
        insert(notification_events).values(
            notification_id=notification_id,
            event=event,
            description=description,
            data=data,
        )
    )


async def get_events(conn: AsyncConnection, notification_id: int) -> list[dict[str, Any]]:
    result = await conn.execute(
        select(notification_events)
        .where(notification_events.c.notification_id == notification_id)
        .order_by(notification_events.c.event_id)
    )
    return [dict(row) for row in result.mappings()]


# =============================================================================
# Opt-outs
# =============================================================================


async def add_opt_out(
    conn: AsyncConnection,
    channel: str,
    address: str,
    tenant_id: int | None = None,
    reason: str | None = None,
) -> bool:
    """
    Record that `address` no longer wants messages on `channel`.

    Returns:
        True if a new opt-out was stored, False if it already existed.
    """
    result = await conn.execute(
        pg_insert(recipient_opt_outs)
        .values(channel=channel, address=address, tenant_id=tenant_id, reason=reason)
        .on_conflict_do_nothing(index_elements=["channel", "address"])
        .returning(recipient_opt_outs.c.opt_out_id)
    )
    return result.first() is not None


async def is_opted_out(conn: AsyncConnection, channel: str, address: str) -> bool:
    result = await conn.execute(
        select(recipient_opt_outs.c.opt_out_id)
        .where(
            and_(
                recipient_opt_outs.c.channel == channel,
                recipient_opt_outs.c.address == address,
            )
        )
        .limit(1)
    )
    return result.first() is not None
