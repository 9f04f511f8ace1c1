"""Notification status state machine."""

from school_notify.config import MAX_RETRIES
from school_notify.enums import NotificationStatus
from school_notify.errors import InvalidTransitionError

S = NotificationStatus

TRANSITIONS: dict[NotificationStatus, frozenset[NotificationStatus]] = {
    S.pending: frozenset({S.queued, S.sending, S.failed}),
    S.scheduled: frozenset({S.queued, S.failed}),
    S.queued: frozenset({S.sending, S.failed}),
    S.sending: frozenset({S.sent, S.failed}),
    S.sent: frozenset({S.delivered, S.read, S.failed}),
    S.delivered: frozenset({S.read}),
    S.read: frozenset(),
    S.failed: frozenset({S.queued, S.sending}),
}

# Statuses the dispatcher may claim a notification from
CLAIMABLE = frozenset({S.pending, S.queued})


def can_transition(from_status: str, to_status: str) -> bool:
    return S(to_status) in TRANSITIONS[S(from_status)]


def check_transition(from_status: str, to_status: str) -> None:
    """Raise InvalidTransitionError unless from_status -> to_status is allowed."""
    if not can_transition(from_status, to_status):
        raise InvalidTransitionError(str(S(from_status).value), str(S(to_status).value))


def is_terminal(notification: dict) -> bool:
    """
    True when no automatic processing will touch the notification again.

    `read` is final; `failed` is final once it is permanent or the scheduler
    has used all its retries.
    """
    status = S(notification["status"])
    if status == S.read:
        return True
    if status == S.failed:
        return (
            not notification.get("retryable", True)
            or notification.get("retry_count", 0) >= MAX_RETRIES
        )
    return False


def is_valid_path(statuses: list[str]) -> bool:
    """Check that a sequence of observed statuses follows the state machine."""
    return all(can_transition(a, b) for a, b in zip(statuses, statuses[1:]))
