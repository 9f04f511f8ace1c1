"""Exceptions raised by the notification pipeline."""


class NotificationError(Exception):
    """Base class for pipeline errors."""


class InvalidTransitionError(NotificationError):
    """A status change that the notification state machine does not allow."""

    def __init__(self, from_status: str, to_status: str):
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(f"Invalid status transition: {from_status} -> {to_status}")


class ChannelError(NotificationError):
    """A channel provider call failed. Transient unless permanent=True."""

    def __init__(self, message: str, permanent: bool = False, response=None):
        self.permanent = permanent
        self.response = response
        super().__init__(message)


class InvalidRecipientError(ChannelError):
    """Recipient address can't be used on this channel."""

    def __init__(self, message: str):
        super().__init__(message, permanent=True)


class UnsupportedChannelError(ChannelError):
    """The notification type has no working sender."""

    def __init__(self, channel: str):
        self.channel = channel
        super().__init__(f"{channel} channel not implemented", permanent=True)


class RateLimitExceeded(NotificationError):
    """A manual send was rejected by the rate limiter."""

    def __init__(self, retry_after: int, status: dict):
        self.retry_after = retry_after
        self.status = status
        super().__init__(f"Rate limit exceeded, retry after {retry_after}s")


class ReminderSourceError(NotificationError):
    """The calendar or user service could not be reached."""


class EventNotFoundError(NotificationError):
    """The calendar service doesn't know the event."""

    def __init__(self, event_id: str):
        self.event_id = event_id
        super().__init__(f"Event {event_id} not found")
