"""Common contract for channel senders."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from school_notify.enums import NotificationType
from school_notify.errors import UnsupportedChannelError


@dataclass
class SendResult:
    """Outcome of one send attempt."""

    success: bool
    provider: str | None = None
    provider_message_id: str | None = None
    response: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    permanent: bool = False  # Never retry (unsupported channel, bad recipient)

    @classmethod
    def ok(cls, provider: str, provider_message_id: str | None, response: dict | None = None):
        return cls(
            success=True,
            provider=provider,
            provider_message_id=provider_message_id,
            response=response or {},
        )

    @classmethod
    def failure(cls, error: str, permanent: bool = False, provider: str | None = None, response: dict | None = None):
        return cls(
            success=False,
            provider=provider,
            error=error,
            permanent=permanent,
            response=response or {},
        )


class ChannelSender(ABC):
    """
    One sender per notification type.

    send() receives the notification row with content and subject already
    rendered and never raises for provider errors: they come back as a
    failed SendResult.
    """

    channel: NotificationType
    provider: str

    @abstractmethod
    async def send(self, notification: dict) -> SendResult:
        ...


class UnsupportedChannelSender(ChannelSender):
    """Placeholder for channels without a provider integration (sms, push)."""

    provider = "none"

    def __init__(self, channel: NotificationType):
        self.channel = channel

    async def send(self, notification: dict) -> SendResult:
        error = UnsupportedChannelError(self.channel.value)
        return SendResult.failure(str(error), permanent=True, provider=self.provider)
