"""
Channel registry.

Every NotificationType maps to exactly one sender; types without a provider
integration get an UnsupportedChannelSender that fails permanently.
"""

from school_notify.enums import NotificationType

from .base import ChannelSender, SendResult, UnsupportedChannelSender
from .email import EmailSender
from .whatsapp import WhatsAppSender

_senders: dict[NotificationType, ChannelSender] | None = None


def _build_senders() -> dict[NotificationType, ChannelSender]:
    return {
        NotificationType.whatsapp: WhatsAppSender(),
        NotificationType.email: EmailSender(),
        NotificationType.sms: UnsupportedChannelSender(NotificationType.sms),
        NotificationType.push: UnsupportedChannelSender(NotificationType.push),
    }


def get_sender(notification_type: str) -> ChannelSender:
    """
    Sender for a notification type.

    Raises:
        ValueError: If the type isn't a NotificationType
    """
    global _senders
    if _senders is None:
        _senders = _build_senders()
    return _senders[NotificationType(notification_type)]


def set_sender(notification_type: NotificationType, sender: ChannelSender) -> None:
    """Replace the sender for one channel (tests, alternative providers)."""
    global _senders
    if _senders is None:
        _senders = _build_senders()
    _senders[notification_type] = sender


def reset_senders() -> None:
    global _senders
    _senders = None


__all__ = [
    "ChannelSender",
    "SendResult",
    "UnsupportedChannelSender",
    "EmailSender",
    "WhatsAppSender",
    "get_sender",
    "set_sender",
    "reset_senders",
]
