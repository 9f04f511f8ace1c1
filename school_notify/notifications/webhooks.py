"""
Inbound WhatsApp webhook handling.

Status receipts (delivered/read/failed) advance the matching notification by
provider_message_id. Inbound text messages are checked for the unsubscribe
and help keywords; anything else is ignored.
"""

import logging
from datetime import datetime, timezone

from school_notify import config
from school_notify.enums import NotificationEvent, NotificationStatus, NotificationType
from school_notify.errors import ChannelError

from . import store
from .channels import get_sender
from .channels.whatsapp import WhatsAppSender, normalize_phone
from .templates import get_message

logger = logging.getLogger(__name__)

UNSUBSCRIBE_KEYWORDS = {"stop", "baja", "cancelar"}
HELP_KEYWORDS = {"help", "ayuda"}

S = NotificationStatus

# receipt status -> (allowed current statuses, new status, timestamp column)
RECEIPT_TRANSITIONS = {
    "delivered": ([S.sent], S.delivered, "delivered_at"),
    "read": ([S.sent, S.delivered], S.read, "read_at"),
    "failed": ([S.sent], S.failed, "failed_at"),
}


def verify_webhook(
    mode: str | None,
    token: str | None,
    challenge: str | None,
    verify_token: str | None = None,
) -> str | None:
    """
    Meta's subscription handshake.

    Returns:
        The challenge to echo back, or None if verification fails
    """
    expected = verify_token if verify_token is not None else config.WHATSAPP_VERIFY_TOKEN
    if mode == "subscribe" and expected and token == expected:
        return challenge
    logger.warning("WhatsApp webhook verification failed")
    return None


def _receipt_time(status: dict) -> datetime:
    timestamp = status.get("timestamp")
    if timestamp:
        return datetime.fromtimestamp(int(timestamp), tz=timezone.utc)
    return datetime.now(timezone.utc)


async def apply_status_receipt(status: dict) -> bool:
    """
    Apply one delivery/read/failure receipt.

    Unknown message ids and receipts that don't fit the current status
    (duplicates, out-of-order delivery after read) are ignored.

    Returns:
        True if the notification was updated
    """
    from school_notify.database import get_transaction

    receipt = status.get("status")
    if receipt not in RECEIPT_TRANSITIONS:
        return False

    from_statuses, to_status, timestamp_column = RECEIPT_TRANSITIONS[receipt]
    values = {timestamp_column: _receipt_time(status)}
    if receipt == "failed":
        errors = status.get("errors") or [{}]
        values["error_message"] = (
            errors[0].get("title") or errors[0].get("message") or "Delivery failed"
        )

    async with get_transaction() as conn:
        notification = await store.find_by_provider_message_id(conn, status.get("id", ""))
        if not notification:
            logger.info(f"Receipt for unknown WhatsApp message {status.get('id')}")
            return False

        updated = await store.transition(
            conn, notification["notification_id"], from_statuses, to_status, values=values
        )
        if updated:
            await store.log_event(
                conn,
                notification["notification_id"],
                NotificationEvent(to_status.value).value,
                f"Provider receipt: {receipt}",
                {"provider_message_id": status.get("id")},
            )

    return updated is not None


async def handle_inbound_message(
    message: dict, sender: WhatsAppSender | None = None
) -> str | None:
    """
    Process an inbound message for keyword commands.

    Returns:
        "unsubscribe", "help", or None when the message isn't a command
    """
    from school_notify.database import get_transaction

    sender = sender or get_sender(NotificationType.whatsapp)
    phone = normalize_phone(message.get("from"))

    if message.get("id"):
        await sender.mark_as_read(message["id"])

    if message.get("type") != "text":
        return None

    keyword = (message.get("text", {}).get("body") or "").strip().lower()

    if keyword in UNSUBSCRIBE_KEYWORDS:
        async with get_transaction() as conn:
            added = await store.add_opt_out(
                conn, NotificationType.whatsapp.value, phone, reason=f"inbound:{keyword}"
            )
        logger.info(f"WhatsApp opt-out from {phone} (new: {added})")
        reply = get_message("whatsapp_unsubscribed", "whatsapp", {})
        command = "unsubscribe"
    elif keyword in HELP_KEYWORDS:
        reply = get_message("whatsapp_help", "whatsapp", {})
        command = "help"
    else:
        return None

    try:
        await sender.send_text(phone, reply.strip())
    except ChannelError as e:
        logger.warning(f"Could not reply to {command} command from {phone}: {e}")

    return command


async def process_whatsapp_webhook(payload: dict, sender: WhatsAppSender | None = None) -> dict:
    """
    Walk a webhook payload (entry -> changes -> value) and handle its
    statuses and messages.

    Returns:
        {"statuses": receipts applied, "messages": inbound messages seen,
         "commands": keyword commands handled}
    """
    stats = {"statuses": 0, "messages": 0, "commands": 0}

    for entry in payload.get("entry", []):
        for change in entry.get("changes", []):
            if change.get("field") != "messages":
                continue
            value = change.get("value", {})

            for status in value.get("statuses", []):
                if await apply_status_receipt(status):
                    stats["statuses"] += 1

            for message in value.get("messages", []):
                stats["messages"] += 1
                if await handle_inbound_message(message, sender):
                    stats["commands"] += 1

    return stats
