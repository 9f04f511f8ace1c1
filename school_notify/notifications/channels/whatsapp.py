"""WhatsApp Cloud API delivery channel."""

import logging
import re
from pathlib import PurePosixPath
from urllib.parse import urlparse

import httpx

from school_notify import config
from school_notify.enums import NotificationType
from school_notify.errors import ChannelError, InvalidRecipientError

from .base import ChannelSender, SendResult

logger = logging.getLogger(__name__)

MEDIA_TYPES_BY_EXTENSION = {
    "jpg": "image",
    "jpeg": "image",
    "png": "image",
    "gif": "image",
    "webp": "image",
    "pdf": "document",
    "doc": "document",
    "docx": "document",
    "xls": "document",
    "xlsx": "document",
    "mp4": "video",
    "avi": "video",
    "mov": "video",
    "mp3": "audio",
    "wav": "audio",
    "ogg": "audio",
}

# WhatsApp rejects captions on audio messages
CAPTION_MEDIA_TYPES = {"image", "document", "video"}

MIN_PHONE_DIGITS = 8
NON_DIGITS = re.compile(r"\D")


def normalize_phone(
    phone: str | None,
    country_code: str = config.WHATSAPP_COUNTRY_CODE,
    local_prefix: str = config.WHATSAPP_LOCAL_MOBILE_PREFIX,
) -> str:
    """
    Normalize a phone number to the digits-only international form.

    Strips everything but digits; a 10-digit local mobile number (starting
    with the local mobile prefix) gets the country code prepended.

    Examples:
        "300 123 4567"     -> "573001234567"
        "+57 300-123-4567" -> "573001234567"
    """
    digits = NON_DIGITS.sub("", phone or "")
    if len(digits) == 10 and digits.startswith(local_prefix):
        digits = country_code + digits
    return digits


def detect_media_type(url: str) -> str:
    """WhatsApp media type for a URL, from its file extension."""
    suffix = PurePosixPath(urlparse(url).path).suffix.lower().lstrip(".")
    return MEDIA_TYPES_BY_EXTENSION.get(suffix, "document")


class WhatsAppSender(ChannelSender):
    """
    Sends text and media messages through the WhatsApp Cloud API.

    POST {api_url}/{phone_number_id}/messages with a bearer token; the
    provider message id is messages[0].id in the response.
    """

    channel = NotificationType.whatsapp
    provider = "whatsapp_cloud"

    def __init__(
        self,
        api_url: str = config.WHATSAPP_API_URL,
        access_token: str | None = config.WHATSAPP_ACCESS_TOKEN,
        phone_number_id: str | None = config.WHATSAPP_PHONE_NUMBER_ID,
        timeout: float = config.CHANNEL_HTTP_TIMEOUT_SECONDS,
    ):
        self.api_url = api_url.rstrip("/")
        self.access_token = access_token
        self.phone_number_id = phone_number_id
        self.timeout = timeout

    @property
    def is_configured(self) -> bool:
        return bool(self.access_token and self.phone_number_id)

    async def _post(self, payload: dict) -> dict:
        """
        POST to the messages endpoint.

        Raises:
            ChannelError: On network errors or a non-2xx response. 400/404/422
                are permanent (the request itself is bad); everything else is
                worth retrying.
        """
        if not self.is_configured:
            raise ChannelError("WhatsApp not configured (WHATSAPP_ACCESS_TOKEN not set)")

        url = f"{self.api_url}/{self.phone_number_id}/messages"
        headers = {
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json",
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(url, json=payload, headers=headers)
        except httpx.HTTPError as e:
            raise ChannelError(f"WhatsApp request failed: {e}") from e

        try:
            data = response.json()
        except ValueError:
            data = {"raw": response.text}

        if response.status_code >= 300:
            message = data.get("error", {}).get("message") or f"HTTP {response.status_code}"
            raise ChannelError(
                f"WhatsApp API error: {message}",
                permanent=response.status_code in (400, 404, 422),
                response=data,
            )

        return data

    @staticmethod
    def _message_id(data: dict) -> str | None:
        messages = data.get("messages") or []
        return messages[0].get("id") if messages else None

    async def send_text(self, to: str, body: str) -> dict:
        return await self._post(
            {
                "messaging_product": "whatsapp",
                "to": to,
                "type": "text",
                "text": {"preview_url": True, "body": body},
            }
        )

    async def send_media(
        self, to: str, media_url: str, media_type: str | None = None, caption: str | None = None
    ) -> dict:
        media_type = media_type or detect_media_type(media_url)
        media: dict = {"link": media_url}
        if caption and media_type in CAPTION_MEDIA_TYPES:
            media["caption"] = caption

        return await self._post(
            {
                "messaging_product": "whatsapp",
                "to": to,
                "type": media_type,
                media_type: media,
            }
        )

    async def mark_as_read(self, message_id: str) -> bool:
        """Mark an inbound message as read. Failures are logged, not raised."""
        try:
            await self._post(
                {"messaging_product": "whatsapp", "status": "read", "message_id": message_id}
            )
            return True
        except ChannelError as e:
            logger.warning(f"Failed to mark WhatsApp message {message_id} as read: {e}")
            return False

    async def send(self, notification: dict) -> SendResult:
        to = normalize_phone(notification.get("recipient_phone"))
        try:
            if len(to) < MIN_PHONE_DIGITS:
                raise InvalidRecipientError(
                    f"Invalid phone number: {notification.get('recipient_phone')!r}"
                )

            media_urls = notification.get("media_urls") or []
            if media_urls:
                data = await self.send_media(to, media_urls[0], caption=notification["content"])
            else:
                data = await self.send_text(to, notification["content"])
        except ChannelError as e:
            return SendResult.failure(
                str(e), permanent=e.permanent, provider=self.provider, response=e.response
            )

        return SendResult.ok(self.provider, self._message_id(data), data)
