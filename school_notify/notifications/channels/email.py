"""SendGrid email delivery channel."""

import asyncio
import base64
import logging
import mimetypes
import re
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from urllib.parse import urlparse

import httpx
from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import Attachment, Disposition, FileContent, FileName, FileType, Mail

from school_notify import config
from school_notify.enums import NotificationType
from school_notify.errors import ChannelError, InvalidRecipientError

from .base import ChannelSender, SendResult

logger = logging.getLogger(__name__)

DEFAULT_SUBJECT = "Notificación"

# Regex to match markdown links: [text](url)
MARKDOWN_LINK_PATTERN = re.compile(r"\[([^\]]+)\]\(([^)]+)\)")
# **bold**
MARKDOWN_BOLD_PATTERN = re.compile(r"\*\*([^*]+)\*\*")
EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

_client: SendGridAPIClient | None = None


@dataclass
class EmailAttachment:
    filename: str
    content: bytes
    mime_type: str


@dataclass
class EmailMessage:
    """Email message data."""

    to_email: str
    subject: str
    body: str
    to_name: str | None = None
    attachments: list[EmailAttachment] = field(default_factory=list)


def markdown_to_html(text: str) -> str:
    """
    Convert markdown-style links and bold to HTML and wrap in the email layout.

    Converts [text](url) to <a href="url">text</a> and preserves line breaks.
    """
    html_body = MARKDOWN_LINK_PATTERN.sub(r'<a href="\2">\1</a>', text)
    html_body = MARKDOWN_BOLD_PATTERN.sub(r"<strong>\1</strong>", html_body)
    html_body = html_body.replace("\n", "<br>\n")

    return f"""<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
</head>
<body style="font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.5; color: #333;">
{html_body}
<p style="color: #888; font-size: 12px;">{config.FROM_NAME}</p>
</body>
</html>"""


def markdown_to_plain_text(text: str) -> str:
    """
    Convert markdown-style links to plain text with URL in parentheses.

    Converts [text](url) to text (url) and drops bold markers.
    """
    text = MARKDOWN_LINK_PATTERN.sub(r"\1 (\2)", text)
    return MARKDOWN_BOLD_PATTERN.sub(r"\1", text)


def _get_sendgrid_client() -> SendGridAPIClient | None:
    """Get or create SendGrid client singleton."""
    global _client
    if _client is None and config.SENDGRID_API_KEY:
        _client = SendGridAPIClient(config.SENDGRID_API_KEY)
    return _client


def build_mail(message: EmailMessage) -> Mail:
    mail = Mail(
        from_email=(config.FROM_EMAIL, config.FROM_NAME),
        to_emails=message.to_email,
        subject=message.subject,
        plain_text_content=markdown_to_plain_text(message.body),
        html_content=markdown_to_html(message.body),
    )
    for attachment in message.attachments:
        mail.add_attachment(
            Attachment(
                FileContent(base64.b64encode(attachment.content).decode()),
                FileName(attachment.filename),
                FileType(attachment.mime_type),
                Disposition("attachment"),
            )
        )
    return mail


def send_email(message: EmailMessage) -> str | None:
    """
    Send an email via SendGrid.

    The body can contain markdown-style links [text](url) which will be
    converted to HTML links. Both plain text and HTML versions are sent.

    Returns:
        SendGrid message id (X-Message-Id header), if present

    Raises:
        ChannelError: If SendGrid isn't configured or rejects the message
    """
    client = _get_sendgrid_client()
    if not client:
        raise ChannelError("SendGrid not configured (SENDGRID_API_KEY not set)")

    try:
        response = client.send(build_mail(message))
    except Exception as e:
        # python_http_client raises HTTPError subclasses carrying the status code
        status = getattr(e, "status_code", None)
        raise ChannelError(
            f"Failed to send email to {message.to_email}: {e}",
            permanent=status in (400, 413),
        ) from e

    if response.status_code not in (200, 201, 202):
        raise ChannelError(f"SendGrid returned HTTP {response.status_code}")

    return response.headers.get("X-Message-Id")


async def fetch_attachment(url: str, timeout: float = config.CHANNEL_HTTP_TIMEOUT_SECONDS) -> EmailAttachment:
    """Download a media URL to attach it to an email."""
    try:
        async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as client:
            response = await client.get(url)
    except httpx.HTTPError as e:
        raise ChannelError(f"Failed to download attachment {url}: {e}") from e

    if response.status_code != 200:
        raise ChannelError(f"Failed to download attachment {url}: HTTP {response.status_code}")

    filename = PurePosixPath(urlparse(url).path).name or "adjunto"
    mime_type = (
        response.headers.get("content-type", "").split(";")[0]
        or mimetypes.guess_type(filename)[0]
        or "application/octet-stream"
    )
    return EmailAttachment(filename=filename, content=response.content, mime_type=mime_type)


class EmailSender(ChannelSender):
    channel = NotificationType.email
    provider = "sendgrid"

    async def send(self, notification: dict) -> SendResult:
        to_email = (notification.get("recipient_email") or "").strip()
        try:
            if not EMAIL_PATTERN.match(to_email):
                raise InvalidRecipientError(f"Invalid email address: {to_email!r}")

            attachments = [
                await fetch_attachment(url) for url in notification.get("media_urls") or []
            ]
            message = EmailMessage(
                to_email=to_email,
                to_name=notification.get("recipient_name"),
                subject=notification.get("subject") or DEFAULT_SUBJECT,
                body=notification["content"],
                attachments=attachments,
            )
            message_id = await asyncio.to_thread(send_email, message)
        except ChannelError as e:
            return SendResult.failure(str(e), permanent=e.permanent, provider=self.provider)

        return SendResult.ok(
            self.provider,
            message_id,
            {"message_id": message_id, "attachments": len(attachments)},
        )
