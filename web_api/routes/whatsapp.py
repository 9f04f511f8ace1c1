"""
WhatsApp Cloud API webhook.

Endpoints:
- GET /api/whatsapp/webhook - Subscription verification (echoes hub.challenge)
- POST /api/whatsapp/webhook - Delivery receipts and inbound messages
"""

from typing import Any

from fastapi import APIRouter, HTTPException, Query, Request
from fastapi.responses import PlainTextResponse

from school_notify.notifications.webhooks import process_whatsapp_webhook, verify_webhook

router = APIRouter(prefix="/api/whatsapp", tags=["whatsapp"])


@router.get("/webhook", response_class=PlainTextResponse)
async def verify_whatsapp_webhook(
    mode: str | None = Query(None, alias="hub.mode"),
    token: str | None = Query(None, alias="hub.verify_token"),
    challenge: str | None = Query(None, alias="hub.challenge"),
) -> str:
    result = verify_webhook(mode, token, challenge)
    if result is None:
        raise HTTPException(403, "Verification failed")
    return result


@router.post("/webhook")
async def receive_whatsapp_webhook(request: Request) -> dict[str, Any]:
    """
    Handle a webhook delivery from Meta.

    Unknown message ids and out-of-order receipts are ignored, so Meta's
    redeliveries are harmless.
    """
    payload = await request.json()
    stats = await process_whatsapp_webhook(payload)
    return {"status": "ok", **stats}
