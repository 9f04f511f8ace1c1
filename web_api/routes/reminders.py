"""
Reminder routes (operations).

Endpoints:
- GET /api/reminders/stats - Ledger and notification counts
- POST /api/reminders/send-immediate - Remind an event's attendees right now
- POST /api/reminders/process - Run reminder processing (sync, async or dry run)
- GET /api/reminders/rate-limit-status - Rate limit usage for a recipient
- DELETE /api/reminders/rate-limit/{recipient_id} - Reset a recipient's limits
- GET /api/reminders/health - Delivery health (503 when unhealthy)
- POST /api/reminders/health/reset - Clear the failure window and streak
- GET /api/reminders/config - Effective non-secret settings
"""

from datetime import datetime
from typing import Any

from fastapi import APIRouter, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from school_notify import config
from school_notify.errors import EventNotFoundError, RateLimitExceeded, ReminderSourceError
from school_notify.health import get_health_monitor
from school_notify.notifications.scheduler import schedule_reminder_processing
from school_notify.rate_limit import get_rate_limiter
from school_notify.reminders.engine import (
    create_birthday_reminders,
    get_reminder_stats,
    process_event_reminders,
    send_immediate_reminder,
)

router = APIRouter(prefix="/api/reminders", tags=["reminders"])


@router.get("/stats")
async def reminder_stats(
    tenant_id: int | None = None,
    date_from: datetime | None = None,
    date_to: datetime | None = None,
) -> dict[str, Any]:
    return await get_reminder_stats(tenant_id, date_from, date_to)


class SendImmediateRequest(BaseModel):
    """Schema for sending an event reminder now."""

    event_id: str
    tenant_id: int | None = None
    attendee_ids: list[int] = Field(default_factory=list)
    message: str | None = None
    requested_by: int | None = None


@router.post("/send-immediate")
async def send_immediate(request: SendImmediateRequest) -> dict[str, Any]:
    """
    Send a reminder for an event to all (or the listed) attendees.

    Returns 429 with retry_after when the requester is over its rate limit.
    """
    try:
        result = await send_immediate_reminder(
            request.event_id,
            tenant_id=request.tenant_id,
            attendee_ids=request.attendee_ids or None,
            message=request.message,
            requested_by=request.requested_by,
        )
    except EventNotFoundError:
        raise HTTPException(404, "Event not found")
    except RateLimitExceeded as e:
        return JSONResponse(
            status_code=429,
            content={"detail": str(e), "retry_after": e.retry_after, "status": e.status},
            headers={"Retry-After": str(e.retry_after)},
        )
    except ReminderSourceError as e:
        raise HTTPException(502, str(e))

    return {"status": "sent", **result}


class ProcessRemindersRequest(BaseModel):
    """Schema for a manual reminder processing run."""

    tenant_id: int | None = None
    run_async: bool = Field(False, alias="async")
    dry_run: bool = False
    process_birthdays: bool = False


@router.post("/process")
async def process_reminders(request: ProcessRemindersRequest) -> dict[str, Any]:
    """
    Process due reminders.

    async=true hands the run to the scheduler and returns immediately;
    dry_run=true reports what would be sent without writing anything.
    """
    if request.run_async and not request.dry_run:
        job_id = schedule_reminder_processing(request.tenant_id, request.process_birthdays)
        if job_id is None:
            raise HTTPException(503, "Scheduler is not running")
        return {"status": "scheduled", "job_id": job_id}

    try:
        stats = await process_event_reminders(tenant_id=request.tenant_id, dry_run=request.dry_run)
        result: dict[str, Any] = {"status": "completed", "events": stats.as_dict()}
        if request.process_birthdays:
            birthdays = await create_birthday_reminders(
                tenant_id=request.tenant_id, dry_run=request.dry_run
            )
            result["birthdays"] = birthdays.as_dict()
    except ReminderSourceError as e:
        raise HTTPException(502, str(e))

    return result


@router.get("/rate-limit-status")
async def rate_limit_status(recipient_id: int, tenant_id: int | None = None) -> dict[str, Any]:
    return await get_rate_limiter().get_status(recipient_id, tenant_id)


@router.delete("/rate-limit/{recipient_id}")
async def clear_rate_limit(recipient_id: int, tenant_id: int | None = None) -> dict[str, Any]:
    removed = await get_rate_limiter().clear(recipient_id, tenant_id)
    return {"status": "cleared", "recipient_id": recipient_id, "keys_removed": removed}


@router.get("/health")
async def reminder_health():
    """Delivery health metrics. Responds 503 while unhealthy."""
    metrics = await get_health_monitor().get_metrics()
    status_code = 200 if metrics["healthy"] else 503
    return JSONResponse(status_code=status_code, content=metrics)


@router.post("/health/reset")
async def reset_health() -> dict[str, Any]:
    removed = await get_health_monitor().reset()
    return {"status": "reset", "keys_removed": removed}


@router.get("/config")
async def reminder_config() -> dict[str, Any]:
    return config.get_public_config()
