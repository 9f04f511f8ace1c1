"""
Notification routes.

Endpoints:
- POST /api/notifications - Create a notification (sent now or at scheduled_at)
- GET /api/notifications - List notifications, newest first
- GET /api/notifications/{notification_id} - One notification with its audit trail
"""

from typing import Any

from fastapi import APIRouter, HTTPException, Query

from school_notify.database import get_connection
from school_notify.enums import NotificationStatus
from school_notify.notifications import store
from school_notify.notifications.producer import NotificationRequest, create_notification

router = APIRouter(prefix="/api/notifications", tags=["notifications"])


@router.post("")
async def create_notification_endpoint(request: NotificationRequest) -> dict[str, Any]:
    """
    Create a notification.

    Validation errors (missing recipient address, unknown template) are
    returned as 422 by FastAPI before this runs.
    """
    notification = await create_notification(request)
    return {
        "notification_id": notification["notification_id"],
        "status": notification["status"],
        "scheduled_at": notification["scheduled_at"],
    }


@router.get("")
async def list_notifications_endpoint(
    status: NotificationStatus | None = None,
    tenant_id: int | None = None,
    limit: int = Query(50, ge=1, le=500),
) -> dict[str, Any]:
    async with get_connection() as conn:
        notifications = await store.list_notifications(
            conn,
            status=status.value if status else None,
            tenant_id=tenant_id,
            limit=limit,
        )
    return {"notifications": notifications, "count": len(notifications)}


@router.get("/{notification_id}")
async def get_notification_endpoint(notification_id: int) -> dict[str, Any]:
    async with get_connection() as conn:
        notification = await store.get_notification(conn, notification_id)
        if not notification:
            raise HTTPException(404, "Notification not found")
        events = await store.get_events(conn, notification_id)
    return {"notification": notification, "events": events}
