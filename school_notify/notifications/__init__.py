"""
Notification delivery for WhatsApp and email.

Public API:
    create_notification(request) - Store a notification (scheduled or sent now)
    dispatch_notification(notification_id) - One delivery attempt
    enqueue_dispatch(notification_id, priority, delay_seconds) - Queue a dispatch
    run_notification_tick() - Due-scheduled, retry and stranded sweeps
    process_whatsapp_webhook(payload) - Delivery receipts and inbound commands

Scheduler lifecycle:
    init_scheduler() / shutdown_scheduler()
"""

from .dispatcher import DispatchRetryPolicy, dispatch_notification, run_dispatch_job
from .producer import NotificationRequest, create_notification
from .scheduler import (
    backoff_minutes,
    cancel_dispatch,
    enqueue_dispatch,
    init_scheduler,
    run_notification_tick,
    shutdown_scheduler,
)
from .webhooks import process_whatsapp_webhook, verify_webhook

__all__ = [
    # Producer
    "NotificationRequest",
    "create_notification",
    # Dispatch
    "DispatchRetryPolicy",
    "dispatch_notification",
    "run_dispatch_job",
    # Scheduling
    "backoff_minutes",
    "cancel_dispatch",
    "enqueue_dispatch",
    "init_scheduler",
    "run_notification_tick",
    "shutdown_scheduler",
    # Inbound
    "process_whatsapp_webhook",
    "verify_webhook",
]
