"""
Notification and reminder delivery for the school platform.
Used by the HTTP API, the scheduler and the maintenance scripts.
"""

# Database (SQLAlchemy)
from .database import get_connection, get_transaction, get_engine, close_engine, is_configured

# Shared counters
from .counters import CounterStore, MemoryCounterStore, get_counter_store, set_counter_store

# Rate limiting and health
from .rate_limit import ReminderRateLimiter, get_rate_limiter
from .health import HealthMonitor, get_health_monitor

# Errors
from .errors import (
    NotificationError,
    InvalidTransitionError,
    ChannelError,
    InvalidRecipientError,
    UnsupportedChannelError,
    RateLimitExceeded,
    ReminderSourceError,
    EventNotFoundError,
)

__all__ = [
    "get_connection",
    "get_transaction",
    "get_engine",
    "close_engine",
    "is_configured",
    "CounterStore",
    "MemoryCounterStore",
    "get_counter_store",
    "set_counter_store",
    "ReminderRateLimiter",
    "get_rate_limiter",
    "HealthMonitor",
    "get_health_monitor",
    "NotificationError",
    "InvalidTransitionError",
    "ChannelError",
    "InvalidRecipientError",
    "UnsupportedChannelError",
    "RateLimitExceeded",
    "ReminderSourceError",
    "EventNotFoundError",
]
