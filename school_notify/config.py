"""
Centralized configuration for the notification pipeline.

Everything is read from the environment (main.py loads .env / .env.local
before importing this module). Tunables default to the production values.
"""

import os


def _int_env(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _bool_env(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes")


def is_dev_mode() -> bool:
    """Check if running in development mode (--dev flag or DEV_MODE env)."""
    return os.getenv("DEV_MODE", "").lower() in ("true", "1", "yes")


def is_production() -> bool:
    """Check if running in the production environment."""
    return os.getenv("APP_ENV", "").lower() == "production"


def get_api_port() -> int:
    """Get API server port from env or default."""
    return int(os.getenv("API_PORT", "8000"))


# =============================================================================
# Scheduler
# =============================================================================

SCHEDULER_TICK_SECONDS = _int_env("SCHEDULER_TICK_SECONDS", 60)
REMINDER_TICK_SECONDS = _int_env("REMINDER_TICK_SECONDS", 60)
SWEEP_TIMEOUT_SECONDS = _int_env("SWEEP_TIMEOUT_SECONDS", 300)

DUE_BATCH_SIZE = _int_env("DUE_BATCH_SIZE", 100)
RETRY_BATCH_SIZE = _int_env("RETRY_BATCH_SIZE", 50)

# Random delay (seconds) added to due notifications so a large batch doesn't
# hit the provider at the same instant
ENQUEUE_JITTER_SECONDS = (1, 30)
RETRY_ENQUEUE_DELAY_SECONDS = _int_env("RETRY_ENQUEUE_DELAY_SECONDS", 60)

# Pending or queued notifications untouched this long with no dispatch job are re-enqueued
STRANDED_GRACE_SECONDS = _int_env("STRANDED_GRACE_SECONDS", 300)

MAX_RETRIES = 3
RETRY_BACKOFF_BASE_MINUTES = 5

# Worker slots per dispatch queue
QUEUE_WORKERS = {
    "high": _int_env("QUEUE_WORKERS_HIGH", 10),
    "default": _int_env("QUEUE_WORKERS_DEFAULT", 5),
    "low": _int_env("QUEUE_WORKERS_LOW", 2),
    "cleanup": 1,
}

NOTIFICATION_RETENTION_DAYS = _int_env("NOTIFICATION_RETENTION_DAYS", 90)


# =============================================================================
# Dispatcher
# =============================================================================

DISPATCH_MAX_ATTEMPTS = 3
DISPATCH_BACKOFF_SECONDS = (60, 300, 900)
DISPATCH_TIMEOUT_SECONDS = _int_env("DISPATCH_TIMEOUT_SECONDS", 120)


# =============================================================================
# Reminders
# =============================================================================

REMINDER_LOOKAHEAD_DAYS = _int_env("REMINDER_LOOKAHEAD_DAYS", 7)
REMINDER_HORIZON_MINUTES = _int_env("REMINDER_HORIZON_MINUTES", 0)
REMINDER_GRACE_MINUTES = _int_env("REMINDER_GRACE_MINUTES", 30)
BIRTHDAY_DAYS_AHEAD = _int_env("BIRTHDAY_DAYS_AHEAD", 7)
BIRTHDAY_REMINDER_TIME = os.getenv("BIRTHDAY_REMINDER_TIME", "09:00")
SCHOOL_TIMEZONE = os.getenv("SCHOOL_TIMEZONE", "America/Bogota")
DEFAULT_EVENT_LOCATION = os.getenv("DEFAULT_EVENT_LOCATION", "Por definir")

CALENDAR_SERVICE_URL = os.getenv("CALENDAR_SERVICE_URL", "http://localhost:8003")
AUTH_SERVICE_URL = os.getenv("AUTH_SERVICE_URL", "http://localhost:8001")
SERVICE_TIMEOUT_SECONDS = _int_env("SERVICE_TIMEOUT_SECONDS", 10)


# =============================================================================
# Rate limiting and health
# =============================================================================

RATE_LIMIT_ENABLED = _bool_env("RATE_LIMIT_ENABLED", True)
RATE_LIMIT_PER_HOUR = _int_env("RATE_LIMIT_PER_HOUR", 10)
RATE_LIMIT_PER_DAY = _int_env("RATE_LIMIT_PER_DAY", 50)
TENANT_RATE_LIMIT_MULTIPLIER = _int_env("TENANT_RATE_LIMIT_MULTIPLIER", 10)

HEALTH_WINDOW_SECONDS = _int_env("HEALTH_WINDOW_SECONDS", 1800)
HEALTH_FAILURE_RATE_THRESHOLD = float(os.getenv("HEALTH_FAILURE_RATE_THRESHOLD", "10"))
HEALTH_CONSECUTIVE_FAILURE_THRESHOLD = _int_env(
    "HEALTH_CONSECUTIVE_FAILURE_THRESHOLD", 5
)


# =============================================================================
# Channels
# =============================================================================

WHATSAPP_API_URL = os.getenv("WHATSAPP_API_URL", "https://graph.facebook.com/v18.0")
WHATSAPP_ACCESS_TOKEN = os.getenv("WHATSAPP_ACCESS_TOKEN")
WHATSAPP_PHONE_NUMBER_ID = os.getenv("WHATSAPP_PHONE_NUMBER_ID")
WHATSAPP_VERIFY_TOKEN = os.getenv("WHATSAPP_VERIFY_TOKEN")
WHATSAPP_COUNTRY_CODE = os.getenv("WHATSAPP_COUNTRY_CODE", "57")
WHATSAPP_LOCAL_MOBILE_PREFIX = os.getenv("WHATSAPP_LOCAL_MOBILE_PREFIX", "3")
CHANNEL_HTTP_TIMEOUT_SECONDS = _int_env("CHANNEL_HTTP_TIMEOUT_SECONDS", 30)

SENDGRID_API_KEY = os.getenv("SENDGRID_API_KEY")
FROM_EMAIL = os.getenv("FROM_EMAIL", "notificaciones@escuela.example")
FROM_NAME = os.getenv("FROM_NAME", "Escuela Deportiva")


# Required environment variables for production
# Format: (name, description, required_in_dev)
REQUIRED_ENV_VARS = [
    ("DATABASE_URL", "PostgreSQL connection string", True),
    ("WHATSAPP_ACCESS_TOKEN", "WhatsApp Cloud API access token", False),
    ("WHATSAPP_PHONE_NUMBER_ID", "WhatsApp sender phone number ID", False),
    ("WHATSAPP_VERIFY_TOKEN", "Token for webhook verification", False),
    ("SENDGRID_API_KEY", "SendGrid API key for email delivery", False),
]


def check_required_env_vars() -> tuple[bool, list[str]]:
    """
    Check that required environment variables are set.

    Returns:
        (all_ok, warnings): Tuple of success flag and list of warning messages
    """
    warnings = []
    errors = []
    in_dev = is_dev_mode()

    for name, description, required_in_dev in REQUIRED_ENV_VARS:
        if os.environ.get(name):
            continue
        if is_production():
            errors.append(f"  ✗ {name}: Not set ({description})")
        elif required_in_dev or not in_dev:
            warnings.append(f"  ⚠ {name}: Not set ({description})")

    if errors:
        for error in errors:
            print(error)
        return False, warnings

    return True, warnings


def get_public_config() -> dict:
    """Non-secret settings exposed by the ops config endpoint."""
    return {
        "scheduler": {
            "tick_seconds": SCHEDULER_TICK_SECONDS,
            "sweep_timeout_seconds": SWEEP_TIMEOUT_SECONDS,
            "due_batch_size": DUE_BATCH_SIZE,
            "retry_batch_size": RETRY_BATCH_SIZE,
            "stranded_grace_seconds": STRANDED_GRACE_SECONDS,
            "max_retries": MAX_RETRIES,
            "queue_workers": dict(QUEUE_WORKERS),
        },
        "dispatch": {
            "max_attempts": DISPATCH_MAX_ATTEMPTS,
            "backoff_seconds": list(DISPATCH_BACKOFF_SECONDS),
            "timeout_seconds": DISPATCH_TIMEOUT_SECONDS,
        },
        "reminders": {
            "lookahead_days": REMINDER_LOOKAHEAD_DAYS,
            "horizon_minutes": REMINDER_HORIZON_MINUTES,
            "grace_minutes": REMINDER_GRACE_MINUTES,
            "birthday_days_ahead": BIRTHDAY_DAYS_AHEAD,
            "birthday_reminder_time": BIRTHDAY_REMINDER_TIME,
            "timezone": SCHOOL_TIMEZONE,
        },
        "rate_limiting": {
            "enabled": RATE_LIMIT_ENABLED,
            "per_hour": RATE_LIMIT_PER_HOUR,
            "per_day": RATE_LIMIT_PER_DAY,
            "tenant_multiplier": TENANT_RATE_LIMIT_MULTIPLIER,
        },
        "health": {
            "window_seconds": HEALTH_WINDOW_SECONDS,
            "failure_rate_threshold": HEALTH_FAILURE_RATE_THRESHOLD,
            "consecutive_failure_threshold": HEALTH_CONSECUTIVE_FAILURE_THRESHOLD,
        },
    }
