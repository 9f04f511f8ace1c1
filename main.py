"""
Notification service entry point.

Architecture:
- One Python process, one asyncio event loop
- Two peer services running concurrently:
  1. FastAPI (operations API, WhatsApp webhook)
  2. APScheduler (notification tick, reminder tick, birthdays, cleanup,
     and the dispatch jobs themselves)

We use FastAPI's lifespan to manage startup/shutdown, so uvicorn's signal
handling stops the scheduler and closes the database pool.

Run with: python main.py [--port PORT] [--no-scheduler] [--dev]
"""

import logging
import os
import sys
from contextlib import asynccontextmanager
from pathlib import Path

# Set up import paths before any local imports
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

from dotenv import load_dotenv

# Load .env.local first (if exists), then .env as fallback
# .env.local is gitignored and used for local dev overrides
load_dotenv(project_root / ".env.local")  # Local overrides (gitignored)
load_dotenv()  # Fallback to .env

import sentry_sdk
from fastapi import FastAPI

from school_notify import config
from school_notify.database import close_engine
from school_notify.health import get_health_monitor
from school_notify.notifications.scheduler import init_scheduler, is_running, shutdown_scheduler

from web_api.routes.notifications import router as notifications_router
from web_api.routes.reminders import router as reminders_router
from web_api.routes.whatsapp import router as whatsapp_router

logging.basicConfig(
    level=logging.DEBUG if config.is_dev_mode() else logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

SENTRY_DSN = os.getenv("SENTRY_DSN")
if SENTRY_DSN:
    sentry_sdk.init(
        dsn=SENTRY_DSN,
        environment=os.getenv("APP_ENV", "development"),
        traces_sample_rate=0.1,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    FastAPI lifespan context manager.

    Starts the scheduler (unless disabled with --no-scheduler) and shuts
    it down together with the database pool.
    """
    ok, warnings = config.check_required_env_vars()
    for warning in warnings:
        logger.warning(warning)
    if not ok:
        raise RuntimeError("Missing required environment variables")

    if os.getenv("DISABLE_SCHEDULER", "").lower() in ("true", "1", "yes"):
        logger.info("Scheduler disabled (--no-scheduler flag or DISABLE_SCHEDULER=true)")
    else:
        init_scheduler()

    yield  # FastAPI runs here, scheduler jobs run alongside it

    logger.info("Shutting down peer services...")
    shutdown_scheduler()
    await close_engine()  # Close database connections


# Create FastAPI app with lifespan
app = FastAPI(
    title="School Notification Service",
    lifespan=lifespan,
)

# Include routers
app.include_router(notifications_router)
app.include_router(reminders_router)
app.include_router(whatsapp_router)


@app.get("/")
async def root():
    return {"status": "ok", "scheduler_running": is_running()}


@app.get("/health")
async def health():
    """Process health: always 200 while the process is up."""
    metrics = await get_health_monitor().get_metrics()
    return {
        "status": "healthy",
        "scheduler_running": is_running(),
        "delivery_healthy": metrics["healthy"],
    }


if __name__ == "__main__":
    import argparse
    import uvicorn

    parser = argparse.ArgumentParser(description="School Notification Service")
    parser.add_argument(
        "--no-scheduler",
        action="store_true",
        help="Don't start the scheduler (useful for running extra API instances)",
    )
    parser.add_argument(
        "--dev",
        action="store_true",
        help="Development mode (debug logging, relaxed env var checks)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=config.get_api_port(),
        help="Port to run the server on (default: API_PORT or 8000)",
    )
    args = parser.parse_args()

    # Set env vars so they persist across uvicorn reloads
    if args.no_scheduler:
        os.environ["DISABLE_SCHEDULER"] = "true"
    if args.dev:
        os.environ["DEV_MODE"] = "true"

    # Pass app object directly (not string) to avoid module reimport issues
    uvicorn.run(
        app,
        host="0.0.0.0",
        port=args.port,
    )
