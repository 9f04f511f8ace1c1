"""
Delivery health monitor.

Tracks send attempts and failures in a fixed window, the current streak of
consecutive failures, dispatch queue size and the last processing time.
Advisory only: nothing in the pipeline blocks on it.
"""

import logging
import time
from datetime import datetime, timezone
from typing import Callable

import sentry_sdk

from . import config
from .counters import CounterStore, get_counter_store

logger = logging.getLogger(__name__)

KEY_PREFIX = "notification_health"
CONSECUTIVE_KEY = f"{KEY_PREFIX}:consecutive_failures"
QUEUE_SIZE_KEY = f"{KEY_PREFIX}:queue_size"
LAST_PROCESSED_KEY = f"{KEY_PREFIX}:last_processed_at"


class HealthMonitor:
    """
    Attempts and failures are counted under keys suffixed with the current
    window number (clock // window_seconds), so both counters always cover
    the same window and expire together.
    """

    def __init__(
        self,
        store: CounterStore,
        window_seconds: int = config.HEALTH_WINDOW_SECONDS,
        failure_rate_threshold: float = config.HEALTH_FAILURE_RATE_THRESHOLD,
        consecutive_failure_threshold: int = config.HEALTH_CONSECUTIVE_FAILURE_THRESHOLD,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.window_seconds = window_seconds
        self.failure_rate_threshold = failure_rate_threshold
        self.consecutive_failure_threshold = consecutive_failure_threshold
        self._clock = clock

    def _window_keys(self) -> tuple[str, str]:
        window = int(self._clock() // self.window_seconds)
        return (
            f"{KEY_PREFIX}:attempts:{window}",
            f"{KEY_PREFIX}:failures:{window}",
        )

    async def _touch(self) -> None:
        await self.store.set(LAST_PROCESSED_KEY, datetime.now(timezone.utc).isoformat())

    async def record_success(self) -> None:
        attempts_key, _ = self._window_keys()
        await self.store.incr(attempts_key, ttl=self.window_seconds)
        await self.store.set(CONSECUTIVE_KEY, 0)
        await self._touch()

    async def record_failure(self, error: str | None = None) -> None:
        attempts_key, failures_key = self._window_keys()
        await self.store.incr(attempts_key, ttl=self.window_seconds)
        await self.store.incr(failures_key, ttl=self.window_seconds)
        consecutive = await self.store.incr(CONSECUTIVE_KEY)
        await self._touch()

        # Alert once per streak, when it crosses the threshold
        if consecutive == self.consecutive_failure_threshold:
            logger.error(
                f"Notification delivery unhealthy: {consecutive} consecutive failures"
                f" (last error: {error})"
            )
            sentry_sdk.capture_message(
                f"Notification delivery has {consecutive} consecutive failures",
                level="error",
            )

    async def set_queue_size(self, size: int) -> None:
        """Record how many dispatch jobs are waiting (sampled by the scheduler)."""
        await self.store.set(QUEUE_SIZE_KEY, size)

    async def get_metrics(self) -> dict:
        attempts_key, failures_key = self._window_keys()
        attempts = int(await self.store.get(attempts_key) or 0)
        failures = int(await self.store.get(failures_key) or 0)
        consecutive = int(await self.store.get(CONSECUTIVE_KEY) or 0)
        failure_rate = round(failures / attempts * 100, 2) if attempts else 0.0

        return {
            "healthy": (
                failure_rate < self.failure_rate_threshold
                and consecutive < self.consecutive_failure_threshold
            ),
            "failure_rate": failure_rate,
            "consecutive_failures": consecutive,
            "attempts": attempts,
            "failures": failures,
            "queue_size": int(await self.store.get(QUEUE_SIZE_KEY) or 0),
            "last_processed_at": await self.store.get(LAST_PROCESSED_KEY),
            "window_seconds": self.window_seconds,
        }

    async def is_healthy(self) -> bool:
        metrics = await self.get_metrics()
        return metrics["healthy"]

    async def reset(self) -> int:
        """Clear the current window and the failure streak (ops endpoint)."""
        attempts_key, failures_key = self._window_keys()
        removed = await self.store.delete(attempts_key, failures_key, CONSECUTIVE_KEY)
        logger.info("Delivery health counters reset")
        return removed


_monitor: HealthMonitor | None = None


def get_health_monitor() -> HealthMonitor:
    """Get or create the health monitor bound to the process counter store."""
    global _monitor
    if _monitor is None:
        _monitor = HealthMonitor(get_counter_store())
    return _monitor
