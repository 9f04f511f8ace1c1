"""
Rate limiter for manual/immediate reminder sends.

Counts attempts per (recipient, tenant) in an hourly and a daily window, plus
tenant-wide totals at TENANT_RATE_LIMIT_MULTIPLIER times those limits. Each
window opens at the first counted attempt and expires with its counter key.
Background sweeps are never rate limited.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from . import config
from .counters import CounterStore, get_counter_store
from .errors import RateLimitExceeded

logger = logging.getLogger(__name__)

KEY_PREFIX = "reminder_rate_limit"


@dataclass(frozen=True)
class Window:
    name: str  # "hourly", "daily", "tenant_hourly", "tenant_daily"
    key: str
    limit: int
    seconds: int


class ReminderRateLimiter:
    """
    Fixed-window counters stored in a CounterStore.

    Args:
        store: Counter store holding the window counters.
        per_hour: Attempts allowed per recipient per hour.
        per_day: Attempts allowed per recipient per day.
        tenant_multiplier: Tenant-wide limits are this many times the
            per-recipient ones.
        enabled: When False, hit() always allows.
    """

    def __init__(
        self,
        store: CounterStore,
        per_hour: int = config.RATE_LIMIT_PER_HOUR,
        per_day: int = config.RATE_LIMIT_PER_DAY,
        tenant_multiplier: int = config.TENANT_RATE_LIMIT_MULTIPLIER,
        enabled: bool = config.RATE_LIMIT_ENABLED,
    ):
        self.store = store
        self.per_hour = per_hour
        self.per_day = per_day
        self.tenant_multiplier = tenant_multiplier
        self.enabled = enabled

    def _windows(self, recipient_id: int | str, tenant_id: int | None) -> list[Window]:
        tenant = tenant_id if tenant_id is not None else "global"
        windows = [
            Window(
                "hourly",
                f"{KEY_PREFIX}:hourly:{tenant}:{recipient_id}",
                self.per_hour,
                3600,
            ),
            Window(
                "daily",
                f"{KEY_PREFIX}:daily:{tenant}:{recipient_id}",
                self.per_day,
                86400,
            ),
        ]
        if tenant_id is not None:
            windows += [
                Window(
                    "tenant_hourly",
                    f"{KEY_PREFIX}:tenant_hourly:{tenant_id}",
                    self.per_hour * self.tenant_multiplier,
                    3600,
                ),
                Window(
                    "tenant_daily",
                    f"{KEY_PREFIX}:tenant_daily:{tenant_id}",
                    self.per_day * self.tenant_multiplier,
                    86400,
                ),
            ]
        return windows

    async def _window_status(self, window: Window, current: int) -> dict:
        ttl = await self.store.ttl(window.key)
        reset_at = None
        if ttl is not None:
            reset_at = (datetime.now(timezone.utc) + timedelta(seconds=ttl)).isoformat()
        return {
            "current": current,
            "limit": window.limit,
            "remaining": max(0, window.limit - current),
            "reset_at": reset_at,
            "reset_in_seconds": ttl,
        }

    async def hit(self, recipient_id: int | str, tenant_id: int | None = None) -> dict:
        """
        Count one attempt and raise RateLimitExceeded if any window is over.

        Rejected attempts still count toward the window.

        Returns:
            Status dict (same shape as get_status) after counting.
        """
        if not self.enabled:
            return {"enabled": False}

        status = {}
        exceeded_ttls = []
        for window in self._windows(recipient_id, tenant_id):
            current = await self.store.incr(window.key, ttl=window.seconds)
            status[window.name] = await self._window_status(window, current)
            if current > window.limit:
                exceeded_ttls.append(status[window.name]["reset_in_seconds"] or window.seconds)

        if exceeded_ttls:
            retry_after = max(exceeded_ttls)
            logger.warning(
                f"Rate limit exceeded for recipient {recipient_id} "
                f"(tenant {tenant_id}), retry after {retry_after}s"
            )
            raise RateLimitExceeded(retry_after=retry_after, status=status)

        return status

    async def get_status(
        self, recipient_id: int | str, tenant_id: int | None = None
    ) -> dict:
        """Current usage, remaining quota and reset time for every window."""
        status: dict = {"enabled": self.enabled}
        for window in self._windows(recipient_id, tenant_id):
            current = int(await self.store.get(window.key) or 0)
            status[window.name] = await self._window_status(window, current)
        return status

    async def clear(self, recipient_id: int | str, tenant_id: int | None = None) -> int:
        """
        Reset a recipient's counters (admin operation).

        Tenant-wide counters are left alone.

        Returns:
            Number of counter keys removed.
        """
        keys = [
            w.key
            for w in self._windows(recipient_id, tenant_id)
            if not w.name.startswith("tenant_")
        ]
        removed = await self.store.delete(*keys)
        logger.info(f"Cleared rate limit for recipient {recipient_id} (tenant {tenant_id})")
        return removed


_limiter: ReminderRateLimiter | None = None


def get_rate_limiter() -> ReminderRateLimiter:
    """Get or create the rate limiter bound to the process counter store."""
    global _limiter
    if _limiter is None:
        _limiter = ReminderRateLimiter(get_counter_store())
    return _limiter
