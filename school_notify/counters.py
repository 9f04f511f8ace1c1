"""
Counter store used by the rate limiter and health monitor.

The pipeline only needs a small key-value surface: atomic increment with a
TTL that starts when the key is created, plus get/set/delete. CounterStore
is the interface; MemoryCounterStore is the in-process implementation used
by the single-process deployment and by tests.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from typing import Any, Callable


class CounterStore(ABC):
    """Key-value store with atomic increment and per-key expiry."""

    @abstractmethod
    async def incr(self, key: str, amount: int = 1, ttl: int | None = None) -> int:
        """
        Atomically add `amount` to `key` and return the new value.

        `ttl` (seconds) is applied only when the key is created, so the
        window opens at the first increment.
        """

    @abstractmethod
    async def get(self, key: str) -> Any:
        """Return the stored value, or None if missing or expired."""

    @abstractmethod
    async def set(self, key: str, value: Any, ttl: int | None = None) -> None:
        ...

    @abstractmethod
    async def ttl(self, key: str) -> int | None:
        """Seconds until `key` expires, or None if missing or persistent."""

    @abstractmethod
    async def delete(self, *keys: str) -> int:
        """Delete keys and return how many existed."""


class MemoryCounterStore(CounterStore):
    """
    In-process counter store.

    Args:
        clock: Monotonic clock in seconds; injectable so tests can move time.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        # {key: (value, expires_at or None)}
        self._data: dict[str, tuple[Any, float | None]] = {}
        self._lock = asyncio.Lock()

    def _live(self, key: str) -> tuple[Any, float | None] | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        _, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            del self._data[key]
            return None
        return entry

    async def incr(self, key: str, amount: int = 1, ttl: int | None = None) -> int:
        async with self._lock:
            entry = self._live(key)
            if entry is None:
                expires_at = self._clock() + ttl if ttl else None
                value = amount
            else:
                value = int(entry[0]) + amount
                expires_at = entry[1]
            self._data[key] = (value, expires_at)
            return value

    async def get(self, key: str) -> Any:
        async with self._lock:
            entry = self._live(key)
            return entry[0] if entry else None

    async def set(self, key: str, value: Any, ttl: int | None = None) -> None:
        async with self._lock:
            expires_at = self._clock() + ttl if ttl else None
            self._data[key] = (value, expires_at)

    async def ttl(self, key: str) -> int | None:
        async with self._lock:
            entry = self._live(key)
            if entry is None or entry[1] is None:
                return None
            return max(0, int(round(entry[1] - self._clock())))

    async def delete(self, *keys: str) -> int:
        async with self._lock:
            removed = 0
            for key in keys:
                if self._live(key) is not None:
                    del self._data[key]
                    removed += 1
            return removed


_store: CounterStore | None = None


def get_counter_store() -> CounterStore:
    """Get or create the process-wide counter store."""
    global _store
    if _store is None:
        _store = MemoryCounterStore()
    return _store


def set_counter_store(store: CounterStore | None) -> None:
    """Swap the process-wide store (tests, or a shared cache backend)."""
    global _store
    _store = store
