"""Tests for the delivery health monitor."""

import logging
from unittest.mock import patch

import pytest

from school_notify.counters import MemoryCounterStore
from school_notify.health import HealthMonitor


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def monitor(clock):
    return HealthMonitor(MemoryCounterStore(clock=clock), window_seconds=1800, clock=clock)


class TestMetrics:
    @pytest.mark.asyncio
    async def test_no_attempts_is_healthy(self, monitor):
        metrics = await monitor.get_metrics()

        assert metrics["healthy"] is True
        assert metrics["failure_rate"] == 0
        assert metrics["attempts"] == 0

    @pytest.mark.asyncio
    async def test_two_failures_out_of_ten_is_unhealthy(self, monitor):
        """20% failure rate is over the 10% threshold."""
        for _ in range(8):
            await monitor.record_success()
        for _ in range(2):
            await monitor.record_failure("boom")

        metrics = await monitor.get_metrics()

        assert metrics["failure_rate"] == 20.0
        assert metrics["consecutive_failures"] == 2
        assert metrics["healthy"] is False

    @pytest.mark.asyncio
    async def test_one_failure_out_of_twenty_is_healthy(self, monitor):
        await monitor.record_failure("boom")
        for _ in range(19):
            await monitor.record_success()

        metrics = await monitor.get_metrics()

        assert metrics["failure_rate"] == 5.0
        assert metrics["consecutive_failures"] == 0
        assert metrics["healthy"] is True

    @pytest.mark.asyncio
    async def test_success_resets_consecutive_failures(self, monitor):
        for _ in range(3):
            await monitor.record_failure("boom")
        await monitor.record_success()

        metrics = await monitor.get_metrics()

        assert metrics["consecutive_failures"] == 0
        assert metrics["last_processed_at"] is not None

    @pytest.mark.asyncio
    async def test_window_expires_attempts(self, monitor, clock):
        await monitor.record_failure("boom")
        clock.now += 1801

        metrics = await monitor.get_metrics()

        assert metrics["attempts"] == 0
        assert metrics["failure_rate"] == 0

    @pytest.mark.asyncio
    async def test_attempts_and_failures_share_one_window(self, monitor, clock):
        """Failures never outlive the attempts they were counted with."""
        await monitor.record_success()
        clock.now = 1700
        await monitor.record_failure("boom")
        await monitor.record_failure("boom")

        assert (await monitor.get_metrics())["failure_rate"] == round(2 / 3 * 100, 2)

        clock.now = 1801
        await monitor.record_success()

        metrics = await monitor.get_metrics()
        assert metrics["attempts"] == 1
        assert metrics["failures"] == 0
        assert metrics["failure_rate"] == 0
        assert metrics["healthy"] is True

    @pytest.mark.asyncio
    async def test_failure_rate_never_exceeds_100(self, monitor, clock):
        for step in range(0, 7200, 300):
            clock.now = step
            if step % 600:
                await monitor.record_failure("boom")
            else:
                await monitor.record_success()
            assert (await monitor.get_metrics())["failure_rate"] <= 100

    @pytest.mark.asyncio
    async def test_queue_size(self, monitor):
        await monitor.set_queue_size(12)

        assert (await monitor.get_metrics())["queue_size"] == 12


class TestConsecutiveFailureAlert:
    @pytest.mark.asyncio
    async def test_alerts_once_when_streak_reaches_threshold(self, monitor, caplog):
        with patch("school_notify.health.sentry_sdk") as mock_sentry:
            with caplog.at_level(logging.ERROR):
                for _ in range(7):
                    await monitor.record_failure("provider down")

        mock_sentry.capture_message.assert_called_once()
        assert sum("consecutive failures" in r.message for r in caplog.records) == 1
        assert await monitor.is_healthy() is False

    @pytest.mark.asyncio
    async def test_reset_clears_window_and_streak(self, monitor):
        for _ in range(5):
            await monitor.record_failure("boom")

        assert await monitor.reset() == 3

        metrics = await monitor.get_metrics()
        assert metrics["attempts"] == 0
        assert metrics["consecutive_failures"] == 0
        assert metrics["healthy"] is True
