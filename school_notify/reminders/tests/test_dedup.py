"""Tests for the reminder ledger against the in-memory tables."""

import pytest

from school_notify.enums import ReminderStatus
from school_notify.reminders import dedup
from school_notify.reminders.dedup import ReminderKey

KEY = ReminderKey("evt-1", 42, "hour_before", 60)


class TestClaimReminder:
    @pytest.mark.asyncio
    async def test_first_claim_wins(self, fake_db):
        async with fake_db.transaction() as conn:
            first = await dedup.claim_reminder(conn, KEY, ReminderStatus.sent, tenant_id=1)
            second = await dedup.claim_reminder(conn, KEY, ReminderStatus.failed, tenant_id=1)

        assert first is not None
        assert second is None
        assert fake_db.reminders[KEY]["status"] == "sent"

    @pytest.mark.asyncio
    async def test_offsets_are_distinct_occurrences(self, fake_db):
        other = ReminderKey("evt-1", 42, "day_before", 1440)

        async with fake_db.transaction() as conn:
            await dedup.claim_reminder(conn, KEY, ReminderStatus.sent)
            assert await dedup.claim_reminder(conn, other, ReminderStatus.sent) is not None

            assert await dedup.is_reminder_processed(conn, KEY)
            assert await dedup.get_processed_keys(
                conn, [KEY, other, ReminderKey("evt-2", 42, "hour_before", 60)]
            ) == {KEY, other}

    @pytest.mark.asyncio
    async def test_rolled_back_claim_is_released(self, fake_db):
        with pytest.raises(RuntimeError):
            async with fake_db.transaction() as conn:
                await dedup.claim_reminder(conn, KEY, ReminderStatus.sent)
                raise RuntimeError("notification insert failed")

        assert KEY not in fake_db.reminders

    @pytest.mark.asyncio
    async def test_attach_notification(self, fake_db):
        async with fake_db.transaction() as conn:
            row_id = await dedup.claim_reminder(conn, KEY, ReminderStatus.sent)
            await dedup.attach_notification(conn, row_id, 99)

        assert fake_db.reminders[KEY]["notification_id"] == 99

    @pytest.mark.asyncio
    async def test_counts(self, fake_db):
        async with fake_db.transaction() as conn:
            await dedup.claim_reminder(conn, KEY, ReminderStatus.sent, tenant_id=1)
            await dedup.claim_reminder(
                conn, ReminderKey("evt-2", 42, "hour_before", 60), ReminderStatus.skipped, tenant_id=2
            )
            counts = await dedup.get_reminder_counts(conn, tenant_id=1)

        assert counts["total"] == 1
        assert counts["by_status"] == {"sent": 1, "failed": 0, "skipped": 0}
        assert counts["by_type"] == {"hour_before": 1}
