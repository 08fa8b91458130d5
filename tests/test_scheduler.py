"""
Test suite for the daily accrual trigger
"""

import pytest
import asyncio
from datetime import datetime, timezone, timedelta

from cryptonest.scheduler import AccrualScheduler, seconds_until_next_run


pytest_plugins = ('pytest_asyncio',)


class FakeJob:
    def __init__(self, error=None):
        self.error = error
        self.calls = 0

    async def run_accrual_cycle(self, now=None):
        self.calls += 1
        if self.error:
            raise self.error


class TestNextRun:

    @pytest.mark.parametrize("now,hour,minute,expected", [
        (datetime(2026, 1, 1, 9, 30, tzinfo=timezone.utc), 0, 0, 14.5 * 3600),
        (datetime(2026, 1, 1, 0, 0, tzinfo=timezone.utc), 0, 0, 86400),
        (datetime(2026, 1, 1, 23, 59, 30, tzinfo=timezone.utc), 0, 0, 30),
        (datetime(2026, 1, 1, 1, 0, tzinfo=timezone.utc), 2, 15, 4500),
    ])
    def test_seconds_until_next_run(self, now, hour, minute, expected):
        assert seconds_until_next_run(now, hour, minute) == expected

    def test_converts_to_utc(self):
        plus_two = timezone(timedelta(hours=2))
        now = datetime(2026, 1, 1, 10, 0, tzinfo=plus_two)

        assert seconds_until_next_run(now, 9, 0) == 3600

    @pytest.mark.parametrize("hour,minute", [(24, 0), (-1, 0), (0, 60)])
    def test_invalid_time(self, hour, minute):
        with pytest.raises(ValueError):
            AccrualScheduler(FakeJob(), hour_utc=hour, minute_utc=minute)


class TestScheduler:

    @pytest.mark.asyncio
    async def test_tick_survives_failed_run(self):
        job = FakeJob(error=RuntimeError("store unavailable"))
        scheduler = AccrualScheduler(job)

        await scheduler.tick()
        await scheduler.tick()

        assert job.calls == 2

    @pytest.mark.asyncio
    async def test_start_and_stop(self):
        scheduler = AccrualScheduler(FakeJob(), hour_utc=3, minute_utc=30)
        assert not scheduler.running

        scheduler.start()
        scheduler.start()
        await asyncio.sleep(0)
        assert scheduler.running

        await scheduler.stop()
        assert not scheduler.running

        # Stopping again is a no-op
        await scheduler.stop()


class TestHousekeeping:

    @pytest.mark.asyncio
    async def test_runs_after_failed_accrual(self):
        calls = []

        async def purge():
            calls.append("purge")
            return 3

        scheduler = AccrualScheduler(FakeJob(error=RuntimeError("boom")), housekeeping=[purge])
        await scheduler.tick()

        assert calls == ["purge"]

    @pytest.mark.asyncio
    async def test_failing_task_does_not_stop_the_rest(self):
        calls = []

        async def broken():
            raise RuntimeError("store unavailable")

        async def purge():
            calls.append("purge")

        job = FakeJob()
        scheduler = AccrualScheduler(job, housekeeping=[broken, purge])
        await scheduler.tick()

        assert job.calls == 1
        assert calls == ["purge"]

    @pytest.mark.asyncio
    async def test_daily_tick_purges_expired_reset_tokens(self, system):
        an_hour_ago = datetime.now(timezone.utc) - timedelta(hours=1)
        await system.reset_store.issue("u1", now=an_hour_ago)
        live = await system.reset_store.issue("u2")

        await system.scheduler.tick()

        assert await system.storage.count(system.reset_store.table_name) == 1
        assert await system.reset_store.consume(live) == "u2"
