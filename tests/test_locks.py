"""
Tests for per-key locks and the persisted job run-lock
"""

import pytest
import asyncio
from datetime import datetime, timezone, timedelta

from cryptonest.async_storage import AsyncInMemoryStorage
from cryptonest.locks import KeyedLocks, RunLock


pytest_plugins = ('pytest_asyncio',)

NOW = datetime(2026, 1, 1, tzinfo=timezone.utc)


class TestKeyedLocks:

    @pytest.mark.asyncio
    async def test_same_key_is_serialized(self):
        locks = KeyedLocks()
        events = []

        async def worker(name):
            async with locks.hold("user-1"):
                events.append(f"{name}-in")
                await asyncio.sleep(0.01)
                events.append(f"{name}-out")

        await asyncio.gather(worker("a"), worker("b"))

        assert events in (["a-in", "a-out", "b-in", "b-out"], ["b-in", "b-out", "a-in", "a-out"])

    @pytest.mark.asyncio
    async def test_different_keys_interleave(self):
        locks = KeyedLocks()
        inside = []
        overlap = []

        async def worker(key):
            async with locks.hold(key):
                inside.append(key)
                await asyncio.sleep(0.01)
                overlap.append(len(inside))
                inside.remove(key)

        await asyncio.gather(worker("user-1"), worker("user-2"))
        assert max(overlap) == 2

    @pytest.mark.asyncio
    async def test_locks_are_released_and_dropped(self):
        locks = KeyedLocks()
        async with locks.hold("user-1"):
            assert len(locks) == 1
        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_lock_dropped_after_exception(self):
        locks = KeyedLocks()
        with pytest.raises(RuntimeError):
            async with locks.hold("user-1"):
                raise RuntimeError("boom")
        assert len(locks) == 0


class TestRunLock:

    @pytest.mark.asyncio
    async def test_second_acquire_fails_while_held(self):
        lock = RunLock(AsyncInMemoryStorage())

        owner = await lock.acquire("job", 60, now=NOW)
        assert owner is not None
        assert await lock.holder("job") == owner
        assert await lock.acquire("job", 60, now=NOW + timedelta(seconds=30)) is None

    @pytest.mark.asyncio
    async def test_release_allows_reacquire(self):
        lock = RunLock(AsyncInMemoryStorage())

        owner = await lock.acquire("job", 60, now=NOW)
        assert await lock.release("job", owner) is True
        assert await lock.holder("job") is None

        assert await lock.acquire("job", 60, now=NOW) is not None

    @pytest.mark.asyncio
    async def test_release_by_non_owner_ignored(self):
        lock = RunLock(AsyncInMemoryStorage())
        owner = await lock.acquire("job", 60, now=NOW)

        assert await lock.release("job", "someone-else") is False
        assert await lock.holder("job") == owner

    @pytest.mark.asyncio
    async def test_expired_lease_is_taken_over(self):
        lock = RunLock(AsyncInMemoryStorage())
        stale = await lock.acquire("job", 60, now=NOW)

        fresh = await lock.acquire("job", 60, now=NOW + timedelta(seconds=61))
        assert fresh is not None and fresh != stale
        assert await lock.release("job", stale) is False

    @pytest.mark.asyncio
    async def test_racing_acquirers_single_winner(self):
        lock = RunLock(AsyncInMemoryStorage())
        owners = await asyncio.gather(*[lock.acquire("job", 60, now=NOW) for _ in range(5)])
        assert sum(owner is not None for owner in owners) == 1
