"""
Locking Module

Per-key in-process mutual exclusion for account mutations, and a persisted
run-lock that keeps two accrual runs from overlapping across processes.
"""

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone, timedelta
from typing import Dict, Optional
import uuid

from .async_storage import AsyncStorageInterface
from .logging_config import get_logger


logger = get_logger("cryptonest.locks")


class KeyedLocks:
    """asyncio.Lock per key, dropped once no coroutine holds or waits on it"""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._waiters: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str):
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                del self._waiters[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


class RunLock:
    """
    Persisted lease on a job name.

    A holder that dies without releasing is ignored once the lease expires.
    Acquisition is a compare-and-save on the lock document's version, so two
    processes racing for the same expired lease cannot both win.
    """

    def __init__(self, storage: AsyncStorageInterface, table_name: str = "job_locks"):
        self.storage = storage
        self.table_name = table_name

    async def acquire(self, job_name: str, ttl_seconds: int,
                      now: Optional[datetime] = None) -> Optional[str]:
        """Return an owner token on success, None when another run holds the lease"""
        now = now or datetime.now(timezone.utc)
        owner = str(uuid.uuid4())
        current = await self.storage.load(self.table_name, job_name)

        if current and current.get('owner'):
            expires_at = datetime.fromisoformat(current['expires_at'])
            if expires_at > now:
                return None
            logger.warning(
                f"Abandoning expired {job_name} lease held by {current['owner']}",
                extra={'action': 'lock_expired', 'resource': job_name}
            )

        expected_version = current.get('version') if current else None
        lease = {
            'id': job_name,
            'owner': owner,
            'acquired_at': now.isoformat(),
            'expires_at': (now + timedelta(seconds=ttl_seconds)).isoformat(),
            'version': (expected_version or 0) + 1
        }
        if await self.storage.compare_and_save(self.table_name, job_name, lease, expected_version):
            return owner
        return None

    async def release(self, job_name: str, owner: str) -> bool:
        """Release the lease if it is still ours"""
        current = await self.storage.load(self.table_name, job_name)
        if not current or current.get('owner') != owner:
            return False

        released = dict(current)
        released['owner'] = None
        released['version'] = current['version'] + 1
        return await self.storage.compare_and_save(
            self.table_name, job_name, released, current['version']
        )

    async def holder(self, job_name: str) -> Optional[str]:
        current = await self.storage.load(self.table_name, job_name)
        return current.get('owner') if current else None
