"""
Accrual Scheduler

Fires the accrual job once a day at a fixed UTC wall-clock time from a
background asyncio task.
"""

import asyncio
from contextlib import suppress
from datetime import datetime, timezone, timedelta
from typing import Any, Awaitable, Callable, Optional, Sequence

from .accrual import AccrualJob
from .logging_config import get_logger


logger = get_logger("cryptonest.scheduler")


def seconds_until_next_run(now: datetime, hour: int, minute: int) -> float:
    """Seconds from now until the next hour:minute UTC, always in (0, 86400]"""
    now = now.astimezone(timezone.utc)
    next_run = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if next_run <= now:
        next_run += timedelta(days=1)
    return (next_run - now).total_seconds()


class AccrualScheduler:
    """
    Daily trigger for AccrualJob.run_accrual_cycle.

    Housekeeping callables (expired reset-token purge) run on the same tick,
    after the accrual run.
    """

    def __init__(self, job: AccrualJob, hour_utc: int = 0, minute_utc: int = 0,
                 housekeeping: Sequence[Callable[[], Awaitable[Any]]] = ()):
        if not 0 <= hour_utc <= 23 or not 0 <= minute_utc <= 59:
            raise ValueError(f"Invalid accrual time {hour_utc:02d}:{minute_utc:02d} UTC")
        self.job = job
        self.hour_utc = hour_utc
        self.minute_utc = minute_utc
        self.housekeeping = list(housekeeping)
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run_forever(), name="accrual-scheduler")
        logger.info(
            f"Accrual scheduled daily at {self.hour_utc:02d}:{self.minute_utc:02d} UTC",
            extra={'action': 'scheduler_start'}
        )

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with suppress(asyncio.CancelledError):
            await self._task
        self._task = None

    async def _run_forever(self) -> None:
        while True:
            delay = seconds_until_next_run(datetime.now(timezone.utc), self.hour_utc, self.minute_utc)
            await asyncio.sleep(delay)
            await self.tick()

    async def tick(self) -> None:
        """Run one cycle and the housekeeping tasks; failures are logged and left for the next tick"""
        try:
            await self.job.run_accrual_cycle()
        except Exception:
            logger.exception("Accrual run failed", extra={'action': 'accrual_run'})

        for task in self.housekeeping:
            name = getattr(task, '__name__', repr(task))
            try:
                result = await task()
            except Exception:
                logger.exception(f"Housekeeping task {name} failed", extra={'action': 'housekeeping'})
                continue
            logger.info(f"Housekeeping task {name} finished: {result}", extra={'action': 'housekeeping'})
