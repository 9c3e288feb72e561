from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from fastapi.concurrency import run_in_threadpool

logger = logging.getLogger(__name__)


def seconds_until_hour(hour: int, now: datetime) -> float:
    """Seconds from ``now`` until the next ``hour``:00 local time."""
    if not 0 <= hour <= 23:
        raise ValueError("hour must be between 0 and 23.")
    target = now.replace(hour=hour, minute=0, second=0, microsecond=0)
    if target <= now:
        target += timedelta(days=1)
    return (target - now).total_seconds()


async def run_job(name: str, job: Callable[[], object]) -> None:
    """Run a blocking job in the thread pool; failures are logged, never raised."""
    logger.info("Running scheduled job %s", name)
    try:
        result = await run_in_threadpool(job)
    except Exception:
        logger.exception("Scheduled job %s failed", name)
        return
    logger.info("Scheduled job %s finished: %s", name, result)


async def run_daily(
    name: str,
    job: Callable[[], object],
    hour: int,
    clock: Callable[[], datetime] = datetime.now,
) -> None:
    while True:
        await asyncio.sleep(seconds_until_hour(hour, clock()))
        await run_job(name, job)


async def run_every(name: str, job: Callable[[], object], interval: timedelta) -> None:
    while True:
        await asyncio.sleep(interval.total_seconds())
        await run_job(name, job)


@dataclass
class Scheduler:
    tasks: List[asyncio.Task] = field(default_factory=list)

    def start(
        self,
        sweep: Callable[[], object],
        sweep_hour: int,
        renew_watches: Optional[Callable[[], object]] = None,
        renewal_interval: timedelta = timedelta(days=6),
    ) -> None:
        self.tasks.append(asyncio.create_task(run_daily("recurring-sweep", sweep, sweep_hour)))
        if renew_watches is not None:
            self.tasks.append(
                asyncio.create_task(run_every("gmail-watch-renewal", renew_watches, renewal_interval))
            )
        logger.info("Scheduler started with %d job(s)", len(self.tasks))

    async def stop(self) -> None:
        for task in self.tasks:
            task.cancel()
        await asyncio.gather(*self.tasks, return_exceptions=True)
        self.tasks.clear()
        logger.info("Scheduler stopped")
