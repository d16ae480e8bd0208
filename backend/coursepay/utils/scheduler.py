"""
Job Scheduler — Periodic background jobs on the application's event loop.

Jobs are plain synchronous functions; each run is pushed to the threadpool so
database and gateway I/O never blocks request handling.
"""
import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from starlette.concurrency import run_in_threadpool

logger = logging.getLogger("coursepay.scheduler")


def seconds_until(hour: int, now: Optional[datetime] = None) -> float:
    """Seconds from `now` (UTC) to the next HH:00."""
    now = now or datetime.utcnow()
    target = now.replace(hour=hour, minute=0, second=0, microsecond=0)
    if target <= now:
        target += timedelta(days=1)
    return (target - now).total_seconds()


class Scheduler:
    def __init__(self):
        self._tasks: List[asyncio.Task] = []

    @property
    def jobs(self) -> List[str]:
        return [task.get_name() for task in self._tasks if not task.done()]

    async def run_job(self, name: str, job: Callable[[], object]) -> None:
        started = datetime.utcnow()
        try:
            await run_in_threadpool(job)
            logger.info("Job %s finished in %.2fs", name, (datetime.utcnow() - started).total_seconds())
        except Exception:
            # One failed run must not stop the schedule
            logger.exception("Job %s failed", name)

    def schedule_periodic(
        self, name: str, interval_seconds: float, job: Callable[[], object], initial_delay: float = 0,
    ) -> asyncio.Task:
        async def periodic():
            await asyncio.sleep(initial_delay)
            while True:
                await self.run_job(name, job)
                await asyncio.sleep(interval_seconds)

        task = asyncio.create_task(periodic(), name=name)
        self._tasks.append(task)
        logger.info("Scheduled %s every %ss (first run in %.0fs)", name, interval_seconds, initial_delay)
        return task

    def schedule_daily(self, name: str, hour: int, job: Callable[[], object]) -> asyncio.Task:
        return self.schedule_periodic(name, 86400, job, initial_delay=seconds_until(hour))

    async def cancel_all(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        logger.info("All scheduled jobs cancelled")
