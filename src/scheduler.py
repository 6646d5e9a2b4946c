"""
Timer scheduling for retries, cache sweeps and periodic service loops
All delayed work in the server registers here so tests can drive time manually
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional, Set

logger = logging.getLogger(__name__)

JobCallback = Callable[[], Awaitable[None]]


class ScheduledJob:
    """Handle for a scheduled callback"""

    def __init__(self, name: str, interval: Optional[float] = None):
        self.name = name
        self.interval = interval  # None for one-shot jobs
        self.cancelled = False
        self._task: Optional[asyncio.Task] = None

    @property
    def repeating(self) -> bool:
        return self.interval is not None

    def cancel(self) -> None:
        self.cancelled = True
        if self._task and not self._task.done():
            self._task.cancel()


class Scheduler:
    """asyncio-backed scheduler"""

    def __init__(self):
        self._jobs: Set[ScheduledJob] = set()

    def now(self) -> float:
        return time.time()

    def call_later(self, delay: float, callback: JobCallback, name: str = "job") -> ScheduledJob:
        job = ScheduledJob(name)
        job._task = asyncio.create_task(self._run_once(job, delay, callback))
        self._jobs.add(job)
        return job

    def call_every(self, interval: float, callback: JobCallback, name: str = "periodic") -> ScheduledJob:
        job = ScheduledJob(name, interval)
        job._task = asyncio.create_task(self._run_periodic(job, callback))
        self._jobs.add(job)
        return job

    async def _run_once(self, job: ScheduledJob, delay: float, callback: JobCallback) -> None:
        try:
            await asyncio.sleep(max(0.0, delay))
            if not job.cancelled:
                await callback()
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error(f"Scheduled job '{job.name}' failed: {e}")
        finally:
            self._jobs.discard(job)

    async def _run_periodic(self, job: ScheduledJob, callback: JobCallback) -> None:
        try:
            while not job.cancelled:
                await asyncio.sleep(job.interval)
                if job.cancelled:
                    break
                try:
                    await callback()
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.error(f"Periodic job '{job.name}' failed: {e}")
        except asyncio.CancelledError:
            pass
        finally:
            self._jobs.discard(job)

    @property
    def pending_jobs(self) -> int:
        return len(self._jobs)

    async def shutdown(self) -> None:
        """Cancel every outstanding job and wait for the tasks to unwind"""
        jobs = list(self._jobs)
        tasks = []
        for job in jobs:
            job.cancel()
            if job._task:
                tasks.append(job._task)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._jobs.clear()
