"""Pytest configuration and fixtures for CamLink Local Server tests."""

import os
import sys

# Add the src directory to Python path for imports
SRC_ROOT = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), 'src')
if SRC_ROOT not in sys.path:
    sys.path.insert(0, SRC_ROOT)

from typing import List, Optional, Tuple

import pytest

from scheduler import ScheduledJob


# =============================================================================
# Manual scheduler
# =============================================================================


class ManualScheduler:
    """Scheduler whose clock only moves when a test calls advance()."""

    def __init__(self, start: float = 1_000_000.0):
        self._now = start
        self._entries: List[Tuple[float, int, ScheduledJob, object]] = []
        self._sequence = 0
        self.history: List[Tuple[str, float]] = []   # (job name, delay) for every call_later

    def now(self) -> float:
        return self._now

    def call_later(self, delay, callback, name="job"):
        job = ScheduledJob(name)
        self.history.append((name, delay))
        self._push(self._now + max(0.0, delay), job, callback)
        return job

    def call_every(self, interval, callback, name="periodic"):
        job = ScheduledJob(name, interval)
        self._push(self._now + interval, job, callback)
        return job

    def _push(self, due, job, callback):
        self._sequence += 1
        self._entries.append((due, self._sequence, job, callback))

    @property
    def pending_jobs(self) -> int:
        return sum(1 for _, _, job, _ in self._entries if not job.cancelled)

    def pending(self, name_prefix: str = "") -> List[ScheduledJob]:
        return [job for _, _, job, _ in self._entries if not job.cancelled and job.name.startswith(name_prefix)]

    def next_due(self) -> Optional[float]:
        live = [due for due, _, job, _ in self._entries if not job.cancelled]
        return min(live) - self._now if live else None

    async def advance(self, seconds: float) -> None:
        """Move the clock forward, running due callbacks in time order."""
        target = self._now + seconds
        while True:
            live = sorted((e for e in self._entries if not e[2].cancelled), key=lambda e: (e[0], e[1]))
            if not live or live[0][0] > target:
                break
            entry = live[0]
            self._entries.remove(entry)
            due, _, job, callback = entry
            self._now = max(self._now, due)
            if job.repeating:
                self._push(due + job.interval, job, callback)
            await callback()
        self._now = target

    async def run_due(self) -> None:
        await self.advance(0)

    async def shutdown(self) -> None:
        for _, _, job, _ in self._entries:
            job.cancel()
        self._entries.clear()


@pytest.fixture
def manual_scheduler():
    return ManualScheduler()


class FakeClock:
    """Callable clock for components that take clock=..."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def fake_clock():
    return FakeClock()
