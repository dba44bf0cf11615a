"""
Asyncio job scheduler: fixed-interval jobs and wall-clock (daily / weekly)
jobs in one configured time zone.

Each job owns a lock. A fire that finds the lock held is skipped and
logged, so runs of the same job never overlap (manual triggers included).
"""

import asyncio
import os
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set
from zoneinfo import ZoneInfo

from loguru import logger

JobFunc = Callable[[], Awaitable[Any]]

DEFAULT_TIMEZONE = "Europe/Moscow"


def next_wall_clock_run(now: datetime, hour: int, minute: int = 0, weekday: Optional[int] = None) -> datetime:
    """
    Next time strictly after ``now`` that falls on ``hour:minute``.

    Args:
        now: Aware datetime in the scheduler's time zone
        weekday: Monday=0 .. Sunday=6; None means every day
    """
    candidate = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if candidate <= now:
        candidate += timedelta(days=1)
    if weekday is not None:
        candidate += timedelta(days=(weekday - candidate.weekday()) % 7)
    return candidate


class Job:
    def __init__(self, name: str, func: JobFunc, interval: Optional[float] = None,
                 hour: Optional[int] = None, minute: int = 0, weekday: Optional[int] = None,
                 run_immediately: bool = False):
        self.name = name
        self.func = func
        self.interval = interval
        self.hour = hour
        self.minute = minute
        self.weekday = weekday
        self.run_immediately = run_immediately
        self.lock = asyncio.Lock()
        self.last_run: Optional[datetime] = None
        self.runs = 0
        self.skipped = 0

    def seconds_until_next(self, now: datetime) -> float:
        if self.interval is not None:
            return self.interval
        return (next_wall_clock_run(now, self.hour, self.minute, self.weekday) - now).total_seconds()


class Scheduler:
    def __init__(self, tz: Optional[str] = None):
        self.tz = ZoneInfo(tz or os.getenv("SCHEDULER_TIMEZONE", DEFAULT_TIMEZONE))
        self.jobs: Dict[str, Job] = {}
        self.stop_event = asyncio.Event()
        self._tasks: List[asyncio.Task] = []
        self._runs: Set[asyncio.Task] = set()

    def every(self, name: str, seconds: float, func: JobFunc, run_immediately: bool = False) -> Job:
        job = Job(name, func, interval=seconds, run_immediately=run_immediately)
        self.jobs[name] = job
        logger.info(f"Job {name} scheduled every {seconds:.0f}s")
        return job

    def cron(self, name: str, func: JobFunc, hour: int, minute: int = 0, weekday: Optional[int] = None) -> Job:
        job = Job(name, func, hour=hour, minute=minute, weekday=weekday)
        self.jobs[name] = job
        when = f"{hour:02d}:{minute:02d}" + ("" if weekday is None else f" on weekday {weekday}")
        logger.info(f"Job {name} scheduled at {when} ({self.tz.key})")
        return job

    def now(self) -> datetime:
        return datetime.now(self.tz)

    async def trigger(self, name: str) -> bool:
        """Run a job now. Returns False if it was skipped because a run is active."""
        job = self.jobs[name]
        if job.lock.locked():
            job.skipped += 1
            logger.warning(f"Job {name} is still running, skipping this fire")
            return False

        async with job.lock:
            job.last_run = self.now()
            try:
                await job.func()
            except Exception as e:
                logger.error(f"Job {name} failed: {e}")
            finally:
                job.runs += 1
        return True

    async def _loop(self, job: Job) -> None:
        if job.run_immediately:
            await self.trigger(job.name)

        while not self.stop_event.is_set():
            delay = job.seconds_until_next(self.now())
            try:
                await asyncio.wait_for(self.stop_event.wait(), timeout=delay)
                break
            except asyncio.TimeoutError:
                pass
            # overlapping fires are skipped inside trigger()
            run = asyncio.create_task(self.trigger(job.name))
            self._runs.add(run)
            run.add_done_callback(self._runs.discard)

    def start(self) -> None:
        self.stop_event.clear()
        for job in self.jobs.values():
            self._tasks.append(asyncio.create_task(self._loop(job), name=f"scheduler:{job.name}"))
        logger.info(f"Scheduler started with {len(self.jobs)} jobs")

    async def stop(self, timeout: float = 30) -> None:
        """Stop the loops and wait for running jobs to finish their current unit of work."""
        self.stop_event.set()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
            self._tasks = []

        for job in self.jobs.values():
            if job.lock.locked():
                try:
                    await asyncio.wait_for(job.lock.acquire(), timeout=timeout)
                    job.lock.release()
                except asyncio.TimeoutError:
                    logger.warning(f"Job {job.name} did not finish within {timeout}s")
        logger.info("Scheduler stopped")
