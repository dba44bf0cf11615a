import asyncio
from datetime import datetime
from zoneinfo import ZoneInfo

from pipeline.scheduler import Scheduler, next_wall_clock_run

MSK = ZoneInfo("Europe/Moscow")


class TestNextWallClockRun:

    def test_later_today(self):
        now = datetime(2026, 10, 21, 8, 0, tzinfo=MSK)
        assert next_wall_clock_run(now, 9) == datetime(2026, 10, 21, 9, 0, tzinfo=MSK)

    def test_already_passed_moves_to_tomorrow(self):
        now = datetime(2026, 10, 21, 18, 30, tzinfo=MSK)
        assert next_wall_clock_run(now, 18) == datetime(2026, 10, 22, 18, 0, tzinfo=MSK)

    def test_weekly_monday(self):
        wednesday = datetime(2026, 10, 21, 12, 0, tzinfo=MSK)
        assert next_wall_clock_run(wednesday, 10, weekday=0) == datetime(2026, 10, 26, 10, 0, tzinfo=MSK)

    def test_weekly_same_day(self):
        """Test a weekly job runs today before its hour and next week once it has passed."""
        monday_early = datetime(2026, 10, 26, 9, 0, tzinfo=MSK)
        assert next_wall_clock_run(monday_early, 10, weekday=0) == datetime(2026, 10, 26, 10, 0, tzinfo=MSK)

        monday_on_time = datetime(2026, 10, 26, 10, 0, tzinfo=MSK)
        assert next_wall_clock_run(monday_on_time, 10, weekday=0) == datetime(2026, 11, 2, 10, 0, tzinfo=MSK)


class TestScheduler:
    """Test the job loops and the per-job lock."""

    async def test_overlapping_fire_is_skipped(self):
        """Test a job still running is not started a second time."""
        scheduler = Scheduler("Europe/Moscow")
        release = asyncio.Event()
        calls = []

        async def slow_poll():
            calls.append(1)
            await release.wait()

        job = scheduler.every("poll", 60, slow_poll)
        first = asyncio.create_task(scheduler.trigger("poll"))
        await asyncio.sleep(0)

        assert await scheduler.trigger("poll") is False
        assert job.skipped == 1

        release.set()
        assert await first is True
        assert calls == [1]
        assert job.runs == 1

    async def test_job_failure_is_contained(self):
        """Test a failing job is counted and releases its lock."""
        scheduler = Scheduler("UTC")

        async def broken():
            raise RuntimeError("boom")

        job = scheduler.every("poll", 60, broken)

        assert await scheduler.trigger("poll") is True
        assert job.runs == 1
        assert not job.lock.locked()

    async def test_run_immediately_then_stop(self):
        scheduler = Scheduler("UTC")
        calls = []

        async def poll():
            calls.append(1)

        scheduler.every("poll", 3600, poll, run_immediately=True)
        scheduler.cron("digest", poll, hour=9)
        scheduler.start()
        await scheduler.stop()

        assert calls == [1]
        assert scheduler.stop_event.is_set()

    async def test_interval_fires(self):
        scheduler = Scheduler("UTC")
        calls = []

        async def tick():
            calls.append(1)

        scheduler.every("tick", 0.01, tick)
        scheduler.start()
        await asyncio.sleep(0.1)
        await scheduler.stop()

        assert len(calls) >= 1
