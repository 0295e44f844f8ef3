"""Tests for scheduler wiring and unique-work semantics."""

from __future__ import annotations

import asyncio
import datetime as dt

import pytest
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from step_mood.models import JobStatus
from step_mood.scheduler.service import (
    HOURLY_JOB_ID,
    INACTIVITY_JOB_ID,
    SchedulerService,
    UniqueWorkRunner,
)

DAY = dt.date(2024, 3, 11)


class TestBuildScheduler:
    def test_jobs_registered(self, services):
        service = SchedulerService(services)
        jobs = {job.id: job for job in service.scheduler.get_jobs()}

        assert set(jobs) == {HOURLY_JOB_ID, INACTIVITY_JOB_ID}
        assert isinstance(jobs[HOURLY_JOB_ID].trigger, CronTrigger)
        assert isinstance(jobs[INACTIVITY_JOB_ID].trigger, IntervalTrigger)
        assert jobs[INACTIVITY_JOB_ID].trigger.interval == dt.timedelta(minutes=15)
        for job in jobs.values():
            assert job.max_instances == 1
            assert job.coalesce is True

    def test_not_running_until_started(self, services):
        assert SchedulerService(services).is_running is False

    @pytest.mark.asyncio
    async def test_start_and_stop(self, services):
        service = SchedulerService(services)
        await service.start()
        assert service.is_running
        await service.stop()
        assert not service.is_running


class TestTriggers:
    @pytest.mark.asyncio
    async def test_manual_run_updates_stats(self, services):
        service = SchedulerService(services)
        result = await service.run_hourly(dt.datetime.combine(DAY, dt.time(10, 1)))

        assert result.status is JobStatus.SUCCESS
        stats = service.stats
        assert stats["total_runs"] == 1
        assert stats["failed_runs"] == 0
        assert stats["last_hourly_status"] == "success"

    @pytest.mark.asyncio
    async def test_inactivity_trigger(self, services):
        service = SchedulerService(services)
        result = await service.run_inactivity_check(dt.datetime.combine(DAY, dt.time(9, 0)))
        assert result.status is JobStatus.SKIPPED
        assert service.stats["last_inactivity_run"] is not None


class TestUniqueWorkRunner:
    @pytest.mark.asyncio
    async def test_new_submission_replaces_pending(self):
        runner = UniqueWorkRunner()
        started = asyncio.Event()

        async def slow() -> str:
            started.set()
            await asyncio.sleep(10)
            return "slow"

        async def fast() -> str:
            return "fast"

        first = asyncio.ensure_future(runner.submit("hourly", slow))
        await started.wait()
        assert runner.is_running("hourly")

        assert await runner.submit("hourly", fast) == "fast"
        with pytest.raises(asyncio.CancelledError):
            await first
        assert not runner.is_running("hourly")

    @pytest.mark.asyncio
    async def test_different_keys_run_independently(self):
        runner = UniqueWorkRunner()

        async def value(v: int) -> int:
            await asyncio.sleep(0)
            return v

        results = await asyncio.gather(
            runner.submit("a", lambda: value(1)),
            runner.submit("b", lambda: value(2)),
        )
        assert results == [1, 2]

    @pytest.mark.asyncio
    async def test_cancel_all(self):
        runner = UniqueWorkRunner()
        started = asyncio.Event()

        async def forever() -> None:
            started.set()
            await asyncio.sleep(3600)

        pending = asyncio.ensure_future(runner.submit("k", forever))
        await started.wait()
        await runner.cancel_all()
        assert not runner.is_running("k")
        with pytest.raises(asyncio.CancelledError):
            await pending
