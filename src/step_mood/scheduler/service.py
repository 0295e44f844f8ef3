"""Scheduler service — periodic triggers for the reconciliation jobs.

Architecture
~~~~~~~~~~~~
The ``SchedulerService`` runs as a background component within the FastAPI
lifespan.  It owns an APScheduler ``AsyncIOScheduler`` with two jobs:

* ``hourly_reconciliation`` — cron, every hour at ``hourly_job_minute``.
* ``inactivity_check`` — interval, every ``inactivity_check_interval_minutes``.

Both are registered with fixed ids, ``max_instances=1`` and ``coalesce=True``
so a backlog of missed fire times collapses into a single run.  Manual
triggers (API, CLI) go through :class:`UniqueWorkRunner`, which cancels a
still-pending run for the same key before starting the new one.
"""

from __future__ import annotations

import asyncio
import datetime as dt
from typing import Any, Awaitable, Callable

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from step_mood.models import JobStatus
from step_mood.scheduler.jobs import HourlyReconciliationJob, InactivityCheckJob, JobResult
from step_mood.services import Services

logger = structlog.get_logger(__name__)

HOURLY_JOB_ID = "hourly_reconciliation"
INACTIVITY_JOB_ID = "inactivity_check"


class UniqueWorkRunner:
    """Run at most one task per key; a new submission replaces the pending one."""

    def __init__(self) -> None:
        self._tasks: dict[str, asyncio.Task[Any]] = {}

    def is_running(self, key: str) -> bool:
        task = self._tasks.get(key)
        return task is not None and not task.done()

    async def submit(self, key: str, factory: Callable[[], Awaitable[Any]]) -> Any:
        previous = self._tasks.get(key)
        if previous is not None and not previous.done():
            logger.info("scheduler.work_replaced", key=key)
            previous.cancel()
            try:
                await previous
            except asyncio.CancelledError:
                pass
        task = asyncio.ensure_future(factory())
        self._tasks[key] = task
        try:
            return await task
        finally:
            if self._tasks.get(key) is task:
                del self._tasks[key]

    async def cancel_all(self) -> None:
        for task in list(self._tasks.values()):
            task.cancel()
        await asyncio.gather(*self._tasks.values(), return_exceptions=True)
        self._tasks.clear()


def build_scheduler(service: SchedulerService) -> AsyncIOScheduler:
    """Create and configure the APScheduler (not yet started)."""
    settings = service.services.settings
    scheduler = AsyncIOScheduler()

    scheduler.add_job(
        service.run_hourly,
        trigger="cron",
        minute=settings.hourly_job_minute,
        id=HOURLY_JOB_ID,
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    scheduler.add_job(
        service.run_inactivity_check,
        trigger="interval",
        minutes=settings.inactivity_check_interval_minutes,
        id=INACTIVITY_JOB_ID,
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    return scheduler


class SchedulerService:
    """Background service that fires the jobs on schedule.

    Integration::

        scheduler = SchedulerService(services)
        await scheduler.start()
        ...
        await scheduler.stop()
    """

    def __init__(self, services: Services) -> None:
        self.services = services
        self.hourly_job = HourlyReconciliationJob(services)
        self.inactivity_job = InactivityCheckJob(services)
        self._runner = UniqueWorkRunner()
        self._scheduler = build_scheduler(self)
        self._stats: dict[str, Any] = {
            "last_hourly_run": None,
            "last_hourly_status": None,
            "last_inactivity_run": None,
            "total_runs": 0,
            "failed_runs": 0,
        }

    @property
    def scheduler(self) -> AsyncIOScheduler:
        return self._scheduler

    # ── Lifecycle ─────────────────────────────────────────────

    async def start(self) -> None:
        if self._scheduler.running:
            return
        self._scheduler.start()
        logger.info(
            "scheduler.started",
            hourly_minute=self.services.settings.hourly_job_minute,
            inactivity_interval_minutes=self.services.settings.inactivity_check_interval_minutes,
        )

    async def stop(self) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        await self._runner.cancel_all()
        logger.info("scheduler.stopped")

    @property
    def is_running(self) -> bool:
        return self._scheduler.running

    @property
    def stats(self) -> dict[str, Any]:
        return dict(self._stats)

    # ── Triggers ──────────────────────────────────────────────

    async def run_hourly(self, now: dt.datetime | None = None) -> JobResult:
        result = await self._runner.submit(HOURLY_JOB_ID, lambda: self.hourly_job.run(now))
        self._record(result)
        self._stats["last_hourly_run"] = dt.datetime.now().isoformat()
        self._stats["last_hourly_status"] = result.status.value
        return result

    async def run_inactivity_check(self, now: dt.datetime | None = None) -> JobResult:
        result = await self._runner.submit(INACTIVITY_JOB_ID, lambda: self.inactivity_job.run(now))
        self._record(result)
        self._stats["last_inactivity_run"] = dt.datetime.now().isoformat()
        return result

    def _record(self, result: JobResult) -> None:
        self._stats["total_runs"] += 1
        if result.status is JobStatus.FAILED:
            self._stats["failed_runs"] += 1
