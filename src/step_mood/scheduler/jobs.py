"""Scheduled units of work: hourly reconciliation, day close-out, inactivity checks.

Every invocation may be skipped, delayed, repeated or overlapped by another.
Correctness comes from idempotent keyed writes plus two fingerprints on the
mood record (``last_applied_hour`` and ``finalized``), never from mutual
exclusion.

Hourly protocol, given *now*:

1. Hour 0 closes the latest open day, normally yesterday (ledger hour 23 and
   gaps, mood replay, finalise, archive, reset the reconciler, seed today,
   purge) and stops there.  Only this close-out moves the reconciler onto a
   new day.
2. A missing mood record for today with an earlier day still open means the
   rollover was missed, possibly for several days: close that day, seed today
   from its end mood, then carry on.
3. Settle the previous hour in the ledger (direct measurement kept, otherwise
   derived from the running total) and heal any earlier gaps.
4. Replay mood for every hour not yet applied, persist it together with
   ``last_persisted_steps``, and record mood drops.
5. Write a :class:`JobRun` fingerprint.

Storage failures retry the whole invocation with exponential backoff; once
attempts are exhausted the run is reported as failed and the next scheduled
run picks up from whatever was already written.
"""

from __future__ import annotations

import asyncio
import datetime as dt
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any, Awaitable, Callable

import structlog
from sqlalchemy.exc import SQLAlchemyError

from step_mood.logger import job_context
from step_mood.models import (
    DailyStatistics,
    HistoricalHourlyStep,
    HourlyStepRecord,
    JobRun,
    JobStatus,
    MoodRecord,
    NotificationKind,
)
from step_mood.monitors.inactivity import InactivityTracker
from step_mood.monitors.mood_drop import MoodDropMonitor, drop_message
from step_mood.mood.engine import MoodEngine, MoodPolicy
from step_mood.scheduler.retry import ExponentialBackoff, RetryExhaustedError, with_retry
from step_mood.storage.preferences import UserPreferences

if TYPE_CHECKING:
    from step_mood.services import Services

logger = structlog.get_logger(__name__)

RETRYABLE_ERRORS: tuple[type[BaseException], ...] = (SQLAlchemyError, OSError)


# ── Results & context ─────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class JobResult:
    """Outcome of one job invocation."""

    status: JobStatus
    date: dt.date
    hour: int | None = None
    previous_mood: int | None = None
    new_mood: int | None = None
    steps: int | None = None
    total_steps: int | None = None
    attempts: int = 1
    notified: bool = False
    error: str = ""


@dataclass(frozen=True, slots=True)
class ReconciliationContext:
    """Everything one hourly run reads before it writes."""

    now: dt.datetime
    preferences: UserPreferences
    mood_record: MoodRecord
    hourly: dict[int, HourlyStepRecord]
    total_today: int

    @property
    def today(self) -> dt.date:
        return self.now.date()

    @property
    def previous_hour(self) -> int:
        return self.now.hour - 1


class _RetryingJob(ABC):
    """Shared retry/fingerprint plumbing for scheduled jobs."""

    name = "job"

    def __init__(
        self,
        services: Services,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._services = services
        self._sleep = sleep

    async def run(self, now: dt.datetime | None = None) -> JobResult:
        now = now or dt.datetime.now()
        with job_context(self.name, at=now.isoformat(timespec="minutes")):
            return await self._run(now)

    async def _run(self, now: dt.datetime) -> JobResult:
        started = dt.datetime.now()
        settings = self._services.settings
        attempts = 0

        def count(attempt: int) -> None:
            nonlocal attempts
            attempts = attempt

        @with_retry(
            settings.job_max_attempts,
            ExponentialBackoff(settings.job_backoff_base_seconds, settings.job_backoff_max_seconds),
            retry_on=RETRYABLE_ERRORS,
            sleep=self._sleep,
            on_attempt=count,
        )
        async def attempt() -> JobResult:
            return await self._execute(now)

        try:
            result = await attempt()
        except RetryExhaustedError as exc:
            logger.error(f"job.{self.name}.failed", attempts=exc.attempts, error=str(exc.last_error))
            result = JobResult(
                status=JobStatus.FAILED,
                date=now.date(),
                hour=now.hour,
                error=str(exc.last_error),
            )
        result = replace(result, attempts=attempts)
        await self._fingerprint(result, started)
        return result

    @abstractmethod
    async def _execute(self, now: dt.datetime) -> JobResult:
        """One attempt of the job; storage errors trigger a retry."""

    async def _fingerprint(self, result: JobResult, started: dt.datetime) -> None:
        run = JobRun(
            job_name=self.name,
            date=result.date,
            hour=result.hour,
            status=result.status,
            attempts=result.attempts,
            previous_mood=result.previous_mood,
            new_mood=result.new_mood,
            steps=result.steps,
            total_steps=result.total_steps,
            error=result.error,
            started_at=started,
            finished_at=dt.datetime.now(),
        )
        try:
            await self._services.job_runs.save(run)
        except RETRYABLE_ERRORS:
            logger.exception(f"job.{self.name}.fingerprint_failed")
        logger.info(
            f"job.{self.name}.finished",
            status=result.status.value,
            date=result.date.isoformat(),
            hour=result.hour,
            previous_mood=result.previous_mood,
            new_mood=result.new_mood,
            steps=result.steps,
            total=result.total_steps,
            attempts=result.attempts,
        )


# ── Hourly reconciliation ─────────────────────────────────────


class HourlyReconciliationJob(_RetryingJob):
    """The recurring unit that keeps ledger and mood current."""

    name = "hourly_reconciliation"

    def in_rollover_window(self, now: dt.datetime) -> bool:
        return now.hour == 0 and now.minute < self._services.settings.rollover_window_minutes

    async def _execute(self, now: dt.datetime) -> JobResult:
        services = self._services
        today = now.date()
        yesterday = today - dt.timedelta(days=1)
        prefs = await services.preferences.load()

        if now.hour == 0:
            if not self.in_rollover_window(now):
                logger.info("job.hourly.late_rollover", now=now.isoformat())
            closed_day, closed = await self._close_pending_day(today, now, prefs)
            if closed_day is None:
                closed_day = yesterday
                closed = await self.close_day(yesterday, now, prefs)
            record = await services.moods.get(today)
            return JobResult(
                status=JobStatus.ROLLOVER if closed else JobStatus.SKIPPED,
                date=closed_day,
                hour=23,
                new_mood=record.mood if record else None,
            )

        record = await services.moods.get(today)
        if record is None:
            await self._close_pending_day(today, now, prefs)
            record = await services.moods.get(today)

        await services.sync_reconciler(today, advance=True)
        total = services.reconciler.get_total_today()

        if record is None:
            record = await self._seed_today(today, now.hour - 1)

        await self._settle_hour(today, now.hour - 1, total)
        ctx = ReconciliationContext(
            now=now,
            preferences=prefs,
            mood_record=record,
            hourly={r.hour: r for r in await services.ledger.get_hours_for_date(today)},
            total_today=total,
        )
        return await self._apply_mood(ctx)

    async def _close_pending_day(
        self, today: dt.date, now: dt.datetime, prefs: UserPreferences
    ) -> tuple[dt.date | None, bool]:
        """Close the latest day left open before *today* and open *today* from it.

        A day is open when its mood record was never finalised, or when the
        reconciler still holds its counts without any mood record.  Days in
        between (downtime) get no records of their own.
        """
        services = self._services
        stale = await services.moods.latest_open_before(today)
        if stale is not None:
            day = stale.date
        elif services.reconciler.day < today and services.reconciler.get_total_today() > 0:
            day = services.reconciler.day
        else:
            return None, False
        if now.hour != 0 or (today - day).days > 1:
            logger.warning("job.hourly.missed_rollover", date=day.isoformat(), days_open=(today - day).days)
        return day, await self.close_day(day, now, prefs, next_day=today)

    async def _seed_today(self, today: dt.date, previous_hour: int) -> MoodRecord:
        """First record for *today* when no rollover produced one."""
        previous = await self._services.moods.get(today - dt.timedelta(days=1))
        record = MoodEngine().new_day_record(today, previous)
        if previous is None:
            # Nothing to catch up on before the first ever run.
            record = record.model_copy(update={"last_applied_hour": previous_hour - 1})
        await self._services.moods.upsert(record)
        logger.info("job.hourly.seeded", date=today.isoformat(), mood=record.mood)
        return record

    async def _settle_hour(self, date: dt.date, hour: int, total: int) -> HourlyStepRecord:
        """Record *hour* from *total* and heal every earlier gap."""
        ledger = self._services.ledger
        existing = await ledger.get_hour(date, hour)
        if existing is not None and existing.steps > 0:
            settled = existing
        else:
            *zeros, current = await ledger.derive_hour(date, hour, total)
            await ledger.record_many(zeros)
            settled = await ledger.record_hour(
                date, hour, current.steps, current.last_recorded_cumulative_total
            )
        gaps = await ledger.find_gaps(date, hour)
        if gaps:
            logger.info("job.hourly.gaps_found", date=date.isoformat(), hours=gaps)
            await ledger.heal_gaps(date, hour)
        return settled

    async def _apply_mood(self, ctx: ReconciliationContext) -> JobResult:
        services = self._services
        engine = MoodEngine(MoodPolicy.from_preferences(ctx.preferences))
        before = ctx.mood_record
        steps_by_hour = {h: r.steps for h, r in ctx.hourly.items()}
        updated, updates = engine.replay(before, steps_by_hour, ctx.previous_hour, ctx.total_today)

        await services.moods.upsert(updated)
        await services.persist_total(ctx.today, ctx.total_today, ctx.preferences.daily_goal)

        monitor = MoodDropMonitor(services.mood_drops, services.notification_log, ctx.preferences)
        for update in updates:
            await monitor.record(
                update.previous_mood,
                update.new_mood,
                steps=update.steps,
                period_hours=1.0,
                now=ctx.now,
            )
        notified = await self._maybe_alert_mood_drop(monitor, ctx.now)

        hour_steps = steps_by_hour.get(ctx.previous_hour, 0)
        if updates:
            logger.info(
                "job.hourly.mood_updated",
                hours=[u.hour for u in updates],
                previous=before.mood,
                new=updated.mood,
            )
        return JobResult(
            status=JobStatus.SUCCESS,
            date=ctx.today,
            hour=ctx.previous_hour,
            previous_mood=before.mood,
            new_mood=updated.mood,
            steps=hour_steps,
            total_steps=ctx.total_today,
            notified=notified,
        )

    async def _maybe_alert_mood_drop(self, monitor: MoodDropMonitor, now: dt.datetime) -> bool:
        drop = await monitor.pending_alert(now)
        if drop is None:
            return False
        dispatcher = self._services.dispatcher
        if not dispatcher.is_healthy():
            logger.warning("job.hourly.notifier_unhealthy")
            return False
        message = drop_message(drop)
        sent = await dispatcher.send(
            NotificationKind.MOOD_DROP,
            {
                "title": "Your character needs you!",
                "message": message,
                "previous_mood": drop.previous_mood,
                "current_mood": drop.current_mood,
                "level_drop": drop.level_drop,
            },
        )
        if sent:
            await monitor.mark_notified(drop, now, message)
        return sent

    # ── Day close-out ─────────────────────────────────────────

    async def close_day(
        self,
        day: dt.date,
        now: dt.datetime,
        prefs: UserPreferences,
        *,
        next_day: dt.date | None = None,
    ) -> bool:
        """Finalise *day* and open *next_day* (default: the day after) from it.

        Returns ``False`` when *day* was already finalised (only the next-day
        seeding and reconciler reset are re-checked).
        """
        services = self._services
        next_day = next_day or day + dt.timedelta(days=1)
        engine = MoodEngine(MoodPolicy.from_preferences(prefs))
        record = await services.moods.get(day)

        if record is not None and record.finalized:
            await self._open_day(next_day, record, engine)
            return False

        final_total = await self._final_total(day)
        if record is None and final_total == 0 and not await services.ledger.get_hours_for_date(day):
            # No trace of *day* at all: nothing to close.
            await self._open_day(next_day, None, engine)
            return False

        await self._settle_hour(day, 23, final_total)
        hourly = await services.ledger.get_hours_for_date(day)
        ledger_total = sum(r.steps for r in hourly)

        if record is None:
            record = engine.new_day_record(day, await services.moods.get(day - dt.timedelta(days=1)))
        replayed, _ = engine.replay(record, {r.hour: r.steps for r in hourly}, 23, final_total)
        finalized = engine.finalize_day(replayed, now)
        await services.moods.upsert(finalized)
        await services.persist_total(day, max(final_total, ledger_total), prefs.daily_goal)
        await self._close_open_period(day)

        archived = await services.archive.archive_hourly(
            [HistoricalHourlyStep(date=day, hour=r.hour, steps=r.steps, archived_at=now) for r in hourly]
        )
        await services.archive.save_statistics(
            DailyStatistics(
                date=day,
                daily_goal=prefs.daily_goal,
                final_mood=finalized.mood,
                total_steps=ledger_total,
                archived_at=now,
            )
        )
        logger.info(
            "job.rollover.day_closed",
            date=day.isoformat(),
            final_mood=finalized.mood,
            total_steps=ledger_total,
            archived_hours=archived,
        )

        await self._open_day(next_day, finalized, engine)
        await self.purge(next_day)
        return True

    async def _final_total(self, day: dt.date) -> int:
        services = self._services
        candidates = [await services.ledger.last_recorded_cumulative_total(day)]
        persisted = await services.step_totals.get(day)
        if persisted is not None:
            candidates.append(persisted.cumulative_steps)
        if services.reconciler.day == day:
            candidates.append(services.reconciler.get_total_today())
        return max(candidates)

    async def _open_day(self, day: dt.date, previous: MoodRecord | None, engine: MoodEngine) -> None:
        services = self._services
        if services.reconciler.day < day:
            services.reconciler.reset_for_new_day(day)
        if await services.moods.get(day) is None:
            seeded = engine.new_day_record(day, previous)
            await services.moods.upsert(seeded)
            logger.info(
                "job.rollover.day_opened",
                date=day.isoformat(),
                start_mood=seeded.mood,
                previous_end_mood=previous.mood if previous else None,
            )

    async def _close_open_period(self, day: dt.date) -> None:
        period = await self._services.inactivity.get_open(day)
        if period is None:
            return
        end = dt.datetime.combine(day, dt.time(23, 59, 59))
        await self._services.inactivity.update(
            period.model_copy(update={"end_time": end, "duration_hours": round(period.hours_open(end), 2)})
        )

    async def purge(self, today: dt.date) -> dict[str, int]:
        """Drop live rows older than the retention window; archives are kept."""
        services = self._services
        cutoff = today - dt.timedelta(days=services.settings.retention_days)
        removed = {
            "hourly_steps": await services.ledger.purge_older_than(cutoff),
            "daily_step_totals": await services.step_totals.delete_older_than(cutoff),
            "inactivity_periods": await services.inactivity.delete_older_than(cutoff),
            "mood_drops": await services.mood_drops.delete_older_than(cutoff),
            "notification_log": await services.notification_log.delete_older_than(cutoff),
            "job_runs": await services.job_runs.delete_older_than(cutoff),
        }
        if any(removed.values()):
            logger.info("job.rollover.purged", cutoff=cutoff.isoformat(), **removed)
        return removed


# ── Inactivity check ──────────────────────────────────────────


class InactivityCheckJob(_RetryingJob):
    """Turn the running total into per-interval pulses and send nudges."""

    name = "inactivity_check"

    def __init__(
        self,
        services: Services,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        super().__init__(services, sleep=sleep)
        self._last_total: int | None = None
        self._last_day: dt.date | None = None

    async def _execute(self, now: dt.datetime) -> JobResult:
        services = self._services
        today = now.date()
        prefs = await services.preferences.load()
        if not await services.sync_reconciler(today):
            # The running total still belongs to an earlier day until the rollover.
            return JobResult(status=JobStatus.SKIPPED, date=today, hour=now.hour)
        total = services.reconciler.get_total_today()

        if self._last_day != today:
            # A restart mid-day has no previous pulse to diff against.
            baseline = 0 if self._last_day is not None else None
            self._last_day = today
            self._last_total = baseline
        if self._last_total is None:
            self._last_total = total
            return JobResult(status=JobStatus.SKIPPED, date=today, hour=now.hour, total_steps=total)

        delta = max(0, total - self._last_total)
        self._last_total = total

        tracker = InactivityTracker(services.inactivity, services.notification_log, prefs)
        await tracker.on_activity_pulse(delta, now)

        notified = False
        if await tracker.should_notify(now):
            if services.dispatcher.is_healthy():
                message = await tracker.current_message(now)
                notified = await services.dispatcher.send(
                    NotificationKind.INACTIVITY,
                    {"title": "Time to move", "message": message},
                )
                if notified:
                    await tracker.mark_notified(now, message)
            else:
                logger.warning("job.inactivity.notifier_unhealthy")

        return JobResult(
            status=JobStatus.SUCCESS,
            date=today,
            hour=now.hour,
            steps=delta,
            total_steps=total,
            notified=notified,
        )
