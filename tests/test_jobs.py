"""Tests for the hourly reconciliation, day close-out and inactivity jobs."""

from __future__ import annotations

import datetime as dt

import pytest
from sqlalchemy.exc import OperationalError

from step_mood.models import JobStatus, MoodRecord, NotificationKind
from step_mood.scheduler.jobs import HourlyReconciliationJob, InactivityCheckJob, _RetryingJob
from step_mood.sources.reconciler import PRIMARY_SOURCE_ID, SECONDARY_SOURCE_ID
from step_mood.storage.repository import MoodRepository

DAY = dt.date(2024, 3, 11)
NEXT_DAY = DAY + dt.timedelta(days=1)


async def no_sleep(_: float) -> None:
    return None


def at(hour: int, minute: int = 1, day: dt.date = DAY) -> dt.datetime:
    return dt.datetime.combine(day, dt.time(hour, minute))


def walk(services, steps: int) -> None:
    services.reconciler.report_event(SECONDARY_SOURCE_ID, steps)


async def hourly_steps(services, day: dt.date = DAY) -> dict[int, int]:
    return {r.hour: r.steps for r in await services.ledger.get_hours_for_date(day)}


class BrokenMoodRepository(MoodRepository):
    async def get(self, date: dt.date) -> MoodRecord | None:
        raise OperationalError("SELECT", {}, Exception("disk I/O error"))


class TestHourlyReconciliation:
    @pytest.mark.asyncio
    async def test_first_run_credits_previous_hour(self, services):
        walk(services, 600)
        result = await HourlyReconciliationJob(services, sleep=no_sleep).run(at(10))

        assert result.status is JobStatus.SUCCESS
        assert (result.hour, result.steps, result.total_steps) == (9, 600, 600)
        # goal 7000: first bracket is 105 steps per point, 600 steps clear the decay threshold
        assert (result.previous_mood, result.new_mood) == (50, 55)

        record = await services.moods.get(DAY)
        assert record.last_applied_hour == 9
        assert record.last_persisted_steps == 600
        assert (await services.step_totals.get(DAY)).cumulative_steps == 600
        hours = await hourly_steps(services)
        assert hours[9] == 600
        assert sum(hours.values()) == 600

    @pytest.mark.asyncio
    async def test_repeated_run_is_idempotent(self, services):
        walk(services, 600)
        job = HourlyReconciliationJob(services, sleep=no_sleep)
        await job.run(at(10))
        again = await job.run(at(10, 30))

        assert again.new_mood == 55
        assert again.previous_mood == 55
        assert (await services.moods.get(DAY)).mood == 55
        assert sum((await hourly_steps(services)).values()) == 600

    @pytest.mark.asyncio
    async def test_missed_runs_are_caught_up(self, services):
        job = HourlyReconciliationJob(services, sleep=no_sleep)
        walk(services, 600)
        await job.run(at(10))
        walk(services, 400)
        result = await job.run(at(13))

        hours = await hourly_steps(services)
        assert [hours[h] for h in (9, 10, 11, 12)] == [600, 0, 0, 400]
        assert sum(hours.values()) == 1_000
        # 55 -3 -3 (idle hours 10 and 11), then +3 for 400 steps in hour 12
        assert result.new_mood == 52
        assert (await services.moods.get(DAY)).last_applied_hour == 12

    @pytest.mark.asyncio
    async def test_measured_hour_is_kept(self, services):
        await services.ledger.record_hour(DAY, 9, 250, 250)
        walk(services, 900)
        await HourlyReconciliationJob(services, sleep=no_sleep).run(at(10))
        assert (await services.ledger.get_hour(DAY, 9)).steps == 250

    @pytest.mark.asyncio
    async def test_mood_drop_alert(self, services, memory_handler):
        await services.preferences.set("mood_drop_threshold_levels", 1)
        await services.moods.upsert(
            MoodRecord(date=DAY, mood=80, daily_start_mood=50, previous_day_end_mood=50, last_applied_hour=8)
        )
        result = await HourlyReconciliationJob(services, sleep=no_sleep).run(at(12))

        assert result.new_mood == 71
        assert result.notified is True
        assert memory_handler.sent[0].kind is NotificationKind.MOOD_DROP
        assert await services.notification_log.count_for_date(DAY, NotificationKind.MOOD_DROP) == 1
        assert await services.mood_drops.get_pending(DAY) is None

    @pytest.mark.asyncio
    async def test_unhealthy_notifier_skips_alert(self, services, memory_handler):
        memory_handler.healthy = False
        await services.preferences.set("mood_drop_threshold_levels", 1)
        await services.moods.upsert(
            MoodRecord(date=DAY, mood=80, daily_start_mood=50, previous_day_end_mood=50, last_applied_hour=8)
        )
        result = await HourlyReconciliationJob(services, sleep=no_sleep).run(at(12))

        assert result.status is JobStatus.SUCCESS
        assert result.notified is False
        assert memory_handler.sent == []
        assert (await services.mood_drops.get_pending(DAY)).level_drop == 1

    @pytest.mark.asyncio
    async def test_storage_failure_exhausts_retries(self, services, session):
        services.moods = BrokenMoodRepository(session)
        result = await HourlyReconciliationJob(services, sleep=no_sleep).run(at(10))

        assert result.status is JobStatus.FAILED
        assert result.attempts == 3
        assert "disk I/O error" in result.error
        runs = await services.job_runs.get_recent("hourly_reconciliation")
        assert runs[0].status is JobStatus.FAILED
        assert runs[0].attempts == 3

    @pytest.mark.asyncio
    async def test_run_writes_fingerprint(self, services):
        walk(services, 600)
        await HourlyReconciliationJob(services, sleep=no_sleep).run(at(10))
        runs = await services.job_runs.get_recent("hourly_reconciliation")
        assert len(runs) == 1
        assert (runs[0].status, runs[0].new_mood, runs[0].total_steps) == (JobStatus.SUCCESS, 55, 600)


class TestDayClose:
    @pytest.mark.asyncio
    async def test_rollover_closes_and_opens(self, services):
        job = HourlyReconciliationJob(services, sleep=no_sleep)
        walk(services, 600)
        await job.run(at(10))
        walk(services, 400)
        await job.run(at(13))
        walk(services, 500)

        result = await job.run(at(0, day=NEXT_DAY))

        assert result.status is JobStatus.ROLLOVER
        assert (result.date, result.hour) == (DAY, 23)

        hours = await hourly_steps(services)
        assert len(hours) == 24
        assert hours[23] == 500
        assert sum(hours.values()) == 1_500

        closed = await services.moods.get(DAY)
        assert closed.finalized
        assert closed.last_applied_hour == 23
        # 52 after hour 12, ten idle hours at -3, then +4 in quiet hour 23
        assert closed.mood == 26

        stats = await services.archive.get_statistics(DAY, DAY)
        assert (stats[0].total_steps, stats[0].final_mood) == (1_500, 26)
        assert len(await services.archive.get_hourly(DAY)) == 24
        assert (await services.step_totals.get(DAY)).cumulative_steps == 1_500

        opened = await services.moods.get(NEXT_DAY)
        assert (opened.mood, opened.daily_start_mood, opened.previous_day_end_mood) == (50, 50, 26)
        assert result.new_mood == 50
        assert services.reconciler.day == NEXT_DAY
        assert services.reconciler.get_total_today() == 0

    @pytest.mark.asyncio
    async def test_repeated_rollover_changes_nothing(self, services):
        job = HourlyReconciliationJob(services, sleep=no_sleep)
        walk(services, 600)
        await job.run(at(10))
        first = await job.run(at(0, day=NEXT_DAY))
        second = await job.run(at(0, 30, day=NEXT_DAY))

        assert first.status is JobStatus.ROLLOVER
        assert second.status is JobStatus.SKIPPED
        assert len(await services.archive.get_statistics(DAY, DAY)) == 1
        assert (await services.moods.get(NEXT_DAY)).mood == first.new_mood

    @pytest.mark.asyncio
    async def test_missed_rollover_recovered_on_next_run(self, services):
        job = HourlyReconciliationJob(services, sleep=no_sleep)
        walk(services, 600)
        await job.run(at(10))

        result = await job.run(at(9, day=NEXT_DAY))

        closed = await services.moods.get(DAY)
        assert closed.finalized
        # 55 minus thirteen idle hours at -3 (hour 23 is quiet)
        assert closed.mood == 16
        assert (await services.archive.get_statistics(DAY, DAY))[0].total_steps == 600

        today = await services.moods.get(NEXT_DAY)
        assert (today.daily_start_mood, today.previous_day_end_mood) == (30, 16)
        # quiet hours 0-6 do not decay, idle hours 7 and 8 do
        assert (result.status, result.previous_mood, result.new_mood) == (JobStatus.SUCCESS, 30, 24)

    @pytest.mark.asyncio
    async def test_first_ever_midnight_run_has_nothing_to_close(self, services):
        result = await HourlyReconciliationJob(services, sleep=no_sleep).run(at(0, day=NEXT_DAY))

        assert result.status is JobStatus.SKIPPED
        assert await services.moods.get(DAY) is None
        assert await services.ledger.get_hours_for_date(DAY) == []
        assert (await services.moods.get(NEXT_DAY)).mood == 50

    @pytest.mark.asyncio
    async def test_close_ends_open_inactivity_period(self, services):
        job = HourlyReconciliationJob(services, sleep=no_sleep)
        walk(services, 600)
        await job.run(at(10))
        checker = InactivityCheckJob(services, sleep=no_sleep)
        await checker.run(at(20))
        await checker.run(at(20, 15))
        assert await services.inactivity.get_open(DAY) is not None

        await job.run(at(0, day=NEXT_DAY))

        assert await services.inactivity.get_open(DAY) is None
        period = (await services.inactivity.get_for_date(DAY))[0]
        assert period.end_time == dt.datetime.combine(DAY, dt.time(23, 59, 59))

    @pytest.mark.asyncio
    async def test_midnight_inactivity_check_leaves_steps_for_close(self, services):
        services.reconciler.report_cumulative(PRIMARY_SOURCE_ID, 1_000)
        services.reconciler.report_cumulative(PRIMARY_SOURCE_ID, 4_000)
        job = HourlyReconciliationJob(services, sleep=no_sleep)
        await job.run(at(23))
        services.reconciler.report_cumulative(PRIMARY_SOURCE_ID, 6_000)

        check = await InactivityCheckJob(services, sleep=no_sleep).run(at(0, 0, day=NEXT_DAY))
        assert check.status is JobStatus.SKIPPED
        assert services.reconciler.day == DAY
        assert services.reconciler.get_total_today() == 5_000

        result = await job.run(at(0, day=NEXT_DAY))

        assert result.status is JobStatus.ROLLOVER
        assert (await services.step_totals.get(DAY)).cumulative_steps == 5_000
        assert (await hourly_steps(services))[23] == 2_000
        assert (await services.archive.get_statistics(DAY, DAY))[0].total_steps == 5_000
        assert services.reconciler.day == NEXT_DAY

    @pytest.mark.asyncio
    async def test_rollover_after_days_of_downtime(self, services):
        job = HourlyReconciliationJob(services, sleep=no_sleep)
        walk(services, 600)
        await job.run(at(10))
        assert (await job.run(at(22))).new_mood == 19
        later = DAY + dt.timedelta(days=2)

        result = await job.run(at(10, day=later))

        closed = await services.moods.get(DAY)
        assert closed.finalized
        # idle hour 22 at -3, hour 23 is quiet
        assert closed.mood == 16
        stats = await services.archive.get_statistics(DAY, DAY)
        assert stats[0].total_steps == 600
        assert len(await services.archive.get_hourly(DAY)) == 24

        assert await services.moods.get(NEXT_DAY) is None
        today = await services.moods.get(later)
        assert (today.daily_start_mood, today.previous_day_end_mood) == (30, 16)
        # quiet hours 0-6 do not decay, idle hours 7 to 9 do
        assert (result.previous_mood, result.new_mood) == (30, 21)
        assert services.reconciler.day == later

    @pytest.mark.asyncio
    async def test_midnight_run_after_downtime_closes_last_open_day(self, services):
        job = HourlyReconciliationJob(services, sleep=no_sleep)
        walk(services, 600)
        await job.run(at(10))
        later = DAY + dt.timedelta(days=2)

        result = await job.run(at(0, day=later))

        assert (result.status, result.date) == (JobStatus.ROLLOVER, DAY)
        assert (await services.moods.get(DAY)).finalized
        assert (await services.moods.get(later)).previous_day_end_mood == 16
        assert result.new_mood == 30


class TestInactivityCheck:
    @pytest.mark.asyncio
    async def test_first_run_sets_baseline(self, services):
        walk(services, 300)
        result = await InactivityCheckJob(services, sleep=no_sleep).run(at(9, 0))
        assert result.status is JobStatus.SKIPPED
        assert result.total_steps == 300
        assert await services.inactivity.get_for_date(DAY) == []

    @pytest.mark.asyncio
    async def test_long_idle_stretch_sends_nudge(self, services, memory_handler):
        job = InactivityCheckJob(services, sleep=no_sleep)
        await job.run(at(9, 0))
        opened = await job.run(at(9, 15))
        assert opened.notified is False
        assert (await services.inactivity.get_open(DAY)).start_time == at(9, 15)

        nudged = await job.run(at(13, 30))
        assert nudged.notified is True
        assert memory_handler.sent[0].kind is NotificationKind.INACTIVITY
        assert "4 hours" in memory_handler.sent[0].message
        assert await services.notification_log.count_for_date(DAY, NotificationKind.INACTIVITY) == 1

        walk(services, 300)
        moved = await job.run(at(13, 45))
        assert moved.steps == 300
        assert moved.notified is False
        assert await services.inactivity.get_open(DAY) is None

    @pytest.mark.asyncio
    async def test_quiet_hours_suppress_nudge(self, services, memory_handler):
        job = InactivityCheckJob(services, sleep=no_sleep)
        await job.run(at(17, 0))
        await job.run(at(17, 15))
        result = await job.run(at(23, 30))
        assert result.notified is False
        assert memory_handler.sent == []


def test_job_base_needs_execute():
    with pytest.raises(TypeError):
        _RetryingJob(None)
