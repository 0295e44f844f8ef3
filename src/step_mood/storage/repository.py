"""Data-access layer — thin async wrappers around SQLAlchemy queries.

Every keyed write is a value-level upsert (``session.merge``) so concurrent or
repeated job runs converge on last-writer-wins instead of losing updates.
Repositories hand out pydantic models, never ORM rows.
"""

from __future__ import annotations

import datetime as dt
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy import delete as sa_delete
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from step_mood.models import (
    DailyStatistics,
    DailyStepTotal,
    HistoricalHourlyStep,
    HourlyStepRecord,
    InactivityPeriod,
    JobRun,
    JobStatus,
    MoodDrop,
    MoodRecord,
    Notification,
    NotificationKind,
)
from step_mood.storage.database import (
    DailyStatisticsRow,
    DailyStepTotalRow,
    HistoricalHourlyStepRow,
    HourlyStepRow,
    InactivityPeriodRow,
    JobRunRow,
    MoodDropRow,
    MoodRecordRow,
    NotificationLogRow,
    get_session_factory,
)


class BaseRepository:
    """Shared base with session management for all repositories."""

    def __init__(self, session: AsyncSession | None = None) -> None:
        self._external_session = session

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        if self._external_session is not None:
            yield self._external_session
            return
        async with get_session_factory()() as session:
            yield session

    async def _delete_before(self, table, cutoff: dt.date) -> int:
        async with self._session() as session:
            result = await session.execute(sa_delete(table).where(table.date < cutoff))
            await session.commit()
            return result.rowcount or 0


# ── Step totals ───────────────────────────────────────────────


class StepTotalRepository(BaseRepository):
    """Keyed access to :class:`DailyStepTotal` rows."""

    async def get(self, date: dt.date) -> DailyStepTotal | None:
        async with self._session() as session:
            row = await session.get(DailyStepTotalRow, date)
            if row is None:
                return None
            return DailyStepTotal(
                date=row.date,
                cumulative_steps=row.cumulative_steps,
                daily_goal=row.daily_goal,
                updated_at=row.updated_at,
            )

    async def upsert(self, total: DailyStepTotal) -> None:
        async with self._session() as session:
            await session.merge(
                DailyStepTotalRow(
                    date=total.date,
                    cumulative_steps=total.cumulative_steps,
                    daily_goal=total.daily_goal,
                    updated_at=total.updated_at,
                )
            )
            await session.commit()

    async def get_range(self, date_from: dt.date, date_to: dt.date) -> list[DailyStepTotal]:
        async with self._session() as session:
            stmt = (
                select(DailyStepTotalRow)
                .where(DailyStepTotalRow.date >= date_from, DailyStepTotalRow.date <= date_to)
                .order_by(DailyStepTotalRow.date.asc())
            )
            result = await session.execute(stmt)
            return [
                DailyStepTotal(
                    date=r.date,
                    cumulative_steps=r.cumulative_steps,
                    daily_goal=r.daily_goal,
                    updated_at=r.updated_at,
                )
                for r in result.scalars().all()
            ]

    async def delete_older_than(self, cutoff: dt.date) -> int:
        return await self._delete_before(DailyStepTotalRow, cutoff)


# ── Hourly steps ──────────────────────────────────────────────


def _hourly_from_row(row: HourlyStepRow) -> HourlyStepRecord:
    return HourlyStepRecord(
        date=row.date,
        hour=row.hour,
        steps=row.steps,
        last_recorded_cumulative_total=row.last_recorded_cumulative_total,
    )


class HourlyStepRepository(BaseRepository):
    """Keyed access to :class:`HourlyStepRecord` rows (key = date + hour)."""

    async def get(self, date: dt.date, hour: int) -> HourlyStepRecord | None:
        async with self._session() as session:
            row = await session.get(HourlyStepRow, (date, hour))
            return _hourly_from_row(row) if row is not None else None

    async def get_for_date(self, date: dt.date) -> list[HourlyStepRecord]:
        async with self._session() as session:
            stmt = (
                select(HourlyStepRow)
                .where(HourlyStepRow.date == date)
                .order_by(HourlyStepRow.hour.asc())
            )
            result = await session.execute(stmt)
            return [_hourly_from_row(r) for r in result.scalars().all()]

    async def upsert(self, record: HourlyStepRecord) -> None:
        await self.upsert_many([record])

    async def upsert_many(self, records: list[HourlyStepRecord]) -> None:
        if not records:
            return
        async with self._session() as session:
            for record in records:
                await session.merge(
                    HourlyStepRow(
                        date=record.date,
                        hour=record.hour,
                        steps=record.steps,
                        last_recorded_cumulative_total=record.last_recorded_cumulative_total,
                    )
                )
            await session.commit()

    async def delete_older_than(self, cutoff: dt.date) -> int:
        return await self._delete_before(HourlyStepRow, cutoff)


# ── Mood ──────────────────────────────────────────────────────


def _mood_from_row(row: MoodRecordRow) -> MoodRecord:
    return MoodRecord(
        date=row.date,
        mood=row.mood,
        daily_start_mood=row.daily_start_mood,
        previous_day_end_mood=row.previous_day_end_mood,
        last_persisted_steps=row.last_persisted_steps,
        last_applied_hour=row.last_applied_hour,
        finalized=row.finalized,
        finalized_at=row.finalized_at,
    )


class MoodRepository(BaseRepository):
    """Keyed access to :class:`MoodRecord` rows (key = date)."""

    async def get(self, date: dt.date) -> MoodRecord | None:
        async with self._session() as session:
            row = await session.get(MoodRecordRow, date)
            return _mood_from_row(row) if row is not None else None

    async def upsert(self, record: MoodRecord) -> None:
        async with self._session() as session:
            await session.merge(MoodRecordRow(**record.model_dump()))
            await session.commit()

    async def get_range(self, date_from: dt.date, date_to: dt.date) -> list[MoodRecord]:
        async with self._session() as session:
            stmt = (
                select(MoodRecordRow)
                .where(MoodRecordRow.date >= date_from, MoodRecordRow.date <= date_to)
                .order_by(MoodRecordRow.date.asc())
            )
            result = await session.execute(stmt)
            return [_mood_from_row(r) for r in result.scalars().all()]

    async def latest_open_before(self, date: dt.date) -> MoodRecord | None:
        """Most recent record before *date* that was never finalised."""
        async with self._session() as session:
            stmt = (
                select(MoodRecordRow)
                .where(MoodRecordRow.date < date, MoodRecordRow.finalized.is_(False))
                .order_by(MoodRecordRow.date.desc())
                .limit(1)
            )
            row = (await session.execute(stmt)).scalars().first()
            return _mood_from_row(row) if row is not None else None


# ── Inactivity ────────────────────────────────────────────────


def _period_from_row(row: InactivityPeriodRow) -> InactivityPeriod:
    return InactivityPeriod(
        id=row.id,
        date=row.date,
        start_time=row.start_time,
        end_time=row.end_time,
        duration_hours=row.duration_hours,
        steps_during_period=row.steps_during_period,
        is_consecutive=row.is_consecutive,
        notification_sent=row.notification_sent,
        last_notified_at=row.last_notified_at,
    )


class InactivityRepository(BaseRepository):
    """CRUD operations for :class:`InactivityPeriod` rows."""

    async def get_open(self, date: dt.date) -> InactivityPeriod | None:
        """Return the open period for *date* (latest one if several leaked in)."""
        async with self._session() as session:
            stmt = (
                select(InactivityPeriodRow)
                .where(InactivityPeriodRow.date == date, InactivityPeriodRow.end_time.is_(None))
                .order_by(InactivityPeriodRow.start_time.desc())
                .limit(1)
            )
            result = await session.execute(stmt)
            row = result.scalar_one_or_none()
            return _period_from_row(row) if row is not None else None

    async def get_for_date(self, date: dt.date) -> list[InactivityPeriod]:
        async with self._session() as session:
            stmt = (
                select(InactivityPeriodRow)
                .where(InactivityPeriodRow.date == date)
                .order_by(InactivityPeriodRow.start_time.asc())
            )
            result = await session.execute(stmt)
            return [_period_from_row(r) for r in result.scalars().all()]

    async def add(self, period: InactivityPeriod) -> InactivityPeriod:
        async with self._session() as session:
            row = InactivityPeriodRow(**period.model_dump(exclude={"id"}))
            session.add(row)
            await session.commit()
            return period.model_copy(update={"id": row.id})

    async def update(self, period: InactivityPeriod) -> None:
        if period.id is None:
            raise ValueError("Cannot update an inactivity period without an id.")
        async with self._session() as session:
            await session.merge(InactivityPeriodRow(**period.model_dump()))
            await session.commit()

    async def delete_older_than(self, cutoff: dt.date) -> int:
        return await self._delete_before(InactivityPeriodRow, cutoff)


# ── Mood drops ────────────────────────────────────────────────


def _drop_from_row(row: MoodDropRow) -> MoodDrop:
    return MoodDrop(
        id=row.id,
        date=row.date,
        timestamp=row.timestamp,
        previous_mood=row.previous_mood,
        current_mood=row.current_mood,
        level_drop=row.level_drop,
        steps_in_period=row.steps_in_period,
        period_hours=row.period_hours,
        notification_sent=row.notification_sent,
    )


class MoodDropRepository(BaseRepository):
    """CRUD operations for :class:`MoodDrop` rows."""

    async def add(self, drop: MoodDrop) -> MoodDrop:
        async with self._session() as session:
            row = MoodDropRow(**drop.model_dump(exclude={"id"}))
            session.add(row)
            await session.commit()
            return drop.model_copy(update={"id": row.id})

    async def update(self, drop: MoodDrop) -> None:
        if drop.id is None:
            raise ValueError("Cannot update a mood drop without an id.")
        async with self._session() as session:
            await session.merge(MoodDropRow(**drop.model_dump()))
            await session.commit()

    async def get_pending(self, date: dt.date) -> MoodDrop | None:
        """Latest not-yet-notified drop for *date*."""
        async with self._session() as session:
            stmt = (
                select(MoodDropRow)
                .where(MoodDropRow.date == date, MoodDropRow.notification_sent.is_(False))
                .order_by(MoodDropRow.timestamp.desc(), MoodDropRow.id.desc())
                .limit(1)
            )
            result = await session.execute(stmt)
            row = result.scalar_one_or_none()
            return _drop_from_row(row) if row is not None else None

    async def mark_sent(self, drop_id: int) -> None:
        async with self._session() as session:
            row = await session.get(MoodDropRow, drop_id)
            if row is not None:
                row.notification_sent = True
                await session.commit()

    async def delete_older_than(self, cutoff: dt.date) -> int:
        return await self._delete_before(MoodDropRow, cutoff)


# ── Notification log ──────────────────────────────────────────


class NotificationLogRepository(BaseRepository):
    """Append-only log of delivered alerts, used for daily caps and spacing."""

    async def add(self, notification: Notification) -> None:
        async with self._session() as session:
            session.add(
                NotificationLogRow(
                    id=notification.id,
                    date=notification.timestamp.date(),
                    kind=notification.kind.value,
                    message=notification.message,
                    sent_at=notification.timestamp,
                )
            )
            await session.commit()

    async def count_for_date(self, date: dt.date, kind: NotificationKind) -> int:
        async with self._session() as session:
            stmt = (
                select(func.count())
                .select_from(NotificationLogRow)
                .where(NotificationLogRow.date == date, NotificationLogRow.kind == kind.value)
            )
            result = await session.execute(stmt)
            return result.scalar() or 0

    async def last_sent_at(self, kind: NotificationKind) -> dt.datetime | None:
        async with self._session() as session:
            stmt = select(func.max(NotificationLogRow.sent_at)).where(
                NotificationLogRow.kind == kind.value
            )
            result = await session.execute(stmt)
            return result.scalar()

    async def delete_older_than(self, cutoff: dt.date) -> int:
        return await self._delete_before(NotificationLogRow, cutoff)


# ── Archive ───────────────────────────────────────────────────


class ArchiveRepository(BaseRepository):
    """Write-once history: rows that already exist are never rewritten."""

    async def archive_hourly(self, records: list[HistoricalHourlyStep]) -> int:
        written = 0
        async with self._session() as session:
            for record in records:
                if await session.get(HistoricalHourlyStepRow, (record.date, record.hour)) is not None:
                    continue
                session.add(HistoricalHourlyStepRow(**record.model_dump()))
                written += 1
            await session.commit()
        return written

    async def save_statistics(self, stats: DailyStatistics) -> bool:
        async with self._session() as session:
            if await session.get(DailyStatisticsRow, stats.date) is not None:
                return False
            session.add(DailyStatisticsRow(**stats.model_dump()))
            await session.commit()
            return True

    async def get_statistics(self, date_from: dt.date, date_to: dt.date) -> list[DailyStatistics]:
        async with self._session() as session:
            stmt = (
                select(DailyStatisticsRow)
                .where(DailyStatisticsRow.date >= date_from, DailyStatisticsRow.date <= date_to)
                .order_by(DailyStatisticsRow.date.asc())
            )
            result = await session.execute(stmt)
            return [
                DailyStatistics(
                    date=r.date,
                    daily_goal=r.daily_goal,
                    final_mood=r.final_mood,
                    total_steps=r.total_steps,
                    archived_at=r.archived_at,
                )
                for r in result.scalars().all()
            ]

    async def get_hourly(self, date: dt.date) -> list[HistoricalHourlyStep]:
        async with self._session() as session:
            stmt = (
                select(HistoricalHourlyStepRow)
                .where(HistoricalHourlyStepRow.date == date)
                .order_by(HistoricalHourlyStepRow.hour.asc())
            )
            result = await session.execute(stmt)
            return [
                HistoricalHourlyStep(date=r.date, hour=r.hour, steps=r.steps, archived_at=r.archived_at)
                for r in result.scalars().all()
            ]


# ── Job runs ──────────────────────────────────────────────────


class JobRunRepository(BaseRepository):
    """Persist job execution fingerprints for diagnosis."""

    async def save(self, run: JobRun) -> None:
        async with self._session() as session:
            await session.merge(JobRunRow(**run.model_dump(mode="python") | {"status": run.status.value}))
            await session.commit()

    async def get_recent(self, job_name: str, limit: int = 24) -> list[JobRun]:
        async with self._session() as session:
            stmt = (
                select(JobRunRow)
                .where(JobRunRow.job_name == job_name)
                .order_by(JobRunRow.started_at.desc())
                .limit(limit)
            )
            result = await session.execute(stmt)
            return [
                JobRun(
                    id=r.id,
                    job_name=r.job_name,
                    date=r.date,
                    hour=r.hour,
                    status=JobStatus(r.status),
                    attempts=r.attempts,
                    previous_mood=r.previous_mood,
                    new_mood=r.new_mood,
                    steps=r.steps,
                    total_steps=r.total_steps,
                    error=r.error,
                    started_at=r.started_at,
                    finished_at=r.finished_at,
                )
                for r in result.scalars().all()
            ]

    async def delete_older_than(self, cutoff: dt.date) -> int:
        return await self._delete_before(JobRunRow, cutoff)
