"""SQLAlchemy async engine, session factory, and ORM table definitions."""

from __future__ import annotations

import datetime as dt

from sqlalchemy import Boolean, Date, DateTime, Float, Integer, String, Text, func
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from step_mood.config import get_settings


# ── Base ──────────────────────────────────────────────────────

class Base(DeclarativeBase):
    """Shared declarative base for all ORM models."""


# ── Live tables ───────────────────────────────────────────────

class DailyStepTotalRow(Base):
    """Reconciled running total, one row per date."""

    __tablename__ = "daily_step_totals"

    date: Mapped[dt.date] = mapped_column(Date, primary_key=True)
    cumulative_steps: Mapped[int] = mapped_column(Integer, default=0)
    daily_goal: Mapped[int] = mapped_column(Integer, default=0)
    updated_at: Mapped[dt.datetime] = mapped_column(DateTime, server_default=func.now())


class HourlyStepRow(Base):
    """Per-(date, hour) step delta with the running total at hour end."""

    __tablename__ = "hourly_steps"

    date: Mapped[dt.date] = mapped_column(Date, primary_key=True)
    hour: Mapped[int] = mapped_column(Integer, primary_key=True)
    steps: Mapped[int] = mapped_column(Integer, default=0)
    last_recorded_cumulative_total: Mapped[int] = mapped_column(Integer, default=0)


class MoodRecordRow(Base):
    """Mood state, one row per date."""

    __tablename__ = "mood_records"

    date: Mapped[dt.date] = mapped_column(Date, primary_key=True)
    mood: Mapped[int] = mapped_column(Integer)
    daily_start_mood: Mapped[int] = mapped_column(Integer)
    previous_day_end_mood: Mapped[int] = mapped_column(Integer)
    last_persisted_steps: Mapped[int] = mapped_column(Integer, default=0)
    last_applied_hour: Mapped[int] = mapped_column(Integer, default=-1)
    finalized: Mapped[bool] = mapped_column(Boolean, default=False)
    finalized_at: Mapped[dt.datetime | None] = mapped_column(DateTime, nullable=True)


class InactivityPeriodRow(Base):
    """Low-activity period; ``end_time`` NULL while open."""

    __tablename__ = "inactivity_periods"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    date: Mapped[dt.date] = mapped_column(Date, index=True)
    start_time: Mapped[dt.datetime] = mapped_column(DateTime)
    end_time: Mapped[dt.datetime | None] = mapped_column(DateTime, nullable=True)
    duration_hours: Mapped[float] = mapped_column(Float, default=0.0)
    steps_during_period: Mapped[int] = mapped_column(Integer, default=0)
    is_consecutive: Mapped[bool] = mapped_column(Boolean, default=True)
    notification_sent: Mapped[bool] = mapped_column(Boolean, default=False)
    last_notified_at: Mapped[dt.datetime | None] = mapped_column(DateTime, nullable=True)


class MoodDropRow(Base):
    """Recorded mood decrease awaiting (or past) a mood-drop alert."""

    __tablename__ = "mood_drops"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    date: Mapped[dt.date] = mapped_column(Date, index=True)
    timestamp: Mapped[dt.datetime] = mapped_column(DateTime)
    previous_mood: Mapped[int] = mapped_column(Integer)
    current_mood: Mapped[int] = mapped_column(Integer)
    level_drop: Mapped[int] = mapped_column(Integer, default=0)
    steps_in_period: Mapped[int] = mapped_column(Integer, default=0)
    period_hours: Mapped[float] = mapped_column(Float, default=1.0)
    notification_sent: Mapped[bool] = mapped_column(Boolean, default=False)


class NotificationLogRow(Base):
    """One delivered user-facing alert."""

    __tablename__ = "notification_log"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    date: Mapped[dt.date] = mapped_column(Date, index=True)
    kind: Mapped[str] = mapped_column(String(32), index=True)
    message: Mapped[str] = mapped_column(Text, default="")
    sent_at: Mapped[dt.datetime] = mapped_column(DateTime)


class JobRunRow(Base):
    """Execution fingerprint of a scheduled job invocation."""

    __tablename__ = "job_runs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    job_name: Mapped[str] = mapped_column(String(64), index=True)
    date: Mapped[dt.date] = mapped_column(Date, index=True)
    hour: Mapped[int | None] = mapped_column(Integer, nullable=True)
    status: Mapped[str] = mapped_column(String(16))
    attempts: Mapped[int] = mapped_column(Integer, default=1)
    previous_mood: Mapped[int | None] = mapped_column(Integer, nullable=True)
    new_mood: Mapped[int | None] = mapped_column(Integer, nullable=True)
    steps: Mapped[int | None] = mapped_column(Integer, nullable=True)
    total_steps: Mapped[int | None] = mapped_column(Integer, nullable=True)
    error: Mapped[str] = mapped_column(Text, default="")
    started_at: Mapped[dt.datetime] = mapped_column(DateTime)
    finished_at: Mapped[dt.datetime | None] = mapped_column(DateTime, nullable=True)


class PreferenceRow(Base):
    """User preference stored as a JSON-encoded value."""

    __tablename__ = "preferences"

    key: Mapped[str] = mapped_column(String(64), primary_key=True)
    value_json: Mapped[str] = mapped_column(Text)
    updated_at: Mapped[dt.datetime] = mapped_column(DateTime, server_default=func.now())


# ── Archive tables (write-once) ───────────────────────────────

class HistoricalHourlyStepRow(Base):
    """Hourly steps snapshotted at rollover."""

    __tablename__ = "historical_hourly_steps"

    date: Mapped[dt.date] = mapped_column(Date, primary_key=True)
    hour: Mapped[int] = mapped_column(Integer, primary_key=True)
    steps: Mapped[int] = mapped_column(Integer)
    archived_at: Mapped[dt.datetime] = mapped_column(DateTime)


class DailyStatisticsRow(Base):
    """End-of-day summary snapshotted at rollover."""

    __tablename__ = "daily_statistics"

    date: Mapped[dt.date] = mapped_column(Date, primary_key=True)
    daily_goal: Mapped[int] = mapped_column(Integer)
    final_mood: Mapped[int] = mapped_column(Integer)
    total_steps: Mapped[int] = mapped_column(Integer)
    archived_at: Mapped[dt.datetime] = mapped_column(DateTime)


# ── Engine & session ──────────────────────────────────────────

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def _get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = create_async_engine(settings.database_url, echo=False)
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(_get_engine(), expire_on_commit=False)
    return _session_factory


async def init_db() -> None:
    """Create all tables (idempotent)."""
    settings = get_settings()
    url = settings.database_url
    if url.startswith("sqlite") and ":memory:" not in url:
        from pathlib import Path

        # URL format: sqlite+aiosqlite:///path/to/db
        db_path = Path(url.split("///", 1)[-1])
        db_path.parent.mkdir(parents=True, exist_ok=True)

    engine = _get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def dispose_engine() -> None:
    """Close pooled connections and forget the cached engine."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None
