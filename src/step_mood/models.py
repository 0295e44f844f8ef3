"""Shared Pydantic models used across the engine."""

from __future__ import annotations

import datetime as dt
import uuid
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

MOOD_MIN = 0
MOOD_MAX = 130
HOURS_PER_DAY = 24


# ── Enums ─────────────────────────────────────────────────────

class NotificationKind(str, Enum):
    """User-facing alert families."""
    INACTIVITY = "inactivity"
    MOOD_DROP = "mood_drop"


class JobStatus(str, Enum):
    """Outcome of one scheduled job invocation."""
    SUCCESS = "success"
    ROLLOVER = "rollover"
    SKIPPED = "skipped"
    FAILED = "failed"


# ── Step ledger ───────────────────────────────────────────────

class DailyStepTotal(BaseModel):
    """Reconciled running total for one calendar date."""
    date: dt.date
    cumulative_steps: int = Field(default=0, ge=0)
    daily_goal: int = 0
    updated_at: dt.datetime = Field(default_factory=dt.datetime.now)


class HourlyStepRecord(BaseModel):
    """Step delta for one (date, hour) slot.

    ``last_recorded_cumulative_total`` is the day's running total as of the end
    of the hour and is the baseline for deriving the next hour's delta.
    """
    date: dt.date
    hour: int = Field(ge=0, le=23)
    steps: int = Field(default=0, ge=0)
    last_recorded_cumulative_total: int = Field(default=0, ge=0)


# ── Mood ──────────────────────────────────────────────────────

class MoodRecord(BaseModel):
    """Mood state for one date.

    ``last_persisted_steps`` is the cumulative total last credited to mood and
    ``last_applied_hour`` the highest hour already folded in (-1 = none), so a
    late or repeated run never credits the same steps twice.
    """
    date: dt.date
    mood: int = Field(ge=MOOD_MIN, le=MOOD_MAX)
    daily_start_mood: int = Field(ge=MOOD_MIN, le=MOOD_MAX)
    previous_day_end_mood: int = Field(ge=MOOD_MIN, le=MOOD_MAX)
    last_persisted_steps: int = Field(default=0, ge=0)
    last_applied_hour: int = Field(default=-1, ge=-1, le=23)
    finalized: bool = False
    finalized_at: dt.datetime | None = None


class MoodDrop(BaseModel):
    """A recorded decrease in mood, candidate for a mood-drop alert."""
    id: int | None = None
    date: dt.date
    timestamp: dt.datetime = Field(default_factory=dt.datetime.now)
    previous_mood: int
    current_mood: int
    level_drop: int
    steps_in_period: int = 0
    period_hours: float = 1.0
    notification_sent: bool = False


# ── Inactivity ────────────────────────────────────────────────

class InactivityPeriod(BaseModel):
    """A stretch of low activity; ``end_time is None`` while still open."""
    id: int | None = None
    date: dt.date
    start_time: dt.datetime
    end_time: dt.datetime | None = None
    duration_hours: float = 0.0
    steps_during_period: int = 0
    is_consecutive: bool = True
    notification_sent: bool = False
    last_notified_at: dt.datetime | None = None

    @property
    def is_open(self) -> bool:
        return self.end_time is None

    def hours_open(self, now: dt.datetime) -> float:
        """Duration in hours up to *now* (or up to ``end_time`` once closed)."""
        end = self.end_time or now
        return max(0.0, (end - self.start_time).total_seconds() / 3600)


# ── Archive ───────────────────────────────────────────────────

class HistoricalHourlyStep(BaseModel):
    """Write-once snapshot of an hourly record taken at rollover."""
    date: dt.date
    hour: int = Field(ge=0, le=23)
    steps: int = Field(ge=0)
    archived_at: dt.datetime = Field(default_factory=dt.datetime.now)


class DailyStatistics(BaseModel):
    """Write-once end-of-day summary taken at rollover."""
    date: dt.date
    daily_goal: int
    final_mood: int = Field(ge=MOOD_MIN, le=MOOD_MAX)
    total_steps: int = Field(ge=0)
    archived_at: dt.datetime = Field(default_factory=dt.datetime.now)

    @property
    def goal_achieved(self) -> bool:
        return self.total_steps >= self.daily_goal


# ── Notifications & observability ────────────────────────────

class Notification(BaseModel):
    """A user-facing alert handed to the delivery collaborator."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    kind: NotificationKind
    title: str
    message: str
    payload: dict[str, Any] = Field(default_factory=dict)
    timestamp: dt.datetime = Field(default_factory=dt.datetime.now)


class JobRun(BaseModel):
    """Execution fingerprint of one job invocation."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    job_name: str
    date: dt.date
    hour: int | None = None
    status: JobStatus
    attempts: int = 1
    previous_mood: int | None = None
    new_mood: int | None = None
    steps: int | None = None
    total_steps: int | None = None
    error: str = ""
    started_at: dt.datetime = Field(default_factory=dt.datetime.now)
    finished_at: dt.datetime | None = None
