"""Request / response models shared across API route modules."""

from __future__ import annotations

import datetime as dt

from pydantic import BaseModel, Field

from step_mood.sources.reconciler import PRIMARY_SOURCE_ID, SECONDARY_SOURCE_ID


class CumulativeReading(BaseModel):
    """Raw reading from a counter-style source."""
    source_id: str = PRIMARY_SOURCE_ID
    value: int


class EventReading(BaseModel):
    """Additive increment from an event-style source."""
    source_id: str = SECONDARY_SOURCE_ID
    count: int


class ReadingAccepted(BaseModel):
    source_id: str
    contribution: int
    total_today: int


class BackfillRequest(BaseModel):
    date: dt.date
    total_steps: int = Field(ge=0)


class JobTriggerRequest(BaseModel):
    """Manual trigger; ``now`` defaults to the current local time."""
    now: dt.datetime | None = None


class TodaySteps(BaseModel):
    date: dt.date
    total_steps: int
    daily_goal: int
    selected_source: str | None = None


class MoodStatus(BaseModel):
    date: dt.date
    mood: int
    level: str
    emoji: str
    daily_start_mood: int
    previous_day_end_mood: int
    last_applied_hour: int
    finalized: bool
