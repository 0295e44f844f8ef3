"""Mood and inactivity status routes."""

from __future__ import annotations

import datetime as dt

from fastapi import APIRouter, HTTPException, Query

from step_mood.api.schemas import MoodStatus
from step_mood.api.state import get_services
from step_mood.mood.levels import MoodLevel

router = APIRouter(tags=["mood"])


@router.get("/mood/today", response_model=MoodStatus)
async def mood_today():
    services = get_services()
    record = await services.moods.get(dt.date.today())
    if record is None:
        raise HTTPException(404, "No mood recorded for today yet.")
    level = MoodLevel.from_mood(record.mood)
    return MoodStatus(
        date=record.date,
        mood=record.mood,
        level=level.name.lower(),
        emoji=level.emoji,
        daily_start_mood=record.daily_start_mood,
        previous_day_end_mood=record.previous_day_end_mood,
        last_applied_hour=record.last_applied_hour,
        finalized=record.finalized,
    )


@router.get("/mood/history")
async def mood_history(days: int = Query(7, ge=1, le=365)):
    """Mood records and archived statistics for the last *days* days."""
    services = get_services()
    date_to = dt.date.today()
    date_from = date_to - dt.timedelta(days=days - 1)
    records = await services.moods.get_range(date_from, date_to)
    stats = await services.archive.get_statistics(date_from, date_to)
    return {
        "moods": [r.model_dump(mode="json") for r in records],
        "statistics": [
            s.model_dump(mode="json") | {"goal_achieved": s.goal_achieved} for s in stats
        ],
    }


@router.get("/inactivity/{date}")
async def inactivity_for_date(date: dt.date):
    periods = await get_services().inactivity.get_for_date(date)
    return [p.model_dump(mode="json") | {"is_open": p.is_open} for p in periods]
