"""Step ingestion and ledger routes — sensor callbacks post readings here."""

from __future__ import annotations

import datetime as dt
from typing import Any

import structlog
from fastapi import APIRouter, HTTPException

from step_mood.api.schemas import (
    BackfillRequest,
    CumulativeReading,
    EventReading,
    ReadingAccepted,
    TodaySteps,
)
from step_mood.api.state import get_services

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["steps"])


# ── Ingestion ─────────────────────────────────────────────────


@router.post("/steps/cumulative", response_model=ReadingAccepted, summary="Report a counter reading")
async def report_cumulative(reading: CumulativeReading):
    services = get_services()
    contribution = services.reconciler.report_cumulative(reading.source_id, reading.value)
    return ReadingAccepted(
        source_id=reading.source_id,
        contribution=contribution,
        total_today=services.reconciler.get_total_today(),
    )


@router.post("/steps/events", response_model=ReadingAccepted, summary="Report detected steps")
async def report_events(reading: EventReading):
    services = get_services()
    contribution = services.reconciler.report_event(reading.source_id, reading.count)
    return ReadingAccepted(
        source_id=reading.source_id,
        contribution=contribution,
        total_today=services.reconciler.get_total_today(),
    )


@router.post("/steps/backfill", summary="Store a recovered total for a closed day")
async def backfill(req: BackfillRequest):
    services = get_services()
    if not await services.backfill(req.date, req.total_steps):
        raise HTTPException(422, "Backfill is only accepted for closed days.")
    return {"date": req.date.isoformat(), "total_steps": req.total_steps, "accepted": True}


# ── Queries ───────────────────────────────────────────────────


@router.get("/steps/today", response_model=TodaySteps)
async def steps_today():
    services = get_services()
    prefs = await services.preferences.load()
    return TodaySteps(
        date=services.reconciler.day,
        total_steps=services.reconciler.get_total_today(),
        daily_goal=prefs.daily_goal,
        selected_source=services.reconciler.selected_source,
    )


@router.get("/steps/sources", summary="Reconciler diagnostics")
async def step_sources() -> dict[str, Any]:
    return get_services().reconciler.snapshot()


@router.get("/ledger/{date}")
async def ledger_for_date(date: dt.date):
    """Hourly deltas for *date*, plus how far they are from the day's total."""
    services = get_services()
    hours = await services.ledger.get_hours_for_date(date)
    total = await services.step_totals.get(date)
    return {
        "date": date.isoformat(),
        "hours": [h.model_dump(mode="json") for h in hours],
        "ledger_total": sum(h.steps for h in hours),
        "daily_total": total.cumulative_steps if total else None,
        "gaps": [h for h in range(24) if h not in {r.hour for r in hours}],
    }
