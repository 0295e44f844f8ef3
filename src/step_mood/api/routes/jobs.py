"""Manual job triggers and job-run diagnostics."""

from __future__ import annotations

from dataclasses import asdict

from fastapi import APIRouter, Query

from step_mood.api.schemas import JobTriggerRequest
from step_mood.api.state import get_scheduler, get_services

router = APIRouter(prefix="/jobs", tags=["jobs"])


@router.post("/hourly", summary="Run hourly reconciliation now")
async def trigger_hourly(req: JobTriggerRequest | None = None):
    result = await get_scheduler().run_hourly(req.now if req else None)
    return asdict(result)


@router.post("/inactivity", summary="Run the inactivity check now")
async def trigger_inactivity(req: JobTriggerRequest | None = None):
    result = await get_scheduler().run_inactivity_check(req.now if req else None)
    return asdict(result)


@router.get("/runs")
async def job_runs(job_name: str = "hourly_reconciliation", limit: int = Query(24, ge=1, le=500)):
    runs = await get_services().job_runs.get_recent(job_name, limit)
    return [r.model_dump(mode="json") for r in runs]


@router.get("/status")
async def scheduler_status():
    scheduler = get_scheduler()
    return {"running": scheduler.is_running, "stats": scheduler.stats}
