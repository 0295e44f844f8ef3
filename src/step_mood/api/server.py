"""FastAPI application — step ingestion, status queries and manual job triggers.

This module wires together all infrastructure:
- Database initialisation
- Service container (reconciler, ledger, repositories, notifications)
- Reconciler restore from the persisted total
- Scheduled hourly reconciliation and inactivity checks
"""

from __future__ import annotations

import datetime as dt
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI

from step_mood import __version__
from step_mood.api.routes.jobs import router as jobs_router
from step_mood.api.routes.mood import router as mood_router
from step_mood.api.routes.preferences import router as preferences_router
from step_mood.api.routes.steps import router as steps_router
from step_mood.api.state import current_state, set_state
from step_mood.config import get_settings
from step_mood.scheduler.service import SchedulerService
from step_mood.services import build_services
from step_mood.storage.database import init_db

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle hooks."""
    settings = get_settings()

    # 1. Database
    await init_db()
    logger.info("server.db_ready")

    # 2. Services, with today's total restored after a restart
    services = build_services(settings=settings)
    await services.sync_reconciler(dt.date.today())

    # 3. Scheduled jobs
    scheduler = SchedulerService(services)
    if settings.scheduler_enabled:
        await scheduler.start()
        logger.info("server.scheduler_started")
    set_state(services, scheduler)

    logger.info("server.started", port=settings.api_port)

    yield  # ← application runs

    # Shutdown
    await scheduler.stop()
    set_state(None, None)
    logger.info("server.stopped")


app = FastAPI(
    title="Step Mood API",
    description="Step-to-mood reconciliation engine: ingestion, ledger, mood and alerts.",
    version=__version__,
    lifespan=lifespan,
)

# ── Routers ───────────────────────────────────────────────────
app.include_router(steps_router)
app.include_router(mood_router)
app.include_router(jobs_router)
app.include_router(preferences_router)


# ── Health ────────────────────────────────────────────────────

@app.get("/health", tags=["system"])
async def health():
    services, scheduler = current_state()
    return {
        "status": "ok",
        "version": __version__,
        "scheduler_running": bool(scheduler and scheduler.is_running),
        "notifier_healthy": bool(services and services.dispatcher.is_healthy()),
    }
