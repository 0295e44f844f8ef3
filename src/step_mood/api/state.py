"""Process-wide references set by the server lifespan and read by routers."""

from __future__ import annotations

from fastapi import HTTPException

from step_mood.scheduler.service import SchedulerService
from step_mood.services import Services

# Set by the server lifespan, read by the routers.
_services: Services | None = None
_scheduler_service: SchedulerService | None = None


def set_state(services: Services | None, scheduler: SchedulerService | None) -> None:
    """Wire services and the scheduler into the routers at startup."""
    global _services, _scheduler_service
    _services = services
    _scheduler_service = scheduler


def get_services() -> Services:
    if _services is None:
        raise HTTPException(503, "Services not initialised.")
    return _services


def get_scheduler() -> SchedulerService:
    if _scheduler_service is None:
        raise HTTPException(503, "Scheduler service not available.")
    return _scheduler_service


def current_state() -> tuple[Services | None, SchedulerService | None]:
    """Whatever is wired right now, without raising."""
    return _services, _scheduler_service
