"""Shared pytest fixtures."""

from __future__ import annotations

import datetime as dt

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from step_mood.config import Settings
from step_mood.notifications.handlers import InMemoryHandler, NotificationDispatcher
from step_mood.services import Services, build_services
from step_mood.sources.reconciler import StepSourceReconciler, create_reconciler
from step_mood.storage.database import Base

DAY = dt.date(2024, 3, 11)


async def _no_sleep(_: float) -> None:
    return None


def at(hour: int, minute: int = 1, day: dt.date = DAY) -> dt.datetime:
    return dt.datetime.combine(day, dt.time(hour, minute))


@pytest.fixture
async def session() -> AsyncSession:
    """In-memory SQLite session shared by every repository in a test."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    factory = async_sessionmaker(engine, expire_on_commit=False)
    async with factory() as s:
        yield s
    await engine.dispose()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        database_url="sqlite+aiosqlite:///:memory:",
        scheduler_enabled=False,
        job_backoff_base_seconds=0,
        notification_backoff_seconds=0,
    )


@pytest.fixture
def memory_handler() -> InMemoryHandler:
    return InMemoryHandler()


@pytest.fixture
def dispatcher(memory_handler: InMemoryHandler) -> NotificationDispatcher:
    return NotificationDispatcher(handlers=[memory_handler], sleep=_no_sleep)


@pytest.fixture
def reconciler() -> StepSourceReconciler:
    return create_reconciler(day=DAY)


@pytest.fixture
def services(
    session: AsyncSession,
    settings: Settings,
    dispatcher: NotificationDispatcher,
    reconciler: StepSourceReconciler,
) -> Services:
    return build_services(session, settings, dispatcher=dispatcher, reconciler=reconciler)
