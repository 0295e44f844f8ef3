"""Service wiring — one container holding every collaborator a job needs."""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from step_mood.config import Settings, get_settings
from step_mood.ledger import StepLedger
from step_mood.models import DailyStepTotal
from step_mood.notifications.handlers import NotificationDispatcher, create_dispatcher
from step_mood.sources.reconciler import StepSourceReconciler, create_reconciler
from step_mood.storage.preferences import PreferenceStore
from step_mood.storage.repository import (
    ArchiveRepository,
    HourlyStepRepository,
    InactivityRepository,
    JobRunRepository,
    MoodDropRepository,
    MoodRepository,
    NotificationLogRepository,
    StepTotalRepository,
)

logger = structlog.get_logger(__name__)


@dataclass
class Services:
    settings: Settings
    reconciler: StepSourceReconciler
    ledger: StepLedger
    step_totals: StepTotalRepository
    moods: MoodRepository
    inactivity: InactivityRepository
    mood_drops: MoodDropRepository
    notification_log: NotificationLogRepository
    archive: ArchiveRepository
    job_runs: JobRunRepository
    preferences: PreferenceStore
    dispatcher: NotificationDispatcher

    async def sync_reconciler(self, today: dt.date, *, advance: bool = False) -> bool:
        """Seed the reconciler from today's persisted total.

        Moving the reconciler onto a later day belongs to the rollover: unless
        *advance* is set, a reconciler still on an earlier day is left alone
        (its counts are not yet in that day's totals) and ``False`` returned.
        """
        if self.reconciler.day < today and not advance:
            logger.info(
                "services.rollover_pending",
                reconciler_day=self.reconciler.day.isoformat(),
                today=today.isoformat(),
            )
            return False
        if self.reconciler.day != today:
            self.reconciler.reset_for_new_day(today)
        persisted = await self.step_totals.get(today)
        if persisted is not None:
            self.reconciler.restore(today, persisted.cumulative_steps)
        return True

    async def persist_total(self, date: dt.date, total: int, daily_goal: int) -> None:
        await self.step_totals.upsert(
            DailyStepTotal(date=date, cumulative_steps=total, daily_goal=daily_goal)
        )
        if date == self.reconciler.day:
            self.reconciler.observe_persisted(total)

    async def backfill(self, date: dt.date, total_steps: int) -> bool:
        """Store a recovered total for a closed day; today's state is untouched."""
        if not self.reconciler.backfill(date, total_steps):
            return False
        existing = await self.step_totals.get(date)
        goal = existing.daily_goal if existing else (await self.preferences.load()).daily_goal
        await self.step_totals.upsert(
            DailyStepTotal(date=date, cumulative_steps=total_steps, daily_goal=goal)
        )
        return True


def build_services(
    session: AsyncSession | None = None,
    settings: Settings | None = None,
    *,
    dispatcher: NotificationDispatcher | None = None,
    reconciler: StepSourceReconciler | None = None,
) -> Services:
    """Wire every collaborator; pass *session* to share one session (tests)."""
    settings = settings or get_settings()
    return Services(
        settings=settings,
        reconciler=reconciler or create_reconciler(max_tick=settings.max_steps_per_tick),
        ledger=StepLedger(HourlyStepRepository(session)),
        step_totals=StepTotalRepository(session),
        moods=MoodRepository(session),
        inactivity=InactivityRepository(session),
        mood_drops=MoodDropRepository(session),
        notification_log=NotificationLogRepository(session),
        archive=ArchiveRepository(session),
        job_runs=JobRunRepository(session),
        preferences=PreferenceStore(session, settings),
        dispatcher=dispatcher or create_dispatcher(settings),
    )
