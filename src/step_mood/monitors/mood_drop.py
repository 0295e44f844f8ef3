"""Mood-drop alerts — record decreases and decide when one is worth a nudge."""

from __future__ import annotations

import datetime as dt

import structlog

from step_mood.models import MoodDrop, Notification, NotificationKind
from step_mood.monitors.quiet_hours import in_quiet_hours
from step_mood.mood.levels import MoodLevel, level_drop
from step_mood.storage.preferences import UserPreferences
from step_mood.storage.repository import MoodDropRepository, NotificationLogRepository

logger = structlog.get_logger(__name__)


def drop_message(drop: MoodDrop) -> str:
    before = MoodLevel.from_mood(drop.previous_mood)
    after = MoodLevel.from_mood(drop.current_mood)
    return (
        f"Your character went from {before.name.lower()} {before.emoji} to "
        f"{after.name.lower()} {after.emoji}. A short walk would cheer them up!"
    )


class MoodDropMonitor:
    """Track mood decreases and throttle the alerts they trigger."""

    def __init__(
        self,
        drops: MoodDropRepository,
        notification_log: NotificationLogRepository,
        preferences: UserPreferences,
    ) -> None:
        self._drops = drops
        self._log = notification_log
        self._prefs = preferences

    async def record(
        self,
        previous_mood: int,
        current_mood: int,
        *,
        steps: int,
        period_hours: float,
        now: dt.datetime,
    ) -> MoodDrop | None:
        """Store a drop when *current_mood* is below *previous_mood*.

        A decrease that continues today's pending drop extends it, so a slow
        slide over several hours is measured from where it started.
        """
        if current_mood >= previous_mood:
            return None
        pending = await self._drops.get_pending(now.date())
        if pending is not None and pending.current_mood == previous_mood:
            drop = pending.model_copy(
                update={
                    "timestamp": now,
                    "current_mood": current_mood,
                    "level_drop": level_drop(pending.previous_mood, current_mood),
                    "steps_in_period": pending.steps_in_period + steps,
                    "period_hours": pending.period_hours + period_hours,
                }
            )
            await self._drops.update(drop)
        else:
            drop = await self._drops.add(
                MoodDrop(
                    date=now.date(),
                    timestamp=now,
                    previous_mood=previous_mood,
                    current_mood=current_mood,
                    level_drop=level_drop(previous_mood, current_mood),
                    steps_in_period=steps,
                    period_hours=period_hours,
                )
            )
        logger.info(
            "mood_drop.recorded",
            previous=previous_mood,
            current=current_mood,
            level_drop=drop.level_drop,
            steps=steps,
        )
        return drop

    async def pending_alert(self, now: dt.datetime) -> MoodDrop | None:
        """Return the drop that should be announced now, if any."""
        try:
            return await self._pending_alert(now)
        except Exception:
            logger.exception("mood_drop.check_failed")
            return None

    async def _pending_alert(self, now: dt.datetime) -> MoodDrop | None:
        prefs = self._prefs
        if not (prefs.notifications_enabled and prefs.mood_notifications_enabled):
            return None
        if in_quiet_hours(now.hour, prefs.quiet_hours_start, prefs.quiet_hours_end):
            return None
        if await self._log.count_for_date(now.date(), NotificationKind.MOOD_DROP) >= prefs.mood_max_notifications_per_day:
            return None

        last = await self._log.last_sent_at(NotificationKind.MOOD_DROP)
        if last is not None and now - last < dt.timedelta(hours=prefs.mood_min_hours_between_notifications):
            return None

        drop = await self._drops.get_pending(now.date())
        if drop is None or drop.level_drop < prefs.mood_drop_threshold_levels:
            return None
        return drop

    async def mark_notified(self, drop: MoodDrop, now: dt.datetime, message: str = "") -> None:
        await self._log.add(
            Notification(
                kind=NotificationKind.MOOD_DROP,
                title="Your character needs you!",
                message=message or drop_message(drop),
                timestamp=now,
            )
        )
        if drop.id is not None:
            await self._drops.mark_sent(drop.id)
        logger.info("mood_drop.marked_notified", drop_id=drop.id)
