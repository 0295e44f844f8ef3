"""Inactivity tracking — open/close low-activity periods and decide on nudges.

Per date the tracker moves between *no period*, *open period* and *closed
period*.  A pulse with fewer than ``inactivity_pulse_threshold_steps`` steps
opens a period (if none is open); a pulse at or above the threshold closes the
open one.  At most one period per date is open at any time.

Quiet hours are not inactivity: no period opens inside them, and a period
still open when they begin is closed there, so a night never counts towards
the next morning's nudge.

Eligibility checks never fail open: a storage error means "do not notify".
"""

from __future__ import annotations

import datetime as dt

import structlog

from step_mood.models import InactivityPeriod, Notification, NotificationKind
from step_mood.monitors.quiet_hours import in_quiet_hours
from step_mood.storage.preferences import UserPreferences
from step_mood.storage.repository import InactivityRepository, NotificationLogRepository

logger = structlog.get_logger(__name__)


def notification_message(duration_hours: float) -> str:
    """Nudge wording graded by how long the user has been still."""
    if duration_hours >= 8:
        return "You've been inactive for over 8 hours! Time for a walk?"
    if duration_hours >= 6:
        return "6+ hours of inactivity detected. Your character needs some steps!"
    if duration_hours >= 4:
        return "4 hours without activity. A short walk could boost your mood!"
    return "Time to get moving! Your step count is waiting for you!"


class InactivityTracker:
    """Stateful view over the inactivity period store for one preference snapshot."""

    def __init__(
        self,
        periods: InactivityRepository,
        notification_log: NotificationLogRepository,
        preferences: UserPreferences,
    ) -> None:
        self._periods = periods
        self._log = notification_log
        self._prefs = preferences

    # ── State transitions ─────────────────────────────────────

    async def on_activity_pulse(self, steps: int, now: dt.datetime) -> InactivityPeriod | None:
        """Feed the steps observed since the previous pulse.

        Returns the period that was opened, closed or extended, or ``None``
        when nothing changed.
        """
        steps = max(0, steps)
        today = now.date()
        threshold = max(1, self._prefs.inactivity_pulse_threshold_steps)
        current = await self._periods.get_open(today)
        quiet = in_quiet_hours(now.hour, self._prefs.quiet_hours_start, self._prefs.quiet_hours_end)

        if current is not None:
            if steps >= threshold or quiet:
                closed = current.model_copy(
                    update={
                        "end_time": now,
                        "duration_hours": round(current.hours_open(now), 2),
                        "steps_during_period": current.steps_during_period + steps,
                    }
                )
                await self._periods.update(closed)
                logger.info(
                    "inactivity.period_closed",
                    period_id=closed.id,
                    duration_hours=closed.duration_hours,
                    steps=steps,
                    quiet_hours=quiet,
                )
                return closed
            if steps:
                extended = current.model_copy(
                    update={"steps_during_period": current.steps_during_period + steps}
                )
                await self._periods.update(extended)
                return extended
            return None

        if steps < threshold and not quiet:
            opened = await self._periods.add(
                InactivityPeriod(date=today, start_time=now, steps_during_period=steps)
            )
            logger.info("inactivity.period_opened", period_id=opened.id, start=now.isoformat())
            return opened
        return None

    # ── Notification policy ───────────────────────────────────

    async def should_notify(self, now: dt.datetime) -> bool:
        try:
            return await self._should_notify(now)
        except Exception:
            logger.exception("inactivity.check_failed")
            return False

    async def _should_notify(self, now: dt.datetime) -> bool:
        prefs = self._prefs
        if not (prefs.notifications_enabled and prefs.inactivity_enabled):
            return False
        if in_quiet_hours(now.hour, prefs.quiet_hours_start, prefs.quiet_hours_end):
            logger.debug("inactivity.quiet_hours", hour=now.hour)
            return False

        sent_today = await self._log.count_for_date(now.date(), NotificationKind.INACTIVITY)
        if sent_today >= prefs.inactivity_max_notifications_per_day:
            logger.debug("inactivity.daily_cap_reached", sent=sent_today)
            return False

        period = await self._periods.get_open(now.date())
        if period is None:
            return False

        if period.notification_sent:
            gap = dt.timedelta(hours=prefs.inactivity_min_hours_between_notifications)
            if period.last_notified_at is None or now - period.last_notified_at < gap:
                return False

        duration = period.hours_open(now)
        due = duration >= prefs.inactivity_threshold_hours
        logger.debug(
            "inactivity.evaluated",
            duration_hours=round(duration, 2),
            threshold=prefs.inactivity_threshold_hours,
            due=due,
        )
        return due

    async def mark_notified(self, now: dt.datetime, message: str = "") -> InactivityPeriod | None:
        """Count today's nudge and flag the open period as notified; it stays open."""
        await self._log.add(
            Notification(
                kind=NotificationKind.INACTIVITY,
                title="Time to move",
                message=message,
                timestamp=now,
            )
        )
        period = await self._periods.get_open(now.date())
        if period is None:
            return None
        flagged = period.model_copy(
            update={
                "notification_sent": True,
                "last_notified_at": now,
                "duration_hours": round(period.hours_open(now), 2),
            }
        )
        await self._periods.update(flagged)
        logger.info("inactivity.marked_notified", period_id=flagged.id)
        return flagged

    async def current_message(self, now: dt.datetime) -> str:
        period = await self._periods.get_open(now.date())
        return notification_message(period.hours_open(now) if period else 0.0)
