"""Merge several step sources into one trusted "total steps today".

Selection policy
~~~~~~~~~~~~~~~~
Sources are ordered by ``priority``.  The first source that has reported
today is trusted; with none reporting, the last known total is returned.

When the trusted source changes (e.g. the counter comes up after the event
detector already ran) the running total carries over: the new source only
adds what it observes from the switch onwards.  The result never drops below
the last total this reconciler returned or the last persisted total for the
day.

Sensor callbacks may arrive from other threads, so every state change is
serialised under a lock.
"""

from __future__ import annotations

import datetime as dt
import threading

import structlog

from step_mood.sources.base import (
    Confidence,
    CumulativeCounterSource,
    EventCounterSource,
    StepSource,
)

logger = structlog.get_logger(__name__)

PRIMARY_SOURCE_ID = "hardware_counter"
SECONDARY_SOURCE_ID = "step_detector"


class StepSourceReconciler:
    """Produce a non-negative, monotonic-within-day step total."""

    def __init__(self, sources: list[StepSource] | None = None, *, day: dt.date | None = None) -> None:
        self._lock = threading.Lock()
        self._sources: dict[str, StepSource] = {}
        for source in sources or []:
            self._sources[source.source_id] = source
        self._day = day or dt.date.today()
        self._clear_day_state()

    def _clear_day_state(self) -> None:
        self._floor = 0
        self._last_total = 0
        self._offset = 0
        self._switch_base = 0
        self._selected_id: str | None = None

    # ── Source management ─────────────────────────────────────

    def register(self, source: StepSource) -> None:
        with self._lock:
            self._sources[source.source_id] = source

    @property
    def day(self) -> dt.date:
        return self._day

    @property
    def selected_source(self) -> str | None:
        return self._selected_id

    def _ordered(self) -> list[StepSource]:
        return sorted(self._sources.values(), key=lambda s: s.priority)

    # ── Inputs ────────────────────────────────────────────────

    def report_cumulative(self, source_id: str, value: int) -> int:
        """Record a raw cumulative reading; return the tick's contribution."""
        with self._lock:
            source = self._sources.get(source_id)
            if not isinstance(source, CumulativeCounterSource):
                logger.warning("reconciler.unknown_cumulative_source", source=source_id)
                return 0
            return source.report(int(value))

    def report_event(self, source_id: str, count: int) -> int:
        """Record an additive increment from an event-style source."""
        with self._lock:
            source = self._sources.get(source_id)
            if not isinstance(source, EventCounterSource):
                logger.warning("reconciler.unknown_event_source", source=source_id)
                return 0
            return source.report(int(count))

    def restore(self, day: dt.date, persisted_total: int) -> None:
        """Seed today's total after a restart from the persisted value.

        Steps counted before the restart are kept as an offset so that a
        fresh counter session adds to them instead of replacing them.
        """
        with self._lock:
            if day != self._day:
                self._reset_locked(day)
            if self._selected_id is not None:
                self._floor = max(self._floor, persisted_total)
                return
            self._last_total = max(self._last_total, persisted_total)
            self._floor = max(self._floor, persisted_total)
            logger.info("reconciler.restored", day=day.isoformat(), total=persisted_total)

    def observe_persisted(self, total: int) -> None:
        """Raise the monotonic floor to the last persisted total for today."""
        with self._lock:
            self._floor = max(self._floor, max(0, total))

    # ── Output ────────────────────────────────────────────────

    def get_total_today(self) -> int:
        with self._lock:
            selected = next(
                (s for s in self._ordered() if s.confidence() > Confidence.NONE),
                None,
            )
            if selected is None:
                return max(self._floor, self._last_total)

            if selected.source_id != self._selected_id:
                logger.info(
                    "reconciler.source_selected",
                    source=selected.source_id,
                    previous=self._selected_id,
                    carried_total=self._last_total,
                )
                self._offset = max(self._last_total, self._floor)
                # First pick of the day counts everything the source has seen.
                self._switch_base = selected.contribute() if self._selected_id is not None else 0
                self._selected_id = selected.source_id

            observed = self._offset + selected.contribute() - self._switch_base
            total = max(observed, self._floor, self._last_total, 0)
            self._last_total = total
            return total

    # ── Day boundaries ────────────────────────────────────────

    def reset_for_new_day(self, day: dt.date) -> bool:
        """Clear per-source baselines for *day*; a no-op if already on it."""
        with self._lock:
            if day == self._day:
                return False
            self._reset_locked(day)
            return True

    def _reset_locked(self, day: dt.date) -> None:
        for source in self._sources.values():
            source.reset()
        previous = self._day
        self._day = day
        self._clear_day_state()
        logger.info("reconciler.day_reset", previous=previous.isoformat(), day=day.isoformat())

    def backfill(self, date: dt.date, total_steps: int) -> bool:
        """Accept a historical total for an already-closed day.

        Today's state is untouched; the caller persists accepted values.
        """
        if date >= self._day:
            logger.warning("reconciler.backfill_rejected", date=date.isoformat(), reason="not_closed")
            return False
        if total_steps < 0:
            logger.warning("reconciler.backfill_rejected", date=date.isoformat(), reason="negative")
            return False
        logger.info("reconciler.backfill_accepted", date=date.isoformat(), total=total_steps)
        return True

    def snapshot(self) -> dict[str, object]:
        """Diagnostic view of the reconciler state."""
        with self._lock:
            return {
                "day": self._day.isoformat(),
                "selected_source": self._selected_id,
                "last_total": self._last_total,
                "floor": self._floor,
                "sources": {
                    s.source_id: {
                        "priority": s.priority,
                        "confidence": s.confidence().name.lower(),
                        "contribution": s.contribute(),
                    }
                    for s in self._ordered()
                },
            }


def create_reconciler(*, max_tick: int = 10_000, day: dt.date | None = None) -> StepSourceReconciler:
    """Reconciler wired with the default counter (primary) and detector (secondary)."""
    return StepSourceReconciler(
        [
            CumulativeCounterSource(PRIMARY_SOURCE_ID, priority=0, max_tick=max_tick),
            EventCounterSource(SECONDARY_SOURCE_ID, priority=1, max_tick=max_tick),
        ],
        day=day,
    )
