"""Step source capability interface and the two concrete counter kinds.

A source turns raw readings into a non-negative contribution for *today*.
Sources never raise on bad input: anomalies are clamped to a zero
contribution for the offending tick and logged.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from enum import IntEnum

import structlog

logger = structlog.get_logger(__name__)


class Confidence(IntEnum):
    """How much a source's current contribution can be trusted."""
    NONE = 0  # has not reported today
    LOW = 1
    HIGH = 2


class StepSource(ABC):
    """Contract for a step-count source.

    ``priority`` orders sources for selection (lower wins); the reconciler
    picks the first source whose :meth:`confidence` is above ``NONE``.
    """

    source_id: str
    priority: int

    @abstractmethod
    def contribute(self) -> int:
        """Steps this source attributes to today (always ``>= 0``)."""

    @abstractmethod
    def confidence(self) -> Confidence:
        """Current confidence in :meth:`contribute`."""

    @abstractmethod
    def reset(self) -> None:
        """Forget today's state (called at day rollover)."""


class CumulativeCounterSource(StepSource):
    """Counter-style source (e.g. a hardware step counter since boot).

    Readings are monotonic within a session.  The first reading of the day
    becomes ``session_baseline``; the contribution is the sum of everything
    banked from earlier sessions plus ``value - session_baseline``.  A reading
    below the previous one means the counter restarted: the new value becomes
    the baseline and that tick contributes nothing.
    """

    def __init__(self, source_id: str, *, priority: int = 0, max_tick: int = 10_000) -> None:
        self.source_id = source_id
        self.priority = priority
        self._max_tick = max_tick
        self.reset()

    @property
    def session_baseline(self) -> int | None:
        return self._baseline

    def reset(self) -> None:
        self._baseline: int | None = None
        self._last_value: int | None = None
        self._banked = 0

    def report(self, value: int) -> int:
        """Record a raw cumulative reading; return this tick's increment."""
        if value < 0:
            logger.warning("source.negative_reading", source=self.source_id, value=value)
            return 0

        if self._baseline is None or self._last_value is None:
            self._baseline = value
            self._last_value = value
            logger.debug("source.baseline_set", source=self.source_id, baseline=value)
            return 0

        if value < self._last_value:
            # Counter restarted (reboot / sensor reset): bank and rebase.
            self._banked += self._last_value - self._baseline
            self._baseline = value
            self._last_value = value
            logger.warning(
                "source.sensor_reset",
                source=self.source_id,
                value=value,
                banked=self._banked,
            )
            return 0

        delta = value - self._last_value
        if delta > self._max_tick:
            # Implausible jump: absorb it into the baseline.
            self._baseline += delta
            self._last_value = value
            logger.warning(
                "source.implausible_jump",
                source=self.source_id,
                delta=delta,
                max_tick=self._max_tick,
            )
            return 0

        self._last_value = value
        return delta

    def contribute(self) -> int:
        if self._baseline is None or self._last_value is None:
            return self._banked
        return self._banked + (self._last_value - self._baseline)

    def confidence(self) -> Confidence:
        return Confidence.HIGH if self._baseline is not None else Confidence.NONE


class EventCounterSource(StepSource):
    """Event-style source (e.g. an accelerometer step detector).

    Each report is an additive increment; there is no baseline.
    """

    def __init__(self, source_id: str, *, priority: int = 1, max_tick: int = 10_000) -> None:
        self.source_id = source_id
        self.priority = priority
        self._max_tick = max_tick
        self.reset()

    def reset(self) -> None:
        self._total = 0
        self._reported = False

    def report(self, count: int) -> int:
        """Record an increment; return what was actually credited."""
        self._reported = True
        if count < 0 or count > self._max_tick:
            logger.warning("source.rejected_event", source=self.source_id, count=count)
            return 0
        self._total += count
        return count

    def contribute(self) -> int:
        return self._total

    def confidence(self) -> Confidence:
        return Confidence.LOW if self._reported else Confidence.NONE
