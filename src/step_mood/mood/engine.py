"""Mood arithmetic: bracketed gain, hourly decay, day start and finalisation.

Everything here is a pure function of its inputs.  Persistence of the
resulting :class:`MoodRecord` is the caller's job.

Scaling
~~~~~~~
Bracket divisors and the activity threshold are tuned for a 10 000-step goal
and scale linearly with the user's goal, floor-clamped so a tiny goal can never
make a single step worth a whole mood point.  Bracket bounds do not scale.
"""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, field

from step_mood.models import MOOD_MAX, MOOD_MIN, MoodRecord
from step_mood.monitors.quiet_hours import in_quiet_hours
from step_mood.storage.preferences import UserPreferences

BASELINE_GOAL = 10_000
MIN_DIVISOR = 50
BASE_DECAY_THRESHOLD = 250
BASE_HOURLY_DECAY = 5
OVEREXERTION_THRESHOLD = 100
OVEREXERTION_DECAY = 8
NEUTRAL_MOOD = 50


@dataclass(frozen=True, slots=True)
class Bracket:
    """Steps in ``[lower, upper)`` earn one point per ``steps_per_point``."""

    lower: int
    upper: int | None
    steps_per_point: int

    def steps_in(self, steps: int) -> int:
        if steps <= self.lower:
            return 0
        top = steps if self.upper is None else min(steps, self.upper)
        return top - self.lower


# (lower, upper, divisor at the baseline goal)
BASE_BRACKETS: tuple[tuple[int, int | None, int], ...] = (
    (0, 5_000, 150),
    (5_000, 10_000, 200),
    (10_000, 15_000, 500),
    (15_000, None, 1_000),
)


def _scaled(base: int, goal: int, minimum: int) -> int:
    return max(base * goal // BASELINE_GOAL, minimum)


@dataclass(frozen=True, slots=True)
class MoodPolicy:
    """Tunable numbers behind the mood formulas for one user."""

    brackets: tuple[Bracket, ...] = field(
        default_factory=lambda: tuple(Bracket(lo, hi, d) for lo, hi, d in BASE_BRACKETS)
    )
    decay_threshold: int = BASE_DECAY_THRESHOLD
    hourly_decay: int = BASE_HOURLY_DECAY
    overexertion_decay: int = OVEREXERTION_DECAY
    quiet_hours_start: int = 23
    quiet_hours_end: int = 6

    @classmethod
    def for_goal(cls, daily_goal: int, *, quiet_hours_start: int = 23, quiet_hours_end: int = 6) -> MoodPolicy:
        return cls(
            brackets=tuple(Bracket(lo, hi, _scaled(d, daily_goal, MIN_DIVISOR)) for lo, hi, d in BASE_BRACKETS),
            decay_threshold=_scaled(BASE_DECAY_THRESHOLD, daily_goal, MIN_DIVISOR),
            hourly_decay=_scaled(BASE_HOURLY_DECAY, daily_goal, 1),
            quiet_hours_start=quiet_hours_start,
            quiet_hours_end=quiet_hours_end,
        )

    @classmethod
    def from_preferences(cls, prefs: UserPreferences) -> MoodPolicy:
        return cls.for_goal(
            prefs.daily_goal,
            quiet_hours_start=prefs.quiet_hours_start,
            quiet_hours_end=prefs.quiet_hours_end,
        )


def clamp_mood(value: int) -> int:
    return max(MOOD_MIN, min(MOOD_MAX, value))


def start_of_day_mood(previous_day_end_mood: int) -> int:
    """Dampen momentum across the day boundary."""
    if previous_day_end_mood > 115:
        return 60
    if previous_day_end_mood < 20:
        return 30
    return NEUTRAL_MOOD


@dataclass(frozen=True, slots=True)
class HourlyUpdate:
    """One applied hour, for logging and mood-drop detection."""

    hour: int
    steps: int
    previous_mood: int
    new_mood: int


class MoodEngine:
    """Stateless mood calculator bound to a :class:`MoodPolicy`."""

    def __init__(self, policy: MoodPolicy | None = None) -> None:
        self.policy = policy or MoodPolicy()

    def gain_for_steps(self, steps: int) -> int:
        if steps <= 0:
            return 0
        return sum(b.steps_in(steps) // b.steps_per_point for b in self.policy.brackets)

    def decay_for_hour(self, hour: int, steps_in_hour: int, current_mood: int) -> int:
        """Mood delta (``<= 0``) owed for *hour*."""
        p = self.policy
        if in_quiet_hours(hour, p.quiet_hours_start, p.quiet_hours_end):
            return 0
        if current_mood > OVEREXERTION_THRESHOLD:
            return -p.overexertion_decay
        if steps_in_hour < p.decay_threshold:
            return -p.hourly_decay
        return 0

    def apply_hourly_update(self, previous_mood: int, hour: int, steps_in_hour: int) -> int:
        steps = max(0, steps_in_hour)
        return clamp_mood(
            previous_mood + self.gain_for_steps(steps) + self.decay_for_hour(hour, steps, previous_mood)
        )

    # ── Record transitions ────────────────────────────────────

    def new_day_record(self, date: dt.date, previous: MoodRecord | None) -> MoodRecord:
        """Seed *date* from the previous day's end mood (neutral on first use)."""
        if previous is None:
            return MoodRecord(
                date=date,
                mood=NEUTRAL_MOOD,
                daily_start_mood=NEUTRAL_MOOD,
                previous_day_end_mood=NEUTRAL_MOOD,
            )
        start = start_of_day_mood(previous.mood)
        return MoodRecord(
            date=date,
            mood=start,
            daily_start_mood=start,
            previous_day_end_mood=previous.mood,
        )

    def replay(
        self,
        record: MoodRecord,
        steps_by_hour: dict[int, int],
        through_hour: int,
        total_today: int,
    ) -> tuple[MoodRecord, list[HourlyUpdate]]:
        """Apply every hour in ``(last_applied_hour, through_hour]`` in order.

        Hours missing from *steps_by_hour* count as zero steps.  A finalised
        record is returned unchanged.
        """
        if record.finalized:
            return record, []
        mood = record.mood
        updates: list[HourlyUpdate] = []
        for hour in range(record.last_applied_hour + 1, through_hour + 1):
            steps = steps_by_hour.get(hour, 0)
            new_mood = self.apply_hourly_update(mood, hour, steps)
            updates.append(HourlyUpdate(hour=hour, steps=steps, previous_mood=mood, new_mood=new_mood))
            mood = new_mood
        updated = record.model_copy(
            update={
                "mood": mood,
                "last_applied_hour": max(record.last_applied_hour, through_hour),
                "last_persisted_steps": max(record.last_persisted_steps, total_today),
            }
        )
        return updated, updates

    def finalize_day(self, record: MoodRecord, at: dt.datetime | None = None) -> MoodRecord:
        """Freeze *record*; finalising an already-final record changes nothing."""
        if record.finalized:
            return record
        return record.model_copy(update={"finalized": True, "finalized_at": at or dt.datetime.now()})
