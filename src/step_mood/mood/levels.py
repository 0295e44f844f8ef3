"""Named mood bands over the [0, 130] scale."""

from __future__ import annotations

from enum import Enum

from step_mood.models import MOOD_MAX, MOOD_MIN


class MoodLevel(Enum):
    """Mood band: (emoji, description, lower bound, upper bound)."""

    DEPRESSED = ("💀", "barely moving, dark cloud overhead", 0, 15)
    MISERABLE = ("😭", "dragging feet", 16, 30)
    ANNOYED = ("😤", "arms crossed, tapping foot", 31, 45)
    MEH = ("😑", "just existing", 46, 55)
    CONTENT = ("🙂", "relaxed, gentle bounce", 56, 65)
    HAPPY = ("😃", "big smile, happy bounce", 66, 75)
    PUMPED = ("😄", "energetic, little hops", 76, 85)
    UNSTOPPABLE = ("🔥", "on fire", 86, 100)
    TIRED = ("😮‍💨", "sweating, needs a break", 101, 115)
    EXHAUSTED = ("🥵", "collapsed, can barely move", 116, 130)

    def __init__(self, emoji: str, description: str, low: int, high: int) -> None:
        self.emoji = emoji
        self.description = description
        self.low = low
        self.high = high

    @property
    def index(self) -> int:
        return list(MoodLevel).index(self)

    @classmethod
    def from_mood(cls, mood: int) -> MoodLevel:
        mood = max(MOOD_MIN, min(MOOD_MAX, mood))
        for level in cls:
            if level.low <= mood <= level.high:
                return level
        return cls.MEH


def level_drop(previous_mood: int, current_mood: int) -> int:
    """Number of bands crossed going from *previous_mood* down to *current_mood*."""
    return MoodLevel.from_mood(previous_mood).index - MoodLevel.from_mood(current_mood).index
