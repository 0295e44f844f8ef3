"""Quiet-hours window shared by mood decay and alert throttling."""

from __future__ import annotations


def in_quiet_hours(hour: int, start: int, end: int) -> bool:
    """Return ``True`` if *hour* falls inside the inclusive ``[start, end]`` window.

    A window with ``start > end`` wraps midnight (e.g. 23 → 6).
    """
    if start <= end:
        return start <= hour <= end
    return hour >= start or hour <= end
