"""User preference store — keyed get/set with defaults from settings."""

from __future__ import annotations

import json
from typing import Any

import structlog
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from step_mood.config import Settings, get_settings
from step_mood.storage.database import PreferenceRow
from step_mood.storage.repository import BaseRepository

logger = structlog.get_logger(__name__)


class UserPreferences(BaseModel):
    """Snapshot of every user-tunable knob, read once per job invocation."""

    daily_goal: int = Field(default=7000, ge=1000)
    quiet_hours_start: int = Field(default=23, ge=0, le=23)
    quiet_hours_end: int = Field(default=6, ge=0, le=23)
    notifications_enabled: bool = True

    inactivity_enabled: bool = True
    inactivity_threshold_hours: int = Field(default=4, ge=1)
    inactivity_max_notifications_per_day: int = Field(default=3, ge=0)
    inactivity_min_hours_between_notifications: int = Field(default=2, ge=0)
    inactivity_pulse_threshold_steps: int = Field(default=50, ge=0)

    mood_notifications_enabled: bool = True
    mood_drop_threshold_levels: int = Field(default=2, ge=1)
    mood_max_notifications_per_day: int = Field(default=5, ge=0)
    mood_min_hours_between_notifications: int = Field(default=2, ge=0)

    @classmethod
    def defaults_from(cls, settings: Settings) -> UserPreferences:
        """Build the default snapshot from the ``pref_*`` settings."""
        values = {
            name: getattr(settings, f"pref_{name}")
            for name in cls.model_fields
            if hasattr(settings, f"pref_{name}")
        }
        return cls(**values)


PREFERENCE_KEYS = frozenset(UserPreferences.model_fields)


class PreferenceStore(BaseRepository):
    """Settings collaborator: ``get(key, default)`` / ``set(key, value)``.

    Values are JSON-encoded in the ``preferences`` table.  Only keys known to
    :class:`UserPreferences` are accepted.
    """

    def __init__(self, session: AsyncSession | None = None, settings: Settings | None = None) -> None:
        super().__init__(session)
        self._settings = settings or get_settings()

    async def get(self, key: str, default: Any = None) -> Any:
        async with self._session() as session:
            row = await session.get(PreferenceRow, key)
            if row is None:
                return default
            return json.loads(row.value_json)

    async def set(self, key: str, value: Any) -> None:
        if key not in PREFERENCE_KEYS:
            raise ValueError(f"Unknown preference key: {key!r}")
        # Validate against the snapshot model before persisting.
        current = await self.load()
        UserPreferences(**(current.model_dump() | {key: value}))
        async with self._session() as session:
            await session.merge(PreferenceRow(key=key, value_json=json.dumps(value)))
            await session.commit()
        logger.info("preferences.updated", key=key, value=value)

    async def update(self, values: dict[str, Any]) -> UserPreferences:
        """Set several keys at once; validated as a whole before any write."""
        unknown = set(values) - PREFERENCE_KEYS
        if unknown:
            raise ValueError(f"Unknown preference keys: {sorted(unknown)}")
        merged = UserPreferences(**((await self.load()).model_dump() | values))
        async with self._session() as session:
            for key, value in values.items():
                await session.merge(PreferenceRow(key=key, value_json=json.dumps(value)))
            await session.commit()
        logger.info("preferences.updated", keys=sorted(values))
        return merged

    async def load(self) -> UserPreferences:
        """Return the current snapshot, stored values overriding defaults."""
        defaults = UserPreferences.defaults_from(self._settings)
        async with self._session() as session:
            result = await session.execute(select(PreferenceRow))
            stored = {
                row.key: json.loads(row.value_json)
                for row in result.scalars().all()
                if row.key in PREFERENCE_KEYS
            }
        return defaults.model_copy(update=stored)
