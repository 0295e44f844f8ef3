"""Centralised application settings loaded from environment / .env file."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict

_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent


def _resolve_db_dir() -> Path:
    """Return (and create) the directory that holds the SQLite file."""
    d = _PROJECT_ROOT / "data"
    d.mkdir(parents=True, exist_ok=True)
    return d


_DB_DIR = _resolve_db_dir()
_DEFAULT_DB_URL = f"sqlite+aiosqlite:///{_DB_DIR / 'step_mood.db'}"


class Settings(BaseSettings):
    """All static runtime configuration for the step-mood service.

    Values are read from environment variables first, then from a *.env* file
    located at the project root.  User-tunable preferences (daily goal, quiet
    hours, notification caps) live in the preference store; the ``pref_*``
    values below are only their defaults.
    """

    model_config = SettingsConfigDict(
        env_file=str(_PROJECT_ROOT / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Database ──────────────────────────────────────────────
    database_url: str = _DEFAULT_DB_URL
    retention_days: int = 30

    # ── API server ────────────────────────────────────────────
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    # ── Notifications ─────────────────────────────────────────
    webhook_url: str = ""
    notification_max_attempts: int = 3
    notification_backoff_seconds: float = 1.0

    # ── Scheduler ─────────────────────────────────────────────
    scheduler_enabled: bool = True
    hourly_job_minute: int = 1
    inactivity_check_interval_minutes: int = 15
    rollover_window_minutes: int = 5

    # ── Job retry policy ──────────────────────────────────────
    job_max_attempts: int = 3
    job_backoff_base_seconds: float = 5.0
    job_backoff_max_seconds: float = 60.0

    # ── Step sources ──────────────────────────────────────────
    max_steps_per_tick: int = 10_000  # single-tick jumps above this are dropped

    # ── Preference defaults ───────────────────────────────────
    pref_daily_goal: int = 7000
    pref_quiet_hours_start: int = 23
    pref_quiet_hours_end: int = 6
    pref_notifications_enabled: bool = True
    pref_inactivity_enabled: bool = True
    pref_inactivity_threshold_hours: int = 4
    pref_inactivity_max_notifications_per_day: int = 3
    pref_inactivity_min_hours_between_notifications: int = 2
    pref_inactivity_pulse_threshold_steps: int = 50
    pref_mood_notifications_enabled: bool = True
    pref_mood_drop_threshold_levels: int = 2
    pref_mood_max_notifications_per_day: int = 5
    pref_mood_min_hours_between_notifications: int = 2


@lru_cache
def get_settings() -> Settings:
    """Return a cached :class:`Settings` singleton."""
    return Settings()
