"""
Engine Settings

Centralized configuration for the tournament engine.
All values are loaded from environment variables (.env is honoured).
"""
import os
from datetime import timedelta
from typing import Optional

from dotenv import load_dotenv

load_dotenv()


def get_bool_env(key: str, default: bool = False) -> bool:
    """Get a boolean value from environment variable."""
    value = os.getenv(key, str(default)).lower()
    return value in ('true', '1', 'yes', 'on', 'enabled')


def get_int_env(key: str, default: int) -> int:
    """Get an integer value from environment variable."""
    value = os.getenv(key)
    if value is None or value.strip() == "":
        return default
    return int(value)


def get_float_env(key: str, default: float) -> float:
    """Get a float value from environment variable."""
    value = os.getenv(key)
    if value is None or value.strip() == "":
        return default
    return float(value)


class EngineSettings:
    """
    Runtime settings for the engine.

    Keyword arguments override the environment, which tests rely on:
        EngineSettings(grace_window_hours=1, scheduler_enabled=False)
    """

    def __init__(self, **overrides):
        self.database_url: str = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./tourney.db")

        # Report → auto-confirm
        self.grace_window_hours: float = get_float_env("GRACE_WINDOW_HOURS", 24)
        self.warning_fraction: float = get_float_env("WARNING_FRACTION", 0.75)

        # Playable match → report_deadline_at
        self.no_report_window_hours: float = get_float_env("NO_REPORT_WINDOW_HOURS", 48)
        # Live match → report_deadline_at, counted from live_at
        self.live_report_window_minutes: float = get_float_env("LIVE_REPORT_WINDOW_MINUTES", 60)

        self.sweep_interval_seconds: int = get_int_env("SWEEP_INTERVAL_SECONDS", 120)
        self.scheduler_enabled: bool = get_bool_env("SCHEDULER_ENABLED", True)

        self.default_expiry_policy: str = os.getenv("DEFAULT_EXPIRY_POLICY", "no_contest")
        self.default_bracket_reset: bool = get_bool_env("DEFAULT_BRACKET_RESET", False)
        self.currency_minor_units: int = get_int_env("CURRENCY_MINOR_UNITS", 2)

        self.jwt_secret_key: str = os.getenv("JWT_SECRET_KEY", "dev-secret-change-me")
        self.jwt_algorithm: str = os.getenv("JWT_ALGORITHM", "HS256")

        self.wallet_api_url: Optional[str] = os.getenv("WALLET_API_URL") or None

        for key, value in overrides.items():
            if not hasattr(self, key):
                raise AttributeError(f"Unknown setting: {key}")
            setattr(self, key, value)

        if not 0 < self.warning_fraction < 1:
            raise ValueError("WARNING_FRACTION must be between 0 and 1")

    @property
    def grace_window(self) -> timedelta:
        return timedelta(hours=self.grace_window_hours)

    @property
    def no_report_window(self) -> timedelta:
        return timedelta(hours=self.no_report_window_hours)

    @property
    def live_report_window(self) -> timedelta:
        return timedelta(minutes=self.live_report_window_minutes)

    @property
    def warning_offset(self) -> timedelta:
        """How long before auto_confirm_at the warning becomes due."""
        return self.grace_window * (1 - self.warning_fraction)

    def as_dict(self) -> dict:
        return {
            key: value
            for key, value in self.__dict__.items()
            if not key.startswith('_') and key != "jwt_secret_key"
        }


# Singleton instance for easy importing
settings = EngineSettings()
