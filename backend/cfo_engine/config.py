"""Environment driven configuration for the recomputation engine."""

from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import timedelta

JOB_LOCK_STALE_MINUTES_ENV = "JOB_LOCK_STALE_MINUTES"
JOB_LOCK_FAIL_OPEN_ENV = "JOB_LOCK_FAIL_OPEN"
METRICS_MONTHS_BACK_ENV = "METRICS_MONTHS_BACK"
RETENTION_MONTHS_ENV = "RETENTION_MONTHS"
RECOMPUTE_DEFAULT_MONTHS_ENV = "RECOMPUTE_DEFAULT_MONTHS"
MAX_ALERTS_ENV = "MAX_ALERTS"
SCHEDULED_RECOMPUTE_FREQUENCY_ENV = "SCHEDULED_RECOMPUTE_FREQUENCY"

DEFAULT_LOCK_STALE_MINUTES = 30
DEFAULT_MONTHS_BACK = 24
DEFAULT_RETENTION_MONTHS = 24
DEFAULT_RECOMPUTE_MONTHS = 3
DEFAULT_MAX_ALERTS = 5
DEFAULT_SCHEDULED_INTERVAL = timedelta(days=1)


def _read_int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer") from exc
    if value < 0:
        raise ValueError(f"{name} must be non-negative")
    return value


def _read_bool_env(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _read_interval_env(name: str, default: timedelta) -> timedelta:
    raw = os.getenv(name)
    if not raw:
        return default
    normalized = raw.strip().lower()
    if normalized == "daily":
        return timedelta(days=1)
    if normalized == "weekly":
        return timedelta(weeks=1)
    if normalized.endswith("h"):
        try:
            hours = float(normalized[:-1])
        except ValueError as exc:
            raise ValueError(f"Invalid {name} value") from exc
        if hours <= 0:
            raise ValueError(f"{name} must be positive")
        return timedelta(hours=hours)
    raise ValueError(f"Unsupported {name} value: {raw}")


@dataclass(frozen=True)
class EngineSettings:
    """Tunable policies shared by the recomputation services."""

    lock_stale_minutes: int = DEFAULT_LOCK_STALE_MINUTES
    # Lock-store errors let the recomputation proceed unless disabled.
    lock_fail_open: bool = True
    months_back: int = DEFAULT_MONTHS_BACK
    retention_months: int = DEFAULT_RETENTION_MONTHS
    default_recompute_months: int = DEFAULT_RECOMPUTE_MONTHS
    max_alerts: int = DEFAULT_MAX_ALERTS

    @classmethod
    def from_env(cls) -> "EngineSettings":
        """Instantiate settings using environment overrides when present."""

        return cls(
            lock_stale_minutes=_read_int_env(JOB_LOCK_STALE_MINUTES_ENV, DEFAULT_LOCK_STALE_MINUTES),
            lock_fail_open=_read_bool_env(JOB_LOCK_FAIL_OPEN_ENV, True),
            months_back=max(1, _read_int_env(METRICS_MONTHS_BACK_ENV, DEFAULT_MONTHS_BACK)),
            retention_months=max(1, _read_int_env(RETENTION_MONTHS_ENV, DEFAULT_RETENTION_MONTHS)),
            default_recompute_months=max(
                1, _read_int_env(RECOMPUTE_DEFAULT_MONTHS_ENV, DEFAULT_RECOMPUTE_MONTHS)
            ),
            max_alerts=_read_int_env(MAX_ALERTS_ENV, DEFAULT_MAX_ALERTS),
        )

    @property
    def lock_stale_after(self) -> timedelta:
        return timedelta(minutes=self.lock_stale_minutes)


def scheduled_recompute_interval() -> timedelta:
    """Return how often the background recomputation job runs."""

    return _read_interval_env(SCHEDULED_RECOMPUTE_FREQUENCY_ENV, DEFAULT_SCHEDULED_INTERVAL)
