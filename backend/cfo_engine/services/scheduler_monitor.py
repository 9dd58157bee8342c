"""Health tracking for the background recomputation job."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Dict, MutableMapping

JOB_SCHEDULED_RECOMPUTE = "scheduled_recompute"


@dataclass
class JobStatus:
    """Runtime status information for a scheduled job."""

    enabled: bool = True
    last_tick: datetime | None = None
    last_success: datetime | None = None
    companies_processed: int = 0
    companies_skipped: int = 0
    consecutive_failures: int = 0
    recent_errors: deque[str] = field(default_factory=lambda: deque(maxlen=10))


class SchedulerMonitor:
    """Thread-safe tracker for background scheduler health."""

    _lock = Lock()
    _jobs: Dict[str, JobStatus] = {}

    @classmethod
    def _status(cls, job_name: str) -> JobStatus:
        status = cls._jobs.get(job_name)
        if status is None:
            status = cls._jobs[job_name] = JobStatus()
        return status

    @classmethod
    def set_job_enabled(cls, job_name: str, enabled: bool) -> None:
        with cls._lock:
            cls._status(job_name).enabled = enabled

    @classmethod
    def record_tick(cls, job_name: str) -> None:
        with cls._lock:
            cls._status(job_name).last_tick = datetime.now(timezone.utc)

    @classmethod
    def record_run(cls, job_name: str, *, processed: int, skipped: int) -> None:
        with cls._lock:
            status = cls._status(job_name)
            status.last_success = datetime.now(timezone.utc)
            status.companies_processed = processed
            status.companies_skipped = skipped
            status.consecutive_failures = 0

    @classmethod
    def record_error(cls, job_name: str, message: str) -> None:
        timestamped = f"{datetime.now(timezone.utc).isoformat()} - {message}"
        with cls._lock:
            status = cls._status(job_name)
            status.recent_errors.append(timestamped)
            status.consecutive_failures += 1

    @classmethod
    def snapshot(cls) -> MutableMapping[str, dict[str, object]]:
        with cls._lock:
            return {
                name: {
                    "enabled": status.enabled,
                    "last_tick": status.last_tick,
                    "last_success": status.last_success,
                    "companies_processed": status.companies_processed,
                    "companies_skipped": status.companies_skipped,
                    "consecutive_failures": status.consecutive_failures,
                    "recent_errors": list(status.recent_errors),
                }
                for name, status in cls._jobs.items()
            }

    @classmethod
    def reset(cls) -> None:
        with cls._lock:
            cls._jobs.clear()
