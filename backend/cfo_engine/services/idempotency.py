"""Per-scope locks that keep repeated recomputations from overlapping.

Locks are read and written in their own short sessions so that the recorded
state survives a rollback of the work they guard.
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from .. import models
from ..config import EngineSettings
from ..database import SessionLocal

LOGGER = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 2000
SENSITIVE_KEY_PARTS = ("password", "token", "secret", "key", "authorization")

REASON_ALREADY_RUNNING = "already_running"
REASON_ALREADY_COMPLETED = "already_completed"
REASON_RACE_CONFLICT = "race_conflict"
REASON_STALE_TAKEOVER = "stale_takeover"
REASON_LOCK_ERROR = "lock_error"

SessionFactory = Callable[[], Any]


@dataclass(frozen=True)
class LockResult:
    acquired: bool
    reason: Optional[str] = None


def compute_payload_hash(data: Any) -> str:
    """Return a short deterministic digest of ``data`` without sensitive keys."""

    if not data or not isinstance(data, Mapping):
        return "empty"
    clean = {
        key: value
        for key, value in data.items()
        if not any(part in str(key).lower() for part in SENSITIVE_KEY_PARTS)
    }
    stable = json.dumps(clean, sort_keys=True, default=str, separators=(",", ":"))
    return hashlib.sha256(stable.encode("utf-8")).hexdigest()[:16]


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _find_lock(db, company_id: str, job_key: str, scope_key: str) -> models.JobIdempotencyLock | None:
    return (
        db.query(models.JobIdempotencyLock)
        .filter(
            models.JobIdempotencyLock.company_id == company_id,
            models.JobIdempotencyLock.job_key == job_key,
            models.JobIdempotencyLock.scope_key == scope_key,
        )
        .first()
    )


def acquire_lock(
    company_id: str,
    job_key: str,
    scope_key: str,
    *,
    job_id: str | None = None,
    payload_hash: str | None = None,
    settings: EngineSettings | None = None,
    session_factory: SessionFactory = SessionLocal,
    now: datetime | None = None,
) -> LockResult:
    """Try to move the (company, job, scope) lock into the running state.

    * no lock: a running lock is inserted.
    * running and fresh: rejected with ``already_running``.
    * running and stale: taken over.
    * completed with the same payload hash: rejected with ``already_completed``;
      a different hash means new source data and the lock is re-acquired.
    * failed: always re-acquired.

    A unique constraint violation on insert, or an existing row that changed
    between the read and the claiming update, means another worker won the
    race.
    Any other lock-store error follows ``settings.lock_fail_open``.
    """

    settings = settings or EngineSettings()
    now = now or datetime.now(timezone.utc)
    stale_cutoff = now - settings.lock_stale_after

    try:
        with session_factory() as db:
            existing = _find_lock(db, company_id, job_key, scope_key)
            if existing is None:
                db.add(
                    models.JobIdempotencyLock(
                        company_id=company_id,
                        job_key=job_key,
                        scope_key=scope_key,
                        payload_hash=payload_hash,
                        status=models.LockStatus.RUNNING,
                        locked_at=now,
                        last_job_id=job_id,
                    )
                )
                try:
                    db.commit()
                except IntegrityError:
                    db.rollback()
                    LOGGER.info("Lock %s/%s/%s inserted concurrently", company_id, job_key, scope_key)
                    return LockResult(False, REASON_RACE_CONFLICT)
                return LockResult(True)

            reason = None
            if existing.status == models.LockStatus.COMPLETED:
                if payload_hash is None or existing.payload_hash == payload_hash:
                    LOGGER.info(
                        "Skipping %s/%s for %s: already completed with the same payload",
                        job_key,
                        scope_key,
                        company_id,
                    )
                    return LockResult(False, REASON_ALREADY_COMPLETED)
            elif existing.status == models.LockStatus.RUNNING:
                locked_at = _as_utc(existing.locked_at)
                if locked_at is not None and locked_at > stale_cutoff:
                    LOGGER.warning(
                        "Skipping %s/%s for %s: run in progress since %s",
                        job_key,
                        scope_key,
                        company_id,
                        locked_at.isoformat(),
                    )
                    return LockResult(False, REASON_ALREADY_RUNNING)
                LOGGER.warning(
                    "Taking over stale lock %s/%s for %s (locked at %s)",
                    job_key,
                    scope_key,
                    company_id,
                    locked_at.isoformat() if locked_at else None,
                )
                reason = REASON_STALE_TAKEOVER

            lock_table = models.JobIdempotencyLock
            # Only the worker that still sees the row it read may claim it.
            claimed = (
                db.query(lock_table)
                .filter(
                    lock_table.id == existing.id,
                    lock_table.status == existing.status,
                    lock_table.locked_at == existing.locked_at,
                )
                .update(
                    {
                        lock_table.status: models.LockStatus.RUNNING,
                        lock_table.locked_at: now,
                        lock_table.last_job_id: job_id,
                        lock_table.last_error: None,
                        lock_table.completed_at: None,
                        lock_table.payload_hash: payload_hash,
                    },
                    synchronize_session=False,
                )
            )
            if claimed != 1:
                db.rollback()
                LOGGER.info("Lock %s/%s/%s claimed concurrently", company_id, job_key, scope_key)
                return LockResult(False, REASON_RACE_CONFLICT)
            db.commit()
            return LockResult(True, reason)
    except SQLAlchemyError:
        if settings.lock_fail_open:
            LOGGER.exception("Lock acquisition failed for %s/%s; proceeding without a lock", job_key, scope_key)
            return LockResult(True, REASON_LOCK_ERROR)
        LOGGER.exception("Lock acquisition failed for %s/%s; skipping run", job_key, scope_key)
        return LockResult(False, REASON_LOCK_ERROR)


def release_lock(
    company_id: str,
    job_key: str,
    scope_key: str,
    *,
    success: bool,
    error: str | None = None,
    session_factory: SessionFactory = SessionLocal,
) -> None:
    """Mark the lock completed or failed; errors are logged, not raised."""

    now = datetime.now(timezone.utc)
    try:
        with session_factory() as db:
            lock = _find_lock(db, company_id, job_key, scope_key)
            if lock is None:
                LOGGER.warning("No lock to release for %s/%s/%s", company_id, job_key, scope_key)
                return
            lock.status = models.LockStatus.COMPLETED if success else models.LockStatus.FAILED
            lock.completed_at = now if success else None
            lock.last_error = str(error)[:MAX_ERROR_LENGTH] if error else None
            db.commit()
    except SQLAlchemyError:
        LOGGER.exception("Lock release failed for %s/%s/%s", company_id, job_key, scope_key)
