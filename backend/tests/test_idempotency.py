from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import OperationalError

from backend.cfo_engine import models
from backend.cfo_engine.config import EngineSettings
from backend.cfo_engine.services import idempotency
from backend.cfo_engine.services.idempotency import (
    REASON_ALREADY_COMPLETED,
    REASON_ALREADY_RUNNING,
    REASON_LOCK_ERROR,
    REASON_RACE_CONFLICT,
    REASON_STALE_TAKEOVER,
    acquire_lock,
    compute_payload_hash,
    release_lock,
)

COMPANY = "company-1"
JOB = "cfo_recompute"
SCOPE = "company-1:2026-01:2026-03"
NOW = datetime(2026, 4, 15, 12, 0, tzinfo=timezone.utc)


def _lock(session_factory) -> models.JobIdempotencyLock:
    with session_factory() as db:
        return db.query(models.JobIdempotencyLock).filter_by(company_id=COMPANY, scope_key=SCOPE).one()


def _acquire(session_factory, payload_hash: str | None = "hash-a", **kwargs):
    kwargs.setdefault("now", NOW)
    return acquire_lock(
        COMPANY, JOB, SCOPE, payload_hash=payload_hash, session_factory=session_factory, **kwargs
    )


class _BrokenSession:
    def __enter__(self):
        raise OperationalError("SELECT 1", {}, Exception("database is locked"))

    def __exit__(self, *exc_info):
        return False


def test_payload_hash_is_stable_and_skips_sensitive_keys() -> None:
    first = compute_payload_hash({"b": 1, "a": [1, 2], "api_token": "x"})
    second = compute_payload_hash({"a": [1, 2], "b": 1, "api_token": "y"})

    assert first == second
    assert len(first) == 16
    assert compute_payload_hash({"a": [1, 2], "b": 2}) != first
    assert compute_payload_hash(None) == "empty"
    assert compute_payload_hash(["not", "a", "mapping"]) == "empty"


def test_lock_lifecycle(session_factory) -> None:
    assert _acquire(session_factory, job_id="job-1").acquired is True
    assert _lock(session_factory).status == models.LockStatus.RUNNING

    blocked = _acquire(session_factory, now=NOW + timedelta(minutes=5))
    assert (blocked.acquired, blocked.reason) == (False, REASON_ALREADY_RUNNING)

    release_lock(COMPANY, JOB, SCOPE, success=True, session_factory=session_factory)
    lock = _lock(session_factory)
    assert lock.status == models.LockStatus.COMPLETED
    assert lock.completed_at is not None

    repeated = _acquire(session_factory)
    assert (repeated.acquired, repeated.reason) == (False, REASON_ALREADY_COMPLETED)

    changed = _acquire(session_factory, payload_hash="hash-b", job_id="job-2")
    assert changed.acquired is True
    lock = _lock(session_factory)
    assert lock.payload_hash == "hash-b"
    assert lock.last_job_id == "job-2"
    assert lock.completed_at is None


def test_failed_lock_is_always_reacquired(session_factory) -> None:
    _acquire(session_factory)
    release_lock(COMPANY, JOB, SCOPE, success=False, error="x" * 5000, session_factory=session_factory)

    lock = _lock(session_factory)
    assert lock.status == models.LockStatus.FAILED
    assert len(lock.last_error) == 2000

    assert _acquire(session_factory).acquired is True
    assert _lock(session_factory).last_error is None


def test_stale_running_lock_is_taken_over(session_factory) -> None:
    settings = EngineSettings(lock_stale_minutes=30)
    _acquire(session_factory, settings=settings)

    result = _acquire(session_factory, settings=settings, now=NOW + timedelta(minutes=31))

    assert (result.acquired, result.reason) == (True, REASON_STALE_TAKEOVER)
    assert _lock(session_factory).status == models.LockStatus.RUNNING


def test_concurrent_insert_is_reported_as_race(session_factory, monkeypatch) -> None:
    _acquire(session_factory)
    monkeypatch.setattr("backend.cfo_engine.services.idempotency._find_lock", lambda *args: None)

    result = _acquire(session_factory)

    assert (result.acquired, result.reason) == (False, REASON_RACE_CONFLICT)


def test_lock_store_errors_fail_open_by_default() -> None:
    assert EngineSettings().lock_fail_open is True

    result = acquire_lock(COMPANY, JOB, SCOPE, session_factory=_BrokenSession)

    assert (result.acquired, result.reason) == (True, REASON_LOCK_ERROR)


def test_lock_store_errors_can_fail_closed() -> None:
    result = acquire_lock(
        COMPANY,
        JOB,
        SCOPE,
        settings=EngineSettings(lock_fail_open=False),
        session_factory=_BrokenSession,
    )

    assert (result.acquired, result.reason) == (False, REASON_LOCK_ERROR)


def test_fail_open_reads_environment(monkeypatch) -> None:
    monkeypatch.setenv("JOB_LOCK_FAIL_OPEN", "false")
    assert EngineSettings.from_env().lock_fail_open is False
    monkeypatch.delenv("JOB_LOCK_FAIL_OPEN")
    assert EngineSettings.from_env().lock_fail_open is True


def test_release_errors_are_logged_not_raised(caplog) -> None:
    release_lock(COMPANY, JOB, SCOPE, success=True, session_factory=_BrokenSession)

    assert "Lock release failed" in caplog.text


@pytest.mark.parametrize("previous_outcome", ["stale", "failed"])
def test_only_one_worker_claims_an_existing_lock(session_factory, monkeypatch, previous_outcome) -> None:
    settings = EngineSettings(lock_stale_minutes=30)
    _acquire(session_factory, settings=settings, job_id="job-1")
    if previous_outcome == "failed":
        release_lock(COMPANY, JOB, SCOPE, success=False, error="boom", session_factory=session_factory)
    later = NOW + timedelta(minutes=31)
    find_lock = idempotency._find_lock
    other_worker: list = []

    def read_then_let_other_worker_in(db, *args):
        row = find_lock(db, *args)
        if not other_worker:
            other_worker.append(None)
            other_worker.append(_acquire(session_factory, settings=settings, now=later, job_id="worker-b"))
        return row

    monkeypatch.setattr(idempotency, "_find_lock", read_then_let_other_worker_in)

    first = _acquire(session_factory, settings=settings, now=later, job_id="worker-a")
    second = other_worker[1]

    assert second.acquired is True
    assert (first.acquired, first.reason) == (False, REASON_RACE_CONFLICT)
    lock = _lock(session_factory)
    assert lock.status == models.LockStatus.RUNNING
    assert lock.last_job_id == "worker-b"
