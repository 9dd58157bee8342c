"""Structured recompute events and their persistence."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Iterable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .. import models
from ..database import SessionLocal

LOGGER = logging.getLogger(__name__)

EVENT_RECOMPUTE = "recompute"
EVENT_LOCK = "recompute_lock"
EVENT_LEDGER_WRITE = "ledger_balances"
EVENT_METRICS_RUN = "metrics_run"
EVENT_UNMAPPED_TERM = "account_term_unmapped"
EVENT_DOWNSTREAM = "downstream_hook"


class EventOutcome(str):
    SUCCESS = "success"
    SKIPPED = "skipped"
    REJECTED = "rejected"
    ERROR = "error"


@dataclass(frozen=True)
class RecomputeEvent:
    event_type: str
    outcome: str
    company_id: Optional[str] = None
    duration_ms: Optional[float] = None
    tags: dict[str, Any] = field(default_factory=dict)
    details: Optional[dict[str, Any]] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class EventRecorder:
    """Collects events during a run without performing any I/O."""

    def __init__(self, company_id: str | None = None) -> None:
        self.company_id = company_id
        self.events: list[RecomputeEvent] = []

    def emit(
        self,
        event_type: str,
        outcome: str,
        *,
        duration_ms: float | None = None,
        tags: dict[str, Any] | None = None,
        details: dict[str, Any] | None = None,
    ) -> RecomputeEvent:
        event = RecomputeEvent(
            event_type=event_type,
            outcome=outcome,
            company_id=self.company_id,
            duration_ms=duration_ms,
            tags=tags or {},
            details=details,
        )
        self.events.append(event)
        return event

    def timed(self, event_type: str, *, tags: dict[str, Any] | None = None):
        """Context manager emitting one event with the block duration."""

        recorder = self

        class _Timer:
            details: dict[str, Any] | None = None

            def __enter__(self):
                self._start = time.perf_counter()
                return self

            def __exit__(self, exc_type, exc, tb):
                duration = (time.perf_counter() - self._start) * 1000
                outcome = EventOutcome.ERROR if exc else EventOutcome.SUCCESS
                details = dict(self.details or {})
                if exc:
                    details["exception"] = str(exc)
                recorder.emit(event_type, outcome, duration_ms=duration, tags=tags, details=details or None)
                return False

        return _Timer()


class EventDispatcher:
    """Persists recompute events in a dedicated session.

    Failures are logged and never reach the recomputation that produced the
    events.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        sinks: Iterable[Callable[[RecomputeEvent], None]] = (),
    ) -> None:
        self.session_factory = session_factory
        self.sinks = list(sinks)

    @staticmethod
    def _to_record(event: RecomputeEvent) -> models.RecomputeEventRecord:
        return models.RecomputeEventRecord(
            company_id=event.company_id,
            event_type=event.event_type,
            outcome=event.outcome,
            duration_ms=Decimal(str(round(event.duration_ms, 3))) if event.duration_ms is not None else None,
            tags=event.tags or {},
            details=event.details,
            created_at=event.created_at,
        )

    def dispatch(self, events: Iterable[RecomputeEvent]) -> int:
        events = list(events)
        if not events:
            return 0
        for sink in self.sinks:
            for event in events:
                try:
                    sink(event)
                except Exception:  # noqa: BLE001 - observability sinks must not break flows
                    LOGGER.exception("Event sink failed for %s", event.event_type)
        try:
            with self.session_factory() as db:
                db.add_all([self._to_record(event) for event in events])
                db.commit()
        except SQLAlchemyError:
            LOGGER.exception("Failed to persist %s recompute events", len(events))
            return 0
        return len(events)


def latest_event(
    db: Session, company_id: str, event_type: str
) -> models.RecomputeEventRecord | None:
    return (
        db.query(models.RecomputeEventRecord)
        .filter(
            models.RecomputeEventRecord.company_id == company_id,
            models.RecomputeEventRecord.event_type == event_type,
        )
        .order_by(models.RecomputeEventRecord.created_at.desc())
        .first()
    )
