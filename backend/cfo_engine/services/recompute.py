"""Recomputation of a company's monthly snapshots, metrics and alerts."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable, Mapping, Optional, Sequence

from sqlalchemy import distinct
from sqlalchemy.orm import Session

from .. import models
from ..config import EngineSettings, scheduled_recompute_interval
from ..database import SessionLocal, session_scope
from ..month_keys import (
    latest_closed_month_key,
    list_month_keys_between,
    month_key_offset,
    normalize_month,
)
from .alerts import AlertGenerator
from .current_balances import CurrentBalanceService
from .financial_snapshots import FinancialSnapshotService
from .idempotency import acquire_lock, compute_payload_hash, release_lock
from .ledger_classification import LedgerBalanceService, validate_chart_of_accounts_payload
from .liquidity import LiquidityService
from .metrics_runner import MetricRunSummary, run_catalog_metrics
from .observability import (
    EVENT_DOWNSTREAM,
    EVENT_LEDGER_WRITE,
    EVENT_LOCK,
    EVENT_METRICS_RUN,
    EVENT_RECOMPUTE,
    EVENT_UNMAPPED_TERM,
    EventDispatcher,
    EventOutcome,
    EventRecorder,
    RecomputeEvent,
)
from .retention import retention_window, trim_old_months
from .scheduler_monitor import JOB_SCHEDULED_RECOMPUTE, SchedulerMonitor
from .term_mapping import TermMappingResolver

LOGGER = logging.getLogger(__name__)

JOB_KEY = "cfo_recompute"

MetricsRunner = Callable[..., MetricRunSummary]
DownstreamHook = Callable[[str, Sequence[str]], None]


class RecomputeError(RuntimeError):
    """Raised when a recompute request cannot be interpreted."""


@dataclass
class RecomputeResult:
    company_id: str
    months_processed: int = 0
    skipped: bool = False
    reason: Optional[str] = None
    months: list[str] = field(default_factory=list)
    metrics_summary: Optional[MetricRunSummary] = None
    events: list[RecomputeEvent] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "company_id": self.company_id,
            "months_processed": self.months_processed,
            "skipped": self.skipped,
            "reason": self.reason,
            "months": list(self.months),
            "metrics": self.metrics_summary.to_dict() if self.metrics_summary else None,
        }


def resolve_month_range(
    amended_month: Any, latest_closed_month: str, default_months: int
) -> list[str]:
    """Return the affected months, oldest first.

    An amended month starts the range; otherwise it covers the last
    ``default_months`` closed months. The range always ends at the latest
    closed month unless the amended month is later than that.
    """

    if amended_month is not None and amended_month != "":
        start = normalize_month(amended_month)
        if start is None:
            raise RecomputeError(f"Invalid amended month: {amended_month!r}")
    else:
        start = month_key_offset(latest_closed_month, -(max(1, default_months) - 1))
    end = max(latest_closed_month, start)
    return list_month_keys_between(start, end)


def scope_key_for(company_id: str, months: Sequence[str]) -> str:
    return f"{company_id}:{months[0]}:{months[-1]}" if months else f"{company_id}:empty"


class RecomputeOrchestrator:
    """Runs one company recomputation under its idempotency lock.

    All writes share one transaction. The lock is handled in separate
    sessions so a failed run is still recorded as failed. Events are
    collected during the run and handed to the dispatcher at the end.
    """

    def __init__(
        self,
        *,
        settings: EngineSettings | None = None,
        session_factory: Callable[[], Session] = SessionLocal,
        snapshot_service: FinancialSnapshotService | None = None,
        metrics_runner: MetricsRunner = run_catalog_metrics,
        alert_generator: AlertGenerator | None = None,
        dispatcher: EventDispatcher | None = None,
        downstream_hooks: Iterable[DownstreamHook] = (),
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.settings = settings or EngineSettings.from_env()
        self.session_factory = session_factory
        self.snapshot_service = snapshot_service or FinancialSnapshotService(TermMappingResolver())
        self.metrics_runner = metrics_runner
        self.alert_generator = alert_generator or AlertGenerator(max_alerts=self.settings.max_alerts)
        self.dispatcher = dispatcher or EventDispatcher(session_factory=session_factory)
        self.downstream_hooks = list(downstream_hooks)
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def term_resolver(self) -> TermMappingResolver:
        return self.snapshot_service.term_resolver

    @staticmethod
    def _fingerprint(
        months: Sequence[str],
        *,
        job_id: str | None,
        source_synced_at: datetime | None,
        debtor_rows: Any,
        creditor_rows: Any,
        current_balance_payload: Any,
        chart_of_accounts_payload: Any,
    ) -> dict[str, Any]:
        return {
            "months": list(months),
            "job_id": job_id,
            "source_synced_at": source_synced_at.isoformat() if source_synced_at else None,
            "debtor_rows": debtor_rows,
            "creditor_rows": creditor_rows,
            "current_balance_payload": current_balance_payload,
            "chart_of_accounts_payload": chart_of_accounts_payload,
        }

    def _write_ledgers(
        self, db: Session, company_id: str, payload: Mapping[str, Any] | None, recorder: EventRecorder
    ) -> None:
        if payload is None:
            return
        validation = validate_chart_of_accounts_payload(payload)
        if not validation.ok:
            LOGGER.warning(
                "Skipping ledger balance write for %s: invalid chart of accounts (%s)",
                company_id,
                validation.error,
            )
            recorder.emit(EVENT_LEDGER_WRITE, EventOutcome.REJECTED, details={"error": validation.error})
            return
        with recorder.timed(EVENT_LEDGER_WRITE) as timer:
            written = LedgerBalanceService.write_from_payload(db, company_id, validation)
            timer.details = {
                "months": written.months,
                "rows_written": written.rows_written,
                "classified": written.classified,
                "ignored": written.ignored,
            }

    def _run_transaction(
        self,
        company_id: str,
        months: Sequence[str],
        latest_closed: str,
        *,
        source_synced_at: datetime | None,
        debtor_rows: Iterable[Mapping[str, Any]] | None,
        creditor_rows: Iterable[Mapping[str, Any]] | None,
        current_balance_payload: Mapping[str, Any] | None,
        chart_of_accounts_payload: Mapping[str, Any] | None,
        recorder: EventRecorder,
        now: datetime,
    ) -> MetricRunSummary:
        with session_scope(self.session_factory) as db:
            self._write_ledgers(db, company_id, chart_of_accounts_payload, recorder)

            for month in months:
                self.snapshot_service.ensure_accounting_month(
                    db,
                    company_id,
                    month,
                    is_closed=month <= latest_closed,
                    source_last_synced_at=source_synced_at,
                )
                # Counterparty rows describe the newest month of the range.
                is_last = month == months[-1]
                self.snapshot_service.build_month(
                    db,
                    company_id,
                    month,
                    debtor_rows=debtor_rows if is_last else None,
                    creditor_rows=creditor_rows if is_last else None,
                )

            balances = CurrentBalanceService.recompute(db, company_id, current_balance_payload)
            LiquidityService.recompute(
                db, company_id, balance_source=balances.source if balances.replaced else None
            )
            summary = self.metrics_runner(
                db, company_id, months_back=self.settings.months_back, months=list(months)
            )
            self.alert_generator.regenerate(db, company_id, generated_at=now)
            trim_old_months(db, company_id, latest_closed, months=self.settings.retention_months)
        return summary

    def _emit_unmapped_terms(self, recorder: EventRecorder) -> None:
        for term in self.term_resolver.unmapped.drain():
            recorder.emit(EVENT_UNMAPPED_TERM, EventOutcome.SUCCESS, tags=term)

    def _run_hooks(self, company_id: str, months: Sequence[str], recorder: EventRecorder) -> None:
        for hook in self.downstream_hooks:
            name = getattr(hook, "__name__", hook.__class__.__name__)
            try:
                hook(company_id, list(months))
            except Exception as exc:  # noqa: BLE001 - downstream failures do not undo the recompute
                LOGGER.exception("Downstream hook %s failed for %s", name, company_id)
                recorder.emit(
                    EVENT_DOWNSTREAM, EventOutcome.ERROR, tags={"hook": name}, details={"error": str(exc)}
                )
            else:
                recorder.emit(EVENT_DOWNSTREAM, EventOutcome.SUCCESS, tags={"hook": name})

    def recompute(
        self,
        company_id: str,
        *,
        amended_month: Any = None,
        source_synced_at: datetime | None = None,
        debtor_rows: Iterable[Mapping[str, Any]] | None = None,
        creditor_rows: Iterable[Mapping[str, Any]] | None = None,
        current_balance_payload: Mapping[str, Any] | None = None,
        chart_of_accounts_payload: Mapping[str, Any] | None = None,
        job_id: str | None = None,
    ) -> RecomputeResult:
        if not company_id:
            raise RecomputeError("company_id is required")

        now = self.clock()
        latest_closed = latest_closed_month_key(now)
        window = retention_window(latest_closed, self.settings.retention_months)
        months = [
            month
            for month in resolve_month_range(
                amended_month, latest_closed, self.settings.default_recompute_months
            )
            if window.contains(month)
        ]
        debtor_rows = list(debtor_rows) if debtor_rows is not None else None
        creditor_rows = list(creditor_rows) if creditor_rows is not None else None

        recorder = EventRecorder(company_id)
        result = RecomputeResult(company_id=company_id, months=list(months))
        scope_key = scope_key_for(company_id, months)
        payload_hash = compute_payload_hash(
            self._fingerprint(
                months,
                job_id=job_id,
                source_synced_at=source_synced_at,
                debtor_rows=debtor_rows,
                creditor_rows=creditor_rows,
                current_balance_payload=current_balance_payload,
                chart_of_accounts_payload=chart_of_accounts_payload,
            )
        )

        lock = acquire_lock(
            company_id,
            JOB_KEY,
            scope_key,
            job_id=job_id,
            payload_hash=payload_hash,
            settings=self.settings,
            session_factory=self.session_factory,
            now=now,
        )
        recorder.emit(
            EVENT_LOCK,
            EventOutcome.SUCCESS if lock.acquired else EventOutcome.SKIPPED,
            tags={"scope_key": scope_key, "reason": lock.reason},
        )
        if not lock.acquired:
            LOGGER.info("Recompute for %s skipped: %s", scope_key, lock.reason)
            result.skipped = True
            result.reason = lock.reason
            result.events = list(recorder.events)
            self.dispatcher.dispatch(result.events)
            return result
        result.reason = lock.reason

        LOGGER.info("Recomputing %s months %s for %s", len(months), scope_key, company_id)
        try:
            with recorder.timed(EVENT_RECOMPUTE, tags={"scope_key": scope_key}) as timer:
                summary = self._run_transaction(
                    company_id,
                    months,
                    latest_closed,
                    source_synced_at=source_synced_at,
                    debtor_rows=debtor_rows,
                    creditor_rows=creditor_rows,
                    current_balance_payload=current_balance_payload,
                    chart_of_accounts_payload=chart_of_accounts_payload,
                    recorder=recorder,
                    now=now,
                )
                timer.details = {"months_processed": len(months)}
        except Exception as exc:
            release_lock(
                company_id,
                JOB_KEY,
                scope_key,
                success=False,
                error=str(exc),
                session_factory=self.session_factory,
            )
            # Mappings created inside the rolled back transaction are gone.
            self.term_resolver.cache.clear()
            self._emit_unmapped_terms(recorder)
            self.dispatcher.dispatch(recorder.events)
            raise

        release_lock(company_id, JOB_KEY, scope_key, success=True, session_factory=self.session_factory)
        self._emit_unmapped_terms(recorder)
        recorder.emit(
            EVENT_METRICS_RUN,
            EventOutcome.SUCCESS if not summary.failures else EventOutcome.ERROR,
            tags={"scope_key": scope_key},
            details=summary.to_dict(),
        )
        self._run_hooks(company_id, months, recorder)

        result.months_processed = len(months)
        result.metrics_summary = summary
        result.events = list(recorder.events)
        self.dispatcher.dispatch(result.events)
        return result


def companies_with_data(db: Session) -> list[str]:
    """Company ids that have transactions, ledger balances or summaries."""

    companies: set[str] = set()
    for column in (
        models.FinancialTransaction.company_id,
        models.LedgerMonthlyBalance.company_id,
        models.MonthlyTrialBalanceSummary.company_id,
    ):
        companies.update(value for (value,) in db.query(distinct(column)).all() if value)
    return sorted(companies)


def run_scheduled_recompute(
    orchestrator: RecomputeOrchestrator | None = None,
    *,
    session_factory: Callable[[], Session] = SessionLocal,
) -> tuple[int, int]:
    """Recompute every company once; returns (processed, skipped)."""

    orchestrator = orchestrator or RecomputeOrchestrator(session_factory=session_factory)
    with session_factory() as db:
        companies = companies_with_data(db)

    processed = skipped = 0
    errors: list[str] = []
    job_id = f"scheduled:{orchestrator.clock().isoformat()}"
    for company_id in companies:
        try:
            result = orchestrator.recompute(company_id, job_id=job_id)
        except Exception as exc:  # noqa: BLE001 - one company must not stop the batch
            LOGGER.exception("Scheduled recompute failed for %s", company_id)
            errors.append(f"{company_id}: {exc}")
            continue
        if result.skipped:
            skipped += 1
        else:
            processed += 1

    SchedulerMonitor.record_run(JOB_SCHEDULED_RECOMPUTE, processed=processed, skipped=skipped)
    for message in errors:
        SchedulerMonitor.record_error(JOB_SCHEDULED_RECOMPUTE, message)
    LOGGER.info(
        "Scheduled recompute finished: %s processed, %s skipped, %s failed",
        processed,
        skipped,
        len(errors),
    )
    return processed, skipped


_recompute_thread: threading.Thread | None = None
_recompute_stop = threading.Event()


def _seconds_until_next_run(interval: timedelta) -> float:
    return max(interval.total_seconds(), 60.0)


def _recompute_worker(interval: timedelta) -> None:
    while not _recompute_stop.is_set():
        try:
            run_scheduled_recompute()
        except Exception as exc:  # pragma: no cover - defensive logging
            LOGGER.exception("Scheduled recompute crashed: %s", exc)
            SchedulerMonitor.record_error(JOB_SCHEDULED_RECOMPUTE, str(exc))
        SchedulerMonitor.record_tick(JOB_SCHEDULED_RECOMPUTE)
        _recompute_stop.wait(_seconds_until_next_run(interval))


def start_recompute_scheduler() -> None:
    """Start the background thread that recomputes every company."""

    global _recompute_thread
    if _recompute_thread and _recompute_thread.is_alive():
        return
    try:
        interval = scheduled_recompute_interval()
    except ValueError as exc:
        LOGGER.warning("Scheduled recompute disabled: %s", exc)
        SchedulerMonitor.set_job_enabled(JOB_SCHEDULED_RECOMPUTE, False)
        SchedulerMonitor.record_error(JOB_SCHEDULED_RECOMPUTE, str(exc))
        return

    SchedulerMonitor.set_job_enabled(JOB_SCHEDULED_RECOMPUTE, True)
    _recompute_stop.clear()
    _recompute_thread = threading.Thread(target=_recompute_worker, args=(interval,), daemon=True)
    _recompute_thread.start()
    LOGGER.info("Scheduled recompute running every %s", interval)


def stop_recompute_scheduler() -> None:
    """Stop the scheduled recompute background thread."""

    _recompute_stop.set()
    if _recompute_thread and _recompute_thread.is_alive():
        _recompute_thread.join(timeout=5)
