from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from backend.cfo_engine import models
from backend.cfo_engine.config import EngineSettings
from backend.cfo_engine.services.idempotency import (
    REASON_ALREADY_COMPLETED,
    REASON_ALREADY_RUNNING,
    acquire_lock,
)
from backend.cfo_engine.services.recompute import (
    JOB_KEY,
    RecomputeError,
    RecomputeOrchestrator,
    companies_with_data,
    resolve_month_range,
    run_scheduled_recompute,
    scope_key_for,
)
from backend.cfo_engine.services.scheduler_monitor import JOB_SCHEDULED_RECOMPUTE, SchedulerMonitor

COMPANY = "c0a80101-0000-4000-8000-000000000001"
OTHER_COMPANY = "c0a80101-0000-4000-8000-000000000002"
NOW = datetime(2026, 4, 15, 12, 0, tzinfo=timezone.utc)
MONTHS = ["2026-01", "2026-02", "2026-03"]


def _seed_transactions(session_factory, company_id: str = COMPANY) -> None:
    with session_factory() as db:
        for month in (1, 2, 3):
            db.add_all(
                [
                    models.FinancialTransaction(
                        company_id=company_id,
                        transaction_date=date(2026, month, 5),
                        type=models.TransactionType.REVENUE,
                        category="Consulting fees",
                        amount=Decimal("10000"),
                    ),
                    models.FinancialTransaction(
                        company_id=company_id,
                        transaction_date=date(2026, month, 20),
                        type=models.TransactionType.EXPENSE,
                        category="Office Rent",
                        amount=Decimal("4000"),
                    ),
                ]
            )
        db.add(
            models.FinancialTransaction(
                company_id=company_id,
                transaction_date=date(2026, 3, 25),
                type=models.TransactionType.REVENUE,
                category="Misc receipts",
                amount=Decimal("500"),
            )
        )
        db.commit()


def _orchestrator(session_factory, **kwargs) -> RecomputeOrchestrator:
    kwargs.setdefault("settings", EngineSettings())
    return RecomputeOrchestrator(session_factory=session_factory, clock=lambda: NOW, **kwargs)


def _events(session_factory, event_type: str | None = None) -> list[models.RecomputeEventRecord]:
    with session_factory() as db:
        query = db.query(models.RecomputeEventRecord).order_by(models.RecomputeEventRecord.created_at)
        if event_type is not None:
            query = query.filter(models.RecomputeEventRecord.event_type == event_type)
        return query.all()


def _lock_status(session_factory) -> models.LockStatus:
    with session_factory() as db:
        return (
            db.query(models.JobIdempotencyLock)
            .filter_by(company_id=COMPANY, job_key=JOB_KEY, scope_key=scope_key_for(COMPANY, MONTHS))
            .one()
            .status
        )


def test_resolve_month_range() -> None:
    assert resolve_month_range(None, "2026-03", 3) == MONTHS
    assert resolve_month_range("", "2026-03", 1) == ["2026-03"]
    assert resolve_month_range("2026-02", "2026-03", 3) == ["2026-02", "2026-03"]
    assert resolve_month_range(date(2025, 12, 31), "2026-03", 3) == ["2025-12"] + MONTHS
    assert resolve_month_range("2026-05", "2026-03", 3) == ["2026-05"]
    with pytest.raises(RecomputeError):
        resolve_month_range("not-a-month", "2026-03", 3)


def test_scope_key_for() -> None:
    assert scope_key_for("acme", MONTHS) == "acme:2026-01:2026-03"
    assert scope_key_for("acme", []) == "acme:empty"


def test_recompute_builds_every_month(session_factory) -> None:
    _seed_transactions(session_factory)

    result = _orchestrator(session_factory).recompute(
        COMPANY, debtor_rows=[{"name": "North Traders", "balance": "700"}]
    )

    assert not result.skipped
    assert result.months == MONTHS
    assert result.months_processed == 3
    assert result.metrics_summary.failures == []
    assert result.to_dict()["metrics"]["written"] == result.metrics_summary.written

    with session_factory() as db:
        summaries = (
            db.query(models.MonthlyTrialBalanceSummary)
            .filter(models.MonthlyTrialBalanceSummary.company_id == COMPANY)
            .order_by(models.MonthlyTrialBalanceSummary.month)
            .all()
        )
        assert [(row.month, row.total_revenue, row.net_profit) for row in summaries] == [
            ("2026-01", Decimal("10000.00"), Decimal("6000.00")),
            ("2026-02", Decimal("10000.00"), Decimal("6000.00")),
            ("2026-03", Decimal("10500.00"), Decimal("6500.00")),
        ]
        accounting_months = db.query(models.AccountingMonth).filter_by(company_id=COMPANY).all()
        assert sorted(row.month for row in accounting_months) == MONTHS
        assert all(row.is_closed for row in accounting_months)
        debtors = db.query(models.MonthlyDebtor).filter_by(company_id=COMPANY).all()
        assert [(row.month, row.debtor_name) for row in debtors] == [("2026-03", "North Traders")]

    assert _lock_status(session_factory) == models.LockStatus.COMPLETED
    event_types = {event.event_type for event in _events(session_factory)}
    assert {"recompute_lock", "recompute", "metrics_run", "account_term_unmapped"} <= event_types
    unmapped = _events(session_factory, "account_term_unmapped")
    assert [event.tags["term"] for event in unmapped] == ["Misc receipts"]


def _stored_rows(session_factory) -> dict[str, list[tuple]]:
    with session_factory() as db:
        summaries = db.query(models.MonthlyTrialBalanceSummary).filter_by(company_id=COMPANY)
        metrics = db.query(models.CFOMetric).filter_by(company_id=COMPANY)
        cash = db.query(models.CurrentCashBalance).filter_by(company_id=COMPANY)
        return {
            "summaries": sorted(
                (
                    row.month,
                    row.total_revenue,
                    row.total_expenses,
                    row.net_profit,
                    row.net_cashflow,
                    row.cash_and_bank_balance,
                    row.inventory_total,
                    row.data_source,
                )
                for row in summaries
            ),
            "metrics": sorted(
                (row.metric_key, row.time_scope, row.month or "", row.metric_value, row.metric_text or "")
                for row in metrics
            ),
            "cash": sorted((row.name, row.balance, row.source) for row in cash),
        }


def test_identical_rerun_is_skipped(session_factory) -> None:
    _seed_transactions(session_factory)
    orchestrator = _orchestrator(session_factory)
    balances = {"cash": [{"name": "HDFC", "balance": "25000"}]}
    orchestrator.recompute(COMPANY, job_id="job-1", current_balance_payload=balances)
    before = _stored_rows(session_factory)

    repeated = orchestrator.recompute(COMPANY, job_id="job-1", current_balance_payload=balances)

    assert repeated.skipped
    assert repeated.reason == REASON_ALREADY_COMPLETED
    assert repeated.months_processed == 0
    assert [(event.event_type, event.outcome) for event in repeated.events] == [
        ("recompute_lock", "skipped")
    ]

    rerun = orchestrator.recompute(COMPANY, job_id="job-2", current_balance_payload=balances)
    assert not rerun.skipped
    assert rerun.months_processed == 3
    after = _stored_rows(session_factory)
    assert before["summaries"] and before["metrics"] and before["cash"]
    assert after == before


def test_running_lock_skips_recompute(session_factory) -> None:
    acquire_lock(
        COMPANY, JOB_KEY, scope_key_for(COMPANY, MONTHS), session_factory=session_factory, now=NOW
    )

    result = _orchestrator(session_factory).recompute(COMPANY)

    assert result.skipped
    assert result.reason == REASON_ALREADY_RUNNING
    with session_factory() as db:
        assert db.query(models.MonthlyTrialBalanceSummary).count() == 0


def test_failure_rolls_back_and_marks_lock_failed(session_factory) -> None:
    _seed_transactions(session_factory)

    def broken_runner(*args, **kwargs):
        raise RuntimeError("metrics store unavailable")

    orchestrator = _orchestrator(session_factory, metrics_runner=broken_runner)
    with pytest.raises(RuntimeError, match="metrics store unavailable"):
        orchestrator.recompute(COMPANY)

    assert _lock_status(session_factory) == models.LockStatus.FAILED
    with session_factory() as db:
        assert db.query(models.MonthlyTrialBalanceSummary).count() == 0
        assert db.query(models.AccountingTermMapping).count() == 0
    assert len(orchestrator.term_resolver.cache) == 0
    failed = _events(session_factory, "recompute")
    assert [event.outcome for event in failed] == ["error"]
    assert failed[0].details["exception"] == "metrics store unavailable"

    # A failed scope is retried with the same request.
    retried = _orchestrator(session_factory).recompute(COMPANY)
    assert not retried.skipped
    assert _lock_status(session_factory) == models.LockStatus.COMPLETED


def test_downstream_hooks_report_without_undoing_the_run(session_factory) -> None:
    _seed_transactions(session_factory)
    calls: list[tuple[str, list[str]]] = []

    def refresh_dashboard(company_id, months):
        calls.append((company_id, months))

    def notify_accountant(company_id, months):
        raise ConnectionError("mail relay down")

    result = _orchestrator(
        session_factory, downstream_hooks=[refresh_dashboard, notify_accountant]
    ).recompute(COMPANY)

    assert not result.skipped
    assert calls == [(COMPANY, MONTHS)]
    hook_events = [event for event in result.events if event.event_type == "downstream_hook"]
    assert [(event.tags["hook"], event.outcome) for event in hook_events] == [
        ("refresh_dashboard", "success"),
        ("notify_accountant", "error"),
    ]
    assert hook_events[1].details == {"error": "mail relay down"}
    assert _lock_status(session_factory) == models.LockStatus.COMPLETED


def test_invalid_chart_of_accounts_is_rejected_and_run_continues(session_factory) -> None:
    _seed_transactions(session_factory)

    result = _orchestrator(session_factory).recompute(
        COMPANY, chart_of_accounts_payload={"chartOfAccounts": {"groups": [], "ledgers": []}}
    )

    assert result.months_processed == 3
    rejected = [event for event in result.events if event.event_type == "ledger_balances"]
    assert [(event.outcome, event.details) for event in rejected] == [
        ("rejected", {"error": "ledgers must be a non-empty list"})
    ]
    with session_factory() as db:
        assert db.query(models.LedgerMonthlyBalance).count() == 0


def test_months_outside_retention_are_dropped_and_trimmed(session_factory) -> None:
    _seed_transactions(session_factory)
    with session_factory() as db:
        db.add(
            models.MonthlyTrialBalanceSummary(
                company_id=COMPANY, month="2025-06", total_revenue=Decimal("1"), data_source="transactions"
            )
        )
        db.commit()

    result = _orchestrator(session_factory, settings=EngineSettings(retention_months=3)).recompute(
        COMPANY, amended_month="2025-06"
    )

    assert result.months == MONTHS
    with session_factory() as db:
        months = sorted(month for (month,) in db.query(models.MonthlyTrialBalanceSummary.month))
    assert months == MONTHS


def test_companies_with_data(db_session) -> None:
    db_session.add_all(
        [
            models.MonthlyTrialBalanceSummary(company_id="b-company", month="2026-03", data_source="none"),
            models.LedgerMonthlyBalance(
                company_id="a-company", month_key="2026-03", ledger_guid="g", ledger_name="Bank",
                cfo_category="cash_bank", balance=Decimal("1"),
            ),
            models.MonthlyTrialBalanceSummary(company_id="a-company", month="2026-02", data_source="none"),
        ]
    )
    db_session.flush()

    assert companies_with_data(db_session) == ["a-company", "b-company"]


def test_scheduled_recompute_counts_processed_and_skipped(session_factory) -> None:
    _seed_transactions(session_factory)
    _seed_transactions(session_factory, OTHER_COMPANY)
    orchestrator = _orchestrator(session_factory)

    assert run_scheduled_recompute(orchestrator, session_factory=session_factory) == (2, 0)
    status = SchedulerMonitor.snapshot()[JOB_SCHEDULED_RECOMPUTE]
    assert status["companies_processed"] == 2
    assert status["last_success"] is not None

    # The same tick id means the same payload for every company.
    assert run_scheduled_recompute(orchestrator, session_factory=session_factory) == (0, 2)
    assert SchedulerMonitor.snapshot()[JOB_SCHEDULED_RECOMPUTE]["companies_skipped"] == 2


def test_scheduled_recompute_records_company_failures(session_factory) -> None:
    _seed_transactions(session_factory)

    def broken_runner(*args, **kwargs):
        raise RuntimeError("boom")

    orchestrator = _orchestrator(session_factory, metrics_runner=broken_runner)

    assert run_scheduled_recompute(orchestrator, session_factory=session_factory) == (0, 0)
    status = SchedulerMonitor.snapshot()[JOB_SCHEDULED_RECOMPUTE]
    assert status["consecutive_failures"] == 1
    assert status["recent_errors"][0].endswith(f"{COMPANY}: boom")
