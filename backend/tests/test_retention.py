from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

from backend.cfo_engine import models
from backend.cfo_engine.services.retention import retention_window, trim_old_months


def test_retention_window_covers_closed_months_plus_lookahead() -> None:
    window = retention_window("2026-03", 24)

    assert (window.start, window.end) == ("2024-04", "2026-04")
    assert window.contains("2024-04")
    assert window.contains("2026-04")
    assert not window.contains("2024-03")
    assert not window.contains("2026-05")


def test_trim_old_months_deletes_only_expired_rows(db_session, summary_factory, company_id) -> None:
    now = datetime(2026, 4, 1, tzinfo=timezone.utc)
    for month in ("2023-12", "2024-03", "2024-04", "2026-03"):
        summary_factory(month, revenue=100)
    summary_factory("2023-12", revenue=100, company_id="other-company")
    db_session.add_all(
        [
            models.CFOMetric(
                company_id=company_id, metric_key="catalog_revenue_month_value", time_scope="month",
                month="2024-01", metric_value=Decimal("1"), computed_at=now,
            ),
            models.CFOMetric(
                company_id=company_id, metric_key="cash_balance_live", time_scope="live",
                month=None, metric_value=Decimal("1"), computed_at=now,
            ),
            models.LedgerMonthlyBalance(
                company_id=company_id, month_key="2024-02", ledger_guid="g1", ledger_name="Bank",
                cfo_category="cash_bank", balance=Decimal("5"),
            ),
        ]
    )
    db_session.flush()

    result = trim_old_months(db_session, company_id, "2026-03", months=24)

    assert result.deleted["monthly_trial_balance_summaries"] == 2
    assert result.deleted["cfo_metrics"] == 1
    assert result.deleted["ledger_monthly_balances"] == 1
    assert result.total_deleted == 4
    remaining = sorted(
        month
        for (month,) in db_session.query(models.MonthlyTrialBalanceSummary.month).filter(
            models.MonthlyTrialBalanceSummary.company_id == company_id
        )
    )
    assert remaining == ["2024-04", "2026-03"]
    assert (
        db_session.query(models.CFOMetric)
        .filter(models.CFOMetric.company_id == company_id, models.CFOMetric.month.is_(None))
        .count()
        == 1
    )
    assert (
        db_session.query(models.MonthlyTrialBalanceSummary)
        .filter(models.MonthlyTrialBalanceSummary.company_id == "other-company")
        .count()
        == 1
    )
