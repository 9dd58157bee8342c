from __future__ import annotations

from datetime import date
from decimal import Decimal

import pytest

from backend.cfo_engine import models
from backend.cfo_engine.services.financial_snapshots import FinancialSnapshotService
from backend.cfo_engine.services.snapshot_consistency import SnapshotConsistencyService


def test_built_snapshots_are_consistent(db_session, transaction_factory, company_id) -> None:
    transaction_factory(date(2026, 3, 3), models.TransactionType.REVENUE, "900", category="Consulting fees")
    transaction_factory(date(2026, 3, 4), models.TransactionType.REVENUE, "100", category="Misc receipts")
    transaction_factory(date(2026, 3, 9), models.TransactionType.EXPENSE, "300", category="Office Rent")
    db_session.flush()
    FinancialSnapshotService().build_month(db_session, company_id, "2026-03")

    report = SnapshotConsistencyService.check_company(db_session, company_id)

    assert report.ok
    assert report.months_checked == 1
    # 100 of the 1300 classified amount has no canonical subtype.
    assert report.unknown_subtype_share["2026-03"] == pytest.approx(100 / 1300)


def test_mismatched_breakdowns_are_reported(db_session, summary_factory, company_id) -> None:
    summary = summary_factory("2026-02", revenue=1000, expenses=400)
    summary.net_profit = Decimal("500")
    db_session.add(
        models.MonthlyRevenueBreakdown(
            company_id=company_id, month="2026-02", revenue_name="Sales", amount=Decimal("1000")
        )
    )
    db_session.flush()

    report = SnapshotConsistencyService.check_company(db_session, company_id)

    assert not report.ok
    assert {(issue.check, issue.expected, issue.actual) for issue in report.issues} == {
        ("net_profit", Decimal("600"), Decimal("500")),
        ("expense_breakdown", Decimal("400"), Decimal("0")),
    }
    assert report.unknown_subtype_share == {"2026-02": 1.0}
