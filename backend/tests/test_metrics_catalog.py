from __future__ import annotations

from decimal import Decimal

import pytest

from backend.cfo_engine import models
from backend.cfo_engine.services.data_access import MetricsDataAccess
from backend.cfo_engine.services.metrics_catalog import (
    CATALOG_BY_KEY,
    FLAG,
    METRICS_CATALOG,
    METRICS_CATALOG_COUNT,
    SCOPE_MONTH,
    MetricContext,
    cash_conversion_cycle,
)


class _StubData:
    def __init__(self, values: dict, latest: str | None = "2026-03") -> None:
        self.values = values
        self.latest = latest

    def get_latest_month(self) -> str | None:
        return self.latest

    def get_value(self, measure: str, month: str | None = None):
        return self.values.get(measure)


def test_catalog_identities_are_unique() -> None:
    identities = {(definition.key, definition.time_scope) for definition in METRICS_CATALOG}

    assert len(identities) == METRICS_CATALOG_COUNT
    assert METRICS_CATALOG_COUNT > 200
    assert all(definition.time_scope == "month" for definition in METRICS_CATALOG if definition.is_monthly)


def test_flags_and_trends_have_expected_value_types() -> None:
    assert CATALOG_BY_KEY["flag_liquidity_risk"].value_type == FLAG
    assert CATALOG_BY_KEY["catalog_revenue_trend_6m"].value_type == "number"
    assert CATALOG_BY_KEY["catalog_revenue_month_spike_flag"].scope == SCOPE_MONTH


def test_cash_conversion_cycle_is_debtor_minus_creditor_days() -> None:
    assert cash_conversion_cycle(_StubData({"debtor_days": 45, "creditor_days": 30})) == pytest.approx(15.0)
    assert cash_conversion_cycle(_StubData({"debtor_days": 45, "creditor_days": None})) is None


def _compute(key: str, data: MetricsDataAccess, month: str | None = None):
    return CATALOG_BY_KEY[key].compute(MetricContext(data=data, month=month))


def test_rolling_metrics_over_seeded_months(db_session, seed_summaries, company_id) -> None:
    data = MetricsDataAccess(db_session, company_id).load()

    assert _compute("revenue_avg_3m", data) == pytest.approx(12000.0)
    assert _compute("catalog_revenue_sum_3m", data) == pytest.approx(36000.0)
    assert _compute("revenue_mom_growth_pct", data) == pytest.approx(500 / 12000)
    assert _compute("revenue_trend_direction", data) == 1
    assert _compute("cash_runway_change_mom", data) == pytest.approx(-1.0)
    assert _compute("revenue_yoy_growth_pct", data) is None
    assert _compute("revenue_growth_3m", data) == pytest.approx(12000 / 10500 - 1)


def test_monthly_spike_flag_compares_with_prior_six_months(db_session, summary_factory, company_id) -> None:
    for month in ("2025-09", "2025-10", "2025-11", "2025-12", "2026-01", "2026-02"):
        summary_factory(month, revenue=1000, expenses=800)
    summary_factory("2026-03", revenue=1500, expenses=500)
    db_session.flush()
    data = MetricsDataAccess(db_session, company_id).load()

    assert _compute("catalog_revenue_month_spike_flag", data, "2026-03") == 1
    assert _compute("catalog_revenue_month_spike_flag", data, "2026-02") == 0
    assert _compute("catalog_expenses_month_drop_flag", data, "2026-03") == 1
    assert _compute("catalog_revenue_month_spike_flag", data, "2025-09") is None


def test_live_flags_read_current_state(db_session, company_id) -> None:
    data = MetricsDataAccess(db_session, company_id).load()

    assert _compute("flag_liquidity_risk", data) is None
    assert _compute("creditors_cash_pressure", data) == 0
    assert _compute("flag_loan_servicing_risk", data) == 0
    assert CATALOG_BY_KEY["creditors_cash_pressure"].severity(1.0) == "critical"


def _seed_finance_cost(db_session, company_id: str, amount: int) -> None:
    db_session.add(
        models.MonthlyExpenseBreakdown(
            company_id=company_id,
            month="2026-03",
            expense_name="Bank Interest",
            canonical_type="expense",
            canonical_subtype="finance_cost",
            amount=Decimal(amount),
        )
    )


@pytest.mark.parametrize(
    ("expenses", "coverage", "flag"),
    [(9000, 2.25, 0), (9800, 1.25, 1)],
)
def test_interest_coverage_drives_loan_servicing_flag(
    db_session, summary_factory, company_id, expenses, coverage, flag
) -> None:
    summary_factory("2026-03", revenue=10000, expenses=expenses)
    _seed_finance_cost(db_session, company_id, 800)
    db_session.add(models.CurrentLoan(company_id=company_id, name="Term loan", balance=Decimal("50000"), source="payload"))
    db_session.flush()

    data = MetricsDataAccess(db_session, company_id).load()

    assert _compute("interest_coverage", data) == pytest.approx(coverage)
    assert _compute("flag_loan_servicing_risk", data) == flag


def test_interest_coverage_needs_finance_cost(db_session, summary_factory, company_id) -> None:
    summary_factory("2026-03", revenue=10000, expenses=9000)
    db_session.add(models.CurrentLoan(company_id=company_id, name="Term loan", balance=Decimal("50000"), source="payload"))
    db_session.flush()

    data = MetricsDataAccess(db_session, company_id).load()

    assert _compute("interest_coverage", data) is None
    assert _compute("flag_loan_servicing_risk", data) is None
