from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

from backend.cfo_engine import models
from backend.cfo_engine.services.alerts import AlertCandidate, AlertGenerator, select_alerts

GENERATED_AT = datetime(2026, 4, 15, tzinfo=timezone.utc)


def _seed_declining_company(db_session, summary_factory, company_id) -> None:
    summary_factory("2026-01", revenue=10000, expenses=6000, cash=30000)
    summary_factory("2026-02", revenue=10000, expenses=6000, cash=20000)
    summary_factory("2026-03", revenue=7000, expenses=6000, cash=10000)
    for name, balance in (("A", "800"), ("B", "100"), ("C", "100")):
        db_session.add(
            models.CurrentDebtor(company_id=company_id, name=name, balance=Decimal(balance), source="payload")
        )
    db_session.flush()


def test_select_alerts_dedupes_orders_and_caps() -> None:
    candidates = [
        AlertCandidate("b", "medium", "B", "b"),
        None,
        AlertCandidate("a", "critical", "A", "a"),
        AlertCandidate("b", "high", "B again", "b"),
        AlertCandidate("c", "high", "C", "c"),
    ]

    selected = select_alerts(candidates, max_alerts=2)

    assert [alert.rule_key for alert in selected] == ["a", "c"]
    assert [alert.rule_key for alert in select_alerts(candidates)] == ["a", "c", "b"]


def test_regenerate_stores_deterministic_alerts(db_session, summary_factory, company_id) -> None:
    _seed_declining_company(db_session, summary_factory, company_id)

    rows = AlertGenerator().regenerate(db_session, company_id, generated_at=GENERATED_AT)

    assert [row.rule_key for row in rows] == [
        "runway_low",
        "net_profit_drop",
        "revenue_drop",
        "debtor_concentration_top2",
    ]
    runway = rows[0]
    assert runway.severity == "critical"
    assert runway.details["runway_months"] == 1.0
    assert rows[1].message == "Net profit down 75% vs previous month."
    assert rows[2].message == "Revenue down 30% vs previous month."
    assert rows[3].message == "Two customers hold 90% of receivables."
    assert all(row.month == "2026-03" for row in rows)


def test_regenerate_replaces_previous_set(db_session, summary_factory, company_id) -> None:
    _seed_declining_company(db_session, summary_factory, company_id)
    generator = AlertGenerator(max_alerts=2)

    generator.regenerate(db_session, company_id, generated_at=GENERATED_AT)
    generator.regenerate(db_session, company_id, generated_at=GENERATED_AT)

    stored = db_session.query(models.CFOAlert).filter(models.CFOAlert.company_id == company_id).all()
    assert sorted(row.rule_key for row in stored) == ["net_profit_drop", "runway_low"]


def test_custom_rules_can_be_injected(db_session, company_id) -> None:
    def always(state):
        return AlertCandidate("always", "medium", "Always", "Raised for every company")

    rows = AlertGenerator(rules=[always]).regenerate(db_session, company_id, generated_at=GENERATED_AT)

    assert [row.rule_key for row in rows] == ["always"]
    assert rows[0].month is None
    assert rows[0].details is None


def test_stored_loan_servicing_flag_raises_alert(db_session, summary_factory, company_id) -> None:
    summary_factory("2026-03", revenue=10000, expenses=9800)
    for key, value in (("flag_loan_servicing_risk", "1"), ("interest_coverage", "1.25")):
        db_session.add(
            models.CFOMetric(
                company_id=company_id,
                metric_key=key,
                time_scope="live",
                metric_value=Decimal(value),
                computed_at=GENERATED_AT,
            )
        )
    db_session.flush()

    rows = AlertGenerator().regenerate(db_session, company_id, generated_at=GENERATED_AT)

    loan = next(row for row in rows if row.rule_key == "loan_servicing_risk")
    assert loan.severity == "high"
    assert loan.message == "Interest coverage is 1.25x while loans are outstanding."
    assert loan.details == {"interest_coverage": 1.25}
