from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from backend.cfo_engine import get_app, models
from backend.cfo_engine.config import EngineSettings
from backend.cfo_engine.main import app
from backend.cfo_engine.routers.metrics import get_orchestrator
from backend.cfo_engine.services.recompute import RecomputeOrchestrator

COMPUTED_AT = datetime(2026, 4, 15, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def orchestrator_client(client, session_factory):
    orchestrator = RecomputeOrchestrator(
        settings=EngineSettings(), session_factory=session_factory, clock=lambda: COMPUTED_AT
    )
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    try:
        yield client
    finally:
        app.dependency_overrides.pop(get_orchestrator, None)


def test_trigger_recompute_runs_then_skips(orchestrator_client, session_factory, company_id) -> None:
    with session_factory() as db:
        db.add(
            models.FinancialTransaction(
                company_id=company_id,
                transaction_date=date(2026, 3, 2),
                type=models.TransactionType.REVENUE,
                category="Product sales",
                amount=Decimal("1200"),
            )
        )
        db.commit()

    payload = {"amended_month": "2026-03", "job_id": "sync-42"}
    first = orchestrator_client.post(f"/companies/{company_id}/recompute", json=payload)

    assert first.status_code == 200
    body = first.json()
    assert body["skipped"] is False
    assert body["months"] == ["2026-03"]
    assert body["months_processed"] == 1
    assert body["metrics"]["written"] > 0

    second = orchestrator_client.post(f"/companies/{company_id}/recompute", json=payload)
    assert second.status_code == 200
    assert second.json()["skipped"] is True
    assert second.json()["reason"] == "already_completed"
    assert second.json()["metrics"] is None


def test_trigger_recompute_rejects_bad_month(orchestrator_client, company_id) -> None:
    response = orchestrator_client.post(
        f"/companies/{company_id}/recompute", json={"amended_month": "March"}
    )

    assert response.status_code == 422


def test_latest_month_and_summary(client, summary_factory, db_session, company_id) -> None:
    assert client.get(f"/companies/{company_id}/latest-month").json() == {
        "company_id": company_id,
        "month": None,
    }
    summary_factory("2026-02", revenue=800, expenses=300, cash=5000)
    summary_factory("2026-03", revenue=900, expenses=400, cash=5500)
    db_session.flush()

    assert client.get(f"/companies/{company_id}/latest-month").json()["month"] == "2026-03"

    response = client.get(f"/companies/{company_id}/monthly-summaries/2026-02")
    assert response.status_code == 200
    body = response.json()
    assert Decimal(body["net_profit"]) == Decimal("500")
    assert body["data_source"] == "transactions"

    assert client.get(f"/companies/{company_id}/monthly-summaries/2025-01").status_code == 404
    assert client.get(f"/companies/{company_id}/monthly-summaries/2026-13").status_code == 404


def test_metric_lookup(client, db_session, company_id) -> None:
    db_session.add_all(
        [
            models.CFOMetric(
                company_id=company_id, metric_key="cash_runway_months", time_scope="live",
                metric_value=Decimal("7.5"), computed_at=COMPUTED_AT,
            ),
            models.CFOMetric(
                company_id=company_id, metric_key="catalog_revenue_month_value", time_scope="month",
                month="2026-03", metric_value=Decimal("900"), computed_at=COMPUTED_AT,
            ),
        ]
    )
    db_session.flush()

    live = client.get(f"/companies/{company_id}/metrics/cash_runway_months")
    assert live.status_code == 200
    assert float(live.json()["metric_value"]) == 7.5

    monthly = client.get(
        f"/companies/{company_id}/metrics/catalog_revenue_month_value",
        params={"time_scope": "month", "month": "2026-03"},
    )
    assert monthly.status_code == 200
    assert monthly.json()["month"] == "2026-03"

    missing = client.get(f"/companies/{company_id}/metrics/revenue_yoy_growth_pct")
    assert missing.status_code == 404
    no_month = client.get(
        f"/companies/{company_id}/metrics/catalog_revenue_month_value", params={"time_scope": "month"}
    )
    assert no_month.status_code == 404


def test_current_totals(client, db_session, company_id) -> None:
    db_session.add_all(
        [
            models.CurrentCashBalance(company_id=company_id, name="HDFC", balance=Decimal("5000"), source="payload"),
            models.CurrentDebtor(company_id=company_id, name="North", balance=Decimal("1200"), source="payload"),
            models.CurrentCreditor(company_id=company_id, name="Vendor", balance=Decimal("700"), source="payload"),
        ]
    )
    db_session.flush()

    body = client.get(f"/companies/{company_id}/current-totals").json()

    assert body["cash"] == 5000
    assert body["loans"] == 0
    assert body["working_capital"] == 5500
    assert body["cash_runway_months"] is None


def test_counterparties(client, db_session, summary_factory, company_id) -> None:
    assert client.get(f"/companies/{company_id}/counterparties/lenders").status_code == 400

    summary_factory("2026-03", revenue=100)
    db_session.add_all(
        [
            models.MonthlyDebtor(company_id=company_id, month="2026-03", debtor_name="A", closing_balance=Decimal("600")),
            models.MonthlyDebtor(company_id=company_id, month="2026-03", debtor_name="B", closing_balance=Decimal("400")),
        ]
    )
    db_session.flush()

    body = client.get(f"/companies/{company_id}/counterparties/debtors", params={"top_n": 1}).json()

    assert body["source"] == "monthly_breakdown"
    assert body["month"] == "2026-03"
    assert body["items"] == [{"name": "A", "balance": 600.0, "share_pct": 60.0}]
    assert body["top5_pct"] == 100.0
    assert body["risk_level"] == "high"


def test_recompute_summary(client, db_session, company_id) -> None:
    assert client.get(f"/companies/{company_id}/recompute-summary").status_code == 404

    db_session.add(
        models.RecomputeEventRecord(
            company_id=company_id,
            event_type="metrics_run",
            outcome="error",
            tags={},
            details={
                "metric_definitions": 40,
                "written": 31,
                "skipped": 8,
                "failures": [{"key": "dso_days", "month": None, "error": "division by zero"}],
                "missing_metric_keys": ["revenue_yoy_growth_pct"],
            },
            created_at=COMPUTED_AT,
        )
    )
    db_session.flush()

    body = client.get(f"/companies/{company_id}/recompute-summary").json()

    assert body["outcome"] == "error"
    assert body["written"] == 31
    assert body["failures"][0]["key"] == "dso_days"
    assert body["missing_metric_keys"] == ["revenue_yoy_growth_pct"]


def test_alerts_are_ordered_by_severity(client, db_session, company_id) -> None:
    for rule_key, severity in (("revenue_drop", "high"), ("debtors_increase", "medium"), ("runway_low", "critical")):
        db_session.add(
            models.CFOAlert(
                company_id=company_id, rule_key=rule_key, severity=severity, title=rule_key,
                message=rule_key, month="2026-03", generated_at=COMPUTED_AT,
            )
        )
    db_session.flush()

    response = client.get(f"/companies/{company_id}/alerts")

    assert response.status_code == 200
    assert [alert["rule_key"] for alert in response.json()] == ["runway_low", "revenue_drop", "debtors_increase"]


def test_snapshot_consistency_report(client, db_session, summary_factory, company_id) -> None:
    empty = client.get(f"/companies/{company_id}/snapshot-consistency").json()
    assert (empty["months_checked"], empty["ok"], empty["issues"]) == (0, True, [])

    summary_factory("2026-03", revenue=900, expenses=400)
    db_session.add(
        models.MonthlyRevenueBreakdown(
            company_id=company_id, month="2026-03", revenue_name="Consulting", amount=Decimal("900")
        )
    )
    db_session.flush()

    body = client.get(f"/companies/{company_id}/snapshot-consistency").json()

    assert body["months_checked"] == 1
    assert body["ok"] is False
    assert [(issue["check"], Decimal(issue["expected"]), Decimal(issue["actual"])) for issue in body["issues"]] == [
        ("expense_breakdown", Decimal("400"), Decimal("0"))
    ]
    assert body["unknown_subtype_share"] == {"2026-03": 1.0}


def test_health_check(client) -> None:
    assert get_app() is app
    assert client.get("/").json() == {"status": "ok"}
