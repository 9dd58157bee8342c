"""Read access to the engine outputs for dashboards and insight consumers."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from .. import models
from ..month_keys import normalize_month
from .data_access import to_number
from .metrics_runner import DEFAULT_TIME_SCOPE, MONTH_SCOPE
from .observability import EVENT_METRICS_RUN, latest_event

SOURCE_CURRENT = "current_balances"
SOURCE_MONTHLY = "monthly_breakdown"

RISK_HIGH = "high"
RISK_MEDIUM = "medium"
RISK_LOW = "low"

_SEVERITY_RANK = {"critical": 0, "high": 1, "medium": 2}

_COUNTERPARTY_MODELS = {
    "debtors": (models.CurrentDebtor, models.MonthlyDebtor, "debtor_name"),
    "creditors": (models.CurrentCreditor, models.MonthlyCreditor, "creditor_name"),
}


class UnknownCounterpartyKind(ValueError):
    """Raised when the counterparty kind is not debtors or creditors."""


@dataclass(frozen=True)
class CounterpartyBalance:
    name: str
    balance: float
    share_pct: float


@dataclass
class CounterpartyConcentration:
    kind: str
    source: Optional[str]
    month: Optional[str]
    total: float = 0.0
    items: list[CounterpartyBalance] = field(default_factory=list)
    top1_pct: float = 0.0
    top5_pct: float = 0.0
    risk_level: str = RISK_LOW


@dataclass(frozen=True)
class RecomputeSummaryView:
    outcome: str
    created_at: datetime
    metric_definitions: int
    written: int
    skipped: int
    failures: list[dict[str, Any]]
    missing_metric_keys: list[str]


def concentration_risk(top1_pct: float, top5_pct: float) -> str:
    if top1_pct > 30 or top5_pct > 60:
        return RISK_HIGH
    if top1_pct > 20 or top5_pct > 45:
        return RISK_MEDIUM
    return RISK_LOW


class MetricsReadService:
    """Query helpers behind the read endpoints; nothing here writes."""

    @staticmethod
    def latest_month(db: Session, company_id: str) -> str | None:
        return (
            db.query(func.max(models.MonthlyTrialBalanceSummary.month))
            .filter(models.MonthlyTrialBalanceSummary.company_id == company_id)
            .scalar()
        )

    @staticmethod
    def monthly_summary(
        db: Session, company_id: str, month: str
    ) -> models.MonthlyTrialBalanceSummary | None:
        month_key = normalize_month(month)
        if month_key is None:
            return None
        return (
            db.query(models.MonthlyTrialBalanceSummary)
            .filter(
                models.MonthlyTrialBalanceSummary.company_id == company_id,
                models.MonthlyTrialBalanceSummary.month == month_key,
            )
            .first()
        )

    @staticmethod
    def metric(
        db: Session,
        company_id: str,
        metric_key: str,
        *,
        time_scope: str = DEFAULT_TIME_SCOPE,
        month: str | None = None,
    ) -> models.CFOMetric | None:
        query = db.query(models.CFOMetric).filter(
            models.CFOMetric.company_id == company_id,
            models.CFOMetric.metric_key == metric_key,
            models.CFOMetric.time_scope == time_scope,
        )
        if time_scope == MONTH_SCOPE:
            month_key = normalize_month(month)
            if month_key is None:
                return None
            query = query.filter(models.CFOMetric.month == month_key)
        else:
            query = query.filter(models.CFOMetric.month.is_(None))
        return query.first()

    @staticmethod
    def current_totals(db: Session, company_id: str) -> dict[str, float | str | None]:
        def total(model) -> float:
            value = db.query(func.sum(model.balance)).filter(model.company_id == company_id).scalar()
            return to_number(value) or 0.0

        cash = total(models.CurrentCashBalance)
        debtors = total(models.CurrentDebtor)
        creditors = total(models.CurrentCreditor)
        liquidity = (
            db.query(models.CurrentLiquidityMetric)
            .filter(models.CurrentLiquidityMetric.company_id == company_id)
            .first()
        )
        return {
            "cash": cash,
            "debtors": debtors,
            "creditors": creditors,
            "loans": total(models.CurrentLoan),
            "working_capital": cash + debtors - creditors,
            "cash_runway_months": to_number(liquidity.cash_runway_months) if liquidity else None,
            "avg_net_cash_outflow_3m": to_number(liquidity.avg_net_cash_outflow_3m) if liquidity else None,
            "balance_source": liquidity.balance_source if liquidity else None,
        }

    @classmethod
    def counterparties(
        cls, db: Session, company_id: str, kind: str, *, top_n: int = 5
    ) -> CounterpartyConcentration:
        """Largest counterparties and their concentration.

        Current balances are used when present, otherwise the breakdown of the
        latest summarized month.
        """

        if kind not in _COUNTERPARTY_MODELS:
            raise UnknownCounterpartyKind(kind)
        current_model, monthly_model, name_attr = _COUNTERPARTY_MODELS[kind]

        balances = [
            (row.name, to_number(row.balance) or 0.0)
            for row in db.query(current_model).filter(current_model.company_id == company_id).all()
        ]
        source, month = SOURCE_CURRENT, None
        if not balances:
            month = cls.latest_month(db, company_id)
            source = SOURCE_MONTHLY if month else None
            if month:
                balances = [
                    (getattr(row, name_attr), to_number(row.closing_balance) or 0.0)
                    for row in db.query(monthly_model)
                    .filter(monthly_model.company_id == company_id, monthly_model.month == month)
                    .all()
                ]

        result = CounterpartyConcentration(kind=kind, source=source, month=month)
        balances.sort(key=lambda item: (-item[1], item[0]))
        result.total = sum(balance for _, balance in balances)
        if result.total <= 0:
            return result

        def share(value: float) -> float:
            return round(value / result.total * 100, 2)

        result.items = [
            CounterpartyBalance(name=name, balance=balance, share_pct=share(balance))
            for name, balance in balances[: max(1, top_n)]
        ]
        result.top1_pct = share(balances[0][1])
        result.top5_pct = share(sum(balance for _, balance in balances[:5]))
        result.risk_level = concentration_risk(result.top1_pct, result.top5_pct)
        return result

    @staticmethod
    def recompute_summary(db: Session, company_id: str) -> RecomputeSummaryView | None:
        event = latest_event(db, company_id, EVENT_METRICS_RUN)
        if event is None:
            return None
        details = event.details or {}
        return RecomputeSummaryView(
            outcome=event.outcome,
            created_at=event.created_at,
            metric_definitions=int(details.get("metric_definitions", 0)),
            written=int(details.get("written", 0)),
            skipped=int(details.get("skipped", 0)),
            failures=list(details.get("failures", [])),
            missing_metric_keys=list(details.get("missing_metric_keys", [])),
        )

    @staticmethod
    def alerts(db: Session, company_id: str) -> list[models.CFOAlert]:
        rows = db.query(models.CFOAlert).filter(models.CFOAlert.company_id == company_id).all()
        return sorted(rows, key=lambda row: (_SEVERITY_RANK.get(row.severity, 3), row.rule_key))
