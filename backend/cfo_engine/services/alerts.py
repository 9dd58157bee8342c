"""Deterministic threshold alerts regenerated after every recomputation."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Sequence

from sqlalchemy.orm import Session

from .. import models
from ..config import DEFAULT_MAX_ALERTS
from ..month_keys import month_key_offset
from .data_access import MetricsDataAccess, to_number
from .liquidity import LiquidityService, Runway

LOGGER = logging.getLogger(__name__)

SEVERITY_ORDER = {"critical": 0, "high": 1, "medium": 2}

FLAT_GROWTH_LIMIT = 0.02
TOP2_CONCENTRATION_LIMIT = 0.5
RUNWAY_ALERT_MONTHS = 4
NET_PROFIT_DROP_PCT = -30
REVENUE_DROP_PCT = -20
DEBTORS_INCREASE_PCT = 25


@dataclass(frozen=True)
class AlertCandidate:
    rule_key: str
    severity: str
    title: str
    message: str
    link: str | None = None
    month: str | None = None
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class AlertState:
    """Inputs shared by every alert rule."""

    month: str | None
    data: MetricsDataAccess
    runway: Runway | None
    top2_debtor_share: float | None

    def value(self, measure: str, months_back: int = 0) -> float | None:
        if not self.month:
            return None
        return self.data.get_value(measure, month_key_offset(self.month, -months_back))

    def growth(self, measure: str) -> float | None:
        return MetricsDataAccess.pct_change(self.value(measure), self.value(measure, 1))

    def change(self, measure: str) -> float | None:
        current, previous = self.value(measure), self.value(measure, 1)
        if current is None or previous is None:
            return None
        return current - previous


def _pct(value: float) -> int:
    return round(abs(value) * 100)


def _debtors_rising_revenue_flat(state: AlertState) -> AlertCandidate | None:
    debtor_change, revenue_growth = state.change("debtors"), state.growth("revenue")
    if debtor_change is None or revenue_growth is None:
        return None
    if debtor_change > 0 and revenue_growth < FLAT_GROWTH_LIMIT:
        return AlertCandidate(
            "debtors_rising_revenue_flat",
            "medium",
            "Debtors rising faster than sales",
            f"Debtors grew by {debtor_change:,.0f} while revenue growth was {revenue_growth * 100:.1f}%.",
            "/working-capital",
            state.month,
            {"debtor_change": debtor_change, "revenue_growth": revenue_growth},
        )
    return None


def _expense_growth_outpacing_cash(state: AlertState) -> AlertCandidate | None:
    expense_growth, cash_growth = state.growth("expenses"), state.growth("cash_bank")
    if expense_growth is None or cash_growth is None:
        return None
    if expense_growth > 0 and expense_growth > cash_growth:
        return AlertCandidate(
            "expense_growth_outpacing_cash",
            "high",
            "Expenses outpacing cash",
            f"Expenses grew {expense_growth * 100:.1f}% while cash moved {cash_growth * 100:.1f}%.",
            "/dashboard",
            state.month,
            {"expense_growth": expense_growth, "cash_growth": cash_growth},
        )
    return None


def _top2_debtor_concentration(state: AlertState) -> AlertCandidate | None:
    share = state.top2_debtor_share
    if share is None or share <= TOP2_CONCENTRATION_LIMIT:
        return None
    return AlertCandidate(
        "debtor_concentration_top2",
        "medium",
        "Debtor concentration",
        f"Two customers hold {share * 100:.0f}% of receivables.",
        "/working-capital",
        state.month,
        {"top2_share": share},
    )


def _creditors_rising_expenses_flat(state: AlertState) -> AlertCandidate | None:
    creditor_change, expense_growth = state.change("creditors"), state.growth("expenses")
    if creditor_change is None or expense_growth is None:
        return None
    if creditor_change > 0 and abs(expense_growth) < FLAT_GROWTH_LIMIT:
        return AlertCandidate(
            "creditors_rising_expenses_flat",
            "medium",
            "Payables building up",
            f"Creditors grew by {creditor_change:,.0f} while expenses were flat.",
            "/working-capital",
            state.month,
            {"creditor_change": creditor_change, "expense_growth": expense_growth},
        )
    return None


def _runway_low(state: AlertState) -> AlertCandidate | None:
    runway = state.runway.runway_months if state.runway else None
    if runway is None or not 0 <= runway < RUNWAY_ALERT_MONTHS:
        return None
    return AlertCandidate(
        "runway_low",
        "critical",
        "Low runway",
        f"Cash runway is {runway} months (below {RUNWAY_ALERT_MONTHS} months).",
        "/dashboard",
        state.month,
        {"runway_months": runway, "status": state.runway.status},
    )


def _drop_rule(
    measure: str, rule_key: str, title: str, label: str, threshold_pct: int
) -> Callable[[AlertState], AlertCandidate | None]:
    def rule(state: AlertState) -> AlertCandidate | None:
        previous = state.value(measure, 1)
        current = state.value(measure)
        if previous is None or current is None or previous <= 0:
            return None
        change = (current - previous) / previous
        if change * 100 > threshold_pct:
            return None
        return AlertCandidate(
            rule_key,
            "high",
            title,
            f"{label} down {_pct(change)}% vs previous month.",
            "/pl-pack",
            state.month,
            {"change_pct": change * 100},
        )

    return rule


def _debtors_increase(state: AlertState) -> AlertCandidate | None:
    previous, current = state.value("debtors", 1), state.value("debtors")
    if not previous or current is None:
        return None
    change = (current - previous) / previous
    if change * 100 <= DEBTORS_INCREASE_PCT:
        return None
    return AlertCandidate(
        "debtors_increase",
        "medium",
        "Collections risk",
        f"Debtors outstanding increased {_pct(change)}% vs previous month.",
        "/working-capital",
        state.month,
        {"change_pct": change * 100},
    )


def _loan_servicing_risk(state: AlertState) -> AlertCandidate | None:
    # Reads the flag stored by the metrics run that precedes alert generation.
    flag = to_number(state.data.get_stored_metric("flag_loan_servicing_risk", "live"))
    if flag != 1:
        return None
    coverage = to_number(state.data.get_stored_metric("interest_coverage", "live"))
    coverage_text = f"{coverage:.2f}x" if coverage is not None else "unknown"
    return AlertCandidate(
        "loan_servicing_risk",
        "high",
        "Loan servicing risk",
        f"Interest coverage is {coverage_text} while loans are outstanding.",
        "/working-capital",
        state.month,
        {"interest_coverage": coverage},
    )


ALERT_RULES: tuple[Callable[[AlertState], AlertCandidate | None], ...] = (
    _runway_low,
    _drop_rule("net_profit", "net_profit_drop", "Net profit drop", "Net profit", NET_PROFIT_DROP_PCT),
    _drop_rule("revenue", "revenue_drop", "Revenue drop", "Revenue", REVENUE_DROP_PCT),
    _expense_growth_outpacing_cash,
    _debtors_increase,
    _debtors_rising_revenue_flat,
    _top2_debtor_concentration,
    _creditors_rising_expenses_flat,
    _loan_servicing_risk,
)


def select_alerts(
    candidates: Sequence[AlertCandidate | None], max_alerts: int = DEFAULT_MAX_ALERTS
) -> list[AlertCandidate]:
    """Drop empty and repeated rule keys, order by severity and cap the list."""

    unique: dict[str, AlertCandidate] = {}
    for candidate in candidates:
        if candidate is not None and candidate.rule_key not in unique:
            unique[candidate.rule_key] = candidate
    ordered = sorted(
        enumerate(unique.values()),
        key=lambda item: (SEVERITY_ORDER.get(item[1].severity, len(SEVERITY_ORDER)), item[0]),
    )
    return [candidate for _, candidate in ordered][: max(0, max_alerts)]


class AlertGenerator:
    """Evaluates the alert rules and replaces the company's alert set."""

    def __init__(
        self,
        rules: Sequence[Callable[[AlertState], AlertCandidate | None]] = ALERT_RULES,
        *,
        max_alerts: int = DEFAULT_MAX_ALERTS,
    ) -> None:
        self.rules = tuple(rules)
        self.max_alerts = max_alerts

    @staticmethod
    def _top2_debtor_share(data: MetricsDataAccess) -> float | None:
        balances = sorted((to_number(row.balance) or 0.0 for row in data.current.debtor_rows), reverse=True)
        total = sum(balances)
        if not balances or total <= 0:
            return None
        return sum(balances[:2]) / total

    def build_state(self, db: Session, company_id: str) -> AlertState:
        data = MetricsDataAccess(db, company_id, months_back=13).load()
        return AlertState(
            month=data.get_latest_month(),
            data=data,
            runway=LiquidityService.get_runway(db, company_id),
            top2_debtor_share=self._top2_debtor_share(data),
        )

    def evaluate(self, state: AlertState) -> list[AlertCandidate]:
        return select_alerts([rule(state) for rule in self.rules], self.max_alerts)

    def regenerate(
        self, db: Session, company_id: str, *, generated_at: datetime | None = None
    ) -> list[models.CFOAlert]:
        """Delete the previous alert set of ``company_id`` and store the new one."""

        generated_at = generated_at or datetime.now(timezone.utc)
        candidates = self.evaluate(self.build_state(db, company_id))
        db.query(models.CFOAlert).filter(models.CFOAlert.company_id == company_id).delete(
            synchronize_session=False
        )
        rows = []
        for candidate in candidates:
            row = models.CFOAlert(
                company_id=company_id,
                rule_key=candidate.rule_key,
                severity=candidate.severity,
                title=candidate.title,
                message=candidate.message,
                link=candidate.link,
                month=candidate.month,
                details=candidate.details or None,
                generated_at=generated_at,
            )
            db.add(row)
            rows.append(row)
        db.flush()
        LOGGER.info("Generated %s alerts for %s", len(rows), company_id)
        return rows
