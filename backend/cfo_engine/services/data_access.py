"""Read-once access to the multi-month series consumed by the metrics catalog."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Iterable, Sequence

from sqlalchemy import func
from sqlalchemy.orm import Session

from .. import models
from ..month_keys import list_month_keys_between, month_key_offset
from . import days_metrics

FINANCE_COST_SUBTYPE = "finance_cost"


def to_number(value: Any) -> float | None:
    """Return ``value`` as a finite float or ``None``."""

    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def _sum_balances(rows: Iterable[Any]) -> float:
    return sum(to_number(row.balance) or 0.0 for row in rows)


@dataclass
class CurrentState:
    """Current (as of today) balance rows for a company."""

    cash_rows: list[Any] = field(default_factory=list)
    debtor_rows: list[Any] = field(default_factory=list)
    creditor_rows: list[Any] = field(default_factory=list)
    loan_rows: list[Any] = field(default_factory=list)

    @property
    def cash_total(self) -> float:
        return _sum_balances(self.cash_rows)

    @property
    def debtors_total(self) -> float:
        return _sum_balances(self.debtor_rows)

    @property
    def creditors_total(self) -> float:
        return _sum_balances(self.creditor_rows)

    @property
    def loans_total(self) -> float:
        return _sum_balances(self.loan_rows)


class MetricsDataAccess:
    """Loads and caches one company's monthly records for a recomputation.

    The instance is populated by a single :meth:`load` call and is never
    refreshed afterwards. Lookups for missing months or measures return
    ``None`` instead of raising.
    """

    def __init__(self, db: Session, company_id: str, *, months_back: int = 24) -> None:
        self.db = db
        self.company_id = company_id
        self.months_back = max(1, int(months_back or 24))
        self.loaded = False

        self.latest_month: str | None = None
        self._month_keys: list[str] = []
        self._records: dict[str, dict[str, float | None]] = {}
        self.current = CurrentState()
        self.liquidity: models.CurrentLiquidityMetric | None = None
        self._metric_cache: dict[tuple[str, str | None, str | None], float | str | None] = {}

    def load(self) -> "MetricsDataAccess":
        if self.loaded:
            return self

        self.latest_month = (
            self.db.query(func.max(models.MonthlyTrialBalanceSummary.month))
            .filter(models.MonthlyTrialBalanceSummary.company_id == self.company_id)
            .scalar()
        )
        if self.latest_month:
            start = month_key_offset(self.latest_month, -(self.months_back - 1))
            self._month_keys = list_month_keys_between(start, self.latest_month)

        if self._month_keys:
            self._load_monthly_records()

        company_filter = {"company_id": self.company_id}
        self.current = CurrentState(
            cash_rows=self.db.query(models.CurrentCashBalance).filter_by(**company_filter).all(),
            debtor_rows=self.db.query(models.CurrentDebtor).filter_by(**company_filter).all(),
            creditor_rows=self.db.query(models.CurrentCreditor).filter_by(**company_filter).all(),
            loan_rows=self.db.query(models.CurrentLoan).filter_by(**company_filter).all(),
        )
        self.liquidity = (
            self.db.query(models.CurrentLiquidityMetric).filter_by(**company_filter).first()
        )
        self.loaded = True
        return self

    def _monthly_totals(self, model) -> dict[str, float | None]:
        rows = (
            self.db.query(model.month, func.sum(model.closing_balance))
            .filter(model.company_id == self.company_id, model.month.in_(self._month_keys))
            .group_by(model.month)
            .all()
        )
        return {month: to_number(total) for month, total in rows}

    def _finance_costs(self) -> dict[str, float | None]:
        breakdown = models.MonthlyExpenseBreakdown
        rows = (
            self.db.query(breakdown.month, func.sum(breakdown.amount))
            .filter(
                breakdown.company_id == self.company_id,
                breakdown.month.in_(self._month_keys),
                breakdown.canonical_subtype == FINANCE_COST_SUBTYPE,
            )
            .group_by(breakdown.month)
            .all()
        )
        return {month: to_number(total) for month, total in rows}

    def _load_monthly_records(self) -> None:
        summaries = {
            row.month: row
            for row in self.db.query(models.MonthlyTrialBalanceSummary)
            .filter(
                models.MonthlyTrialBalanceSummary.company_id == self.company_id,
                models.MonthlyTrialBalanceSummary.month.in_(self._month_keys),
            )
            .all()
        }
        debtors_by_month = self._monthly_totals(models.MonthlyDebtor)
        creditors_by_month = self._monthly_totals(models.MonthlyCreditor)
        finance_costs = self._finance_costs()

        for month in self._month_keys:
            summary = summaries.get(month)
            if summary is None:
                continue
            revenue = to_number(summary.total_revenue)
            expenses = to_number(summary.total_expenses)
            net_profit = to_number(summary.net_profit)
            if net_profit is None and revenue is not None and expenses is not None:
                net_profit = revenue - expenses
            cash_bank = to_number(summary.cash_and_bank_balance)
            debtors = debtors_by_month.get(month)
            creditors = creditors_by_month.get(month)
            self._records[month] = {
                "revenue": revenue,
                "expenses": expenses,
                "net_profit": net_profit,
                "net_margin": (
                    net_profit / revenue
                    if net_profit is not None and revenue is not None and revenue > 0
                    else None
                ),
                "net_cashflow": to_number(summary.net_cashflow),
                "cash_bank": cash_bank,
                "inventory": to_number(summary.inventory_total),
                "debtors": debtors,
                "creditors": creditors,
                "finance_cost": finance_costs.get(month),
                "working_capital": (
                    cash_bank + debtors - creditors
                    if cash_bank is not None and debtors is not None and creditors is not None
                    else None
                ),
            }

        for month, record in self._records.items():
            revenue_avg = self.mean(self.get_window_values("revenue", month, 3))
            expense_avg = self.mean(self.get_window_values("expenses", month, 3))
            debtor_days = days_metrics.dso(record["debtors"], revenue_avg)
            creditor_days = days_metrics.dpo(record["creditors"], expense_avg)
            # A zero stock total means no inventory ledgers were reported.
            inventory = record["inventory"]
            inventory_days = days_metrics.dio(inventory, expense_avg) if inventory else None
            record["debtor_days"] = debtor_days
            record["creditor_days"] = creditor_days
            record["inventory_days"] = inventory_days
            record["cash_conversion_cycle"] = days_metrics.cash_gap_ex_inventory(debtor_days, creditor_days)
            record["full_cash_conversion_cycle"] = days_metrics.ccc(debtor_days, creditor_days, inventory_days)

    def get_latest_month(self) -> str | None:
        return self.latest_month

    def get_month_keys(self) -> list[str]:
        return list(self._month_keys)

    def get_record(self, month: str | None) -> dict[str, float | None] | None:
        if not month:
            return None
        return self._records.get(month)

    def get_latest_record(self) -> dict[str, float | None] | None:
        return self.get_record(self.latest_month)

    def get_value(self, measure: str, month: str | None = None) -> float | None:
        record = self.get_record(month) if month else self.get_latest_record()
        if record is None:
            return None
        return record.get(measure)

    def get_previous_month(self, month: str) -> str | None:
        return month_key_offset(month, -1)

    def get_window_values(self, measure: str, end_month: str | None, window: int) -> list[float]:
        """Return the finite values of ``measure`` over the trailing ``window`` months.

        Values are ordered oldest first; missing months are dropped rather than
        zero-filled.
        """

        if not end_month or not window or window < 1:
            return []
        start = month_key_offset(end_month, -(window - 1))
        values = []
        for key in list_month_keys_between(start, end_month):
            value = to_number(self.get_value(measure, key))
            if value is not None:
                values.append(value)
        return values

    def get_stored_metric(
        self, metric_key: str, time_scope: str | None = "live", month: str | None = None
    ) -> float | str | None:
        cache_key = (metric_key, time_scope, month)
        if cache_key in self._metric_cache:
            return self._metric_cache[cache_key]

        query = self.db.query(models.CFOMetric).filter(
            models.CFOMetric.company_id == self.company_id,
            models.CFOMetric.metric_key == metric_key,
        )
        if time_scope:
            query = query.filter(models.CFOMetric.time_scope == time_scope)
        if month:
            query = query.filter(models.CFOMetric.month == month)
        else:
            query = query.order_by(models.CFOMetric.updated_at.desc())
        row = query.first()

        value: float | str | None = None
        if row is not None:
            value = to_number(row.metric_value) if row.metric_value is not None else row.metric_text
        self._metric_cache[cache_key] = value
        return value

    def get_current_totals(self) -> dict[str, float]:
        cash = self.current.cash_total
        debtors = self.current.debtors_total
        creditors = self.current.creditors_total
        return {
            "cash": cash,
            "debtors": debtors,
            "creditors": creditors,
            "loans": self.current.loans_total,
            "working_capital": cash + debtors - creditors,
        }

    def get_top_share(self, kind: str = "debtors", top_n: int = 5) -> float:
        """Fraction of the total balance held by the ``top_n`` largest counterparties."""

        if kind == "creditors":
            rows, total = self.current.creditor_rows, self.current.creditors_total
        else:
            rows, total = self.current.debtor_rows, self.current.debtors_total
        if not rows or total <= 0:
            return 0.0
        balances = sorted((to_number(row.balance) or 0.0 for row in rows), reverse=True)
        return sum(balances[:top_n]) / total

    def liquidity_value(self, attribute: str) -> float | None:
        if self.liquidity is None:
            return None
        return to_number(getattr(self.liquidity, attribute, None))

    @staticmethod
    def pct_change(current_value: Any, previous_value: Any) -> float | None:
        current = to_number(current_value)
        previous = to_number(previous_value)
        if current is None or previous is None or previous == 0:
            return None
        return (current - previous) / abs(previous)

    @staticmethod
    def mean(values: Sequence[float] | None) -> float | None:
        if not values:
            return None
        return sum(values) / len(values)

    @staticmethod
    def stddev(values: Sequence[float] | None) -> float | None:
        if not values:
            return None
        average = sum(values) / len(values)
        variance = sum((value - average) ** 2 for value in values) / len(values)
        return math.sqrt(variance)

    @staticmethod
    def trend(values: Sequence[float] | None) -> int | None:
        if not values or len(values) < 2:
            return None
        first, last = to_number(values[0]), to_number(values[-1])
        if first is None or last is None:
            return None
        if last > first:
            return 1
        if last < first:
            return -1
        return 0
