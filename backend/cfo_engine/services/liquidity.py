"""Cash runway and the per-company liquidity row."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal

from sqlalchemy.orm import Session

from .. import models
from .data_access import to_number

LOGGER = logging.getLogger(__name__)

MIN_MONTHS_FOR_RUNWAY = 3
RUNWAY_SERIES_MONTHS = 6
OUTFLOW_WINDOW_MONTHS = 3

STATUS_GREEN = "GREEN"
STATUS_AMBER = "AMBER"
STATUS_RED = "RED"
STATUS_UNKNOWN = "UNKNOWN"

LABEL_GROWING = "Growing"
LABEL_INSUFFICIENT = "Insufficient data"
LABEL_CRITICAL = "Critical"

SOURCE_MONTHLY_SUMMARY = "monthly_summary"


@dataclass(frozen=True)
class RunwayOutcome:
    runway_months: float | None
    status: str
    status_label: str


@dataclass(frozen=True)
class CashMovement:
    month: str
    opening: float
    closing: float

    @property
    def net_change(self) -> float:
        return self.closing - self.opening


@dataclass
class CashBankSeries:
    months: list[str] = field(default_factory=list)
    series: list[CashMovement] = field(default_factory=list)

    @property
    def average_net_change(self) -> float | None:
        if not self.series:
            return None
        return sum(item.net_change for item in self.series) / len(self.series)


@dataclass(frozen=True)
class Runway:
    current_cash: float
    average_net_change: float | None
    runway_months: float | None
    status: str
    status_label: str
    series: tuple[CashMovement, ...] = ()


def compute_runway_from_series(
    current_cash: float, months_available: int, average_net_change: float | None
) -> RunwayOutcome:
    """Classify runway from cash on hand and the average monthly cash movement."""

    if months_available < MIN_MONTHS_FOR_RUNWAY:
        return RunwayOutcome(None, STATUS_UNKNOWN, LABEL_INSUFFICIENT)
    if current_cash <= 0:
        return RunwayOutcome(0.0, STATUS_RED, LABEL_CRITICAL)
    if average_net_change is None or average_net_change >= 0:
        return RunwayOutcome(None, STATUS_GREEN, LABEL_GROWING)

    runway = current_cash / abs(average_net_change)
    if runway >= 6:
        status = STATUS_GREEN
    elif runway >= 3:
        status = STATUS_AMBER
    else:
        status = STATUS_RED
    return RunwayOutcome(round(runway, 1), status, f"{runway:.1f} months")


def runway_months(cash: float | None, average_net_cashflow: float | None) -> float | None:
    """Months of cash left at the given average net cash flow.

    ``None`` when either input is unknown or the flow is not negative.
    """

    if cash is None or average_net_cashflow is None or average_net_cashflow >= 0:
        return None
    if cash <= 0:
        return 0.0
    return cash / abs(average_net_cashflow)


class LiquidityService:
    """Computes cash runway figures from the monthly summaries."""

    @staticmethod
    def get_cash_bank_series(
        db: Session, company_id: str, last_n: int = RUNWAY_SERIES_MONTHS
    ) -> CashBankSeries:
        rows = (
            db.query(
                models.MonthlyTrialBalanceSummary.month,
                models.MonthlyTrialBalanceSummary.cash_and_bank_balance,
            )
            .filter(models.MonthlyTrialBalanceSummary.company_id == company_id)
            .order_by(models.MonthlyTrialBalanceSummary.month.asc())
            .all()
        )
        if len(rows) < 2:
            return CashBankSeries(months=[month for month, _ in rows])

        last_rows = rows[-min(last_n + 1, len(rows)):]
        series = [
            CashMovement(
                month=current[0],
                opening=to_number(previous[1]) or 0.0,
                closing=to_number(current[1]) or 0.0,
            )
            for previous, current in zip(last_rows, last_rows[1:])
        ]
        return CashBankSeries(months=[month for month, _ in last_rows], series=series)

    @staticmethod
    def _current_cash(db: Session, company_id: str) -> float:
        latest = (
            db.query(models.MonthlyTrialBalanceSummary.cash_and_bank_balance)
            .filter(models.MonthlyTrialBalanceSummary.company_id == company_id)
            .order_by(models.MonthlyTrialBalanceSummary.month.desc())
            .first()
        )
        cash = to_number(latest[0]) if latest else None
        if cash:
            return cash
        rows = (
            db.query(models.CurrentCashBalance.balance)
            .filter(models.CurrentCashBalance.company_id == company_id)
            .all()
        )
        return sum(to_number(balance) or 0.0 for (balance,) in rows)

    @classmethod
    def get_runway(cls, db: Session, company_id: str) -> Runway:
        current_cash = cls._current_cash(db, company_id)
        cash_series = cls.get_cash_bank_series(db, company_id, RUNWAY_SERIES_MONTHS)
        average = cash_series.average_net_change
        outcome = compute_runway_from_series(current_cash, len(cash_series.months), average)
        return Runway(
            current_cash=current_cash,
            average_net_change=average,
            runway_months=outcome.runway_months,
            status=outcome.status,
            status_label=outcome.status_label,
            series=tuple(cash_series.series[-RUNWAY_SERIES_MONTHS:]),
        )

    @staticmethod
    def recompute(
        db: Session, company_id: str, *, balance_source: str | None = None
    ) -> models.CurrentLiquidityMetric:
        """Refresh the liquidity row used by the runway metrics.

        The outflow is the average net cash flow of the latest three summary
        months, stored as a positive number when cash is leaving and zero
        otherwise. Cash comes from the current cash table when it has rows and
        from the latest summary otherwise.
        """

        recent = (
            db.query(
                models.MonthlyTrialBalanceSummary.net_cashflow,
                models.MonthlyTrialBalanceSummary.cash_and_bank_balance,
            )
            .filter(models.MonthlyTrialBalanceSummary.company_id == company_id)
            .order_by(models.MonthlyTrialBalanceSummary.month.desc())
            .limit(OUTFLOW_WINDOW_MONTHS)
            .all()
        )
        flows = [value for value in (to_number(row[0]) for row in recent) if value is not None]
        average = sum(flows) / len(flows) if flows else None

        cash_rows = (
            db.query(models.CurrentCashBalance.balance)
            .filter(models.CurrentCashBalance.company_id == company_id)
            .all()
        )
        if cash_rows:
            cash = sum(to_number(balance) or 0.0 for (balance,) in cash_rows)
            source = balance_source or "current_balances"
        elif recent:
            cash = to_number(recent[0][1])
            source = SOURCE_MONTHLY_SUMMARY
        else:
            cash = None
            source = None

        row = (
            db.query(models.CurrentLiquidityMetric)
            .filter(models.CurrentLiquidityMetric.company_id == company_id)
            .first()
        )
        if row is None:
            row = models.CurrentLiquidityMetric(company_id=company_id)
        outflow = None if average is None else max(-average, 0.0)
        runway = runway_months(cash, average)
        row.avg_net_cash_outflow_3m = Decimal(str(round(outflow, 2))) if outflow is not None else None
        row.cash_runway_months = Decimal(str(round(runway, 2))) if runway is not None else None
        row.balance_source = source
        db.add(row)
        db.flush()
        LOGGER.debug(
            "Liquidity for %s: outflow=%s runway=%s source=%s", company_id, outflow, runway, source
        )
        return row
