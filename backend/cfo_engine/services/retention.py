"""Rolling retention of month-keyed rows."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from sqlalchemy.orm import Session

from .. import models
from ..month_keys import month_key_offset

LOGGER = logging.getLogger(__name__)

DEFAULT_RETENTION_MONTHS = 24

# (model, month column attribute name)
MONTH_KEYED_TABLES = (
    (models.MonthlyTrialBalanceSummary, "month"),
    (models.MonthlyRevenueBreakdown, "month"),
    (models.MonthlyExpenseBreakdown, "month"),
    (models.MonthlyDebtor, "month"),
    (models.MonthlyCreditor, "month"),
    (models.AccountingMonth, "month"),
    (models.LedgerMonthlyBalance, "month_key"),
    (models.CFOMetric, "month"),
)


@dataclass(frozen=True)
class RetentionWindow:
    start: str
    end: str

    def contains(self, month_key: str) -> bool:
        return self.start <= month_key <= self.end


@dataclass
class RetentionResult:
    window: RetentionWindow
    deleted: dict[str, int] = field(default_factory=dict)

    @property
    def total_deleted(self) -> int:
        return sum(self.deleted.values())


def retention_window(latest_closed_month: str, months: int = DEFAULT_RETENTION_MONTHS) -> RetentionWindow:
    """Window of ``months`` closed months plus one month of lookahead."""

    months = max(1, months)
    return RetentionWindow(
        start=month_key_offset(latest_closed_month, -(months - 1)),  # type: ignore[arg-type]
        end=month_key_offset(latest_closed_month, 1),  # type: ignore[arg-type]
    )


def trim_old_months(
    db: Session,
    company_id: str,
    latest_closed_month: str,
    *,
    months: int = DEFAULT_RETENTION_MONTHS,
) -> RetentionResult:
    """Delete every month-keyed row of ``company_id`` older than the window start.

    Runs inside the caller's transaction. Metric rows without a month are not
    month-keyed and are kept.
    """

    window = retention_window(latest_closed_month, months)
    result = RetentionResult(window=window)
    for model, column_name in MONTH_KEYED_TABLES:
        column = getattr(model, column_name)
        deleted = (
            db.query(model)
            .filter(model.company_id == company_id, column.isnot(None), column < window.start)
            .delete(synchronize_session=False)
        )
        result.deleted[model.__tablename__] = deleted or 0
    if result.total_deleted:
        LOGGER.info(
            "Retention removed %s rows older than %s for %s", result.total_deleted, window.start, company_id
        )
    return result
