"""Read-only sanity checks over the stored monthly snapshots."""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal

from sqlalchemy import func
from sqlalchemy.orm import Session

from .. import models

TOLERANCE = Decimal("0.01")


@dataclass(frozen=True)
class SnapshotIssue:
    """A single inconsistency found for one company month."""

    month: str
    check: str
    expected: Decimal
    actual: Decimal


@dataclass(frozen=True)
class SnapshotConsistencyReport:
    """Aggregated snapshot checks for a company."""

    company_id: str
    months_checked: int
    issues: list[SnapshotIssue] = field(default_factory=list)
    unknown_subtype_share: dict[str, float] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.issues


def _decimal(value) -> Decimal:
    return Decimal(str(value or 0))


class SnapshotConsistencyService:
    """Compares summaries with their breakdowns without writing anything."""

    @staticmethod
    def _breakdown_totals(db: Session, model, company_id: str) -> dict[str, Decimal]:
        rows = (
            db.query(model.month, func.sum(model.amount))
            .filter(model.company_id == company_id)
            .group_by(model.month)
            .all()
        )
        return {month: _decimal(total) for month, total in rows}

    @staticmethod
    def _unknown_share(db: Session, company_id: str) -> dict[str, float]:
        totals: dict[str, Decimal] = {}
        unknown: dict[str, Decimal] = {}
        for model in (models.MonthlyRevenueBreakdown, models.MonthlyExpenseBreakdown):
            rows = (
                db.query(model.month, model.canonical_subtype, model.amount)
                .filter(model.company_id == company_id)
                .all()
            )
            for month, subtype, amount in rows:
                value = abs(_decimal(amount))
                totals[month] = totals.get(month, Decimal("0")) + value
                if not subtype:
                    unknown[month] = unknown.get(month, Decimal("0")) + value
        return {
            month: float(unknown.get(month, Decimal("0")) / total)
            for month, total in sorted(totals.items())
            if total > 0
        }

    @classmethod
    def check_company(cls, db: Session, company_id: str) -> SnapshotConsistencyReport:
        summaries = (
            db.query(models.MonthlyTrialBalanceSummary)
            .filter(models.MonthlyTrialBalanceSummary.company_id == company_id)
            .order_by(models.MonthlyTrialBalanceSummary.month)
            .all()
        )
        revenue_totals = cls._breakdown_totals(db, models.MonthlyRevenueBreakdown, company_id)
        expense_totals = cls._breakdown_totals(db, models.MonthlyExpenseBreakdown, company_id)

        issues: list[SnapshotIssue] = []
        for summary in summaries:
            revenue = _decimal(summary.total_revenue)
            expenses = _decimal(summary.total_expenses)
            net_profit = _decimal(summary.net_profit)
            checks = (
                ("net_profit", revenue - expenses, net_profit),
                ("revenue_breakdown", revenue, revenue_totals.get(summary.month, Decimal("0"))),
                ("expense_breakdown", expenses, expense_totals.get(summary.month, Decimal("0"))),
            )
            for name, expected, actual in checks:
                if abs(expected - actual) > TOLERANCE:
                    issues.append(
                        SnapshotIssue(month=summary.month, check=name, expected=expected, actual=actual)
                    )

        return SnapshotConsistencyReport(
            company_id=company_id,
            months_checked=len(summaries),
            issues=issues,
            unknown_subtype_share=cls._unknown_share(db, company_id),
        )
