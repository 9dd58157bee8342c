"""Normalized monthly summaries and their breakdown tables."""

from __future__ import annotations

import uuid

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Numeric,
    String,
    UniqueConstraint,
    func,
)

from ..database import Base
from ..db_types import GUID


class MonthlyTrialBalanceSummary(Base):
    """Stores the aggregated trial balance figures for one company month."""

    __tablename__ = "monthly_trial_balance_summaries"
    __table_args__ = (
        UniqueConstraint("company_id", "month", name="uq_monthly_summaries_company_month"),
    )

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    company_id = Column(String(36), nullable=False, index=True)
    month = Column(String(7), nullable=False)
    cash_and_bank_balance = Column(Numeric(18, 2), nullable=False, default=0)
    total_revenue = Column(Numeric(18, 2), nullable=False, default=0)
    total_expenses = Column(Numeric(18, 2), nullable=False, default=0)
    net_profit = Column(Numeric(18, 2), nullable=False, default=0)
    net_cashflow = Column(Numeric(18, 2), nullable=False, default=0)
    inventory_total = Column(Numeric(18, 2), nullable=False, default=0)
    data_source = Column(String(16), nullable=False, default="transactions")
    generated_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class _AmountBreakdownColumns:
    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    company_id = Column(String(36), nullable=False, index=True)
    month = Column(String(7), nullable=False, index=True)
    canonical_type = Column(String(64), nullable=True)
    canonical_subtype = Column(String(64), nullable=True)
    amount = Column(Numeric(18, 2), nullable=False, default=0)


class MonthlyRevenueBreakdown(_AmountBreakdownColumns, Base):
    """Revenue for a month split by category or ledger."""

    __tablename__ = "monthly_revenue_breakdowns"

    revenue_name = Column(String(255), nullable=False)
    normalized_revenue_category = Column(String(255), nullable=True)


class MonthlyExpenseBreakdown(_AmountBreakdownColumns, Base):
    """Expenses for a month split by category or ledger."""

    __tablename__ = "monthly_expense_breakdowns"

    expense_name = Column(String(255), nullable=False)
    normalized_expense_category = Column(String(255), nullable=True)


class _CounterpartyColumns:
    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    company_id = Column(String(36), nullable=False, index=True)
    month = Column(String(7), nullable=False, index=True)
    closing_balance = Column(Numeric(18, 2), nullable=False, default=0)
    percentage_of_total = Column(Numeric(9, 4), nullable=False, default=0)
    mom_change = Column(Numeric(18, 2), nullable=False, default=0)
    avg_3m = Column(Numeric(18, 2), nullable=True)
    avg_6m = Column(Numeric(18, 2), nullable=True)
    avg_12m = Column(Numeric(18, 2), nullable=True)
    trend_flag = Column(String(8), nullable=False, default="STABLE")
    concentration_flag = Column(Boolean, nullable=False, default=False)
    canonical_type = Column(String(64), nullable=True)
    canonical_subtype = Column(String(64), nullable=True)


class MonthlyDebtor(_CounterpartyColumns, Base):
    """Closing balance owed by one debtor at the end of a month."""

    __tablename__ = "monthly_debtors"

    debtor_name = Column(String(255), nullable=False)


class MonthlyCreditor(_CounterpartyColumns, Base):
    """Closing balance owed to one creditor at the end of a month."""

    __tablename__ = "monthly_creditors"

    creditor_name = Column(String(255), nullable=False)
