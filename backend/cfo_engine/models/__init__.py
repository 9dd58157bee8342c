"""Expose SQLAlchemy models for convenient imports."""

from .accounting_month import AccountingMonth
from .alert import CFOAlert
from .current_balances import (
    CurrentCashBalance,
    CurrentCreditor,
    CurrentDebtor,
    CurrentLiquidityMetric,
    CurrentLoan,
)
from .financial_snapshot import (
    MonthlyCreditor,
    MonthlyDebtor,
    MonthlyExpenseBreakdown,
    MonthlyRevenueBreakdown,
    MonthlyTrialBalanceSummary,
)
from .idempotency_lock import JobIdempotencyLock, LockStatus
from .ledger import AccountingTermMapping, CFOLedgerClassification, LedgerMonthlyBalance
from .metric import CFOMetric
from .operational_metric import RecomputeEventRecord
from .source_data import CashBalance, FinancialTransaction, TransactionType

__all__ = [
    "AccountingMonth",
    "AccountingTermMapping",
    "CFOAlert",
    "CFOLedgerClassification",
    "CFOMetric",
    "CashBalance",
    "CurrentCashBalance",
    "CurrentCreditor",
    "CurrentDebtor",
    "CurrentLiquidityMetric",
    "CurrentLoan",
    "FinancialTransaction",
    "JobIdempotencyLock",
    "LedgerMonthlyBalance",
    "LockStatus",
    "MonthlyCreditor",
    "MonthlyDebtor",
    "MonthlyExpenseBreakdown",
    "MonthlyRevenueBreakdown",
    "MonthlyTrialBalanceSummary",
    "RecomputeEventRecord",
    "TransactionType",
]
