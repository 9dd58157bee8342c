"""Builds the monthly trial balance summaries and their breakdown rows."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Iterable, Mapping, Sequence

from sqlalchemy import func
from sqlalchemy.orm import Session

from .. import models
from ..month_keys import list_month_keys_between, month_bounds, month_key_offset
from .ledger_classification import (
    CASH_BANK,
    CREDITORS,
    DEBTORS,
    EXPENSES,
    INVENTORY,
    REVENUE,
    normalize_name,
)
from .term_mapping import TermMappingResolver

LOGGER = logging.getLogger(__name__)

SOURCE_TRANSACTIONS = "transactions"
SOURCE_LEDGER = "ledger_balances"
SOURCE_NONE = "none"

TRANSACTION_SOURCE_SYSTEM = "INTEGRATION"
LEDGER_SOURCE_SYSTEM = "LEDGER"

REVENUE_KEYWORDS = ("sales", "income", "revenue", "turnover")
EXPENSE_KEYWORDS = ("expense", "purchase", "cost", "salary", "wages", "rent")

CONCENTRATION_TOP_N = 5
CONCENTRATION_THRESHOLD = Decimal("0.6")
HISTORY_MONTHS = 12

TREND_UP = "UP"
TREND_DOWN = "DOWN"
TREND_STABLE = "STABLE"

_ZERO = Decimal("0")
_CENT = Decimal("0.01")


def _normalize_amount(value: Decimal | float | int | str | None) -> Decimal:
    return Decimal(str(value or 0))


def _quantize(value: Decimal) -> Decimal:
    return value.quantize(_CENT)


def _matches(text: str | None, keywords: Sequence[str]) -> bool:
    normalized = normalize_name(text)
    return any(keyword in normalized for keyword in keywords)


@dataclass(frozen=True)
class AmountLine:
    name: str
    amount: Decimal


@dataclass(frozen=True)
class CounterpartyStats:
    name: str
    closing_balance: Decimal
    percentage_of_total: Decimal
    mom_change: Decimal
    avg_3m: Decimal | None
    avg_6m: Decimal | None
    avg_12m: Decimal | None
    trend_flag: str
    concentration_flag: bool


@dataclass
class MonthSnapshot:
    month: str
    data_source: str
    revenue: Decimal
    expenses: Decimal
    cash_and_bank: Decimal
    counts: dict[str, int] = field(default_factory=dict)

    @property
    def net_profit(self) -> Decimal:
        return self.revenue - self.expenses


def _trailing_average(values: Sequence[Decimal], window: int) -> Decimal | None:
    if not values:
        return None
    tail = values[-window:]
    return _quantize(sum(tail, _ZERO) / len(tail))


def compute_counterparty_stats(
    balances: Mapping[str, Decimal],
    history: Mapping[str, Sequence[Decimal]] | None = None,
    previous: Mapping[str, Decimal] | None = None,
) -> list[CounterpartyStats]:
    """Derive shares, MoM movement, trailing averages and concentration flags.

    ``history`` maps a counterparty name to its prior monthly balances, oldest
    first. ``previous`` holds the balances of the immediately preceding month;
    a counterparty absent from it has a MoM change of zero. Results are
    ordered by descending balance, then name.
    """

    history = history or {}
    previous = previous or {}
    ordered = sorted(balances.items(), key=lambda item: (-item[1], item[0]))
    total = sum((amount for _, amount in ordered), _ZERO)

    top = ordered[:CONCENTRATION_TOP_N]
    top_share = (sum((amount for _, amount in top), _ZERO) / total) if total > 0 else _ZERO
    concentrated = {name for name, _ in top} if total > 0 and top_share >= CONCENTRATION_THRESHOLD else set()

    stats = []
    for name, amount in ordered:
        prior = list(history.get(name, ()))
        series = (prior + [amount])[-HISTORY_MONTHS:]
        mom_change = amount - previous[name] if name in previous else _ZERO
        if mom_change > 0:
            trend = TREND_UP
        elif mom_change < 0:
            trend = TREND_DOWN
        else:
            trend = TREND_STABLE
        percentage = (amount / total * 100).quantize(Decimal("0.0001")) if total > 0 else _ZERO
        stats.append(
            CounterpartyStats(
                name=name,
                closing_balance=amount,
                percentage_of_total=percentage,
                mom_change=mom_change,
                avg_3m=_trailing_average(series, 3),
                avg_6m=_trailing_average(series, 6),
                avg_12m=_trailing_average(series, 12),
                trend_flag=trend,
                concentration_flag=name in concentrated,
            )
        )
    return stats


class FinancialSnapshotService:
    """Rebuild the monthly summary and breakdowns of one company month at a time."""

    def __init__(self, term_resolver: TermMappingResolver | None = None) -> None:
        self.term_resolver = term_resolver or TermMappingResolver()

    @staticmethod
    def ensure_accounting_month(
        db: Session,
        company_id: str,
        month_key: str,
        *,
        is_closed: bool,
        source_last_synced_at: datetime | None = None,
    ) -> models.AccountingMonth:
        record = (
            db.query(models.AccountingMonth)
            .filter(
                models.AccountingMonth.company_id == company_id,
                models.AccountingMonth.month == month_key,
            )
            .first()
        )
        if record is None:
            record = models.AccountingMonth(company_id=company_id, month=month_key)
        if record.is_closed != is_closed:
            record.is_closed = is_closed
        if source_last_synced_at is not None:
            record.source_last_synced_at = source_last_synced_at
        db.add(record)
        return record

    @staticmethod
    def _transaction_lines(
        db: Session, company_id: str, month_key: str
    ) -> tuple[list[AmountLine], list[AmountLine]] | None:
        start, end = month_bounds(month_key)
        rows = (
            db.query(
                models.FinancialTransaction.type,
                models.FinancialTransaction.category,
                func.sum(models.FinancialTransaction.amount),
            )
            .filter(
                models.FinancialTransaction.company_id == company_id,
                models.FinancialTransaction.transaction_date >= start,
                models.FinancialTransaction.transaction_date < end,
            )
            .group_by(models.FinancialTransaction.type, models.FinancialTransaction.category)
            .all()
        )
        if not rows:
            return None

        revenue: dict[str, Decimal] = {}
        expenses: dict[str, Decimal] = {}
        for kind, category, total in rows:
            if kind == models.TransactionType.REVENUE:
                bucket, default_name = revenue, "Revenue"
            else:
                bucket, default_name = expenses, "Expense"
            name = category or default_name
            bucket[name] = bucket.get(name, _ZERO) + _normalize_amount(total)
        return (
            [AmountLine(name, amount) for name, amount in sorted(revenue.items())],
            [AmountLine(name, amount) for name, amount in sorted(expenses.items())],
        )

    @staticmethod
    def _ledger_rows(db: Session, company_id: str, month_key: str) -> list[models.LedgerMonthlyBalance]:
        return (
            db.query(models.LedgerMonthlyBalance)
            .filter(
                models.LedgerMonthlyBalance.company_id == company_id,
                models.LedgerMonthlyBalance.month_key == month_key,
            )
            .order_by(models.LedgerMonthlyBalance.ledger_name)
            .all()
        )

    @staticmethod
    def _ledger_lines(
        ledger_rows: Iterable[models.LedgerMonthlyBalance],
    ) -> tuple[list[AmountLine], list[AmountLine]]:
        revenue: dict[str, Decimal] = {}
        expenses: dict[str, Decimal] = {}
        for row in ledger_rows:
            if row.cfo_category == REVENUE or (
                row.cfo_category not in (EXPENSES, DEBTORS, CREDITORS, CASH_BANK, INVENTORY)
                and _matches(row.parent_group, REVENUE_KEYWORDS)
            ):
                bucket = revenue
            elif row.cfo_category == EXPENSES or (
                row.cfo_category not in (REVENUE, DEBTORS, CREDITORS, CASH_BANK, INVENTORY)
                and _matches(row.parent_group, EXPENSE_KEYWORDS)
            ):
                bucket = expenses
            else:
                continue
            bucket[row.ledger_name] = bucket.get(row.ledger_name, _ZERO) + abs(_normalize_amount(row.balance))
        return (
            [AmountLine(name, amount) for name, amount in sorted(revenue.items())],
            [AmountLine(name, amount) for name, amount in sorted(expenses.items())],
        )

    @staticmethod
    def _cash_and_bank(
        db: Session, company_id: str, month_key: str, ledger_rows: Sequence[models.LedgerMonthlyBalance]
    ) -> Decimal:
        start, end = month_bounds(month_key)
        latest = (
            db.query(models.CashBalance)
            .filter(
                models.CashBalance.company_id == company_id,
                models.CashBalance.balance_date >= start,
                models.CashBalance.balance_date < end,
            )
            .order_by(models.CashBalance.balance_date.desc(), models.CashBalance.created_at.desc())
            .first()
        )
        if latest is not None:
            return _normalize_amount(latest.amount)
        ledger_cash = [row for row in ledger_rows if row.cfo_category == CASH_BANK]
        return sum((_normalize_amount(row.balance) for row in ledger_cash), _ZERO)

    @staticmethod
    def _counterparty_balances(
        rows: Iterable[Mapping[str, Any]] | None,
        ledger_rows: Sequence[models.LedgerMonthlyBalance],
        category: str,
    ) -> dict[str, Decimal]:
        balances: dict[str, Decimal] = {}
        if rows is not None:
            for item in rows:
                name = item.get("name") or item.get(f"{category[:-1]}_name") or item.get("ledgerName")
                if not name:
                    continue
                amount = item.get("closing_balance", item.get("closingBalance", item.get("balance")))
                balances[str(name)] = balances.get(str(name), _ZERO) + _normalize_amount(amount)
            return balances
        for row in ledger_rows:
            if row.cfo_category == category:
                balances[row.ledger_name] = balances.get(row.ledger_name, _ZERO) + abs(
                    _normalize_amount(row.balance)
                )
        return balances

    @staticmethod
    def _history(
        db: Session, model, name_column, company_id: str, month_key: str, names: Iterable[str]
    ) -> tuple[dict[str, list[Decimal]], dict[str, Decimal]]:
        names = list(names)
        if not names:
            return {}, {}
        previous_month = month_key_offset(month_key, -1)
        months = list_month_keys_between(
            month_key_offset(month_key, -(HISTORY_MONTHS - 1)), previous_month
        )
        rows = (
            db.query(model.month, name_column, model.closing_balance)
            .filter(
                model.company_id == company_id,
                model.month.in_(months),
                name_column.in_(names),
            )
            .order_by(model.month.asc())
            .all()
        )
        history: dict[str, list[Decimal]] = {}
        previous: dict[str, Decimal] = {}
        for month, name, balance in rows:
            amount = _normalize_amount(balance)
            history.setdefault(name, []).append(amount)
            if month == previous_month:
                previous[name] = amount
        return history, previous

    def _write_amount_lines(
        self,
        db: Session,
        company_id: str,
        month_key: str,
        lines: Sequence[AmountLine],
        *,
        kind: str,
        source_system: str,
    ) -> None:
        normalized_type = "revenue" if kind == REVENUE else "expense"
        for line in lines:
            mapping = self.term_resolver.resolve(db, source_system, line.name, normalized_type)
            if kind == REVENUE:
                row = models.MonthlyRevenueBreakdown(
                    revenue_name=line.name, normalized_revenue_category=mapping.normalized_term
                )
            else:
                row = models.MonthlyExpenseBreakdown(
                    expense_name=line.name, normalized_expense_category=mapping.normalized_term
                )
            row.company_id = company_id
            row.month = month_key
            row.amount = line.amount
            row.canonical_type = mapping.normalized_type
            row.canonical_subtype = mapping.canonical_subtype
            db.add(row)

    def _write_counterparties(
        self,
        db: Session,
        company_id: str,
        month_key: str,
        balances: Mapping[str, Decimal],
        *,
        category: str,
        source_system: str,
    ) -> int:
        if category == DEBTORS:
            model, name_column, normalized_type = models.MonthlyDebtor, models.MonthlyDebtor.debtor_name, "debtor"
        else:
            model, name_column, normalized_type = (
                models.MonthlyCreditor,
                models.MonthlyCreditor.creditor_name,
                "creditor",
            )
        history, previous = self._history(db, model, name_column, company_id, month_key, balances.keys())
        stats = compute_counterparty_stats(balances, history, previous)
        for item in stats:
            mapping = self.term_resolver.resolve(db, source_system, item.name, normalized_type)
            row = model(
                company_id=company_id,
                month=month_key,
                closing_balance=item.closing_balance,
                percentage_of_total=item.percentage_of_total,
                mom_change=item.mom_change,
                avg_3m=item.avg_3m,
                avg_6m=item.avg_6m,
                avg_12m=item.avg_12m,
                trend_flag=item.trend_flag,
                concentration_flag=item.concentration_flag,
                canonical_type=mapping.normalized_type,
                canonical_subtype=mapping.canonical_subtype,
            )
            setattr(row, name_column.key, item.name)
            db.add(row)
        return len(stats)

    @staticmethod
    def _upsert_summary(
        db: Session, company_id: str, snapshot: MonthSnapshot, inventory_total: Decimal
    ) -> models.MonthlyTrialBalanceSummary:
        summary = (
            db.query(models.MonthlyTrialBalanceSummary)
            .filter(
                models.MonthlyTrialBalanceSummary.company_id == company_id,
                models.MonthlyTrialBalanceSummary.month == snapshot.month,
            )
            .first()
        )
        if summary is None:
            summary = models.MonthlyTrialBalanceSummary(company_id=company_id, month=snapshot.month)
        summary.cash_and_bank_balance = snapshot.cash_and_bank
        summary.total_revenue = snapshot.revenue
        summary.total_expenses = snapshot.expenses
        summary.net_profit = snapshot.net_profit
        # Net cash flow is approximated by net profit until cash flow statements are ingested.
        summary.net_cashflow = snapshot.net_profit
        summary.inventory_total = inventory_total
        summary.data_source = snapshot.data_source
        db.add(summary)
        return summary

    @staticmethod
    def clear_breakdowns(db: Session, company_id: str, month_key: str) -> None:
        for model in (
            models.MonthlyRevenueBreakdown,
            models.MonthlyExpenseBreakdown,
            models.MonthlyDebtor,
            models.MonthlyCreditor,
        ):
            db.query(model).filter(model.company_id == company_id, model.month == month_key).delete(
                synchronize_session=False
            )

    def build_month(
        self,
        db: Session,
        company_id: str,
        month_key: str,
        *,
        debtor_rows: Iterable[Mapping[str, Any]] | None = None,
        creditor_rows: Iterable[Mapping[str, Any]] | None = None,
    ) -> MonthSnapshot:
        """Rebuild the summary and all breakdown rows of ``month_key``.

        Revenue and expenses come from transactions when the month has any,
        otherwise from ledger balances whose category or parent group looks
        like income or expenditure.
        """

        ledger_rows = self._ledger_rows(db, company_id, month_key)
        transaction_lines = self._transaction_lines(db, company_id, month_key)
        if transaction_lines is not None:
            revenue_lines, expense_lines = transaction_lines
            data_source, source_system = SOURCE_TRANSACTIONS, TRANSACTION_SOURCE_SYSTEM
        else:
            revenue_lines, expense_lines = self._ledger_lines(ledger_rows)
            if revenue_lines or expense_lines:
                data_source = SOURCE_LEDGER
            else:
                data_source = SOURCE_NONE
            source_system = LEDGER_SOURCE_SYSTEM
        LOGGER.info("Snapshot %s/%s built from %s", company_id, month_key, data_source)

        snapshot = MonthSnapshot(
            month=month_key,
            data_source=data_source,
            revenue=sum((line.amount for line in revenue_lines), _ZERO),
            expenses=sum((line.amount for line in expense_lines), _ZERO),
            cash_and_bank=self._cash_and_bank(db, company_id, month_key, ledger_rows),
        )
        inventory_total = sum(
            (_normalize_amount(row.balance) for row in ledger_rows if row.cfo_category == INVENTORY), _ZERO
        )
        self._upsert_summary(db, company_id, snapshot, inventory_total)

        self.clear_breakdowns(db, company_id, month_key)
        self._write_amount_lines(
            db, company_id, month_key, revenue_lines, kind=REVENUE, source_system=source_system
        )
        self._write_amount_lines(
            db, company_id, month_key, expense_lines, kind=EXPENSES, source_system=source_system
        )
        debtors = self._counterparty_balances(debtor_rows, ledger_rows, DEBTORS)
        creditors = self._counterparty_balances(creditor_rows, ledger_rows, CREDITORS)
        snapshot.counts = {
            "revenue": len(revenue_lines),
            "expenses": len(expense_lines),
            "debtors": self._write_counterparties(
                db, company_id, month_key, debtors, category=DEBTORS, source_system=source_system
            ),
            "creditors": self._write_counterparties(
                db, company_id, month_key, creditors, category=CREDITORS, source_system=source_system
            ),
        }
        db.flush()
        return snapshot
