"""Derivation of the as-of-now cash, debtor, creditor and loan tables."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Iterable, Mapping

from sqlalchemy import func
from sqlalchemy.orm import Session

from .. import models
from ..month_keys import month_end
from .ledger_classification import CASH_BANK, CREDITORS, DEBTORS, LOANS, parse_date, to_decimal

LOGGER = logging.getLogger(__name__)

SOURCE_PAYLOAD = "payload"
SOURCE_LEDGER = "ledger_balances"

KIND_MODELS = {
    "cash": models.CurrentCashBalance,
    "debtors": models.CurrentDebtor,
    "creditors": models.CurrentCreditor,
    "loans": models.CurrentLoan,
}

PAYLOAD_KEYS = {
    "cash": ("cash", "cashBalances", "cash_balances", "bank"),
    "debtors": ("debtors", "debtorBalances", "receivables"),
    "creditors": ("creditors", "creditorBalances", "payables"),
    "loans": ("loans", "loanBalances"),
}

CATEGORY_KIND = {
    CASH_BANK: "cash",
    DEBTORS: "debtors",
    CREDITORS: "creditors",
    LOANS: "loans",
}

# Only cash keeps the source sign so overdrafts remain negative.
SIGNED_KINDS = frozenset({"cash"})


def normalize_balance(kind: str, amount: Any) -> Decimal:
    value = to_decimal(amount)
    if kind in SIGNED_KINDS:
        return value
    return abs(value)


@dataclass
class CurrentBalanceResult:
    source: str | None
    month_key: str | None = None
    as_of_date: date | None = None
    counts: dict[str, int] = field(default_factory=dict)

    @property
    def replaced(self) -> bool:
        return self.source is not None


@dataclass(frozen=True)
class _BalanceLine:
    name: str
    balance: Decimal


def _payload_lines(items: Iterable[Mapping[str, Any]] | None) -> list[_BalanceLine]:
    lines = []
    for item in items or []:
        if not isinstance(item, Mapping):
            continue
        name = item.get("name") or item.get("ledgerName") or item.get("ledger_name")
        if not name:
            continue
        amount = item.get("balance", item.get("closingBalance", item.get("amount")))
        lines.append(_BalanceLine(name=str(name), balance=to_decimal(amount)))
    return lines


class CurrentBalanceService:
    """Replaces the current balance tables from a payload or the ledger history."""

    @staticmethod
    def _replace(
        db: Session,
        company_id: str,
        lines_by_kind: Mapping[str, list[_BalanceLine]],
        *,
        source: str,
        as_of_date: date | None,
    ) -> dict[str, int]:
        counts: dict[str, int] = {}
        for kind, model in KIND_MODELS.items():
            db.query(model).filter(model.company_id == company_id).delete(synchronize_session=False)
            lines = lines_by_kind.get(kind, [])
            for line in lines:
                db.add(
                    model(
                        company_id=company_id,
                        name=line.name,
                        balance=line.balance,
                        source=source,
                        as_of_date=as_of_date,
                    )
                )
            counts[kind] = len(lines)
        db.flush()
        return counts

    @classmethod
    def apply_payload(
        cls, db: Session, company_id: str, payload: Mapping[str, Any]
    ) -> CurrentBalanceResult:
        lines_by_kind: dict[str, list[_BalanceLine]] = {}
        for kind, keys in PAYLOAD_KEYS.items():
            items = next((payload.get(key) for key in keys if payload.get(key) is not None), None)
            lines_by_kind[kind] = _payload_lines(items)
        as_of = parse_date(payload.get("asOfDate") or payload.get("as_of_date"))
        counts = cls._replace(db, company_id, lines_by_kind, source=SOURCE_PAYLOAD, as_of_date=as_of)
        return CurrentBalanceResult(source=SOURCE_PAYLOAD, as_of_date=as_of, counts=counts)

    @staticmethod
    def latest_ledger_month(db: Session, company_id: str) -> str | None:
        return (
            db.query(func.max(models.LedgerMonthlyBalance.month_key))
            .filter(models.LedgerMonthlyBalance.company_id == company_id)
            .scalar()
        )

    @classmethod
    def derive_from_ledgers(cls, db: Session, company_id: str) -> CurrentBalanceResult:
        month_key = cls.latest_ledger_month(db, company_id)
        if month_key is None:
            return CurrentBalanceResult(source=None)

        rows = (
            db.query(models.LedgerMonthlyBalance)
            .filter(
                models.LedgerMonthlyBalance.company_id == company_id,
                models.LedgerMonthlyBalance.month_key == month_key,
                models.LedgerMonthlyBalance.cfo_category.in_(tuple(CATEGORY_KIND)),
            )
            .order_by(models.LedgerMonthlyBalance.ledger_name)
            .all()
        )
        totals: dict[str, dict[str, Decimal]] = {kind: {} for kind in KIND_MODELS}
        as_of = None
        for row in rows:
            kind = CATEGORY_KIND[row.cfo_category]
            bucket = totals[kind]
            bucket[row.ledger_name] = bucket.get(row.ledger_name, Decimal("0")) + to_decimal(row.balance)
            if row.as_of_date and (as_of is None or row.as_of_date > as_of):
                as_of = row.as_of_date

        lines_by_kind = {
            kind: [
                _BalanceLine(name=name, balance=normalize_balance(kind, amount))
                for name, amount in sorted(bucket.items())
            ]
            for kind, bucket in totals.items()
        }
        as_of = as_of or month_end(month_key)
        counts = cls._replace(db, company_id, lines_by_kind, source=SOURCE_LEDGER, as_of_date=as_of)
        return CurrentBalanceResult(
            source=SOURCE_LEDGER, month_key=month_key, as_of_date=as_of, counts=counts
        )

    @classmethod
    def recompute(
        cls, db: Session, company_id: str, payload: Mapping[str, Any] | None = None
    ) -> CurrentBalanceResult:
        """Rebuild every current balance table for ``company_id``.

        An explicit payload is stored as given. Without one the most recent
        ledger month is summarized per ledger name with signs normalized by
        kind. When neither source has data the existing rows are kept.
        """

        if payload:
            result = cls.apply_payload(db, company_id, payload)
        else:
            result = cls.derive_from_ledgers(db, company_id)
        if result.replaced:
            LOGGER.info(
                "Current balances for %s replaced from %s (%s)", company_id, result.source, result.counts
            )
        else:
            LOGGER.info("No current balance source for %s; keeping existing rows", company_id)
        return result
