"""Chart-of-accounts classification into CFO categories."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, Mapping

from sqlalchemy.orm import Session

from .. import models
from ..month_keys import normalize_month

LOGGER = logging.getLogger(__name__)

MAX_GROUP_DEPTH = 25

REVENUE = "revenue"
EXPENSES = "expenses"
DEBTORS = "debtors"
CREDITORS = "creditors"
CASH_BANK = "cash_bank"
INVENTORY = "inventory"
LOANS = "loans"

CFO_CATEGORIES = (REVENUE, EXPENSES, DEBTORS, CREDITORS, CASH_BANK, INVENTORY, LOANS)

GROUP_MAP: dict[str, tuple[str, ...]] = {
    REVENUE: ("Sales Accounts", "Direct Incomes", "Indirect Incomes", "Income", "Sales"),
    EXPENSES: ("Direct Expenses", "Indirect Expenses", "Purchase Accounts", "Expenses"),
    DEBTORS: ("Sundry Debtors", "Accounts Receivable"),
    CREDITORS: ("Sundry Creditors", "Accounts Payable"),
    CASH_BANK: ("Cash-in-Hand", "Bank Accounts", "Bank OD A/c", "Bank OCC A/c"),
    INVENTORY: ("Stock-in-Hand", "Inventory", "Closing Stock"),
    LOANS: ("Loans (Liability)", "Secured Loans", "Unsecured Loans"),
}

CASH_BANK_EXCLUDE = ("Deposits", "Investments", "Loans & Advances")


def normalize_name(value: Any) -> str:
    return " ".join(str(value or "").split()).lower()


_CATEGORY_BY_GROUP = {
    normalize_name(group): category for category, groups in GROUP_MAP.items() for group in groups
}
_CASH_EXCLUDE = {normalize_name(name) for name in CASH_BANK_EXCLUDE}


def _first(mapping: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = mapping.get(key)
        if value not in (None, ""):
            return value
    return None


def ledger_name(ledger: Mapping[str, Any]) -> str | None:
    return _first(ledger, "name", "ledgerName", "ledger_name")


def ledger_parent(ledger: Mapping[str, Any]) -> str | None:
    return _first(ledger, "parent", "parentGroup", "parent_group", "groupName", "group", "group_name")


def ledger_guid(ledger: Mapping[str, Any]) -> str | None:
    value = _first(ledger, "guid", "ledgerGuid", "ledger_guid", "id")
    return str(value) if value is not None else None


@dataclass(frozen=True)
class GroupIndex:
    """Lookup of normalized group names to their normalized parent."""

    parent_by_name: dict[str, str | None]

    @classmethod
    def build(cls, groups: Iterable[Mapping[str, Any]] | None) -> "GroupIndex":
        parents: dict[str, str | None] = {}
        for group in groups or []:
            name = normalize_name(_first(group, "name", "groupName", "group_name"))
            parent = normalize_name(_first(group, "parent", "parentName", "parentGroup", "parent_group")) or None
            if name:
                parents[name] = parent
            reserved = normalize_name(group.get("reservedName"))
            if reserved:
                parents.setdefault(reserved, parent)
        return cls(parent_by_name=parents)

    def chain(self, group_name: str | None) -> list[str]:
        """Return ``group_name`` followed by its ancestors, nearest first."""

        chain: list[str] = []
        cursor = normalize_name(group_name) or None
        while cursor and len(chain) < MAX_GROUP_DEPTH:
            chain.append(cursor)
            cursor = self.parent_by_name.get(cursor)
        return chain


def is_ledger_node(node: Mapping[str, Any] | None) -> bool:
    if not node:
        return False
    metadata = node.get("metadata") or {}
    node_type = str(node.get("type") or metadata.get("type") or "").lower()
    if node_type == "group":
        return False
    return bool(node.get("isLedger") is True or node_type == "ledger" or ledger_name(node))


def classify_ledger(ledger: Mapping[str, Any], group_index: GroupIndex) -> str | None:
    """Return the CFO category of ``ledger`` or ``None`` when it is not tracked."""

    if not is_ledger_node(ledger):
        return None
    chain = group_index.chain(ledger_parent(ledger))
    for name in chain:
        category = _CATEGORY_BY_GROUP.get(name)
        if category is None:
            continue
        if category == CASH_BANK and any(item in _CASH_EXCLUDE for item in chain):
            return None
        return category
    return None


def to_decimal(value: Any) -> Decimal:
    try:
        return Decimal(str(value if value not in (None, "") else 0))
    except (InvalidOperation, ValueError):
        return Decimal("0")


def parse_date(value: Any) -> date | None:
    if not value:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00")).date()
    except ValueError:
        return None


@dataclass(frozen=True)
class LedgerClassification:
    ledger_guid: str
    ledger_name: str
    parent_group: str | None
    category: str
    balance: Decimal


@dataclass
class ClassificationResult:
    totals: dict[str, Decimal] = field(default_factory=lambda: {c: Decimal("0") for c in CFO_CATEGORIES})
    counts: dict[str, int] = field(default_factory=lambda: {**{c: 0 for c in CFO_CATEGORIES}, "ignored": 0})
    classifications: list[LedgerClassification] = field(default_factory=list)

    def by_guid(self) -> dict[str, LedgerClassification]:
        return {item.ledger_guid: item for item in self.classifications}


def map_ledgers_to_cfo_totals(
    ledgers: Iterable[Mapping[str, Any]] | None, groups: Iterable[Mapping[str, Any]] | None
) -> ClassificationResult:
    group_index = GroupIndex.build(groups)
    result = ClassificationResult()
    for ledger in ledgers or []:
        category = classify_ledger(ledger, group_index)
        guid = ledger_guid(ledger) or ledger_name(ledger)
        if category is None or guid is None:
            result.counts["ignored"] += 1
            continue
        balance = to_decimal(_first(ledger, "closing_balance", "closingBalance", "balance", "amount"))
        result.totals[category] += balance
        result.counts[category] += 1
        result.classifications.append(
            LedgerClassification(
                ledger_guid=guid,
                ledger_name=ledger_name(ledger) or guid,
                parent_group=ledger_parent(ledger),
                category=category,
                balance=balance,
            )
        )
    return result


@dataclass(frozen=True)
class ChartOfAccountsValidation:
    ok: bool
    error: str | None = None
    groups: list[Mapping[str, Any]] = field(default_factory=list)
    ledgers: list[Mapping[str, Any]] = field(default_factory=list)
    balances: Mapping[str, Any] = field(default_factory=dict)
    as_of_date: date | None = None


def validate_chart_of_accounts_payload(payload: Mapping[str, Any] | None) -> ChartOfAccountsValidation:
    """Check the connector payload shape before any ledger rows are written."""

    if not payload or not isinstance(payload, Mapping):
        return ChartOfAccountsValidation(ok=False, error="chartOfAccounts missing")
    chart = payload.get("chartOfAccounts", payload)
    if not isinstance(chart, Mapping):
        return ChartOfAccountsValidation(ok=False, error="chartOfAccounts missing")

    groups = chart.get("groups")
    ledgers = chart.get("ledgers")
    if not isinstance(groups, list):
        return ChartOfAccountsValidation(ok=False, error="groups must be a list")
    if not isinstance(ledgers, list) or not ledgers:
        return ChartOfAccountsValidation(ok=False, error="ledgers must be a non-empty list")
    for ledger in ledgers:
        if not isinstance(ledger, Mapping):
            return ChartOfAccountsValidation(ok=False, error="ledger must be an object")
        if not ledger_name(ledger) or not ledger_parent(ledger) or not ledger_guid(ledger):
            return ChartOfAccountsValidation(ok=False, error="ledger must include name, parent, guid")

    balances = chart.get("balances") or {}
    as_of_date = parse_date(
        _first(payload, "asOfDate", "as_of_date") or _first(chart, "asOfDate", "as_of_date")
    )
    return ChartOfAccountsValidation(
        ok=True,
        groups=groups,
        ledgers=ledgers,
        balances=balances if isinstance(balances, Mapping) else {},
        as_of_date=as_of_date,
    )


@dataclass
class LedgerWriteResult:
    months: list[str] = field(default_factory=list)
    rows_written: int = 0
    classified: int = 0
    ignored: int = 0


class LedgerBalanceService:
    """Persist classified ledger balances from a chart-of-accounts payload."""

    @staticmethod
    def _balance_sets(validation: ChartOfAccountsValidation) -> list[Mapping[str, Any]]:
        sets: list[Mapping[str, Any]] = []
        current = validation.balances.get("current")
        if isinstance(current, Mapping):
            sets.append(current)
        for closed in validation.balances.get("closedMonths") or []:
            if isinstance(closed, Mapping):
                sets.append(closed)
        return sets

    @staticmethod
    def upsert_classifications(
        db: Session, company_id: str, classifications: Iterable[LedgerClassification], seen_at: datetime
    ) -> None:
        existing = {
            row.ledger_guid: row
            for row in db.query(models.CFOLedgerClassification)
            .filter(models.CFOLedgerClassification.company_id == company_id)
            .all()
        }
        for item in classifications:
            row = existing.get(item.ledger_guid)
            if row is None:
                row = models.CFOLedgerClassification(company_id=company_id, ledger_guid=item.ledger_guid)
                existing[item.ledger_guid] = row
            row.ledger_name = item.ledger_name
            row.parent_group = item.parent_group
            row.cfo_category = item.category
            row.last_seen_at = seen_at
            db.add(row)

    @classmethod
    def write_from_payload(
        cls, db: Session, company_id: str, validation: ChartOfAccountsValidation
    ) -> LedgerWriteResult:
        """Upsert one ledger balance row per (month, ledger) found in the payload.

        The category stored is the one derived from the group hierarchy and
        overrides any category previously written for the same ledger.
        """

        mapping = map_ledgers_to_cfo_totals(validation.ledgers, validation.groups)
        by_guid = mapping.by_guid()
        result = LedgerWriteResult(classified=len(by_guid), ignored=mapping.counts["ignored"])
        cls.upsert_classifications(
            db, company_id, mapping.classifications, datetime.now(timezone.utc)
        )

        for balance_set in cls._balance_sets(validation):
            month_key = normalize_month(_first(balance_set, "monthKey", "month_key", "month"))
            if month_key is None:
                LOGGER.warning("Skipping ledger balance set without a valid monthKey for %s", company_id)
                continue
            as_of = parse_date(_first(balance_set, "asOfDate", "as_of_date")) or validation.as_of_date
            existing = {
                row.ledger_guid: row
                for row in db.query(models.LedgerMonthlyBalance)
                .filter(
                    models.LedgerMonthlyBalance.company_id == company_id,
                    models.LedgerMonthlyBalance.month_key == month_key,
                )
                .all()
            }
            for item in balance_set.get("items") or []:
                guid = _first(item, "ledgerGuid", "ledger_guid", "guid")
                classification = by_guid.get(str(guid)) if guid is not None else None
                if classification is None:
                    continue
                row = existing.get(classification.ledger_guid)
                if row is None:
                    row = models.LedgerMonthlyBalance(
                        company_id=company_id,
                        month_key=month_key,
                        ledger_guid=classification.ledger_guid,
                    )
                    existing[classification.ledger_guid] = row
                row.ledger_name = classification.ledger_name
                row.parent_group = classification.parent_group
                row.cfo_category = classification.category
                row.balance = to_decimal(_first(item, "balance", "closingBalance", "closing_balance"))
                row.as_of_date = as_of
                db.add(row)
                result.rows_written += 1
            result.months.append(month_key)

        db.flush()
        result.months = sorted(set(result.months))
        return result
