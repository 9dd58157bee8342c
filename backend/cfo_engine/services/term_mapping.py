"""Canonical naming of raw account terms used by breakdown rows."""

from __future__ import annotations

import logging
import re
from collections import OrderedDict
from dataclasses import dataclass, replace
from threading import Lock

from sqlalchemy.orm import Session

from .. import models

LOGGER = logging.getLogger(__name__)

DEFAULT_CACHE_SIZE = 2048

_PUNCTUATION = re.compile(r"[^\w\s]+")
_WHITESPACE = re.compile(r"\s+")

# Ordered keyword rules; the first match wins.
SUBTYPE_RULES: dict[str, tuple[tuple[str, tuple[str, ...]], ...]] = {
    "revenue": (
        ("interest_income", ("interest", "dividend")),
        ("service_income", ("service", "consult", "commission", "fee")),
        ("sales", ("sale", "revenue", "turnover")),
        ("other_income", ("income", "discount received", "rent received")),
    ),
    "expense": (
        ("cost_of_goods", ("purchase", "cogs", "cost of goods", "freight inward", "raw material")),
        ("payroll", ("salary", "salaries", "wage", "payroll", "bonus", "staff")),
        ("rent", ("rent", "lease")),
        ("finance_cost", ("interest", "bank charge", "finance")),
        ("tax", ("tax", "gst", "tds", "duty")),
        ("utilities", ("electric", "power", "water", "internet", "telephone")),
        ("marketing", ("advert", "marketing", "promotion")),
        ("depreciation", ("depreciation", "amortisation", "amortization")),
    ),
    "debtor": (("trade_receivable", ("",)),),
    "creditor": (("trade_payable", ("",)),),
}


def normalize_term(value: str | None) -> str:
    cleaned = _PUNCTUATION.sub(" ", (value or "").lower())
    return _WHITESPACE.sub(" ", cleaned).strip()


def infer_subtype(normalized_type: str, term: str) -> str | None:
    cleaned = normalize_term(term)
    for subtype, keywords in SUBTYPE_RULES.get(normalized_type, ()):
        if any(keyword in cleaned for keyword in keywords):
            return subtype
    return None


@dataclass(frozen=True)
class TermMapping:
    source_system: str
    source_term: str
    normalized_term: str
    normalized_type: str
    canonical_subtype: str | None

    @classmethod
    def from_model(cls, row: models.AccountingTermMapping) -> "TermMapping":
        return cls(
            source_system=row.source_system,
            source_term=row.source_term,
            normalized_term=row.normalized_term,
            normalized_type=row.normalized_type,
            canonical_subtype=row.canonical_subtype,
        )

    def as_type(self, normalized_type: str) -> "TermMapping":
        """The same term read as ``normalized_type``.

        A raw term is stored once per source system, so the stored row may
        describe another kind of line (an "Interest" ledger that is income in
        one place and a cost in another).
        """

        if normalized_type == self.normalized_type:
            return self
        return replace(
            self,
            normalized_type=normalized_type,
            canonical_subtype=infer_subtype(normalized_type, self.source_term),
        )


class TermMappingCache:
    """Bounded LRU of resolved term mappings keyed by (source system, raw term).

    Entries are immutable snapshots so they can be shared between sessions.
    """

    def __init__(self, max_size: int = DEFAULT_CACHE_SIZE) -> None:
        self.max_size = max(1, max_size)
        self._entries: OrderedDict[tuple[str, str], TermMapping] = OrderedDict()
        self._lock = Lock()

    def get(self, source_system: str, source_term: str) -> TermMapping | None:
        key = (source_system, source_term)
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None:
                self._entries.move_to_end(key)
            return entry

    def put(self, mapping: TermMapping) -> None:
        key = (mapping.source_system, mapping.source_term)
        with self._lock:
            self._entries[key] = mapping
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_size:
                self._entries.popitem(last=False)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class UnmappedTermLog:
    """Remembers terms without a canonical subtype so each is reported once."""

    def __init__(self) -> None:
        self._seen: set[str] = set()
        self._pending: list[dict[str, str]] = []
        self._lock = Lock()

    def record(self, source_system: str, normalized_type: str, term: str) -> bool:
        cleaned = normalize_term(term)
        if not cleaned:
            return False
        key = f"{source_system}:{normalized_type}:{cleaned}"
        with self._lock:
            if key in self._seen:
                return False
            self._seen.add(key)
            self._pending.append(
                {"source_system": source_system, "normalized_type": normalized_type, "term": term}
            )
        LOGGER.info("Unmapped %s account term %r from %s", normalized_type, term, source_system)
        return True

    def drain(self) -> list[dict[str, str]]:
        """Return the terms recorded since the last call."""

        with self._lock:
            pending, self._pending = self._pending, []
        return pending

    def clear(self) -> None:
        with self._lock:
            self._seen.clear()
            self._pending.clear()


class TermMappingResolver:
    """Find-or-create access to ``AccountingTermMapping`` rows."""

    def __init__(
        self,
        cache: TermMappingCache | None = None,
        unmapped: UnmappedTermLog | None = None,
    ) -> None:
        self.cache = cache if cache is not None else TermMappingCache()
        self.unmapped = unmapped if unmapped is not None else UnmappedTermLog()

    def resolve(
        self, db: Session, source_system: str, source_term: str, normalized_type: str
    ) -> TermMapping:
        cached = self.cache.get(source_system, source_term)
        if cached is not None:
            return cached.as_type(normalized_type)

        row = (
            db.query(models.AccountingTermMapping)
            .filter(
                models.AccountingTermMapping.source_system == source_system,
                models.AccountingTermMapping.source_term == source_term,
            )
            .first()
        )
        if row is None:
            row = self._create(db, source_system, source_term, normalized_type)

        mapping = TermMapping.from_model(row)
        if mapping.canonical_subtype is None:
            self.unmapped.record(source_system, mapping.normalized_type, source_term)
        self.cache.put(mapping)
        return mapping.as_type(normalized_type)

    @staticmethod
    def _create(
        db: Session, source_system: str, source_term: str, normalized_type: str
    ) -> models.AccountingTermMapping:
        row = models.AccountingTermMapping(
            source_system=source_system,
            source_term=source_term,
            normalized_term=normalize_term(source_term) or source_term,
            normalized_type=normalized_type,
            canonical_subtype=infer_subtype(normalized_type, source_term),
        )
        db.add(row)
        db.flush()
        return row
