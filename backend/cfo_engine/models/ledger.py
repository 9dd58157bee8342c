"""Ledger level balances and their CFO category assignments."""

from __future__ import annotations

import uuid

from sqlalchemy import Column, Date, DateTime, Numeric, String, Text, UniqueConstraint, func

from ..database import Base
from ..db_types import GUID


class LedgerMonthlyBalance(Base):
    """Raw balance of one chart-of-accounts ledger at the end of a month."""

    __tablename__ = "ledger_monthly_balances"
    __table_args__ = (
        UniqueConstraint(
            "company_id",
            "month_key",
            "ledger_guid",
            name="uq_ledger_monthly_balances_company_month_ledger",
        ),
    )

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    company_id = Column(String(36), nullable=False, index=True)
    month_key = Column(String(7), nullable=False, index=True)
    ledger_guid = Column(Text, nullable=False)
    ledger_name = Column(Text, nullable=False)
    parent_group = Column(Text, nullable=True)
    cfo_category = Column(String(32), nullable=False)
    balance = Column(Numeric(18, 2), nullable=False, default=0)
    as_of_date = Column(Date, nullable=True)
    updated_at = Column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )


class CFOLedgerClassification(Base):
    """Latest known CFO category for each ledger of a company."""

    __tablename__ = "cfo_ledger_classifications"
    __table_args__ = (
        UniqueConstraint("company_id", "ledger_guid", name="uq_cfo_ledger_classifications_ledger"),
    )

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    company_id = Column(String(36), nullable=False, index=True)
    ledger_guid = Column(Text, nullable=False)
    ledger_name = Column(Text, nullable=False)
    parent_group = Column(Text, nullable=True)
    cfo_category = Column(String(32), nullable=True)
    last_seen_at = Column(DateTime(timezone=True), nullable=False)


class AccountingTermMapping(Base):
    """Maps a raw account term from a source system to its canonical type."""

    __tablename__ = "accounting_term_mappings"
    __table_args__ = (
        UniqueConstraint("source_system", "source_term", name="uq_accounting_term_mappings_term"),
    )

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    source_system = Column(String(64), nullable=False)
    source_term = Column(String(255), nullable=False)
    normalized_term = Column(String(255), nullable=False)
    normalized_type = Column(String(64), nullable=False)
    canonical_subtype = Column(String(64), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
