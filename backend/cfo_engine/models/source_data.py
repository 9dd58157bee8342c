"""Raw accounting facts ingested from the accounting source connector."""

from __future__ import annotations

import enum
import uuid

from sqlalchemy import (
    Column,
    Date,
    DateTime,
    Enum as SAEnum,
    Index,
    Numeric,
    String,
    func,
)

from ..database import Base
from ..db_types import GUID


class TransactionType(str, enum.Enum):
    """Kinds of financial transactions aggregated into monthly summaries."""

    REVENUE = "REVENUE"
    EXPENSE = "EXPENSE"


TRANSACTION_TYPE_ENUM = SAEnum(
    TransactionType,
    name="financial_transaction_type_enum",
    values_callable=lambda enum_cls: [member.value for member in enum_cls],
    native_enum=False,
    validate_strings=True,
)


class FinancialTransaction(Base):
    """A single revenue or expense movement reported by the accounting source."""

    __tablename__ = "financial_transactions"
    __table_args__ = (
        Index("ix_financial_transactions_company_date", "company_id", "transaction_date"),
    )

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    company_id = Column(String(36), nullable=False)
    transaction_date = Column(Date, nullable=False)
    type = Column(TRANSACTION_TYPE_ENUM, nullable=False)
    category = Column(String(255), nullable=True)
    description = Column(String(255), nullable=True)
    amount = Column(Numeric(18, 2), nullable=False, default=0)
    source = Column(String(32), nullable=False, default="INTEGRATION")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class CashBalance(Base):
    """Point-in-time cash and bank balance captured for a company."""

    __tablename__ = "cash_balances"
    __table_args__ = (
        Index("ix_cash_balances_company_date", "company_id", "balance_date"),
    )

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    company_id = Column(String(36), nullable=False)
    balance_date = Column(Date, nullable=False)
    amount = Column(Numeric(18, 2), nullable=False, default=0)
    bank_name = Column(String(255), nullable=True)
    source = Column(String(32), nullable=False, default="INTEGRATION")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
