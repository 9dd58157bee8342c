"""As-of-now balances replaced wholesale on every recomputation."""

from __future__ import annotations

import uuid

from sqlalchemy import Column, Date, DateTime, Numeric, String, func

from ..database import Base
from ..db_types import GUID


class _CurrentBalanceColumns:
    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    company_id = Column(String(36), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    balance = Column(Numeric(18, 2), nullable=False, default=0)
    source = Column(String(32), nullable=False)
    as_of_date = Column(Date, nullable=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class CurrentCashBalance(_CurrentBalanceColumns, Base):
    """Current balance of one cash or bank ledger. Overdrafts stay negative."""

    __tablename__ = "current_cash_balances"


class CurrentDebtor(_CurrentBalanceColumns, Base):
    """Amount currently receivable from one debtor."""

    __tablename__ = "current_debtors"


class CurrentCreditor(_CurrentBalanceColumns, Base):
    """Amount currently payable to one creditor."""

    __tablename__ = "current_creditors"


class CurrentLoan(_CurrentBalanceColumns, Base):
    """Outstanding principal of one loan ledger."""

    __tablename__ = "current_loans"


class CurrentLiquidityMetric(Base):
    """Liquidity figures derived from the monthly summaries of a company."""

    __tablename__ = "current_liquidity_metrics"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    company_id = Column(String(36), nullable=False, unique=True)
    avg_net_cash_outflow_3m = Column(Numeric(18, 2), nullable=True)
    cash_runway_months = Column(Numeric(18, 2), nullable=True)
    balance_source = Column(String(32), nullable=True)
    updated_at = Column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )
