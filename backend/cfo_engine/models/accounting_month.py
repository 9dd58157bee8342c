"""Per-company registry of the accounting months that have been processed."""

from __future__ import annotations

import uuid

from sqlalchemy import Boolean, Column, DateTime, String, UniqueConstraint, func

from ..database import Base
from ..db_types import GUID


class AccountingMonth(Base):
    """Tracks whether a month is closed and when its source data last synced."""

    __tablename__ = "accounting_months"
    __table_args__ = (
        UniqueConstraint("company_id", "month", name="uq_accounting_months_company_month"),
    )

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    company_id = Column(String(36), nullable=False, index=True)
    month = Column(String(7), nullable=False)
    is_closed = Column(Boolean, nullable=False, default=False)
    source_last_synced_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )
