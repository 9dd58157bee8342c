"""Stored values of the metrics catalog."""

from __future__ import annotations

import uuid

from sqlalchemy import Column, DateTime, Numeric, String, Text, UniqueConstraint, func

from ..database import Base
from ..db_types import GUID


class CFOMetric(Base):
    """One computed metric value for a company, time scope and optional month."""

    __tablename__ = "cfo_metrics"
    __table_args__ = (
        UniqueConstraint(
            "company_id",
            "metric_key",
            "time_scope",
            "month",
            name="uq_cfo_metrics_company_key_scope_month",
        ),
    )

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    company_id = Column(String(36), nullable=False, index=True)
    metric_key = Column(String(128), nullable=False, index=True)
    time_scope = Column(String(32), nullable=False)
    month = Column(String(7), nullable=True)
    metric_value = Column(Numeric(20, 6), nullable=True)
    metric_text = Column(Text, nullable=True)
    change_pct = Column(Numeric(20, 6), nullable=True)
    severity = Column(String(16), nullable=True)
    computed_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )
