"""Structured events emitted by recomputation runs."""

from __future__ import annotations

import uuid

from sqlalchemy import Column, DateTime, JSON, Numeric, String, func
from sqlalchemy.dialects.sqlite import JSON as SQLiteJSON

from ..database import Base
from ..db_types import GUID


class RecomputeEventRecord(Base):
    """Persisted copy of a recompute event used for run diagnostics."""

    __tablename__ = "recompute_events"

    id = Column("event_id", GUID(), primary_key=True, default=uuid.uuid4)
    company_id = Column(String(36), nullable=True, index=True)
    event_type = Column(String(120), nullable=False, index=True)
    outcome = Column(String(32), nullable=False)
    duration_ms = Column(Numeric(14, 3), nullable=True)
    tags = Column("labels", JSON().with_variant(SQLiteJSON(), "sqlite"), nullable=False, default=dict)
    details = Column("details", JSON().with_variant(SQLiteJSON(), "sqlite"), nullable=True)
    created_at = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
        index=True,
    )
