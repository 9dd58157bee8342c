"""Latest-state alert set for each company."""

from __future__ import annotations

import uuid

from sqlalchemy import JSON, Column, DateTime, String, Text
from sqlalchemy.dialects.sqlite import JSON as SQLiteJSON

from ..database import Base
from ..db_types import GUID


class CFOAlert(Base):
    """A deterministic alert raised by the most recent recomputation."""

    __tablename__ = "cfo_alerts"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    company_id = Column(String(36), nullable=False, index=True)
    rule_key = Column(String(64), nullable=False)
    severity = Column(String(16), nullable=False)
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    link = Column(String(255), nullable=True)
    month = Column(String(7), nullable=True)
    details = Column(JSON().with_variant(SQLiteJSON(), "sqlite"), nullable=True)
    generated_at = Column(DateTime(timezone=True), nullable=False, index=True)
