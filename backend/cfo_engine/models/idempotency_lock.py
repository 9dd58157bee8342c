"""Lock records guarding repeated recomputation of the same scope."""

from __future__ import annotations

import enum
import uuid

from sqlalchemy import (
    Column,
    DateTime,
    Enum as SAEnum,
    String,
    Text,
    UniqueConstraint,
    func,
)

from ..database import Base
from ..db_types import GUID


class LockStatus(str, enum.Enum):
    """Lifecycle of an idempotency lock."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


LOCK_STATUS_ENUM = SAEnum(
    LockStatus,
    name="job_idempotency_lock_status_enum",
    values_callable=lambda enum_cls: [member.value for member in enum_cls],
    native_enum=False,
    validate_strings=True,
)


class JobIdempotencyLock(Base):
    """Tracks the state of one (company, job, scope) unit of work."""

    __tablename__ = "job_idempotency_locks"
    __table_args__ = (
        UniqueConstraint(
            "company_id", "job_key", "scope_key", name="uq_job_idempotency_locks_scope"
        ),
    )

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    company_id = Column(String(36), nullable=False, index=True)
    job_key = Column(String(64), nullable=False)
    scope_key = Column(String(255), nullable=False)
    payload_hash = Column(String(64), nullable=True)
    status = Column(LOCK_STATUS_ENUM, nullable=False, default=LockStatus.RUNNING)
    locked_at = Column(DateTime(timezone=True), nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    last_job_id = Column(String(128), nullable=True)
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )
