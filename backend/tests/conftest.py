from __future__ import annotations

import os
import sys
import tempfile
from datetime import date, datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

# Ensure the project root (which exposes the ``backend`` package) is on ``sys.path``
PROJECT_ROOT = Path(__file__).resolve().parents[2]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

# The app lifespan migrates DATABASE_URL; keep it away from the local database file.
os.environ.setdefault(
    "DATABASE_URL", f"sqlite:///{Path(tempfile.mkdtemp()) / 'cfo_engine_tests.db'}"
)
os.environ.setdefault("ENABLE_SCHEDULED_RECOMPUTE", "0")

from backend.cfo_engine import models
from backend.cfo_engine.database import Base, get_db
from backend.cfo_engine.main import app
from backend.cfo_engine.services.scheduler_monitor import SchedulerMonitor

SQLALCHEMY_DATABASE_URL = "sqlite:///:memory:"
engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args={"check_same_thread": False})
TestingSessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)

COMPANY_ID = "c0a80101-0000-4000-8000-000000000001"
FIXED_NOW = datetime(2026, 4, 15, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(scope="session", autouse=True)
def setup_database() -> Generator[None, None, None]:
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db_session() -> Generator[Session, None, None]:
    connection = engine.connect()
    transaction = connection.begin()
    session = TestingSessionLocal(bind=connection)
    try:
        yield session
    finally:
        session.close()
        transaction.rollback()
        connection.close()


@pytest.fixture
def session_factory(tmp_path) -> Generator[sessionmaker, None, None]:
    """File backed sessions for code that opens and commits its own sessions."""

    file_engine = create_engine(
        f"sqlite:///{tmp_path / 'engine.db'}", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(bind=file_engine)
    factory = sessionmaker(bind=file_engine, autocommit=False, autoflush=False)
    try:
        yield factory
    finally:
        file_engine.dispose()


@pytest.fixture(autouse=True)
def _reset_scheduler_monitor() -> Generator[None, None, None]:
    SchedulerMonitor.reset()
    yield
    SchedulerMonitor.reset()


@pytest.fixture
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        try:
            yield db_session
        finally:
            db_session.expire_all()

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.pop(get_db, None)


def add_summary(
    db: Session,
    month: str,
    *,
    revenue: str | int = 0,
    expenses: str | int = 0,
    cash: str | int = 0,
    company_id: str = COMPANY_ID,
) -> models.MonthlyTrialBalanceSummary:
    revenue_value, expense_value = Decimal(str(revenue)), Decimal(str(expenses))
    summary = models.MonthlyTrialBalanceSummary(
        company_id=company_id,
        month=month,
        cash_and_bank_balance=Decimal(str(cash)),
        total_revenue=revenue_value,
        total_expenses=expense_value,
        net_profit=revenue_value - expense_value,
        net_cashflow=revenue_value - expense_value,
        inventory_total=Decimal("0"),
        data_source="transactions",
    )
    db.add(summary)
    return summary


def add_transaction(
    db: Session,
    day: date,
    kind: models.TransactionType,
    amount: str | int,
    *,
    category: str | None = None,
    company_id: str = COMPANY_ID,
) -> models.FinancialTransaction:
    row = models.FinancialTransaction(
        company_id=company_id,
        transaction_date=day,
        type=kind,
        category=category,
        amount=Decimal(str(amount)),
    )
    db.add(row)
    return row


@pytest.fixture
def seed_summaries(db_session: Session) -> list[str]:
    """Six months of summaries with a steady cash burn."""

    months = ["2025-10", "2025-11", "2025-12", "2026-01", "2026-02", "2026-03"]
    for index, month in enumerate(months):
        add_summary(
            db_session,
            month,
            revenue=10000 + index * 500,
            expenses=12000 + index * 500,
            cash=100000 - index * 2000,
        )
    db_session.flush()
    return months


@pytest.fixture
def company_id() -> str:
    return COMPANY_ID


@pytest.fixture
def summary_factory(db_session: Session):
    def _create(month: str, **kwargs) -> models.MonthlyTrialBalanceSummary:
        return add_summary(db_session, month, **kwargs)

    return _create


@pytest.fixture
def transaction_factory(db_session: Session):
    def _create(day: date, kind: models.TransactionType, amount, **kwargs) -> models.FinancialTransaction:
        return add_transaction(db_session, day, kind, amount, **kwargs)

    return _create
