from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..month_keys import normalize_month


class RecomputeRequest(BaseModel):
    """Trigger payload sent by the sync layer or an operator."""

    amended_month: str | None = Field(
        default=None, description="First month to rebuild in YYYY-MM format"
    )
    source_synced_at: datetime | None = None
    debtor_rows: List[Dict[str, Any]] | None = None
    creditor_rows: List[Dict[str, Any]] | None = None
    current_balance_payload: Dict[str, Any] | None = None
    chart_of_accounts_payload: Dict[str, Any] | None = None
    job_id: str | None = Field(default=None, max_length=128)

    @field_validator("amended_month")
    @classmethod
    def _validate_month(cls, value: str | None) -> str | None:
        if value is None or value == "":
            return None
        month_key = normalize_month(value)
        if month_key is None:
            raise ValueError("amended_month must be a YYYY-MM month key")
        return month_key


class MetricFailureRead(BaseModel):
    key: str
    month: str | None = None
    error: str

    model_config = ConfigDict(from_attributes=True)


class MetricRunSummaryRead(BaseModel):
    metric_definitions: int = Field(..., ge=0)
    written: int = Field(..., ge=0)
    skipped: int = Field(..., ge=0)
    failures: List[MetricFailureRead] = Field(default_factory=list)
    missing_metric_keys: List[str] = Field(default_factory=list)


class RecomputeResponse(BaseModel):
    company_id: str
    months_processed: int = Field(..., ge=0)
    skipped: bool = False
    reason: str | None = None
    months: List[str] = Field(default_factory=list)
    metrics: MetricRunSummaryRead | None = None


class LatestMonthResponse(BaseModel):
    company_id: str
    month: str | None = None


class MonthlySummaryRead(BaseModel):
    """Stored trial balance summary of one company month."""

    company_id: str
    month: str
    cash_and_bank_balance: Decimal
    total_revenue: Decimal
    total_expenses: Decimal
    net_profit: Decimal
    net_cashflow: Decimal
    inventory_total: Decimal
    data_source: str

    model_config = ConfigDict(from_attributes=True)


class MetricRead(BaseModel):
    company_id: str
    metric_key: str
    time_scope: str
    month: str | None = None
    metric_value: Decimal | None = None
    metric_text: str | None = None
    change_pct: Decimal | None = None
    severity: str | None = None
    computed_at: datetime

    model_config = ConfigDict(from_attributes=True)


class CurrentTotalsResponse(BaseModel):
    cash: float
    debtors: float
    creditors: float
    loans: float
    working_capital: float
    cash_runway_months: float | None = None
    avg_net_cash_outflow_3m: float | None = None
    balance_source: str | None = None


class CounterpartyItem(BaseModel):
    name: str
    balance: float
    share_pct: float

    model_config = ConfigDict(from_attributes=True)


class CounterpartyConcentrationResponse(BaseModel):
    kind: str
    source: str | None = None
    month: str | None = None
    total: float = 0.0
    items: List[CounterpartyItem] = Field(default_factory=list)
    top1_pct: float = 0.0
    top5_pct: float = 0.0
    risk_level: str

    model_config = ConfigDict(from_attributes=True)


class RecomputeSummaryResponse(BaseModel):
    """Counters of the latest metrics run, used to explain blank figures."""

    outcome: str
    created_at: datetime
    metric_definitions: int
    written: int
    skipped: int
    failures: List[MetricFailureRead] = Field(default_factory=list)
    missing_metric_keys: List[str] = Field(default_factory=list)

    model_config = ConfigDict(from_attributes=True)


class AlertRead(BaseModel):
    rule_key: str
    severity: str
    title: str
    message: str
    link: str | None = None
    month: str | None = None
    details: Dict[str, Any] | None = None
    generated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class SnapshotIssueRead(BaseModel):
    month: str
    check: str
    expected: Decimal
    actual: Decimal

    model_config = ConfigDict(from_attributes=True)


class SnapshotConsistencyResponse(BaseModel):
    """Summary versus breakdown checks; ``ok`` is false when any issue was found."""

    company_id: str
    months_checked: int
    ok: bool
    issues: List[SnapshotIssueRead] = Field(default_factory=list)
    unknown_subtype_share: Dict[str, float] = Field(default_factory=dict)

    model_config = ConfigDict(from_attributes=True)


class SchedulerJobHealth(BaseModel):
    enabled: bool
    last_tick: datetime | None = None
    last_success: datetime | None = None
    companies_processed: int = 0
    companies_skipped: int = 0
    consecutive_failures: int = 0
    recent_errors: List[str] = Field(default_factory=list)


class SchedulerHealthResponse(BaseModel):
    jobs: Dict[str, SchedulerJobHealth] = Field(default_factory=dict)
