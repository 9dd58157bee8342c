"""Expose Pydantic schemas for convenient imports."""

from .metrics import (
    AlertRead,
    CounterpartyConcentrationResponse,
    CounterpartyItem,
    CurrentTotalsResponse,
    LatestMonthResponse,
    MetricFailureRead,
    MetricRead,
    MetricRunSummaryRead,
    MonthlySummaryRead,
    RecomputeRequest,
    RecomputeResponse,
    RecomputeSummaryResponse,
    SchedulerHealthResponse,
    SchedulerJobHealth,
    SnapshotConsistencyResponse,
    SnapshotIssueRead,
)

__all__ = [
    "AlertRead",
    "CounterpartyConcentrationResponse",
    "CounterpartyItem",
    "CurrentTotalsResponse",
    "LatestMonthResponse",
    "MetricFailureRead",
    "MetricRead",
    "MetricRunSummaryRead",
    "MonthlySummaryRead",
    "RecomputeRequest",
    "RecomputeResponse",
    "RecomputeSummaryResponse",
    "SchedulerHealthResponse",
    "SchedulerJobHealth",
    "SnapshotConsistencyResponse",
    "SnapshotIssueRead",
]
