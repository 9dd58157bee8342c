"""Router exposing recomputation triggers and the stored CFO figures."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from .. import schemas
from ..database import get_db
from ..services import (
    MetricsReadService,
    RecomputeError,
    RecomputeOrchestrator,
    SnapshotConsistencyService,
    UnknownCounterpartyKind,
)

router = APIRouter()


def get_orchestrator() -> RecomputeOrchestrator:
    """Build the orchestrator used by the trigger endpoint."""

    return RecomputeOrchestrator()


@router.post("/{company_id}/recompute", response_model=schemas.RecomputeResponse)
def trigger_recompute(
    company_id: str,
    payload: schemas.RecomputeRequest,
    orchestrator: RecomputeOrchestrator = Depends(get_orchestrator),
) -> schemas.RecomputeResponse:
    """Recompute the affected months; a held or completed lock returns ``skipped``."""

    try:
        result = orchestrator.recompute(
            company_id,
            amended_month=payload.amended_month,
            source_synced_at=payload.source_synced_at,
            debtor_rows=payload.debtor_rows,
            creditor_rows=payload.creditor_rows,
            current_balance_payload=payload.current_balance_payload,
            chart_of_accounts_payload=payload.chart_of_accounts_payload,
            job_id=payload.job_id,
        )
    except RecomputeError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return schemas.RecomputeResponse(**result.to_dict())


@router.get("/{company_id}/latest-month", response_model=schemas.LatestMonthResponse)
def get_latest_month(company_id: str, db: Session = Depends(get_db)) -> schemas.LatestMonthResponse:
    return schemas.LatestMonthResponse(
        company_id=company_id, month=MetricsReadService.latest_month(db, company_id)
    )


@router.get(
    "/{company_id}/monthly-summaries/{month}", response_model=schemas.MonthlySummaryRead
)
def get_monthly_summary(
    company_id: str, month: str, db: Session = Depends(get_db)
) -> schemas.MonthlySummaryRead:
    summary = MetricsReadService.monthly_summary(db, company_id, month)
    if summary is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Monthly summary not found")
    return summary


@router.get("/{company_id}/metrics/{metric_key}", response_model=schemas.MetricRead)
def get_metric(
    company_id: str,
    metric_key: str,
    time_scope: str = Query(default="live", description="Metric time scope, e.g. live, 3m or month"),
    month: str | None = Query(default=None, description="Month key in YYYY-MM format for month scope"),
    db: Session = Depends(get_db),
) -> schemas.MetricRead:
    """Return one stored metric. A missing row means unknown, never zero."""

    metric = MetricsReadService.metric(db, company_id, metric_key, time_scope=time_scope, month=month)
    if metric is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Metric not computed")
    return metric


@router.get("/{company_id}/current-totals", response_model=schemas.CurrentTotalsResponse)
def get_current_totals(company_id: str, db: Session = Depends(get_db)) -> schemas.CurrentTotalsResponse:
    return schemas.CurrentTotalsResponse(**MetricsReadService.current_totals(db, company_id))


@router.get(
    "/{company_id}/counterparties/{kind}",
    response_model=schemas.CounterpartyConcentrationResponse,
)
def get_counterparties(
    company_id: str,
    kind: str,
    top_n: int = Query(default=5, ge=1, le=100, description="Number of counterparties to return"),
    db: Session = Depends(get_db),
) -> schemas.CounterpartyConcentrationResponse:
    try:
        concentration = MetricsReadService.counterparties(db, company_id, kind, top_n=top_n)
    except UnknownCounterpartyKind as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="kind must be debtors or creditors",
        ) from exc
    return schemas.CounterpartyConcentrationResponse.model_validate(concentration)


@router.get("/{company_id}/recompute-summary", response_model=schemas.RecomputeSummaryResponse)
def get_recompute_summary(
    company_id: str, db: Session = Depends(get_db)
) -> schemas.RecomputeSummaryResponse:
    summary = MetricsReadService.recompute_summary(db, company_id)
    if summary is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No recomputation recorded")
    return schemas.RecomputeSummaryResponse.model_validate(summary)


@router.get("/{company_id}/alerts", response_model=list[schemas.AlertRead])
def list_alerts(company_id: str, db: Session = Depends(get_db)) -> list[schemas.AlertRead]:
    return MetricsReadService.alerts(db, company_id)


@router.get(
    "/{company_id}/snapshot-consistency", response_model=schemas.SnapshotConsistencyResponse
)
def get_snapshot_consistency(
    company_id: str, db: Session = Depends(get_db)
) -> schemas.SnapshotConsistencyResponse:
    """Compare stored summaries with their breakdowns. Nothing is written."""

    report = SnapshotConsistencyService.check_company(db, company_id)
    return schemas.SnapshotConsistencyResponse.model_validate(report)
