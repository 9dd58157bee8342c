"""Executes the metrics catalog for one company and stores the results."""

from __future__ import annotations

import logging
import math
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Iterable, Sequence

from sqlalchemy.orm import Session

from .. import models
from .data_access import MetricsDataAccess
from .metrics_catalog import FLAG, METRICS_CATALOG, MetricContext, MetricDefinition

LOGGER = logging.getLogger(__name__)

DEFAULT_TIME_SCOPE = "live"
MONTH_SCOPE = "month"


@dataclass(frozen=True)
class MetricFailure:
    key: str
    month: str | None
    error: str


@dataclass
class MetricRunSummary:
    metric_definitions: int
    written: int = 0
    skipped: int = 0
    failures: list[MetricFailure] = field(default_factory=list)
    missing_metric_keys: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def normalize_metric_value(value: Any, value_type: str) -> float | None:
    """Coerce a computed value to a finite float; flags become exactly 0 or 1."""

    if value is None:
        return None
    if value_type == FLAG:
        if isinstance(value, bool):
            return 1.0 if value else 0.0
        try:
            number = float(value)
        except (TypeError, ValueError):
            return None
        if not math.isfinite(number):
            return None
        return 1.0 if number else 0.0
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def _to_decimal(value: float | None) -> Decimal | None:
    if value is None:
        return None
    return Decimal(repr(value)).quantize(Decimal("0.000001"))


def upsert_metric(
    db: Session,
    company_id: str,
    metric_key: str,
    metric_value: float | None,
    *,
    time_scope: str | None = DEFAULT_TIME_SCOPE,
    month: str | None = None,
    change_pct: float | None = None,
    severity: str | None = None,
    computed_at: datetime | None = None,
) -> models.CFOMetric | None:
    """Insert or update the metric row for (company, key, scope, month).

    Only month-scoped metrics carry a month; a month-scoped write without one
    is ignored.
    """

    scope = (time_scope or DEFAULT_TIME_SCOPE).lower()
    metric_month = month if scope == MONTH_SCOPE else None
    if scope == MONTH_SCOPE and not metric_month:
        return None

    query = db.query(models.CFOMetric).filter(
        models.CFOMetric.company_id == company_id,
        models.CFOMetric.metric_key == metric_key,
        models.CFOMetric.time_scope == scope,
    )
    if metric_month is None:
        query = query.filter(models.CFOMetric.month.is_(None))
    else:
        query = query.filter(models.CFOMetric.month == metric_month)
    row = query.first()
    value = _to_decimal(metric_value)
    change = _to_decimal(change_pct)
    if row is None:
        row = models.CFOMetric(
            company_id=company_id, metric_key=metric_key, time_scope=scope, month=metric_month
        )
    elif row.metric_value == value and row.change_pct == change and row.severity == severity:
        # Unchanged values keep their original computed_at.
        return row

    row.metric_value = value
    row.metric_text = None if value is None else format(value.normalize(), "f")
    row.change_pct = change
    row.severity = severity
    row.computed_at = computed_at or datetime.now(timezone.utc)
    db.add(row)
    return row


def _dedupe_months(months: Iterable[str] | None) -> list[str]:
    return sorted({month for month in months or [] if month})


def run_catalog_metrics(
    db: Session,
    company_id: str,
    *,
    months_back: int = 24,
    months: Sequence[str] | None = None,
    include_latest: bool = True,
    catalog: Sequence[MetricDefinition] = METRICS_CATALOG,
    data_access: MetricsDataAccess | None = None,
) -> MetricRunSummary:
    """Compute and store every catalog metric for ``company_id``.

    Month-scoped definitions run once per target month (``months`` when given,
    otherwise every month in the window); the rest run once. Unknown values
    are counted as skipped and never stored. A failing definition is recorded
    and the run continues.
    """

    data = data_access or MetricsDataAccess(db, company_id, months_back=months_back)
    data.load()

    latest_month = data.get_latest_month()
    explicit = _dedupe_months(months)
    if explicit:
        month_targets = [month for month in explicit if not latest_month or month <= latest_month]
    else:
        month_targets = data.get_month_keys()

    summary = MetricRunSummary(metric_definitions=len(catalog))
    missing: set[str] = set()
    computed_at = datetime.now(timezone.utc)

    for definition in catalog:
        if not definition.is_monthly and not include_latest:
            continue
        targets: list[str | None] = list(month_targets) if definition.is_monthly else [None]
        for month in targets:
            try:
                raw = definition.compute(MetricContext(data=data, month=month))
                value = normalize_metric_value(raw, definition.value_type)
                if value is None and not definition.allow_null:
                    summary.skipped += 1
                    missing.add(definition.key)
                    continue
                severity = definition.severity(value) if definition.severity else None
                upsert_metric(
                    db,
                    company_id,
                    definition.key,
                    value,
                    time_scope=definition.time_scope,
                    month=month,
                    severity=severity,
                    computed_at=computed_at,
                )
                summary.written += 1
            except Exception as exc:  # noqa: BLE001 - one metric must not abort the catalog
                LOGGER.exception("Metric %s failed for %s (month=%s)", definition.key, company_id, month)
                summary.failures.append(MetricFailure(key=definition.key, month=month, error=str(exc)))

    db.flush()
    summary.missing_metric_keys = sorted(missing)
    LOGGER.info(
        "Metrics for %s: %s written, %s skipped, %s failed",
        company_id,
        summary.written,
        summary.skipped,
        len(summary.failures),
    )
    return summary
