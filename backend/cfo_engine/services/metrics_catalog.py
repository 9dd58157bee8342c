"""Static registry of every metric the engine computes.

Each :class:`MetricDefinition` pairs a storage key with a pure compute
function over :class:`MetricsDataAccess`. The registry is assembled once at
import time and is never extended at runtime.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Optional

from ..month_keys import month_key_offset
from .data_access import MetricsDataAccess
from .liquidity import runway_months

CURRENCY = "currency"
PERCENT = "percent"
NUMBER = "number"
FLAG = "flag"

SCOPE_LATEST = "latest"
SCOPE_MONTH = "month"

WINDOWS = (3, 6, 9, 12, 18, 24)
ROLLING_MEASURES = ("revenue", "expenses", "net_profit", "debtors", "creditors", "working_capital")

SPIKE_RATIO = 1.3
DROP_RATIO = 0.7
CONCENTRATION_LIMIT = 0.6
STAGNATION_LIMIT = 0.02
INTEREST_COVERAGE_FLOOR = 1.5

pct = MetricsDataAccess.pct_change
mean = MetricsDataAccess.mean
stddev = MetricsDataAccess.stddev
trend = MetricsDataAccess.trend


@dataclass(frozen=True)
class MetricContext:
    data: MetricsDataAccess
    month: Optional[str] = None


ComputeFn = Callable[[MetricContext], Optional[float]]
SeverityFn = Callable[[Optional[float]], Optional[str]]


@dataclass(frozen=True)
class MetricDefinition:
    key: str
    value_type: str
    time_scope: str
    compute: ComputeFn = field(repr=False, compare=False)
    scope: str = SCOPE_LATEST
    required_inputs: tuple[str, ...] = ()
    allow_null: bool = False
    severity: Optional[SeverityFn] = field(default=None, repr=False, compare=False)

    @property
    def is_monthly(self) -> bool:
        return self.scope == SCOPE_MONTH


def _end(ctx: MetricContext) -> str | None:
    return ctx.month or ctx.data.get_latest_month()


def rolling_average(data: MetricsDataAccess, measure: str, window: int, month: str | None = None) -> float | None:
    return mean(data.get_window_values(measure, month or data.get_latest_month(), window))


def rolling_sum(data: MetricsDataAccess, measure: str, window: int, month: str | None = None) -> float | None:
    values = data.get_window_values(measure, month or data.get_latest_month(), window)
    return sum(values) if values else None


def rolling_std(data: MetricsDataAccess, measure: str, window: int, month: str | None = None) -> float | None:
    return stddev(data.get_window_values(measure, month or data.get_latest_month(), window))


def rolling_trend(data: MetricsDataAccess, measure: str, window: int, month: str | None = None) -> int | None:
    return trend(data.get_window_values(measure, month or data.get_latest_month(), window))


def previous_month_pct(data: MetricsDataAccess, measure: str, month: str | None = None) -> float | None:
    end = month or data.get_latest_month()
    if not end:
        return None
    return pct(data.get_value(measure, end), data.get_value(measure, month_key_offset(end, -1)))


def year_ago_pct(data: MetricsDataAccess, measure: str, month: str | None = None) -> float | None:
    end = month or data.get_latest_month()
    if not end:
        return None
    return pct(data.get_value(measure, end), data.get_value(measure, month_key_offset(end, -12)))


def difference(data: MetricsDataAccess, measure: str, months_back: int) -> float | None:
    latest = data.get_latest_month()
    if not latest:
        return None
    current = data.get_value(measure, latest)
    prior = data.get_value(measure, month_key_offset(latest, -months_back))
    if current is None or prior is None:
        return None
    return current - prior


def growth_3m(data: MetricsDataAccess, measure: str) -> float | None:
    latest = data.get_latest_month()
    if not latest:
        return None
    return pct(
        rolling_average(data, measure, 3),
        rolling_average(data, measure, 3, month_key_offset(latest, -3)),
    )


def runway_at(data: MetricsDataAccess, month: str | None) -> float | None:
    if not month:
        return None
    flows = data.get_window_values("net_cashflow", month, 3)
    return runway_months(data.get_value("cash_bank", month), mean(flows))


def debtor_days(data: MetricsDataAccess) -> float | None:
    return data.get_value("debtor_days", data.get_latest_month())


def creditor_days(data: MetricsDataAccess) -> float | None:
    return data.get_value("creditor_days", data.get_latest_month())


def cash_conversion_cycle(data: MetricsDataAccess) -> float | None:
    """Debtor days minus creditor days; unknown if either side is unknown."""

    debtors, creditors = debtor_days(data), creditor_days(data)
    if debtors is None or creditors is None:
        return None
    return debtors - creditors


def interest_coverage(data: MetricsDataAccess) -> float | None:
    """(Net profit + finance cost) / finance cost for the latest month."""

    latest = data.get_latest_month()
    finance_cost = data.get_value("finance_cost", latest)
    net_profit = data.get_value("net_profit", latest)
    if finance_cost is None or finance_cost <= 0 or net_profit is None:
        return None
    return (net_profit + finance_cost) / finance_cost


def _runway_change(ctx: MetricContext) -> float | None:
    latest = ctx.data.get_latest_month()
    current, prior = runway_at(ctx.data, latest), runway_at(ctx.data, month_key_offset(latest, -1))
    if current is None or prior is None:
        return None
    return current - prior


def _volatility(ctx: MetricContext) -> float | None:
    average = rolling_average(ctx.data, "revenue", 6)
    deviation = rolling_std(ctx.data, "revenue", 6)
    if average is None or average == 0 or deviation is None:
        return None
    return deviation / average


def _stagnation(ctx: MetricContext) -> float | None:
    growth = growth_3m(ctx.data, "revenue")
    if growth is None:
        return None
    return 1 if abs(growth) < STAGNATION_LIMIT else 0


def _growth_gap(ctx: MetricContext) -> float | None:
    revenue, expenses = growth_3m(ctx.data, "revenue"), growth_3m(ctx.data, "expenses")
    if revenue is None or expenses is None:
        return None
    return expenses - revenue


def _divergence(ctx: MetricContext) -> float | None:
    debtor_change = difference(ctx.data, "debtors", 1)
    revenue_growth = previous_month_pct(ctx.data, "revenue")
    if debtor_change is None or revenue_growth is None:
        return None
    return 1 if debtor_change > 0 and revenue_growth <= 0 else 0


def _cash_pressure(ctx: MetricContext) -> float | None:
    totals = ctx.data.get_current_totals()
    return 1 if totals["creditors"] > totals["cash"] else 0


def _flag_severity(value: float | None) -> str | None:
    if value is None:
        return None
    return "critical" if value == 1 else "good"


def _runway_flag(limit: float) -> ComputeFn:
    def compute(ctx: MetricContext) -> float | None:
        runway = ctx.data.liquidity_value("cash_runway_months")
        if runway is None:
            return None
        return 1 if runway < limit else 0

    return compute


def _concentration_flag(kind: str) -> ComputeFn:
    def compute(ctx: MetricContext) -> float | None:
        return 1 if ctx.data.get_top_share(kind, 5) > CONCENTRATION_LIMIT else 0

    return compute


def _threshold_flag(measure: str, predicate: Callable[[float], bool]) -> ComputeFn:
    def compute(ctx: MetricContext) -> float | None:
        growth = previous_month_pct(ctx.data, measure)
        if growth is None:
            return None
        return 1 if predicate(growth) else 0

    return compute


def _loan_servicing(ctx: MetricContext) -> float | None:
    if ctx.data.get_current_totals()["loans"] <= 0:
        return 0
    coverage = interest_coverage(ctx.data)
    if coverage is None:
        return None
    return 1 if coverage < INTEREST_COVERAGE_FLOOR else 0


def _current_total(name: str) -> ComputeFn:
    return lambda ctx: ctx.data.get_current_totals()[name]


def _latest_measure(measure: str) -> ComputeFn:
    return lambda ctx: ctx.data.get_value(measure)


SUMMARY = ("monthly_trial_balance_summaries",)


def _live_metrics() -> list[MetricDefinition]:
    defs = [
        MetricDefinition("cash_balance_live", CURRENCY, "live", _current_total("cash"), required_inputs=("current_cash_balances",)),
        MetricDefinition("debtors_balance_live", CURRENCY, "live", _current_total("debtors"), required_inputs=("current_debtors",)),
        MetricDefinition("creditors_balance_live", CURRENCY, "live", _current_total("creditors"), required_inputs=("current_creditors",)),
        MetricDefinition("loans_balance_live", CURRENCY, "live", _current_total("loans"), required_inputs=("current_loans",)),
        MetricDefinition(
            "working_capital",
            CURRENCY,
            "live",
            _current_total("working_capital"),
            required_inputs=("current_cash_balances", "current_debtors", "current_creditors"),
        ),
        MetricDefinition(
            "cash_runway_months",
            NUMBER,
            "live",
            lambda ctx: ctx.data.liquidity_value("cash_runway_months"),
            required_inputs=("current_liquidity_metrics",),
        ),
        MetricDefinition(
            "avg_net_cash_outflow_3m",
            CURRENCY,
            "3m",
            lambda ctx: ctx.data.liquidity_value("avg_net_cash_outflow_3m"),
            required_inputs=("current_liquidity_metrics",),
        ),
        MetricDefinition("cash_runway_change_mom", NUMBER, "mom", _runway_change, required_inputs=SUMMARY),
        MetricDefinition("revenue_last_closed", CURRENCY, "last_closed_month", _latest_measure("revenue"), required_inputs=SUMMARY),
        MetricDefinition("expenses_last_closed", CURRENCY, "last_closed_month", _latest_measure("expenses"), required_inputs=SUMMARY),
        MetricDefinition("net_profit_last_closed", CURRENCY, "last_closed_month", _latest_measure("net_profit"), required_inputs=SUMMARY),
        MetricDefinition("net_margin_last_closed", PERCENT, "last_closed_month", _latest_measure("net_margin"), required_inputs=SUMMARY),
        MetricDefinition("revenue_mom_growth_pct", PERCENT, "mom", lambda ctx: previous_month_pct(ctx.data, "revenue"), required_inputs=SUMMARY),
        MetricDefinition("expense_mom_growth_pct", PERCENT, "mom", lambda ctx: previous_month_pct(ctx.data, "expenses"), required_inputs=SUMMARY),
        MetricDefinition("net_margin_mom_change", PERCENT, "mom", lambda ctx: previous_month_pct(ctx.data, "net_margin"), required_inputs=SUMMARY),
        MetricDefinition("revenue_growth_3m", PERCENT, "3m", lambda ctx: growth_3m(ctx.data, "revenue"), required_inputs=SUMMARY),
        MetricDefinition("expense_growth_3m", PERCENT, "3m", lambda ctx: growth_3m(ctx.data, "expenses"), required_inputs=SUMMARY),
        MetricDefinition("expense_vs_revenue_growth_gap", PERCENT, "3m", _growth_gap, required_inputs=SUMMARY),
        MetricDefinition("revenue_trend_direction", NUMBER, "3m", lambda ctx: rolling_trend(ctx.data, "revenue", 3), required_inputs=SUMMARY),
        MetricDefinition("expense_trend_direction", NUMBER, "3m", lambda ctx: rolling_trend(ctx.data, "expenses", 3), required_inputs=SUMMARY),
        MetricDefinition("revenue_volatility", PERCENT, "6m", _volatility, required_inputs=SUMMARY),
        MetricDefinition("revenue_stagnation_flag", FLAG, "3m", _stagnation, required_inputs=SUMMARY),
        MetricDefinition(
            "debtor_days",
            NUMBER,
            "3m",
            lambda ctx: debtor_days(ctx.data),
            required_inputs=("monthly_trial_balance_summaries", "monthly_debtors"),
        ),
        MetricDefinition(
            "creditor_days",
            NUMBER,
            "3m",
            lambda ctx: creditor_days(ctx.data),
            required_inputs=("monthly_trial_balance_summaries", "monthly_creditors"),
        ),
        MetricDefinition(
            "cash_conversion_cycle",
            NUMBER,
            "3m",
            lambda ctx: cash_conversion_cycle(ctx.data),
            required_inputs=("monthly_debtors", "monthly_creditors"),
        ),
        MetricDefinition(
            "inventory_days",
            NUMBER,
            "3m",
            lambda ctx: ctx.data.get_value("inventory_days", ctx.data.get_latest_month()),
            required_inputs=SUMMARY,
        ),
        MetricDefinition(
            "full_cash_conversion_cycle",
            NUMBER,
            "3m",
            lambda ctx: ctx.data.get_value("full_cash_conversion_cycle", ctx.data.get_latest_month()),
            required_inputs=("monthly_trial_balance_summaries", "monthly_debtors", "monthly_creditors"),
        ),
        MetricDefinition(
            "interest_coverage",
            NUMBER,
            "live",
            lambda ctx: interest_coverage(ctx.data),
            required_inputs=("monthly_trial_balance_summaries", "monthly_expense_breakdowns"),
        ),
        MetricDefinition(
            "debtor_balance_mom_change", CURRENCY, "mom", lambda ctx: difference(ctx.data, "debtors", 1), required_inputs=("monthly_debtors",)
        ),
        MetricDefinition(
            "creditor_balance_mom_change",
            CURRENCY,
            "mom",
            lambda ctx: difference(ctx.data, "creditors", 1),
            required_inputs=("monthly_creditors",),
        ),
        MetricDefinition(
            "debtors_revenue_divergence",
            FLAG,
            "last_closed_month",
            _divergence,
            required_inputs=("monthly_debtors", "monthly_trial_balance_summaries"),
        ),
        MetricDefinition(
            "debtors_concentration_ratio",
            PERCENT,
            "live",
            lambda ctx: ctx.data.get_top_share("debtors", 5),
            required_inputs=("current_debtors",),
        ),
        MetricDefinition(
            "creditors_concentration_ratio",
            PERCENT,
            "live",
            lambda ctx: ctx.data.get_top_share("creditors", 5),
            required_inputs=("current_creditors",),
        ),
        MetricDefinition(
            "creditors_cash_pressure",
            FLAG,
            "live",
            _cash_pressure,
            required_inputs=("current_cash_balances", "current_creditors"),
            severity=_flag_severity,
        ),
    ]

    for measure, prefix in (("revenue", "revenue"), ("expenses", "expense"), ("net_profit", "net_profit")):
        for window in (3, 6, 12):
            defs.append(
                MetricDefinition(
                    f"{prefix}_avg_{window}m",
                    CURRENCY,
                    f"{window}m",
                    lambda ctx, m=measure, w=window: rolling_average(ctx.data, m, w),
                    required_inputs=SUMMARY,
                )
            )

    for key, measure in (
        ("revenue_yoy_growth_pct", "revenue"),
        ("expense_yoy_growth_pct", "expenses"),
        ("net_profit_yoy_growth_pct", "net_profit"),
        ("net_margin_yoy_growth_pct", "net_margin"),
    ):
        defs.append(
            MetricDefinition(key, PERCENT, "yoy", lambda ctx, m=measure: year_ago_pct(ctx.data, m), required_inputs=SUMMARY)
        )
    for key, measure in (
        ("debtor_balance_yoy_change", "debtors"),
        ("creditor_balance_yoy_change", "creditors"),
        ("cash_balance_yoy_change", "cash_bank"),
    ):
        defs.append(
            MetricDefinition(key, CURRENCY, "yoy", lambda ctx, m=measure: difference(ctx.data, m, 12), required_inputs=SUMMARY)
        )
    return defs


def _rolling_metrics() -> list[MetricDefinition]:
    defs = []
    for measure in ROLLING_MEASURES:
        for window in WINDOWS:
            scope = f"{window}m"
            defs.extend(
                [
                    MetricDefinition(
                        f"catalog_{measure}_avg_{window}m",
                        CURRENCY,
                        scope,
                        lambda ctx, m=measure, w=window: rolling_average(ctx.data, m, w),
                        required_inputs=SUMMARY,
                    ),
                    MetricDefinition(
                        f"catalog_{measure}_sum_{window}m",
                        CURRENCY,
                        scope,
                        lambda ctx, m=measure, w=window: rolling_sum(ctx.data, m, w),
                        required_inputs=SUMMARY,
                    ),
                    MetricDefinition(
                        f"catalog_{measure}_stddev_{window}m",
                        CURRENCY,
                        scope,
                        lambda ctx, m=measure, w=window: rolling_std(ctx.data, m, w),
                        required_inputs=SUMMARY,
                    ),
                    MetricDefinition(
                        f"catalog_{measure}_trend_{window}m",
                        NUMBER,
                        scope,
                        lambda ctx, m=measure, w=window: rolling_trend(ctx.data, m, w),
                        required_inputs=SUMMARY,
                    ),
                    MetricDefinition(
                        f"catalog_{measure}_mom_growth_{window}m",
                        PERCENT,
                        scope,
                        lambda ctx, m=measure, w=window: _rolling_mom_growth(ctx.data, m, w),
                        required_inputs=SUMMARY,
                    ),
                ]
            )
    return defs


def _rolling_mom_growth(data: MetricsDataAccess, measure: str, window: int) -> float | None:
    latest = data.get_latest_month()
    if not latest:
        return None
    return pct(
        rolling_average(data, measure, window, latest),
        rolling_average(data, measure, window, month_key_offset(latest, -1)),
    )


def _baseline_flag(measure: str, predicate: Callable[[float, float], bool]) -> ComputeFn:
    def compute(ctx: MetricContext) -> float | None:
        value = ctx.data.get_value(measure, ctx.month)
        baseline = rolling_average(ctx.data, measure, 6, month_key_offset(ctx.month, -1))
        if value is None or baseline is None or baseline == 0:
            return None
        return 1 if predicate(value, baseline) else 0

    return compute


def _monthly_metrics() -> list[MetricDefinition]:
    defs = []
    for measure in ROLLING_MEASURES:
        defs.extend(
            [
                MetricDefinition(
                    f"catalog_{measure}_month_value",
                    CURRENCY,
                    "month",
                    lambda ctx, m=measure: ctx.data.get_value(m, ctx.month),
                    scope=SCOPE_MONTH,
                    required_inputs=SUMMARY,
                ),
                MetricDefinition(
                    f"catalog_{measure}_month_mom_growth",
                    PERCENT,
                    "month",
                    lambda ctx, m=measure: previous_month_pct(ctx.data, m, ctx.month),
                    scope=SCOPE_MONTH,
                    required_inputs=SUMMARY,
                ),
                MetricDefinition(
                    f"catalog_{measure}_month_yoy_growth",
                    PERCENT,
                    "month",
                    lambda ctx, m=measure: year_ago_pct(ctx.data, m, ctx.month),
                    scope=SCOPE_MONTH,
                    required_inputs=SUMMARY,
                ),
                MetricDefinition(
                    f"catalog_{measure}_month_spike_flag",
                    FLAG,
                    "month",
                    _baseline_flag(measure, lambda value, base: value > base * SPIKE_RATIO),
                    scope=SCOPE_MONTH,
                    required_inputs=SUMMARY,
                ),
                MetricDefinition(
                    f"catalog_{measure}_month_drop_flag",
                    FLAG,
                    "month",
                    _baseline_flag(measure, lambda value, base: value < base * DROP_RATIO),
                    scope=SCOPE_MONTH,
                    required_inputs=SUMMARY,
                ),
            ]
        )
    for measure in ("debtor_days", "creditor_days", "cash_conversion_cycle"):
        defs.append(
            MetricDefinition(
                f"catalog_{measure}_month_value",
                NUMBER,
                "month",
                lambda ctx, m=measure: ctx.data.get_value(m, ctx.month),
                scope=SCOPE_MONTH,
                required_inputs=("monthly_debtors", "monthly_creditors"),
            )
        )
    return defs


def _priority_flags() -> list[MetricDefinition]:
    return [
        MetricDefinition(
            "flag_liquidity_risk",
            FLAG,
            "live",
            _runway_flag(3),
            required_inputs=("current_liquidity_metrics",),
            severity=_flag_severity,
        ),
        MetricDefinition("flag_runway_risk", FLAG, "live", _runway_flag(6), required_inputs=("current_liquidity_metrics",)),
        MetricDefinition(
            "flag_debtor_concentration_risk", FLAG, "live", _concentration_flag("debtors"), required_inputs=("current_debtors",)
        ),
        MetricDefinition(
            "flag_creditor_concentration_risk", FLAG, "live", _concentration_flag("creditors"), required_inputs=("current_creditors",)
        ),
        MetricDefinition(
            "flag_revenue_drop", FLAG, "live", _threshold_flag("revenue", lambda growth: growth < -0.1), required_inputs=SUMMARY
        ),
        MetricDefinition(
            "flag_expense_spike", FLAG, "live", _threshold_flag("expenses", lambda growth: growth > 0.15), required_inputs=SUMMARY
        ),
        MetricDefinition(
            "flag_loan_servicing_risk",
            FLAG,
            "live",
            _loan_servicing,
            required_inputs=("current_loans", "monthly_expense_breakdowns"),
        ),
    ]


def _build_catalog() -> tuple[MetricDefinition, ...]:
    catalog = tuple(_live_metrics() + _rolling_metrics() + _monthly_metrics() + _priority_flags())
    seen: set[tuple[str, str]] = set()
    for definition in catalog:
        identity = (definition.key, definition.time_scope)
        if identity in seen:
            raise RuntimeError(f"Duplicate metric definition: {definition.key}/{definition.time_scope}")
        seen.add(identity)
    return catalog


METRICS_CATALOG: tuple[MetricDefinition, ...] = _build_catalog()
CATALOG_BY_KEY: dict[str, MetricDefinition] = {definition.key: definition for definition in METRICS_CATALOG}
METRICS_CATALOG_COUNT = len(METRICS_CATALOG)
