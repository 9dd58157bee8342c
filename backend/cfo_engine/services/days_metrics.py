"""Working-capital day counts derived from balances and monthly flows.

Every helper returns ``None`` when an input is missing, non-finite or the
denominator is not positive, so callers never divide by zero or report a
partial figure as complete.
"""

from __future__ import annotations

import math

DEFAULT_DAYS_IN_PERIOD = 30


def _finite(value: float | int | None) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def days_from_balance(
    balance: float | None,
    monthly_denominator: float | None,
    days_in_period: int = DEFAULT_DAYS_IN_PERIOD,
) -> float | None:
    denominator = _finite(monthly_denominator)
    if denominator is None or denominator <= 0:
        return None
    amount = _finite(balance)
    if amount is None:
        return None
    return _finite(amount / denominator * days_in_period)


def dso(debtor_total: float | None, monthly_revenue: float | None, days_in_period: int = DEFAULT_DAYS_IN_PERIOD) -> float | None:
    """Debtor days: ``debtors / monthly revenue * 30``."""

    return days_from_balance(debtor_total, monthly_revenue, days_in_period)


def dpo(creditor_total: float | None, monthly_cost: float | None, days_in_period: int = DEFAULT_DAYS_IN_PERIOD) -> float | None:
    """Creditor days: ``creditors / monthly cost base * 30``."""

    return days_from_balance(creditor_total, monthly_cost, days_in_period)


def dio(average_inventory: float | None, monthly_cost: float | None, days_in_period: int = DEFAULT_DAYS_IN_PERIOD) -> float | None:
    """Inventory days: ``average inventory / monthly cost base * 30``."""

    return days_from_balance(average_inventory, monthly_cost, days_in_period)


def ccc(dso_days: float | None, dpo_days: float | None, dio_days: float | None) -> float | None:
    """Full cash conversion cycle ``DSO + DIO - DPO``.

    There is no fallback to ``DSO - DPO`` when inventory days are missing; use
    :func:`cash_gap_ex_inventory` for that figure.
    """

    parts = [_finite(dso_days), _finite(dpo_days), _finite(dio_days)]
    if any(part is None for part in parts):
        return None
    ds, dp, di = parts
    return _finite(ds + di - dp)  # type: ignore[operator]


def cash_gap_ex_inventory(dso_days: float | None, dpo_days: float | None) -> float | None:
    ds = _finite(dso_days)
    dp = _finite(dpo_days)
    if ds is None or dp is None:
        return None
    return _finite(ds - dp)
