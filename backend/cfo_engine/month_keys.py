"""Calendar arithmetic over ``YYYY-MM`` month keys."""

from __future__ import annotations

import re
from calendar import monthrange
from datetime import date, datetime, timezone

_MONTH_KEY_PATTERN = re.compile(r"^(\d{4})-(\d{2})$")


class MonthKeyError(ValueError):
    """Raised when a value cannot be interpreted as a month key."""


def normalize_month(value: object) -> str | None:
    """Return the ``YYYY-MM`` key for ``value`` or ``None`` when it is not a date.

    Accepts month keys, ``date``/``datetime`` instances, epoch milliseconds and
    ISO 8601 date strings.
    """

    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return f"{value.year:04d}-{value.month:02d}"
    if isinstance(value, date):
        return f"{value.year:04d}-{value.month:02d}"
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        try:
            parsed = datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
        return f"{parsed.year:04d}-{parsed.month:02d}"
    if isinstance(value, str):
        candidate = value.strip()
        match = _MONTH_KEY_PATTERN.match(candidate)
        if match:
            month = int(match.group(2))
            return candidate if 1 <= month <= 12 else None
        try:
            parsed = datetime.fromisoformat(candidate.replace("Z", "+00:00"))
        except ValueError:
            return None
        return normalize_month(parsed)
    return None


def parse_month_key(month_key: str) -> tuple[int, int]:
    match = _MONTH_KEY_PATTERN.match(month_key or "")
    if not match:
        raise MonthKeyError(f"Invalid month key: {month_key!r}")
    year, month = int(match.group(1)), int(match.group(2))
    if not 1 <= month <= 12:
        raise MonthKeyError(f"Invalid month key: {month_key!r}")
    return year, month


def month_key_offset(month_key: str | None, delta_months: int) -> str | None:
    """Shift ``month_key`` by ``delta_months`` (negative values go back in time)."""

    if not month_key:
        return None
    year, month = parse_month_key(month_key)
    index = year * 12 + (month - 1) + delta_months
    return f"{index // 12:04d}-{index % 12 + 1:02d}"


def list_month_keys_between(start_key: str | None, end_key: str | None) -> list[str]:
    """Enumerate month keys from ``start_key`` to ``end_key``, both inclusive."""

    keys: list[str] = []
    if not start_key or not end_key:
        return keys
    cursor: str | None = start_key
    while cursor and cursor <= end_key:
        keys.append(cursor)
        cursor = month_key_offset(cursor, 1)
    return keys


def month_bounds(month_key: str) -> tuple[date, date]:
    """Return the first day of ``month_key`` and the first day of the next month."""

    year, month = parse_month_key(month_key)
    start = date(year, month, 1)
    next_year, next_month = parse_month_key(month_key_offset(month_key, 1) or month_key)
    return start, date(next_year, next_month, 1)


def month_end(month_key: str) -> date:
    year, month = parse_month_key(month_key)
    return date(year, month, monthrange(year, month)[1])


def current_month_key(now: datetime | None = None) -> str:
    return normalize_month(now or datetime.now(timezone.utc))  # type: ignore[return-value]


def latest_closed_month_key(now: datetime | None = None) -> str:
    """Return the most recent fully elapsed calendar month."""

    return month_key_offset(current_month_key(now), -1)  # type: ignore[return-value]
