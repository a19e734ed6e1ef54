"""Expiration arithmetic for service tier billing intervals."""
from __future__ import annotations

from calendar import monthrange
from datetime import datetime, timedelta

from .exceptions import InvalidIntervalError
from .models import IntervalUnit


def _add_months(anchor: datetime, months: int) -> datetime:
    total_months = anchor.month - 1 + months
    year = anchor.year + total_months // 12
    month = total_months % 12 + 1
    # Clamp to the last valid day so Jan 31 + 1 month lands on Feb 28/29.
    day = min(anchor.day, monthrange(year, month)[1])
    return anchor.replace(year=year, month=month, day=day)


def calculate_expires_at(interval: IntervalUnit, interval_count: int, anchor: datetime) -> datetime:
    """Return the expiration reached by adding ``interval_count`` intervals to ``anchor``.

    Calendar units (months and years) keep the anchor's day of month where it
    exists and otherwise clamp to the final day of the target month. The time
    of day and timezone of ``anchor`` are preserved.
    """

    if isinstance(interval_count, bool) or not isinstance(interval_count, int):
        raise InvalidIntervalError(f"interval_count must be an integer, got {interval_count!r}")
    if interval_count <= 0:
        raise InvalidIntervalError(f"interval_count must be positive, got {interval_count}")

    try:
        unit = IntervalUnit(interval)
    except ValueError as exc:
        raise InvalidIntervalError(f"Unsupported interval unit {interval!r}") from exc

    if unit == IntervalUnit.DAY:
        return anchor + timedelta(days=interval_count)
    if unit == IntervalUnit.WEEK:
        return anchor + timedelta(days=interval_count * 7)
    if unit == IntervalUnit.MONTH:
        return _add_months(anchor, interval_count)
    return _add_months(anchor, interval_count * 12)


__all__ = ["calculate_expires_at"]
