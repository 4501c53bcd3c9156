"""
Calendar arithmetic for subscription billing periods.

Period ``i`` of a subscription starts at ``anchor + i * step``. Computing
every boundary from the anchor (instead of from the previous boundary)
keeps month-end anchors stable: a subscription anchored on Jan 31 bills on
Feb 28/29, then Mar 31, never drifting to the 28th.
"""
from datetime import datetime
from typing import Tuple

from dateutil.relativedelta import relativedelta

from native_payments.database.models import BILLING_INTERVALS

# Average days per interval unit, for normalising prices to a month
_DAYS_PER_UNIT = {
    "daily": 1.0,
    "weekly": 7.0,
    "monthly": 365.25 / 12,
    "yearly": 365.25,
}


def validate_interval(interval: str, multiplier: int) -> None:
    """
    Validate a billing interval.

    Raises:
        ValueError: If the interval is unknown or the multiplier outside 1..12
    """
    if interval not in BILLING_INTERVALS:
        raise ValueError(
            f"Invalid billing interval '{interval}'. Must be one of: {list(BILLING_INTERVALS)}"
        )
    if not 1 <= multiplier <= 12:
        raise ValueError("Interval multiplier must be between 1 and 12")


def interval_delta(interval: str, multiplier: int = 1, count: int = 1) -> relativedelta:
    """Return the relativedelta covering ``count`` periods."""
    validate_interval(interval, multiplier)
    steps = multiplier * count
    if interval == "daily":
        return relativedelta(days=steps)
    if interval == "weekly":
        return relativedelta(weeks=steps)
    if interval == "monthly":
        return relativedelta(months=steps)
    return relativedelta(years=steps)


def add_interval(moment: datetime, interval: str, multiplier: int = 1, count: int = 1) -> datetime:
    """
    Add ``count`` billing periods to a moment.

    Month and year arithmetic clamp to the last day of shorter months.
    """
    return moment + interval_delta(interval, multiplier, count)


def period_bounds(
    anchor: datetime, interval: str, multiplier: int, index: int
) -> Tuple[datetime, datetime]:
    """
    Get the start and end of billing period ``index``.

    Args:
        anchor: Billing cycle anchor (start of period 0)
        interval: daily/weekly/monthly/yearly
        multiplier: Interval multiplier (1..12)
        index: Zero-based period index

    Returns:
        Tuple[datetime, datetime]: Period start (inclusive) and end (exclusive)
    """
    if index < 0:
        raise ValueError("Period index must be non-negative")
    start = add_interval(anchor, interval, multiplier, index)
    end = add_interval(anchor, interval, multiplier, index + 1)
    return start, end


def monthly_equivalent_cents(total_cents: int, interval: str, multiplier: int = 1) -> int:
    """
    Normalise a recurring price to a monthly amount (used for MRR).

    Args:
        total_cents: Price charged per period
        interval: Billing interval
        multiplier: Interval multiplier

    Returns:
        int: Monthly equivalent in cents, rounded to the nearest cent
    """
    validate_interval(interval, multiplier)
    if interval == "monthly":
        return round(total_cents / multiplier)
    if interval == "yearly":
        return round(total_cents / (12 * multiplier))
    period_days = _DAYS_PER_UNIT[interval] * multiplier
    return round(total_cents * _DAYS_PER_UNIT["monthly"] / period_days)
