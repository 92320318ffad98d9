"""
Date stepping for recurring events.

All arithmetic happens on the instant's own wall-clock fields. Months and
years that lack the original day-of-month clamp to their last day
(Jan 31 + 1 month -> Feb 28/29, Feb 29 + 1 year -> Feb 28).
"""
import calendar
from datetime import datetime, timedelta

from backend.records import FREQUENCIES, InvalidRuleError


def validate_step(frequency, interval):
    """Raise InvalidRuleError unless frequency/interval describe a usable rule."""
    if frequency not in FREQUENCIES:
        raise InvalidRuleError(f"Unknown frequency: {frequency!r}")
    if isinstance(interval, bool) or not isinstance(interval, int):
        raise InvalidRuleError(f"Interval must be an integer, got {interval!r}")
    if interval <= 0:
        raise InvalidRuleError(f"Interval must be >= 1, got {interval}")


def _clamped_day(year, month, day):
    _, last_dom = calendar.monthrange(year, month)
    return min(day, last_dom)


def add_months(value, months):
    total = value.year * 12 + (value.month - 1) + months
    year, month = divmod(total, 12)
    month += 1
    return value.replace(year=year, month=month, day=_clamped_day(year, month, value.day))


def add_years(value, years):
    year = value.year + years
    return value.replace(year=year, day=_clamped_day(year, value.month, value.day))


def _relocalize(original, naive_wall):
    """Attach original's zone to a new wall-clock time, fixing the offset for pytz zones."""
    tz = original.tzinfo
    if tz is None:
        return naive_wall
    if hasattr(tz, 'localize'):
        return tz.localize(naive_wall)
    return naive_wall.replace(tzinfo=tz)


def step(instant, frequency, interval):
    """Move `instant` forward by `interval` units of `frequency`."""
    validate_step(frequency, interval)
    wall = instant.replace(tzinfo=None) if isinstance(instant, datetime) else instant

    if frequency == 'daily':
        moved = wall + timedelta(days=interval)
    elif frequency == 'weekly':
        moved = wall + timedelta(weeks=interval)
    elif frequency == 'monthly':
        moved = add_months(wall, interval)
    else:
        moved = add_years(wall, interval)

    if isinstance(instant, datetime):
        return _relocalize(instant, moved)
    return moved


def units_between(start, end, frequency):
    """
    Whole frequency units from `start` to `end` by calendar fields, never an overestimate.
    Used to skip ahead when a window lies far after a series origin.
    """
    if end <= start:
        return 0
    if frequency in ('daily', 'weekly'):
        days = (end.date() - start.date()).days - 1
        if frequency == 'weekly':
            return max(days // 7, 0)
        return max(days, 0)
    months = (end.year - start.year) * 12 + (end.month - start.month) - 1
    if frequency == 'monthly':
        return max(months, 0)
    return max(months // 12, 0)
