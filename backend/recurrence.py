"""
Recurrence expansion: turn one recurring event plus its rule into the
concrete occurrences that overlap a window.

Every candidate is computed from the series origin (`step(origin, freq,
interval * k)`), so month-end clamping never drifts: a Jan 31 monthly event
lands on Feb 28/29, then back on Mar 31.
"""
from dataclasses import dataclass
from datetime import datetime, time, timedelta
from typing import List, Optional

from backend.calendar_math import step, units_between, validate_step
from backend.records import InvalidRuleError, InvalidWindowError, require_aware


@dataclass(frozen=True)
class Occurrence:
    """One concrete appearance of an event on the calendar. Never persisted."""
    event_id: int
    title: str
    start: datetime
    end: datetime
    description: Optional[str] = None
    color: Optional[str] = None
    is_all_day: bool = False
    is_recurring: bool = False
    sequence: int = 0

    @classmethod
    def from_event(cls, event, start=None, end=None, sequence=0):
        return cls(
            event_id=event.id,
            title=event.title,
            start=event.start if start is None else start,
            end=event.end if end is None else end,
            description=event.description,
            color=event.color,
            is_all_day=event.is_all_day,
            is_recurring=event.is_recurring,
            sequence=sequence,
        )

    def to_dict(self):
        return {
            'event_id': self.event_id,
            'title': self.title,
            'description': self.description,
            'start': self.start.isoformat(),
            'end': self.end.isoformat(),
            'day': self.start.date().isoformat(),
            'color': self.color,
            'is_all_day': self.is_all_day,
            'is_recurring': self.is_recurring,
            'sequence': self.sequence,
        }


def _wall(value):
    return value.replace(tzinfo=None)


def _shift_wall(instant, delta):
    """Add a wall-clock delta, keeping the zone (and fixing DST offsets for pytz zones)."""
    tz = instant.tzinfo
    moved = _wall(instant) + delta
    if hasattr(tz, 'localize'):
        return tz.localize(moved)
    return moved.replace(tzinfo=tz)


def _local_date(instant, tz):
    return instant.astimezone(tz).date()


def _last_day(start, end):
    # All-day events usually end at midnight of the following day (exclusive).
    if end > start and end.time() == time.min:
        return max(start.date(), end.date() - timedelta(days=1))
    return end.date()


def intersects(start, end, is_all_day, window_start, window_end):
    """Closed-interval overlap; all-day spans compare calendar dates in their own zone."""
    if is_all_day:
        tz = start.tzinfo
        return (
            start.date() <= _local_date(window_end, tz)
            and _last_day(start, end) >= _local_date(window_start, tz)
        )
    return start <= window_end and end >= window_start


def _is_after(candidate, limit, is_all_day):
    if is_all_day:
        return candidate.date() > _local_date(limit, candidate.tzinfo)
    return candidate > limit


def _first_candidate_index(event, rule, window_start):
    """Lower bound on the first index that can reach the window; skips dead cycles cheaply."""
    origin = event.start
    reach = window_start.astimezone(origin.tzinfo) - event.duration - timedelta(days=1)
    units = units_between(origin, reach, rule.frequency)
    return max(units // rule.interval - 1, 0)


def expand(event, rule, window_start, window_end) -> List[Occurrence]:
    """
    Occurrences of `event` under `rule` whose [start, end] overlaps
    [window_start, window_end], ascending by start.

    Stops once a candidate starts after window_end or after rule.until,
    whichever comes first. Raises InvalidRuleError for a bad rule and
    InvalidWindowError for naive or reversed bounds.
    """
    require_aware(window_start, 'window_start')
    require_aware(window_end, 'window_end')
    if window_start > window_end:
        raise InvalidWindowError("window_start is after window_end")
    if rule.event_id != event.id:
        raise InvalidRuleError(f"Rule belongs to event {rule.event_id}, not {event.id}")
    validate_step(rule.frequency, rule.interval)

    origin = event.start
    wall_duration = _wall(event.end) - _wall(event.start)
    index = _first_candidate_index(event, rule, window_start)

    occurrences = []
    while True:
        start = origin if index == 0 else step(origin, rule.frequency, rule.interval * index)
        if _is_after(start, window_end, event.is_all_day):
            break
        if rule.until is not None and _is_after(start, rule.until, event.is_all_day):
            break
        end = _shift_wall(start, wall_duration)
        if intersects(start, end, event.is_all_day, window_start, window_end):
            occurrences.append(Occurrence.from_event(event, start=start, end=end, sequence=index))
        index += 1
    return occurrences
