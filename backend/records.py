"""
Validated records handed to the recurrence and reminder code.

Rows coming out of the database (or any other store) are converted here,
once, into small immutable records with timezone-aware instants. Anything
malformed is rejected at this edge instead of deep inside expansion or
dispatch.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

import pytz

FREQUENCIES = ('daily', 'weekly', 'monthly', 'yearly')


class InvalidRecordError(ValueError):
    """A stored row cannot be turned into a usable record."""


class InvalidRuleError(InvalidRecordError):
    """Recurrence rule with an unknown frequency or a non-positive interval."""


class InvalidWindowError(ValueError):
    """Window bounds are naive or reversed."""


def get_zone(name, default='UTC'):
    try:
        return pytz.timezone(name or default)
    except pytz.UnknownTimeZoneError as exc:
        raise InvalidRecordError(f"Unknown timezone: {name or default!r}") from exc


def from_utc_naive(value, tz):
    """Interpret a naive UTC timestamp and express it in `tz`."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = pytz.UTC.localize(value)
    return value.astimezone(tz)


def to_utc_naive(value):
    """Inverse of from_utc_naive, for query parameters."""
    if value.tzinfo is None:
        raise InvalidWindowError("Expected a timezone-aware datetime")
    return value.astimezone(pytz.UTC).replace(tzinfo=None)


def require_aware(value, label):
    if not isinstance(value, datetime) or value.tzinfo is None or value.utcoffset() is None:
        raise InvalidWindowError(f"{label} must be a timezone-aware datetime")
    return value


@dataclass(frozen=True)
class EventRecord:
    id: int
    user_id: Optional[int]
    title: str
    start: datetime
    end: datetime
    description: Optional[str] = None
    is_all_day: bool = False
    color: Optional[str] = None
    is_recurring: bool = False

    def __post_init__(self):
        if not self.title or not str(self.title).strip():
            raise InvalidRecordError(f"Event {self.id} has no title")
        for label, value in (('start', self.start), ('end', self.end)):
            if not isinstance(value, datetime) or value.tzinfo is None:
                raise InvalidRecordError(f"Event {self.id} {label} must be timezone-aware")
        if self.end < self.start:
            raise InvalidRecordError(f"Event {self.id} ends before it starts")

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    @classmethod
    def from_model(cls, event, default_timezone='UTC'):
        tz = get_zone(event.timezone, default_timezone)
        start = from_utc_naive(event.start_at, tz)
        end = from_utc_naive(event.end_at, tz) if event.end_at else start
        if start is None:
            raise InvalidRecordError(f"Event {event.id} has no start")
        return cls(
            id=event.id,
            user_id=event.user_id,
            title=event.title,
            description=event.description or None,
            start=start,
            end=end,
            is_all_day=bool(event.is_all_day),
            color=event.color,
            is_recurring=bool(event.is_recurring),
        )


@dataclass(frozen=True)
class RuleRecord:
    event_id: int
    frequency: str
    interval: int = 1
    until: Optional[datetime] = None

    def __post_init__(self):
        if self.frequency not in FREQUENCIES:
            raise InvalidRuleError(f"Unknown frequency: {self.frequency!r}")
        if isinstance(self.interval, bool) or not isinstance(self.interval, int):
            raise InvalidRuleError(f"Interval must be an integer, got {self.interval!r}")
        if self.interval <= 0:
            raise InvalidRuleError(f"Interval must be >= 1, got {self.interval}")
        if self.until is not None and (not isinstance(self.until, datetime) or self.until.tzinfo is None):
            raise InvalidRuleError("Rule 'until' must be timezone-aware")

    @classmethod
    def from_model(cls, rule):
        frequency = (rule.frequency or '').strip().lower()
        interval = 1 if rule.interval is None else rule.interval
        return cls(
            event_id=rule.event_id,
            frequency=frequency,
            interval=interval,
            until=from_utc_naive(rule.until, pytz.UTC),
        )


@dataclass(frozen=True)
class ReminderRecord:
    id: int
    event_id: int
    minutes_before: int = 0
    notification_sent: bool = False

    def __post_init__(self):
        if isinstance(self.minutes_before, bool) or not isinstance(self.minutes_before, int):
            raise InvalidRecordError(f"Reminder {self.id} minutes_before must be an integer")
        if self.minutes_before < 0:
            raise InvalidRecordError(f"Reminder {self.id} minutes_before must be >= 0")

    @classmethod
    def from_model(cls, reminder):
        return cls(
            id=reminder.id,
            event_id=reminder.event_id,
            minutes_before=reminder.minutes_before or 0,
            notification_sent=bool(reminder.notification_sent),
        )


@dataclass(frozen=True)
class PendingReminder:
    """A reminder joined with the event it points at and who should hear about it."""
    reminder: ReminderRecord
    event: EventRecord
    recipient: Optional[str] = None

    @property
    def trigger_at(self) -> datetime:
        return self.event.start - timedelta(minutes=self.reminder.minutes_before)


@dataclass(frozen=True)
class RejectedReminder:
    """An open reminder row that failed validation; reported as failed instead of sent."""
    reminder_id: int
    event_id: Optional[int]
    event_title: Optional[str]
    recipient: Optional[str]
    reason: str
