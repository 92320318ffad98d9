"""SQLAlchemy-backed store: the only place recurrence/reminder code touches the database."""
from datetime import datetime, timedelta
from typing import List, Optional

from flask import current_app, has_app_context
from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import joinedload

from backend.records import (
    EventRecord,
    InvalidRecordError,
    PendingReminder,
    RejectedReminder,
    ReminderRecord,
    RuleRecord,
    to_utc_naive,
)
from models import db, CalendarEvent, RecurrenceRule, Reminder, User


class StoreError(Exception):
    """The database could not be read or written."""


def _log_warning(message):
    if has_app_context():
        current_app.logger.warning(message)


class CalendarStore:
    def __init__(self, session=None, default_timezone='UTC'):
        self.session = session if session is not None else db.session
        self.default_timezone = default_timezone
        self.rejected_reminders = []

    def _event_record(self, event):
        return EventRecord.from_model(event, self.default_timezone)

    def get_event(self, event_id) -> Optional[EventRecord]:
        try:
            event = self.session.get(CalendarEvent, event_id)
        except SQLAlchemyError as exc:
            raise StoreError(f"Could not load event {event_id}: {exc}") from exc
        return self._event_record(event) if event else None

    def get_recurrence_rule(self, event_id) -> Optional[RuleRecord]:
        try:
            rule = self.session.query(RecurrenceRule).filter_by(event_id=event_id).first()
        except SQLAlchemyError as exc:
            raise StoreError(f"Could not load recurrence rule for event {event_id}: {exc}") from exc
        return RuleRecord.from_model(rule) if rule else None

    def get_user_events(self, user_id, window_start, window_end):
        """
        Return (single_events, [(recurring_event, rule_or_None), ...]) that may touch the window.
        The SQL filter is padded by a day for all-day events; callers do the exact overlap test.
        """
        start_utc = to_utc_naive(window_start) - timedelta(days=1)
        end_utc = to_utc_naive(window_end) + timedelta(days=1)
        try:
            single_rows = self.session.query(CalendarEvent).filter(
                CalendarEvent.user_id == user_id,
                CalendarEvent.is_recurring.is_(False),
                CalendarEvent.start_at <= end_utc,
                CalendarEvent.end_at >= start_utc
            ).order_by(CalendarEvent.start_at.asc(), CalendarEvent.id.asc()).all()
            recurring_rows = self.session.query(CalendarEvent).options(
                joinedload(CalendarEvent.recurrence_rule)
            ).filter(
                CalendarEvent.user_id == user_id,
                CalendarEvent.is_recurring.is_(True),
                CalendarEvent.start_at <= end_utc
            ).order_by(CalendarEvent.start_at.asc(), CalendarEvent.id.asc()).all()
        except SQLAlchemyError as exc:
            raise StoreError(f"Could not load events for user {user_id}: {exc}") from exc

        singles = []
        for row in single_rows:
            try:
                singles.append(self._event_record(row))
            except InvalidRecordError as exc:
                _log_warning(f"Skipping malformed event {row.id}: {exc}")

        recurring = []
        for row in recurring_rows:
            try:
                event = self._event_record(row)
            except InvalidRecordError as exc:
                _log_warning(f"Skipping malformed event {row.id}: {exc}")
                continue
            rule = None
            if row.recurrence_rule is not None:
                try:
                    rule = RuleRecord.from_model(row.recurrence_rule)
                except InvalidRecordError as exc:
                    _log_warning(f"Invalid recurrence rule for event {row.id}: {exc}")
            recurring.append((event, rule))
        return singles, recurring

    def get_pending_reminders(self) -> List[PendingReminder]:
        """
        Every reminder whose latch is still open, joined with its event and owner.
        Rows that fail validation are left out and collected in `rejected_reminders`.
        """
        try:
            rows = self.session.query(Reminder, CalendarEvent, User).join(
                CalendarEvent, Reminder.event_id == CalendarEvent.id
            ).join(
                User, CalendarEvent.user_id == User.id
            ).filter(
                Reminder.notification_sent.is_(False)
            ).order_by(Reminder.id.asc()).all()
        except SQLAlchemyError as exc:
            raise StoreError(f"Could not load pending reminders: {exc}") from exc

        pending = []
        self.rejected_reminders = []
        for reminder, event, user in rows:
            try:
                pending.append(PendingReminder(
                    reminder=ReminderRecord.from_model(reminder),
                    event=self._event_record(event),
                    recipient=user.email or None,
                ))
            except InvalidRecordError as exc:
                _log_warning(f"Malformed reminder {reminder.id}: {exc}")
                self.rejected_reminders.append(RejectedReminder(
                    reminder_id=reminder.id,
                    event_id=event.id,
                    event_title=event.title,
                    recipient=user.email or None,
                    reason=str(exc),
                ))
        return pending

    def mark_reminder_sent(self, reminder_id, sent_at=None) -> bool:
        """
        Close the latch only if it is still open.
        Returns False when another writer already marked it.
        """
        try:
            result = self.session.execute(
                update(Reminder)
                .where(Reminder.id == reminder_id, Reminder.notification_sent.is_(False))
                .values(notification_sent=True, sent_at=sent_at or datetime.utcnow())
            )
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise StoreError(f"Could not mark reminder {reminder_id} as sent: {exc}") from exc
        return result.rowcount == 1
