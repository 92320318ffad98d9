import os
import threading
from datetime import datetime, timedelta

os.environ['DATABASE_URL'] = 'sqlite://'
os.environ['BOOTSTRAP_JOBS_ON_IMPORT'] = '0'
os.environ['DEFAULT_TIMEZONE'] = 'UTC'

import pytest
import pytz

from app import app as flask_app
from backend.notifier import NotificationError
from models import db, User, CalendarEvent, RecurrenceRule, Reminder


def utc(year, month, day, hour=0, minute=0):
    return pytz.UTC.localize(datetime(year, month, day, hour, minute))


def utc_naive(value):
    return value.astimezone(pytz.UTC).replace(tzinfo=None)


class FakeNotifier:
    def __init__(self):
        self.sent = []
        self.fail_titles = set()
        self.result = True
        self._lock = threading.Lock()

    def send(self, recipient, subject, body, html_body=None):
        if any(subject == f"Reminder: {title}" for title in self.fail_titles):
            raise NotificationError("SMTP connection refused")
        with self._lock:
            self.sent.append({'recipient': recipient, 'subject': subject, 'body': body})
        return self.result


@pytest.fixture
def app():
    flask_app.config['TESTING'] = True
    flask_app.config['API_SHARED_KEY'] = None
    with flask_app.app_context():
        db.drop_all()
        db.create_all()
        yield flask_app
        db.session.remove()
        db.drop_all()
    flask_app.extensions.pop('reminder_notifier', None)


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def user(app):
    owner = User(username='ana', email='ana@example.com')
    db.session.add(owner)
    db.session.commit()
    return owner


@pytest.fixture
def add_event(app, user):
    def _add(title, start, end=None, timezone='UTC', is_all_day=False, rule=None,
             reminders=(), is_recurring=None, owner=None):
        event = CalendarEvent(
            user_id=(owner or user).id,
            title=title,
            start_at=utc_naive(start),
            end_at=utc_naive(end or start + timedelta(hours=1)),
            timezone=timezone,
            is_all_day=is_all_day,
            is_recurring=(rule is not None) if is_recurring is None else is_recurring,
        )
        db.session.add(event)
        db.session.flush()
        if rule:
            db.session.add(RecurrenceRule(event_id=event.id, **rule))
        for minutes in reminders:
            db.session.add(Reminder(event_id=event.id, minutes_before=minutes))
        db.session.commit()
        return event
    return _add
