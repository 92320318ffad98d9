from flask_sqlalchemy import SQLAlchemy
from datetime import datetime

db = SQLAlchemy()

RECURRENCE_FREQUENCIES = ('daily', 'weekly', 'monthly', 'yearly')


class User(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(80), unique=True, nullable=False)
    email = db.Column(db.String(120), unique=True, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    # Relationships
    events = db.relationship('CalendarEvent', backref='owner', lazy=True, cascade="all, delete-orphan")

    def to_dict(self):
        return {
            'id': self.id,
            'username': self.username,
            'email': self.email,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }


class CalendarEvent(db.Model):
    """
    Calendar entry owned by a single user.
    start_at/end_at are stored as naive UTC; `timezone` names the zone whose
    calendar the event (and its recurrence) follows.
    """
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    title = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)
    start_at = db.Column(db.DateTime, nullable=False, index=True)
    end_at = db.Column(db.DateTime, nullable=False)
    timezone = db.Column(db.String(64), nullable=True)  # e.g. 'America/Sao_Paulo'; falls back to DEFAULT_TIMEZONE
    is_all_day = db.Column(db.Boolean, default=False)
    color = db.Column(db.String(20), nullable=True, default='#3b82f6')
    is_recurring = db.Column(db.Boolean, default=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    recurrence_rule = db.relationship(
        'RecurrenceRule',
        backref='event',
        uselist=False,
        lazy=True,
        cascade="all, delete-orphan"
    )
    reminders = db.relationship('Reminder', backref='event', lazy=True, cascade="all, delete-orphan")

    def to_dict(self):
        return {
            'id': self.id,
            'user_id': self.user_id,
            'title': self.title,
            'description': self.description,
            'start_at': self.start_at.isoformat() if self.start_at else None,
            'end_at': self.end_at.isoformat() if self.end_at else None,
            'timezone': self.timezone,
            'is_all_day': self.is_all_day,
            'color': self.color,
            'is_recurring': self.is_recurring,
            'recurrence': self.recurrence_rule.to_dict() if self.recurrence_rule else None,
            'reminders': [r.to_dict() for r in (self.reminders or [])],
        }


class RecurrenceRule(db.Model):
    """Repeat rule for a recurring CalendarEvent (one rule per event)."""
    id = db.Column(db.Integer, primary_key=True)
    event_id = db.Column(db.Integer, db.ForeignKey('calendar_event.id'), nullable=False, unique=True)
    frequency = db.Column(db.String(20), nullable=False)  # daily | weekly | monthly | yearly
    interval = db.Column(db.Integer, nullable=False, default=1)
    until = db.Column(db.DateTime, nullable=True)  # inclusive, naive UTC; None = unbounded
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'event_id': self.event_id,
            'frequency': self.frequency,
            'interval': self.interval,
            'until': self.until.isoformat() if self.until else None,
        }


class Reminder(db.Model):
    """Lead-time reminder for an event. notification_sent is only ever set, never cleared, by dispatch."""
    id = db.Column(db.Integer, primary_key=True)
    event_id = db.Column(db.Integer, db.ForeignKey('calendar_event.id'), nullable=False, index=True)
    minutes_before = db.Column(db.Integer, nullable=False, default=0)
    notification_sent = db.Column(db.Boolean, nullable=False, default=False, index=True)
    sent_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'event_id': self.event_id,
            'minutes_before': self.minutes_before,
            'notification_sent': self.notification_sent,
            'sent_at': self.sent_at.isoformat() if self.sent_at else None,
        }


class JobLock(db.Model):
    """Row-per-job lock so only one worker runs a background job at a time."""
    id = db.Column(db.Integer, primary_key=True)
    job_name = db.Column(db.String(80), unique=True, nullable=False)
    locked_at = db.Column(db.DateTime, nullable=False)
    locked_by = db.Column(db.String(80), nullable=True)
