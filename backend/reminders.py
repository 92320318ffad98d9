"""
Reminder selection and dispatch.

A dispatch pass selects every reminder whose trigger time has passed and
whose latch is still open, sends one notification per reminder and then
closes the latch through the store. Each reminder moves through
pending -> sending -> sent | failed on its own; one failure never stops the
rest of the pass. The latch is only closed after a successful send, so a
crash anywhere before that leaves the reminder pending for the next pass.
"""
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

import pytz
from flask import current_app, has_app_context
from markupsafe import escape

from backend.notifier import NotificationError
from backend.records import require_aware

DEFAULT_DATE_FORMAT = '%B %d, %Y'
DEFAULT_TIME_FORMAT = '%H:%M'

PENDING = 'pending'
SENDING = 'sending'
SENT = 'sent'
FAILED = 'failed'

_TRANSITIONS = {
    PENDING: {SENDING, FAILED},
    SENDING: {SENT, FAILED},
    SENT: set(),
    FAILED: set(),
}


def _log(level, message, *args):
    if has_app_context():
        getattr(current_app.logger, level)(message, *args)


def _format_amount(value):
    rounded = round(value, 1)
    if rounded == int(rounded):
        return str(int(rounded))
    return f"{rounded:.1f}"


def humanize_lead_time(minutes):
    """30 -> '30 minutes', 120 -> '2 hours', 90 -> '1.5 hours', 1440 -> '1 day'."""
    if minutes < 60:
        amount, unit = minutes, 'minute'
    elif minutes < 1440:
        amount, unit = minutes / 60, 'hour'
    else:
        amount, unit = minutes / 1440, 'day'
    text = _format_amount(amount)
    return f"{text} {unit}" if text == '1' else f"{text} {unit}s"


@dataclass(frozen=True)
class RenderedReminder:
    subject: str
    title: str
    description: Optional[str]
    date_text: str
    time_text: str
    lead_time_text: str
    body: str
    html_body: str


def render_reminder(pending, date_format=DEFAULT_DATE_FORMAT, time_format=DEFAULT_TIME_FORMAT):
    """Subject and body fields for one reminder, dates shown in the event's own timezone."""
    event = pending.event
    date_text = event.start.strftime(date_format)
    time_text = 'All day' if event.is_all_day else event.start.strftime(time_format)
    lead_time_text = humanize_lead_time(pending.reminder.minutes_before)

    lines = [event.title]
    if event.description:
        lines.append(event.description)
    lines.append("")
    lines.append(f"Date: {date_text}")
    lines.append(f"Time: {time_text}")
    lines.append(f"Reminder: {lead_time_text} before")

    description_html = (
        f'<p style="color:#6b7280;">{escape(event.description)}</p>' if event.description else ''
    )
    html_body = f"""
<!doctype html>
<html>
  <body style="margin:0;padding:0;background:#ffffff;font-family:Arial, Helvetica, sans-serif;color:#121926;">
    <div style="max-width:600px;margin:0 auto;padding:20px;">
      <div style="font-size:24px;font-weight:800;margin-bottom:12px;color:#3b82f6;">Event Reminder</div>
      <div style="background:#f8f9fa;padding:20px;border-radius:8px;">
        <div style="font-size:18px;font-weight:700;">{escape(event.title)}</div>
        {description_html}
        <p><strong>Date:</strong> {escape(date_text)}</p>
        <p><strong>Time:</strong> {escape(time_text)}</p>
        <p><strong>Reminder:</strong> {escape(lead_time_text)} before</p>
      </div>
      <div style="color:#98a2b3;font-size:11px;margin-top:12px;">Automated reminder</div>
    </div>
  </body>
</html>
"""
    return RenderedReminder(
        subject=f"Reminder: {event.title}",
        title=event.title,
        description=event.description,
        date_text=date_text,
        time_text=time_text,
        lead_time_text=lead_time_text,
        body='\n'.join(lines),
        html_body=html_body,
    )


def select_due(store, now):
    """Reminders with an open latch whose event start minus lead time is at or before `now`. Read-only."""
    require_aware(now, 'now')
    return [
        pending for pending in store.get_pending_reminders()
        if not pending.reminder.notification_sent and pending.trigger_at <= now
    ]


@dataclass
class ReminderOutcome:
    reminder_id: int
    event_id: int
    event_title: str
    recipient: Optional[str]
    state: str = PENDING
    reason: Optional[str] = None
    marked: bool = False
    already_marked: bool = False

    @classmethod
    def for_pending(cls, pending):
        return cls(
            reminder_id=pending.reminder.id,
            event_id=pending.event.id,
            event_title=pending.event.title,
            recipient=pending.recipient,
        )

    def advance(self, new_state, reason=None):
        if new_state not in _TRANSITIONS[self.state]:
            raise ValueError(f"Reminder {self.reminder_id}: cannot go from {self.state} to {new_state}")
        self.state = new_state
        if reason is not None:
            self.reason = reason

    @property
    def status(self):
        if self.state == SENT:
            return 'sent' if self.marked else 'sent_not_marked'
        if self.state == FAILED:
            return 'failed'
        return 'cancelled'

    def to_dict(self):
        data = {
            'reminder_id': self.reminder_id,
            'event_id': self.event_id,
            'event_title': self.event_title,
            'recipient': self.recipient,
            'status': self.status,
        }
        if self.reason:
            data['error'] = self.reason
        if self.already_marked:
            data['already_marked'] = True
        return data


@dataclass
class DispatchReport:
    due: int = 0
    outcomes: List[ReminderOutcome] = field(default_factory=list)
    error: Optional[str] = None

    def _count(self, *statuses):
        return sum(1 for o in self.outcomes if o.status in statuses)

    @property
    def sent(self):
        return self._count('sent', 'sent_not_marked')

    @property
    def failed(self):
        return self._count('failed')

    @property
    def not_marked(self):
        return self._count('sent_not_marked')

    @property
    def cancelled(self):
        return self._count('cancelled')

    @property
    def processed(self):
        return self.sent + self.failed

    def to_dict(self):
        data = {
            'due': self.due,
            'processed': self.processed,
            'sent': self.sent,
            'failed': self.failed,
            'not_marked': self.not_marked,
            'cancelled': self.cancelled,
            'details': [o.to_dict() for o in self.outcomes],
        }
        if self.error:
            data['error'] = self.error
        return data


def _rejected_outcomes(store):
    outcomes = []
    for rejected in getattr(store, 'rejected_reminders', ()):
        outcome = ReminderOutcome(
            reminder_id=rejected.reminder_id,
            event_id=rejected.event_id,
            event_title=rejected.event_title,
            recipient=rejected.recipient,
        )
        outcome.advance(FAILED, reason=f"Invalid reminder: {rejected.reason}")
        outcomes.append(outcome)
    return outcomes


def _deliver(notifier, pending, rendered):
    if not pending.recipient:
        raise NotificationError("No recipient address")
    if not notifier.send(pending.recipient, rendered.subject, rendered.body, html_body=rendered.html_body):
        raise NotificationError("Notifier reported failure")


def _record_sent(store, outcome):
    try:
        flipped = store.mark_reminder_sent(outcome.reminder_id)
    except Exception as e:
        outcome.reason = f"Sent but not marked: {e}"
        _log('error', "Reminder %s sent but could not be marked: %s", outcome.reminder_id, e)
        return
    outcome.marked = True
    outcome.already_marked = not flipped


def dispatch_pass(store, notifier, now=None, max_workers=1, cancel_event=None,
                  date_format=DEFAULT_DATE_FORMAT, time_format=DEFAULT_TIME_FORMAT):
    """
    Run one dispatch pass and return a DispatchReport.

    Sends run on up to `max_workers` threads; store access stays on the
    calling thread. Setting `cancel_event` stops the pass before the next
    batch; reminders not yet started are reported as cancelled and stay
    pending. Rows the store rejected as malformed show up as failed and are
    never marked.
    """
    now = now or datetime.now(pytz.UTC)
    require_aware(now, 'now')
    try:
        due = select_due(store, now)
    except Exception as e:
        _log('error', "Reminder selection failed, pass aborted: %s", e)
        return DispatchReport(error=f"Could not select due reminders: {e}")

    outcomes = [ReminderOutcome.for_pending(p) for p in due]
    report = DispatchReport(due=len(due), outcomes=_rejected_outcomes(store) + outcomes)
    if not due:
        _log('info', "No pending reminders due at %s (%s rejected)", now.isoformat(), report.failed)
        return report

    workers = max(1, int(max_workers or 1))
    items = list(zip(due, outcomes))
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix='reminder-send') as pool:
        for offset in range(0, len(items), workers):
            if cancel_event is not None and cancel_event.is_set():
                _log('info', "Reminder pass cancelled with %s reminder(s) not started", len(items) - offset)
                break
            futures = {}
            for pending, outcome in items[offset:offset + workers]:
                outcome.advance(SENDING)
                try:
                    rendered = render_reminder(pending, date_format=date_format, time_format=time_format)
                except Exception as e:
                    outcome.advance(FAILED, reason=f"Could not render reminder: {e}")
                    continue
                futures[pool.submit(_deliver, notifier, pending, rendered)] = outcome

            for future in as_completed(futures):
                outcome = futures[future]
                try:
                    future.result()
                except Exception as e:
                    outcome.advance(FAILED, reason=str(e) or e.__class__.__name__)
                    _log('error', "Error processing reminder %s: %s", outcome.reminder_id, outcome.reason)
                    continue
                outcome.advance(SENT)
                _record_sent(store, outcome)

    _log(
        'info',
        "Reminder dispatch due=%s processed=%s sent=%s failed=%s not_marked=%s cancelled=%s",
        report.due,
        report.processed,
        report.sent,
        report.failed,
        report.not_marked,
        report.cancelled
    )
    return report
