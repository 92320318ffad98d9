"""Reminder routes: inspect what is due and trigger a dispatch pass on demand."""
from datetime import datetime

import pytz
from flask import current_app, jsonify, request

from background_jobs import run_reminder_pass, start_app_context_job
from backend.reminders import humanize_lead_time, select_due
from backend.store import CalendarStore, StoreError
from services.validation_service import parse_bool, parse_instant


def _authorized():
    shared_key = current_app.config.get('API_SHARED_KEY')
    if not shared_key:
        return True
    return request.headers.get('X-API-Key') == shared_key


def _requested_now():
    raw = request.args.get('now')
    if raw is None:
        return datetime.now(pytz.UTC), None
    tz = pytz.timezone(current_app.config.get('DEFAULT_TIMEZONE', 'UTC'))
    now = parse_instant(raw, tz)
    if now is None:
        return None, 'Invalid now (expected ISO datetime)'
    return now, None


def api_due_reminders():
    """List reminders that a dispatch pass would send right now. Never marks anything."""
    if not _authorized():
        return jsonify({'error': 'Invalid API key'}), 401
    now, error = _requested_now()
    if error:
        return jsonify({'error': error}), 400

    store = CalendarStore(default_timezone=current_app.config.get('DEFAULT_TIMEZONE', 'UTC'))
    try:
        due = select_due(store, now)
    except StoreError as e:
        current_app.logger.error(f"Error selecting due reminders: {e}")
        return jsonify({'error': 'Reminder store unavailable'}), 503

    return jsonify({
        'now': now.isoformat(),
        'count': len(due),
        'reminders': [
            {
                'reminder_id': p.reminder.id,
                'event_id': p.event.id,
                'event_title': p.event.title,
                'event_start': p.event.start.isoformat(),
                'remind_at': p.trigger_at.isoformat(),
                'lead_time': humanize_lead_time(p.reminder.minutes_before),
                'recipient': p.recipient,
            }
            for p in due
        ]
    })


def api_dispatch_reminders():
    """Run one dispatch pass now (or in the background with ?background=1)."""
    if not _authorized():
        return jsonify({'error': 'Invalid API key'}), 401

    app = current_app._get_current_object()
    if parse_bool(request.args.get('background')):
        start_app_context_job(
            app,
            run_reminder_pass,
            args=(app,),
            on_error=lambda exc: app.logger.error(f"Background reminder pass failed: {exc}")
        )
        return jsonify({'status': 'started'}), 202

    current_app.logger.info("Manual reminder pass triggered")
    summary = run_reminder_pass(app)
    if summary is None:
        return jsonify({'status': 'busy', 'error': 'Another reminder pass is running'}), 409
    status_code = 503 if summary.get('error') else 200
    return jsonify(summary), status_code
