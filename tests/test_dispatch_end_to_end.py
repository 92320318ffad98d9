import threading
from datetime import datetime, timedelta

from background_jobs import REMINDER_JOB_NAME, run_reminder_pass, start_app_context_job
from conftest import utc
from models import db, JobLock, Reminder


def reminder_rows():
    db.session.expire_all()
    return db.session.query(Reminder).order_by(Reminder.id).all()


def test_reminder_fires_once_at_trigger_time(app, add_event, notifier):
    add_event('Standup', utc(2025, 3, 10, 9), reminders=(15,))

    early = run_reminder_pass(app, now=utc(2025, 3, 10, 8, 44), notifier=notifier)
    assert early['due'] == 0
    assert notifier.sent == []

    on_time = run_reminder_pass(app, now=utc(2025, 3, 10, 8, 46), notifier=notifier)
    assert on_time['sent'] == 1
    assert on_time['details'][0]['status'] == 'sent'
    assert notifier.sent[0]['recipient'] == 'ana@example.com'
    assert notifier.sent[0]['subject'] == 'Reminder: Standup'
    assert 'Reminder: 15 minutes before' in notifier.sent[0]['body']
    row = reminder_rows()[0]
    assert row.notification_sent is True
    assert row.sent_at is not None

    later = run_reminder_pass(app, now=utc(2025, 3, 10, 8, 50), notifier=notifier)
    assert later['due'] == 0
    assert len(notifier.sent) == 1


def test_failed_send_stays_pending(app, add_event, notifier):
    add_event('Standup', utc(2025, 3, 10, 9), reminders=(15,))
    add_event('Review', utc(2025, 3, 10, 9), reminders=(15,))
    notifier.fail_titles.add('Review')

    summary = run_reminder_pass(app, now=utc(2025, 3, 10, 9), notifier=notifier)

    assert summary['sent'] == 1
    assert summary['failed'] == 1
    assert [row.notification_sent for row in reminder_rows()] == [True, False]


def test_fresh_lock_skips_the_pass(app, add_event, notifier):
    add_event('Standup', utc(2025, 3, 10, 9), reminders=(15,))
    db.session.add(JobLock(job_name=REMINDER_JOB_NAME, locked_at=datetime.utcnow(), locked_by='worker-2'))
    db.session.commit()

    assert run_reminder_pass(app, now=utc(2025, 3, 10, 9), notifier=notifier) is None
    assert notifier.sent == []
    assert reminder_rows()[0].notification_sent is False


def test_stale_lock_is_taken_over_and_released(app, add_event, notifier):
    add_event('Standup', utc(2025, 3, 10, 9), reminders=(15,))
    db.session.add(JobLock(
        job_name=REMINDER_JOB_NAME,
        locked_at=datetime.utcnow() - timedelta(minutes=30),
        locked_by='crashed-worker'
    ))
    db.session.commit()

    summary = run_reminder_pass(app, now=utc(2025, 3, 10, 9), notifier=notifier)

    assert summary['sent'] == 1
    db.session.expire_all()
    assert db.session.query(JobLock).filter_by(job_name=REMINDER_JOB_NAME).count() == 0


def test_dispatch_route_runs_a_pass(app, client, add_event, notifier):
    app.extensions['reminder_notifier'] = notifier
    add_event('Standup', utc(2025, 3, 10, 9), reminders=(15,))

    response = client.post('/api/reminders/dispatch')

    assert response.status_code == 200
    assert response.get_json()['sent'] == 1
    assert len(notifier.sent) == 1


def test_dispatch_route_requires_shared_key(app, client, notifier):
    app.extensions['reminder_notifier'] = notifier
    app.config['API_SHARED_KEY'] = 'secret'

    assert client.post('/api/reminders/dispatch').status_code == 401
    assert client.get('/api/reminders/due').status_code == 401
    response = client.post('/api/reminders/dispatch', headers={'X-API-Key': 'secret'})
    assert response.status_code == 200


def test_dispatch_route_reports_busy(app, client, notifier):
    app.extensions['reminder_notifier'] = notifier
    db.session.add(JobLock(job_name=REMINDER_JOB_NAME, locked_at=datetime.utcnow(), locked_by='worker-2'))
    db.session.commit()

    response = client.post('/api/reminders/dispatch')

    assert response.status_code == 409
    assert response.get_json()['status'] == 'busy'


def test_dispatch_route_in_background(app, client, monkeypatch):
    started = []
    monkeypatch.setattr(
        'services.reminder_routes.start_app_context_job',
        lambda app, target, args=(), kwargs=None, on_error=None: started.append((target, args))
    )

    response = client.post('/api/reminders/dispatch?background=1')

    assert response.status_code == 202
    assert response.get_json() == {'status': 'started'}
    assert started == [(run_reminder_pass, (app,))]


def test_due_route_lists_without_marking(app, client, add_event):
    add_event('Standup', utc(2025, 3, 10, 9), reminders=(15, 60))

    response = client.get('/api/reminders/due?now=2025-03-10T08:50:00Z')

    data = response.get_json()
    assert response.status_code == 200
    assert data['count'] == 2
    assert sorted(r['lead_time'] for r in data['reminders']) == ['1 hour', '15 minutes']
    assert all(not row.notification_sent for row in reminder_rows())

    assert client.get('/api/reminders/due?now=yesterday').status_code == 400


def test_calendar_route_returns_merged_window(app, client, user, add_event):
    add_event('Dentist', utc(2025, 3, 12, 15))
    add_event('Standup', utc(2025, 3, 10, 9), rule={'frequency': 'daily'})

    response = client.get(
        '/api/calendar/occurrences?start=2025-03-11&end=2025-03-12',
        headers={'X-User-Id': str(user.id)}
    )

    data = response.get_json()
    assert response.status_code == 200
    assert [(o['title'], o['day']) for o in data['occurrences']] == [
        ('Standup', '2025-03-11'),
        ('Standup', '2025-03-12'),
        ('Dentist', '2025-03-12'),
    ]
    assert data['count'] == 3


def test_calendar_route_validates_input(app, client, user):
    headers = {'X-User-Id': str(user.id)}
    assert client.get('/api/calendar/occurrences?start=2025-03-11&end=2025-03-12').status_code == 401
    assert client.get('/api/calendar/occurrences?start=2025-03-12', headers=headers).status_code == 400
    bad_order = client.get('/api/calendar/occurrences?start=2025-03-12&end=2025-03-11', headers=headers)
    assert bad_order.status_code == 400
    bad_zone = client.get('/api/calendar/occurrences?start=2025-03-11&end=2025-03-12&tz=Mars/Base',
                          headers=headers)
    assert bad_zone.status_code == 400


def test_app_context_job_runs_target_and_reports_errors(app):
    done = threading.Event()
    errors = []

    def target(value):
        assert value == 'ok'
        done.set()

    start_app_context_job(app, target, args=('ok',)).join(timeout=5)
    assert done.is_set()

    def broken():
        raise RuntimeError('boom')

    start_app_context_job(app, broken, on_error=errors.append).join(timeout=5)
    assert [str(e) for e in errors] == ['boom']


def test_unreachable_lock_table_reports_an_error(app, client, add_event, notifier):
    app.extensions['reminder_notifier'] = notifier
    add_event('Standup', utc(2025, 3, 10, 9), reminders=(15,))
    db.session.commit()
    JobLock.__table__.drop(db.engine)

    summary = run_reminder_pass(app, now=utc(2025, 3, 10, 9), notifier=notifier)
    assert summary['processed'] == 0
    assert 'reminder_dispatch lock' in summary['error']

    response = client.post('/api/reminders/dispatch')
    assert response.status_code == 503
    assert response.get_json()['processed'] == 0
    assert notifier.sent == []
    assert reminder_rows()[0].notification_sent is False


def test_malformed_reminder_shows_up_as_failed(app, add_event, notifier):
    event = add_event('Standup', utc(2025, 3, 10, 9), reminders=(15,))
    db.session.add(Reminder(event_id=event.id, minutes_before=-5))
    db.session.commit()

    summary = run_reminder_pass(app, now=utc(2025, 3, 10, 9), notifier=notifier)

    assert summary['sent'] == 1
    assert summary['failed'] == 1
    failed = [d for d in summary['details'] if d['status'] == 'failed']
    assert failed[0]['error'].startswith('Invalid reminder:')
    assert [row.notification_sent for row in reminder_rows()] == [True, False]
