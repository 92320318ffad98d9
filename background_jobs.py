import os
import threading
from datetime import timedelta

from apscheduler.schedulers.background import BackgroundScheduler

from backend.job_lock import JobLockError, acquire_job_lock, release_job_lock
from backend.notifier import EmailNotifier
from backend.reminders import DispatchReport, dispatch_pass
from backend.store import CalendarStore

REMINDER_JOB_NAME = 'reminder_dispatch'

scheduler = None


def start_daemon_thread(target, args=(), kwargs=None):
    """Start a daemon thread with a consistent helper API."""
    thread = threading.Thread(target=target, args=args, kwargs=kwargs or {}, daemon=True)
    thread.start()
    return thread


def run_reminder_pass(app, now=None, notifier=None, cancel_event=None):
    """
    Run one reminder dispatch pass inside the app context.
    Returns the report dict, or None when another worker holds the pass lock.
    A lock table that cannot be reached aborts the pass with an error report.
    """
    with app.app_context():
        stale_after = timedelta(minutes=app.config.get('REMINDER_LOCK_STALE_MINUTES', 5))
        try:
            token = acquire_job_lock(REMINDER_JOB_NAME, stale_after=stale_after)
        except JobLockError as e:
            app.logger.error(f"Reminder pass aborted: {e}")
            return DispatchReport(error=str(e)).to_dict()
        if token is None:
            return None
        try:
            store = CalendarStore(default_timezone=app.config.get('DEFAULT_TIMEZONE', 'UTC'))
            report = dispatch_pass(
                store,
                notifier or app.extensions.get('reminder_notifier') or EmailNotifier.from_env(),
                now=now,
                max_workers=app.config.get('REMINDER_MAX_WORKERS', 4),
                cancel_event=cancel_event,
                date_format=app.config.get('REMINDER_DATE_FORMAT', '%B %d, %Y'),
                time_format=app.config.get('REMINDER_TIME_FORMAT', '%H:%M'),
            )
            return report.to_dict()
        finally:
            release_job_lock(REMINDER_JOB_NAME, token)


def start_app_context_job(app, target, args=(), kwargs=None, on_error=None):
    """
    Run a callable in a daemon thread inside the provided Flask app context.
    """

    def _run():
        with app.app_context():
            try:
                target(*args, **(kwargs or {}))
            except Exception as exc:
                if on_error:
                    on_error(exc)

    return start_daemon_thread(_run)


def _scheduled_reminder_pass(app):
    try:
        run_reminder_pass(app)
    except Exception as e:
        app.logger.error(f"Error in scheduled reminder pass: {e}")


def start_scheduler(app):
    """Start the background scheduler that runs reminder passes on an interval."""
    global scheduler
    if os.environ.get('ENABLE_REMINDER_JOBS', '1') != '1':
        return None
    if scheduler and scheduler.running:
        return scheduler
    # Avoid double-start in Flask debug reloader
    if app.debug and os.environ.get('WERKZEUG_RUN_MAIN') != 'true':
        return None
    scheduler = BackgroundScheduler(timezone=app.config.get('DEFAULT_TIMEZONE', 'UTC'))
    scheduler.add_job(
        _scheduled_reminder_pass,
        'interval',
        minutes=app.config.get('REMINDER_POLL_MINUTES', 1),
        args=[app],
        id=REMINDER_JOB_NAME,
        replace_existing=True,
        max_instances=1,
        coalesce=True
    )
    scheduler.start()
    app.logger.info("Reminder scheduler started (every %s minute(s))", app.config.get('REMINDER_POLL_MINUTES', 1))
    return scheduler


def stop_scheduler():
    global scheduler
    if scheduler and scheduler.running:
        scheduler.shutdown(wait=False)
    scheduler = None
