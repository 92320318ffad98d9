"""Database-row lock so a background job runs in at most one worker at a time."""
import os
from datetime import datetime, timedelta
from uuid import uuid4

from flask import current_app
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError

from models import db, JobLock

# Postgres lock_not_available, MySQL ER_LOCK_NOWAIT
_NOWAIT_SQLSTATES = {'55P03'}
_NOWAIT_MYSQL_CODES = {3572}


class JobLockError(Exception):
    """The lock table could not be read or written."""


def _new_token():
    return f"{os.getpid()}:{uuid4().hex}"


def _is_lock_contention(exc):
    orig = getattr(exc, 'orig', None)
    sqlstate = getattr(orig, 'pgcode', None) or getattr(orig, 'sqlstate', None)
    if sqlstate in _NOWAIT_SQLSTATES:
        return True
    args = getattr(orig, 'args', ())
    return bool(args) and args[0] in _NOWAIT_MYSQL_CODES


def acquire_job_lock(job_name, stale_after=timedelta(minutes=5)):
    """
    Try to take the lock for `job_name`.

    Returns a token identifying this acquisition, or None when another holder
    has a fresh lock. A lock older than `stale_after` is assumed abandoned
    (crashed worker) and taken over. Raises JobLockError when the database
    itself fails.
    """
    token = _new_token()
    now = datetime.utcnow()
    try:
        if db.engine.dialect.name == 'sqlite':
            # SQLite doesn't support FOR UPDATE; use insert + fallback update for stale locks.
            try:
                db.session.add(JobLock(job_name=job_name, locked_at=now, locked_by=token))
                db.session.commit()
                return token
            except IntegrityError:
                db.session.rollback()
            taken = db.session.query(JobLock).filter(
                JobLock.job_name == job_name,
                JobLock.locked_at <= now - stale_after
            ).update({'locked_at': now, 'locked_by': token}, synchronize_session=False)
            db.session.commit()
            if taken == 1:
                current_app.logger.warning(f"{job_name} lock was stale, taken over by {token}")
                return token
            current_app.logger.info(f"{job_name} already running, skipping")
            return None

        try:
            lock = db.session.query(JobLock).filter_by(job_name=job_name).with_for_update(nowait=True).first()
        except OperationalError as e:
            db.session.rollback()
            if _is_lock_contention(e):
                current_app.logger.info(f"{job_name} lock row busy, skipping")
                return None
            raise
        if lock:
            if now - lock.locked_at < stale_after:
                current_app.logger.info(f"{job_name} already running (locked by {lock.locked_by}), skipping")
                db.session.rollback()
                return None
            current_app.logger.warning(f"{job_name} lock held by {lock.locked_by} was stale, taken over by {token}")
            lock.locked_at = now
            lock.locked_by = token
        else:
            db.session.add(JobLock(job_name=job_name, locked_at=now, locked_by=token))
        db.session.commit()
        return token
    except IntegrityError:
        # Another worker inserted the row between our read and our insert.
        db.session.rollback()
        current_app.logger.info(f"{job_name} lock taken concurrently, skipping")
        return None
    except SQLAlchemyError as e:
        db.session.rollback()
        raise JobLockError(f"Could not acquire {job_name} lock: {e}") from e


def release_job_lock(job_name, token):
    """Drop the lock only if `token` still holds it; a lock taken over by another pass is left alone."""
    try:
        released = db.session.query(JobLock).filter_by(
            job_name=job_name, locked_by=token
        ).delete(synchronize_session=False)
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        current_app.logger.error(f"Error releasing {job_name} lock: {e}")
        return False
    if released:
        current_app.logger.info(f"{job_name} lock released ({token})")
    else:
        current_app.logger.warning(f"{job_name} lock no longer held by {token}, nothing released")
    return bool(released)
