"""Simple DB-backed lock to ensure only one scheduler runs."""
from __future__ import annotations

import os
import socket
from datetime import timedelta

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from payledger import db
from payledger.models.scheduler_lock import SchedulerLock
from payledger.utils.time import ensure_utc, utcnow


LOCK_NAME = "reconciliation"
LOCK_TTL_SECONDS = 300


def _session(db_session: Session | None = None) -> tuple[Session, bool]:
    if db_session is not None:
        return db_session, False
    return db.get_sessionmaker()(), True


def _owner_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


def try_acquire_scheduler_lock(
    name: str = LOCK_NAME,
    *,
    ttl_seconds: int = LOCK_TTL_SECONDS,
    db_session: Session | None = None,
) -> bool:
    """Attempt to acquire the scheduler lock with owner + TTL safety."""

    session, should_close = _session(db_session)
    owner = _owner_id()
    now = utcnow()
    expires = now + timedelta(seconds=ttl_seconds)

    try:
        lock = session.execute(
            select(SchedulerLock).where(SchedulerLock.name == name).with_for_update()
        ).scalar_one_or_none()

        if lock is None:
            try:
                with session.begin_nested():
                    session.add(
                        SchedulerLock(name=name, owner=owner, acquired_at=now, expires_at=expires)
                    )
            except IntegrityError:
                session.rollback()
                return False
            session.commit()
            return True

        expires_at = ensure_utc(lock.expires_at) if lock.expires_at is not None else None
        expired = expires_at is None or expires_at <= now
        if not expired and lock.owner != owner:
            session.rollback()
            return False

        if expired:
            lock.owner = owner
            lock.acquired_at = now
        lock.expires_at = expires
        session.commit()
        return True
    finally:
        if should_close:
            session.close()


def refresh_scheduler_lock(
    name: str = LOCK_NAME, *, ttl_seconds: int = LOCK_TTL_SECONDS, db_session: Session | None = None
) -> bool:
    """Refresh the TTL of the scheduler lock when owned by this runner."""

    session, should_close = _session(db_session)
    owner = _owner_id()
    try:
        lock = session.execute(
            select(SchedulerLock).where(SchedulerLock.name == name).with_for_update()
        ).scalar_one_or_none()
        if lock is None or lock.owner != owner:
            session.rollback()
            return False
        lock.expires_at = utcnow() + timedelta(seconds=ttl_seconds)
        session.commit()
        return True
    finally:
        if should_close:
            session.close()


def release_scheduler_lock(name: str = LOCK_NAME, *, db_session: Session | None = None) -> None:
    """Release the scheduler lock if held by this runner."""

    session, should_close = _session(db_session)
    owner = _owner_id()
    try:
        lock = session.execute(
            select(SchedulerLock).where(SchedulerLock.name == name).with_for_update()
        ).scalar_one_or_none()
        if lock and lock.owner == owner:
            session.delete(lock)
        session.commit()
    finally:
        if should_close:
            session.close()


__all__ = ["LOCK_NAME", "refresh_scheduler_lock", "release_scheduler_lock", "try_acquire_scheduler_lock"]
