"""Per-key mutual exclusion for customer product state changes.

Two layers are held together:

- an in-process keyed mutex, which bounds the wait with LOCK_TIMEOUT_SECONDS
- a lease on the key's ``resource_locks`` row, which serializes workers in
  other processes

The lease is written and cleared in short transactions of its own, so it
stays held across any number of commits the caller makes inside the
``with`` block. A holder that dies keeps the key for at most
LOCK_LEASE_SECONDS.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import timedelta

from sqlalchemy import or_, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.config import settings
from app.errors import ConcurrentModification
from app.models.locks import ResourceLock
from app.services.common import utcnow

logger = logging.getLogger(__name__)


class KeyedMutex:
    def __init__(self):
        self._guard = threading.Lock()
        # key -> [lock, holders + waiters]
        self._entries: dict[str, list] = {}

    @contextmanager
    def hold(self, key: str, timeout: float | None = None) -> Iterator[None]:
        with self._guard:
            entry = self._entries.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        lock = entry[0]
        acquired = lock.acquire(timeout=-1 if timeout is None else timeout)
        try:
            if not acquired:
                logger.warning("Timed out waiting for lock %s", key)
                raise ConcurrentModification(details={"lock": key})
            yield
        finally:
            if acquired:
                lock.release()
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    self._entries.pop(key, None)

    def is_held(self, key: str) -> bool:
        with self._guard:
            entry = self._entries.get(key)
        return bool(entry and entry[0].locked())


_mutex = KeyedMutex()


@contextmanager
def _lease_session(db: Session) -> Iterator[Session]:
    # Separate unit of work on the caller's bind; never commits caller state.
    session = Session(bind=db.get_bind(), join_transaction_mode="create_savepoint")
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def _ensure_row(session: Session, key: str) -> None:
    if session.query(ResourceLock.id).filter(ResourceLock.key == key).first():
        return
    try:
        with session.begin_nested():
            session.add(ResourceLock(key=key))
            session.flush()
    except IntegrityError:
        pass  # created concurrently


def try_acquire(db: Session, key: str, token: str, lease_seconds: float | None = None) -> bool:
    """Take the lease on ``key`` for ``token`` if it is free or expired."""
    lease_seconds = settings.lock_lease_seconds if lease_seconds is None else lease_seconds
    now = utcnow()
    with _lease_session(db) as session:
        _ensure_row(session, key)
        result = session.execute(
            update(ResourceLock)
            .where(ResourceLock.key == key)
            .where(
                or_(
                    ResourceLock.held_by.is_(None),
                    ResourceLock.held_by == token,
                    ResourceLock.locked_until < now,
                )
            )
            .values(
                held_by=token,
                locked_at=now,
                locked_until=now + timedelta(seconds=lease_seconds),
            )
            .execution_options(synchronize_session=False)
        )
        acquired = result.rowcount == 1
        session.commit()
    return acquired


def release(db: Session, key: str, token: str) -> None:
    try:
        with _lease_session(db) as session:
            session.execute(
                update(ResourceLock)
                .where(ResourceLock.key == key)
                .where(ResourceLock.held_by == token)
                .values(held_by=None, locked_until=None)
                .execution_options(synchronize_session=False)
            )
            session.commit()
    except SQLAlchemyError:
        # The lease expires on its own.
        logger.exception("Could not release lock %s", key)


@contextmanager
def hold(db: Session, key: str, timeout: float | None = None) -> Iterator[None]:
    timeout = settings.lock_timeout_seconds if timeout is None else timeout
    deadline = time.monotonic() + timeout
    with _mutex.hold(key, timeout):
        token = uuid.uuid4().hex
        while not try_acquire(db, key, token):
            if time.monotonic() >= deadline:
                logger.warning("Timed out waiting for lock %s held by another worker", key)
                raise ConcurrentModification(details={"lock": key})
            time.sleep(settings.lock_poll_interval_seconds)
        try:
            yield
        finally:
            release(db, key, token)


def customer_group_key(customer_id, group: str | None) -> str:
    return f"customer-group:{customer_id}:{group or ''}"


def subscription_key(subscription_id: str) -> str:
    return f"subscription:{subscription_id}"


def customer_group_lock(db: Session, customer_id, group: str | None, timeout: float | None = None):
    return hold(db, customer_group_key(customer_id, group), timeout)


def subscription_lock(db: Session, subscription_id: str, timeout: float | None = None):
    return hold(db, subscription_key(subscription_id), timeout)
