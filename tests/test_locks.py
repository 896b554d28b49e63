import threading

import pytest

from app.errors import ConcurrentModification
from app.models.locks import ResourceLock
from app.services import locks
from app.services.locks import KeyedMutex


def _hold_in_thread(mutex, key, release):
    acquired = threading.Event()

    def _run():
        with mutex.hold(key):
            acquired.set()
            release.wait(timeout=5)

    thread = threading.Thread(target=_run)
    thread.start()
    assert acquired.wait(timeout=5)
    return thread


def test_mutex_times_out_while_key_is_held():
    mutex = KeyedMutex()
    release = threading.Event()
    thread = _hold_in_thread(mutex, "customer-group:1:main", release)
    try:
        with pytest.raises(ConcurrentModification) as exc_info:
            with mutex.hold("customer-group:1:main", timeout=0.05):
                pass
        assert exc_info.value.details == {"lock": "customer-group:1:main"}
    finally:
        release.set()
        thread.join()

    assert not mutex.is_held("customer-group:1:main")


def test_mutex_does_not_block_other_keys():
    mutex = KeyedMutex()
    release = threading.Event()
    thread = _hold_in_thread(mutex, "subscription:sub_1", release)
    try:
        with mutex.hold("subscription:sub_2", timeout=0.05):
            assert mutex.is_held("subscription:sub_1")
            assert mutex.is_held("subscription:sub_2")
    finally:
        release.set()
        thread.join()


def test_mutex_is_reusable_after_release():
    mutex = KeyedMutex()

    with mutex.hold("k", timeout=0.05):
        pass
    with mutex.hold("k", timeout=0.05):
        assert mutex.is_held("k")

    assert not mutex.is_held("k")


def test_hold_records_lock_row(db_session, customer):
    key = locks.customer_group_key(customer.id, "main")

    with locks.customer_group_lock(db_session, customer.id, "main"):
        db_session.commit()
    with locks.customer_group_lock(db_session, customer.id, "main"):
        db_session.commit()

    rows = db_session.query(ResourceLock).filter(ResourceLock.key == key).all()
    assert len(rows) == 1
    assert rows[0].locked_at is not None


def test_lock_keys():
    assert locks.customer_group_key("c1", None) == "customer-group:c1:"
    assert locks.subscription_key("sub_1") == "subscription:sub_1"


def test_lease_survives_commits_inside_the_block(db_session, customer):
    key = locks.customer_group_key(customer.id, "main")

    with locks.customer_group_lock(db_session, customer.id, "main"):
        db_session.commit()
        row = db_session.query(ResourceLock).filter(ResourceLock.key == key).one()
        db_session.refresh(row)
        assert row.held_by is not None
        assert row.locked_until is not None
        assert not locks.try_acquire(db_session, key, "other-worker")

    db_session.refresh(row)
    assert row.held_by is None
    assert row.locked_until is None


def test_lease_held_by_another_worker_times_out(db_session, customer):
    key = locks.customer_group_key(customer.id, "main")
    assert locks.try_acquire(db_session, key, "other-worker")

    with pytest.raises(ConcurrentModification) as exc_info:
        with locks.customer_group_lock(db_session, customer.id, "main", timeout=0.1):
            pass

    assert exc_info.value.details == {"lock": key}
    assert not locks._mutex.is_held(key)


def test_expired_lease_is_taken_over(db_session, customer):
    key = locks.customer_group_key(customer.id, "main")
    assert locks.try_acquire(db_session, key, "crashed-worker", lease_seconds=-1)

    with locks.customer_group_lock(db_session, customer.id, "main", timeout=0.1):
        row = db_session.query(ResourceLock).filter(ResourceLock.key == key).one()
        db_session.refresh(row)
        assert row.held_by not in (None, "crashed-worker")


def test_release_ignores_a_lease_taken_over_by_another_worker(db_session, customer):
    key = locks.customer_group_key(customer.id, "main")
    assert locks.try_acquire(db_session, key, "other-worker")

    locks.release(db_session, key, "stale-token")

    row = db_session.query(ResourceLock).filter(ResourceLock.key == key).one()
    assert row.held_by == "other-worker"
