import pytest

from contact_repository import ContactRepository
from db_setup import get_db_connection, transaction
from errors import StoreError
from reconciliation import ContactReconciler
from tests.conftest import count_rows


def test_transaction_commits(settings, conn):
    with transaction(settings.database_path) as tx:
        ContactRepository(tx).create_contact(email="a@x.com")

    assert count_rows(conn) == 1


def test_transaction_rolls_back_on_error(settings, conn):
    with pytest.raises(RuntimeError):
        with transaction(settings.database_path) as tx:
            ContactRepository(tx).create_contact(email="a@x.com")
            raise RuntimeError("boom")

    assert count_rows(conn) == 0


def test_sqlite_failure_becomes_store_error(settings, conn):
    with pytest.raises(StoreError) as excinfo:
        with transaction(settings.database_path) as tx:
            tx.execute("SELECT * FROM NoSuchTable")

    assert not excinfo.value.retryable


def test_held_write_lock_is_a_retryable_conflict(settings, conn):
    locker = get_db_connection(settings.database_path)
    locker.execute("BEGIN IMMEDIATE")
    try:
        with pytest.raises(StoreError) as excinfo:
            with transaction(settings.database_path, timeout=0.01):
                pass
    finally:
        locker.execute("ROLLBACK")
        locker.close()

    assert excinfo.value.retryable


def test_identify_retries_lock_conflicts_then_gives_up(settings, conn, clock):
    sleeps = []
    reconciler = ContactReconciler(settings.model_copy(update={"max_attempts": 3}), clock=clock, sleep=sleeps.append)
    locker = get_db_connection(settings.database_path)
    locker.execute("BEGIN IMMEDIATE")
    try:
        with pytest.raises(StoreError) as excinfo:
            reconciler.identify("a@x.com", "100")
    finally:
        locker.execute("ROLLBACK")
        locker.close()

    assert excinfo.value.retryable
    assert len(sleeps) == 2
    assert count_rows(conn) == 0


def test_identify_succeeds_once_lock_is_released(settings, conn, clock):
    locker = get_db_connection(settings.database_path)
    locker.execute("BEGIN IMMEDIATE")
    sleeps = []

    def release_then_record(delay):
        sleeps.append(delay)
        if locker.in_transaction:
            locker.execute("COMMIT")

    reconciler = ContactReconciler(settings, clock=clock, sleep=release_then_record)
    try:
        view = reconciler.identify("a@x.com", "100")
    finally:
        locker.close()

    assert view.primaryContactId == 1
    assert len(sleeps) == 1


def test_backoff_grows_and_is_capped(settings, conn, clock):
    sleeps = []
    tuned = settings.model_copy(update={"max_attempts": 4, "base_backoff": 0.1, "max_backoff": 0.25})
    reconciler = ContactReconciler(tuned, clock=clock, sleep=sleeps.append)
    locker = get_db_connection(settings.database_path)
    locker.execute("BEGIN IMMEDIATE")
    try:
        with pytest.raises(StoreError):
            reconciler.identify("a@x.com", "100")
    finally:
        locker.execute("ROLLBACK")
        locker.close()

    assert len(sleeps) == 3
    assert 0.1 <= sleeps[0] <= 0.15
    assert 0.2 <= sleeps[1] <= 0.3
    assert 0.25 <= sleeps[2] <= 0.375


def test_unopenable_database_is_not_retried(tmp_path, settings, clock):
    sleeps = []
    broken = settings.model_copy(update={"database_path": str(tmp_path)})
    reconciler = ContactReconciler(broken, clock=clock, sleep=sleeps.append)

    with pytest.raises(StoreError) as excinfo:
        reconciler.identify("a@x.com", "100")

    assert not excinfo.value.retryable
    assert sleeps == []
