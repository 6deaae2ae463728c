from datetime import datetime, timedelta, timezone

import pytest

from config import Settings
from contact_repository import ContactRepository
from db_models import Contact, LinkPrecedence
from db_setup import get_db_connection, init_db
from reconciliation import ContactReconciler

EPOCH = datetime(2024, 1, 1, tzinfo=timezone.utc)


class FakeClock:
    """Hands out strictly increasing timestamps one second apart."""

    def __init__(self):
        self.ticks = 0

    def __call__(self) -> str:
        self.ticks += 1
        return (EPOCH + timedelta(seconds=self.ticks)).isoformat(timespec="microseconds")


def make_contact(contact_id, email=None, phone=None, linked_id=None, seconds=0):
    """Build an in-memory Contact for tests that never touch the database."""
    created = EPOCH + timedelta(seconds=seconds)
    return Contact(
        id=contact_id,
        email=email,
        phoneNumber=phone,
        linkedId=linked_id,
        linkPrecedence=LinkPrecedence.SECONDARY if linked_id else LinkPrecedence.PRIMARY,
        createdAt=created,
        updatedAt=created,
    )


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_path=str(tmp_path / "contacts.db"),
        db_timeout=0.05,
        log_level="WARNING",
        base_backoff=0,
        max_backoff=0,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def conn(settings):
    init_db(settings.database_path)
    connection = get_db_connection(settings.database_path, settings.db_timeout)
    yield connection
    connection.close()


@pytest.fixture
def repo(conn, clock):
    # autocommit connection: every write is visible to the reconciler's own connections
    return ContactRepository(conn, clock=clock)


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def reconciler(settings, conn, clock, sleeps):
    return ContactReconciler(settings, clock=clock, sleep=sleeps.append)


def count_rows(conn) -> int:
    return conn.execute("SELECT COUNT(*) FROM Contact").fetchone()[0]


def assert_flat_clusters(conn):
    rows = conn.execute("SELECT id, linkedId, linkPrecedence FROM Contact").fetchall()
    by_id = {row["id"]: row for row in rows}
    for row in rows:
        if row["linkPrecedence"] == "secondary":
            assert row["linkedId"] in by_id
            assert by_id[row["linkedId"]]["linkPrecedence"] == "primary"
        else:
            assert row["linkedId"] is None
