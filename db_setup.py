import sqlite3
from contextlib import contextmanager

import structlog

from errors import StoreError

logger = structlog.get_logger()

DB_NAME = "contacts.db"

_LOCK_MESSAGES = ("database is locked", "database is busy", "database table is locked")


def init_db(db_name: str = DB_NAME):
    conn = sqlite3.connect(db_name)
    cursor = conn.cursor()

    cursor.execute('''
        CREATE TABLE IF NOT EXISTS Contact (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            phoneNumber TEXT,
            email TEXT,
            linkedId INTEGER,
            linkPrecedence TEXT NOT NULL CHECK(linkPrecedence IN ('secondary', 'primary')),
            createdAt DATETIME NOT NULL,
            updatedAt DATETIME NOT NULL,
            deletedAt DATETIME,
            FOREIGN KEY (linkedId) REFERENCES Contact (id)
        )
    ''')
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_contact_email ON Contact (email)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_contact_phone ON Contact (phoneNumber)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_contact_linked ON Contact (linkedId)")
    conn.commit()

    conn.close()
    logger.info("db_initialized", database=db_name)


def get_db_connection(db_name: str = DB_NAME, timeout: float = 5.0):
    # isolation_level=None leaves BEGIN/COMMIT to transaction()
    conn = sqlite3.connect(db_name, timeout=timeout, isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


def is_lock_conflict(exc: sqlite3.Error) -> bool:
    if not isinstance(exc, sqlite3.OperationalError):
        return False
    message = str(exc).lower()
    return any(text in message for text in _LOCK_MESSAGES)


@contextmanager
def transaction(db_name: str = DB_NAME, timeout: float = 5.0):
    """Yield a connection inside a BEGIN IMMEDIATE transaction.

    The write lock is taken before the first read, so concurrent callers
    run one after another. Any sqlite3 failure rolls back and is raised as
    StoreError.
    """
    try:
        conn = get_db_connection(db_name, timeout)
    except sqlite3.Error as exc:
        raise StoreError(f"Could not open database: {exc}", retryable=is_lock_conflict(exc)) from exc

    try:
        conn.execute("BEGIN IMMEDIATE")
        yield conn
        conn.execute("COMMIT")
    except sqlite3.Error as exc:
        _rollback(conn)
        raise StoreError(f"Database error: {exc}", retryable=is_lock_conflict(exc)) from exc
    except BaseException:
        _rollback(conn)
        raise
    finally:
        conn.close()


def _rollback(conn):
    if conn.in_transaction:
        try:
            conn.execute("ROLLBACK")
        except sqlite3.Error:
            logger.exception("rollback_failed")
