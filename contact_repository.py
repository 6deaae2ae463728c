import sqlite3
from datetime import datetime, timezone
from typing import Callable, List, Optional

from db_models import Contact, LinkPrecedence


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


class ContactRepository:
    """Fixed-shape reads and writes against the Contact table.

    Every read skips soft-deleted rows. Results that can hold more than one
    contact are ordered by createdAt, then id.
    """

    def __init__(self, conn: sqlite3.Connection, clock: Callable[[], str] = utc_now):
        self.conn = conn
        self.clock = clock

    def find_exact(self, email: Optional[str] = None, phone: Optional[str] = None) -> Optional[Contact]:
        """Return the oldest contact carrying every supplied value.

        An absent field is not a predicate, so it does not have to be NULL
        on the matching row.
        """
        if email is None and phone is None:
            return None
        row = self.conn.execute(
            """
            SELECT * FROM Contact
            WHERE deletedAt IS NULL
            AND (? IS NULL OR email = ?)
            AND (? IS NULL OR phoneNumber = ?)
            ORDER BY createdAt ASC, id ASC
            LIMIT 1
            """,
            (email, email, phone, phone),
        ).fetchone()
        return _contact_from_row(row) if row else None

    def find_either_field(self, email: Optional[str] = None, phone: Optional[str] = None) -> List[Contact]:
        if email is None and phone is None:
            return []
        # a NULL parameter never compares equal, so an absent field matches nothing
        rows = self.conn.execute(
            """
            SELECT * FROM Contact
            WHERE deletedAt IS NULL
            AND (email = ? OR phoneNumber = ?)
            ORDER BY createdAt ASC, id ASC
            """,
            (email, phone),
        ).fetchall()
        return [_contact_from_row(row) for row in rows]

    def get_contact(self, contact_id: int) -> Optional[Contact]:
        row = self.conn.execute(
            "SELECT * FROM Contact WHERE id = ? AND deletedAt IS NULL",
            (contact_id,),
        ).fetchone()
        return _contact_from_row(row) if row else None

    def list_secondaries(self, primary_id: int) -> List[Contact]:
        rows = self.conn.execute(
            """
            SELECT * FROM Contact
            WHERE linkedId = ? AND linkPrecedence = 'secondary' AND deletedAt IS NULL
            ORDER BY createdAt ASC, id ASC
            """,
            (primary_id,),
        ).fetchall()
        return [_contact_from_row(row) for row in rows]

    def create_contact(
        self,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        precedence: LinkPrecedence = LinkPrecedence.PRIMARY,
        linked_id: Optional[int] = None,
        created_at: Optional[str] = None,
    ) -> Contact:
        if email is None and phone is None:
            raise ValueError("A contact needs an email or a phone number")
        if (precedence == LinkPrecedence.SECONDARY) != (linked_id is not None):
            raise ValueError("linked_id must be set exactly when the contact is secondary")

        now = created_at or self.clock()
        cursor = self.conn.execute(
            """
            INSERT INTO Contact (phoneNumber, email, linkedId, linkPrecedence, createdAt, updatedAt)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (phone, email, linked_id, precedence.value, now, now),
        )
        return self.get_contact(cursor.lastrowid)

    def demote_to_secondary(self, contact_id: int, primary_id: int) -> None:
        self.conn.execute(
            """
            UPDATE Contact
            SET linkedId = ?, linkPrecedence = 'secondary', updatedAt = ?
            WHERE id = ? AND linkPrecedence = 'primary'
            """,
            (primary_id, self.clock(), contact_id),
        )

    def relink_secondaries(self, from_primary_id: int, to_primary_id: int) -> int:
        """Point every secondary of one primary at another. Returns the row count."""
        cursor = self.conn.execute(
            """
            UPDATE Contact
            SET linkedId = ?, updatedAt = ?
            WHERE linkedId = ? AND linkPrecedence = 'secondary'
            """,
            (to_primary_id, self.clock(), from_primary_id),
        )
        return cursor.rowcount


def _contact_from_row(row: sqlite3.Row) -> Contact:
    return Contact(**dict(row))
