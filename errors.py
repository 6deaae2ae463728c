from typing import Optional


class ReconciliationError(Exception):
    """Base class for failures surfaced by the identify flow."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(ReconciliationError):
    """Neither an email nor a phone number was supplied."""

    def __init__(self, message: str = "Either email or phoneNumber must be provided"):
        super().__init__(message)


class DataIntegrityError(ReconciliationError):
    """A secondary points at a contact that is not a visible primary."""

    def __init__(self, message: str, contact_id: Optional[int] = None, linked_id: Optional[int] = None):
        super().__init__(message)
        self.contact_id = contact_id
        self.linked_id = linked_id


class StoreError(ReconciliationError):
    """The underlying database failed.

    `retryable` is set for lock/busy conflicts, which are safe to replay
    because the failed transaction was rolled back.
    """

    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable
