"""Storage errors raised by the persistence writer.

StorageUnavailableError is retryable by the caller. ConstraintViolationError
is fatal for the single envelope that triggered it and routes that envelope
to the dead-letter path; the consumer keeps running.
"""

from __future__ import annotations

from tallyflow.domain.exceptions import TallyError


class StorageUnavailableError(TallyError):
    """Raised when the tally store cannot complete a transaction.

    Covers connection loss, lock timeouts and commit timeouts. The
    transaction is rolled back, so nothing was applied.

    Attributes:
        operation: Store operation that failed.
    """

    def __init__(self, operation: str, message: str = "") -> None:
        self.operation = operation
        super().__init__(
            f"Storage unavailable during {operation}: {message}"
            if message
            else f"Storage unavailable during {operation}"
        )


# Retryable storage failure in the error taxonomy.
TransientStorageError = StorageUnavailableError


class ConstraintViolationError(TallyError):
    """Raised when a commit breaks a storage constraint.

    Example: the option has no tally row, or the count check fails.

    Attributes:
        envelope_id: Envelope whose commit was rejected.
        constraint: Short name of the violated constraint.
    """

    def __init__(self, envelope_id: str, constraint: str, message: str = "") -> None:
        self.envelope_id = envelope_id
        self.constraint = constraint
        super().__init__(
            f"Constraint {constraint} violated by envelope {envelope_id}"
            + (f": {message}" if message else "")
        )
