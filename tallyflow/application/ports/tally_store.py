"""Port interface for durable tally storage (the persistence writer).

The store exclusively owns TallyState and the processed-envelope set.
commit() is the only write path for counts and MUST be one atomic
storage transaction:

    (a) envelope_id already processed -> AlreadyProcessed, nothing changes
    (b) increment count for option
    (c) insert envelope_id into the processed set

A crash anywhere inside the transaction leaves the last fully committed
state. With concurrent consumers, the processed-set primary key is the
only thing preventing double counting, so implementations must never
split (a)-(c) across transactions or rely on in-process locks.
"""

from datetime import datetime
from typing import Protocol

from tallyflow.domain.models.tally_state import (
    CommitResult,
    ProcessedMarker,
    TallyState,
)


class TallyStorePort(Protocol):
    """Port for transactional tally persistence."""

    async def ensure_options(self, options: frozenset[str]) -> None:
        """Create zero-count rows for options not yet stored.

        Existing counts are never touched.
        """
        ...

    async def commit(
        self,
        envelope_id: str,
        option: str,
        consumer_id: str = "default",
    ) -> CommitResult:
        """Atomically count one envelope.

        Args:
            envelope_id: Envelope to count.
            option: Option to increment.
            consumer_id: Consumer whose ProcessedMarker advances.

        Returns:
            Committed with the new totals, or AlreadyProcessed.

        Raises:
            StorageUnavailableError: Retryable; nothing was applied.
            ConstraintViolationError: Fatal for this envelope.
        """
        ...

    async def load_state(self) -> TallyState:
        """Read the committed TallyState (recovery read).

        Raises:
            StorageUnavailableError: If the store is unreachable.
        """
        ...

    async def is_processed(self, envelope_id: str) -> bool:
        """True if ``envelope_id`` is in the processed set."""
        ...

    async def get_marker(self, consumer_id: str) -> ProcessedMarker | None:
        """Read a consumer's ProcessedMarker (None before its first commit)."""
        ...

    async def prune_processed(self, older_than: datetime) -> int:
        """Delete processed-set entries recorded before ``older_than``.

        Returns:
            Number of entries removed.
        """
        ...
