"""In-memory tally store stub.

Implements TallyStorePort for development and tests. The commit keeps
the same check-increment-record ordering as the SQL store and applies
it under an asyncio lock, so concurrent consumers sharing one stub
still never double count.

NOT suitable for production use: nothing survives the process.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from enum import Enum, auto

from tallyflow.domain.errors import ConstraintViolationError, StorageUnavailableError
from tallyflow.domain.models.tally_state import (
    AlreadyProcessed,
    Committed,
    CommitResult,
    ProcessedMarker,
    TallyState,
    apply_vote,
)


class TallyStoreOperation(Enum):
    """Operations recorded on the stub (for test verification)."""

    ENSURE_OPTIONS = auto()
    COMMIT = auto()
    LOAD_STATE = auto()
    PRUNE = auto()


class TallyStoreStub:
    """In-memory implementation of TallyStorePort.

    Failure injection:
        fail_commits(n): the next ``n`` commits raise the given error
        (StorageUnavailableError by default) before touching state.
        set_unavailable(True): every operation raises until reset.

    Attributes:
        operations: (operation, details) tuples in call order.
    """

    def __init__(self) -> None:
        self._counts: dict[str, int] = {}
        self._version = 0
        self._updated_at: datetime | None = None
        self._processed: dict[str, tuple[str, str, datetime]] = {}
        self._markers: dict[str, ProcessedMarker] = {}
        self._lock = asyncio.Lock()
        self._pending_failures: list[Exception] = []
        self._unavailable = False
        self.operations: list[tuple[TallyStoreOperation, dict]] = []

    # Failure injection

    def fail_commits(self, count: int = 1, error: Exception | None = None) -> None:
        """Make the next ``count`` commits fail with ``error``."""
        for _ in range(count):
            self._pending_failures.append(
                error or StorageUnavailableError("commit", "injected failure")
            )

    def set_unavailable(self, unavailable: bool) -> None:
        self._unavailable = unavailable

    def _check_available(self, operation: str) -> None:
        if self._unavailable:
            raise StorageUnavailableError(operation, "store marked unavailable")

    # TallyStorePort

    async def ensure_options(self, options: frozenset[str]) -> None:
        self._check_available("ensure_options")
        self.operations.append(
            (TallyStoreOperation.ENSURE_OPTIONS, {"options": sorted(options)})
        )
        for option in options:
            self._counts.setdefault(option, 0)

    async def commit(
        self,
        envelope_id: str,
        option: str,
        consumer_id: str = "default",
    ) -> CommitResult:
        self._check_available("commit")
        self.operations.append(
            (
                TallyStoreOperation.COMMIT,
                {"envelope_id": envelope_id, "option": option, "consumer_id": consumer_id},
            )
        )
        if self._pending_failures:
            raise self._pending_failures.pop(0)

        async with self._lock:
            if envelope_id in self._processed:
                return AlreadyProcessed(envelope_id=envelope_id)

            if option not in self._counts:
                raise ConstraintViolationError(
                    envelope_id, "tally_option_exists", f"no tally row for {option!r}"
                )

            now = datetime.now(timezone.utc)
            self._counts = apply_vote(self._counts, option)
            self._processed[envelope_id] = (option, consumer_id, now)
            self._version += 1
            self._updated_at = now

            previous = self._markers.get(consumer_id)
            self._markers[consumer_id] = ProcessedMarker(
                consumer_id=consumer_id,
                last_envelope_id=envelope_id,
                committed_count=(previous.committed_count if previous else 0) + 1,
                updated_at=now,
            )

            state = self._snapshot()
            return Committed(
                envelope_id=envelope_id,
                option=option,
                new_total=state.count_for(option),
                state=state,
            )

    async def load_state(self) -> TallyState:
        self._check_available("load_state")
        self.operations.append((TallyStoreOperation.LOAD_STATE, {}))
        return self._snapshot()

    async def is_processed(self, envelope_id: str) -> bool:
        self._check_available("is_processed")
        return envelope_id in self._processed

    async def get_marker(self, consumer_id: str) -> ProcessedMarker | None:
        self._check_available("get_marker")
        return self._markers.get(consumer_id)

    async def prune_processed(self, older_than: datetime) -> int:
        self._check_available("prune_processed")
        expired = [
            envelope_id
            for envelope_id, (_, _, processed_at) in self._processed.items()
            if processed_at < older_than
        ]
        for envelope_id in expired:
            del self._processed[envelope_id]
        self.operations.append((TallyStoreOperation.PRUNE, {"removed": len(expired)}))
        return len(expired)

    # Test helpers

    @property
    def processed_ids(self) -> set[str]:
        return set(self._processed)

    def backdate(self, envelope_id: str, processed_at: datetime) -> None:
        """Rewrite the processed time of one entry (retention tests)."""
        option, consumer_id, _ = self._processed[envelope_id]
        self._processed[envelope_id] = (option, consumer_id, processed_at)

    def commit_calls(self) -> list[dict]:
        return [d for op, d in self.operations if op == TallyStoreOperation.COMMIT]

    def _snapshot(self) -> TallyState:
        return TallyState(
            counts=dict(self._counts),
            version=self._version,
            updated_at=self._updated_at,
        )
