"""Aggregation engine: validate, de-duplicate and count one envelope.

Per-envelope state machine:
    Received -> Validated -> Applied
    Received -> Rejected(invalid_envelope)
    Validated -> Rejected(duplicate | invalid_option)

The engine keeps a working copy of TallyState for fast reads, but the
store is the source of truth: the working copy is replaced from each
commit result and rebuilt from storage by recover(). The local de-dup
window only short-circuits obvious redeliveries; the store's processed
set is what actually prevents double counting, including across
consumer processes.

Storage errors are NOT caught here. They propagate to the consumer,
whose error handler decides between retry and dead-letter.
"""

from __future__ import annotations

from collections import OrderedDict

import structlog

from tallyflow.application.ports.tally_store import TallyStorePort
from tallyflow.domain.errors import InvalidEnvelopeError
from tallyflow.domain.models.aggregation import AggregationOutcome, RejectionReason
from tallyflow.domain.models.tally_state import AlreadyProcessed, TallyState
from tallyflow.domain.models.vote_envelope import QueuedEnvelope, VoteEnvelope

log = structlog.get_logger()


class AggregationEngine:
    """Applies validated envelopes to the tally through the store.

    Attributes:
        candidates: The fixed candidate set.
        consumer_id: Identity recorded in the ProcessedMarker.
    """

    def __init__(
        self,
        candidates: frozenset[str],
        store: TallyStorePort,
        consumer_id: str = "default",
        dedup_window_size: int = 100_000,
    ) -> None:
        """Initialize the engine.

        Args:
            candidates: Options a vote may be cast for.
            store: Transactional tally store.
            consumer_id: Consumer identity for commit markers.
            dedup_window_size: Recently seen ids kept in memory.
        """
        if not candidates:
            raise ValueError("candidates must not be empty")
        self.candidates = frozenset(candidates)
        self.consumer_id = consumer_id
        self._store = store
        self._window_size = dedup_window_size
        self._recent: OrderedDict[str, None] = OrderedDict()
        self._state = TallyState.empty(self.candidates)
        self._recovered = False

    @property
    def recovered(self) -> bool:
        return self._recovered

    async def recover(self) -> TallyState:
        """Rebuild the working state from committed storage.

        Zero-count rows are created for any candidate the store does not
        know yet. Must complete before the first envelope is processed.

        Returns:
            The recovered TallyState.

        Raises:
            StorageUnavailableError: If the store cannot be read.
        """
        await self._store.ensure_options(self.candidates)
        state = await self._store.load_state()
        self._state = state
        self._recent.clear()
        self._recovered = True
        log.info(
            "tally_recovered",
            consumer_id=self.consumer_id,
            version=state.version,
            total=state.total,
        )
        return state

    def snapshot(self) -> TallyState:
        """Return the latest committed state seen by this engine."""
        return self._state

    async def process(self, queued: QueuedEnvelope) -> AggregationOutcome:
        """Process one delivered envelope.

        Args:
            queued: The envelope as delivered by the queue.

        Returns:
            APPLIED with the committed state, or REJECTED with a reason.

        Raises:
            StorageUnavailableError: Commit could not complete (retryable).
            ConstraintViolationError: Commit rejected by storage.
        """
        try:
            envelope = VoteEnvelope.from_payload(queued.payload)
        except InvalidEnvelopeError as e:
            log.warning(
                "envelope_invalid",
                envelope_id=queued.envelope_id,
                field=e.field,
                error=str(e),
            )
            return AggregationOutcome.rejected(
                queued.envelope_id, RejectionReason.INVALID_ENVELOPE, str(e)
            )

        if envelope.envelope_id in self._recent:
            log.debug("envelope_duplicate_local", envelope_id=envelope.envelope_id)
            return AggregationOutcome.rejected(
                envelope.envelope_id, RejectionReason.DUPLICATE, "seen by this consumer"
            )

        if envelope.option not in self.candidates:
            log.warning(
                "envelope_invalid_option",
                envelope_id=envelope.envelope_id,
                option=envelope.option,
            )
            return AggregationOutcome.rejected(
                envelope.envelope_id,
                RejectionReason.INVALID_OPTION,
                f"Option {envelope.option!r} is not in the candidate set",
            )

        result = await self._store.commit(
            envelope.envelope_id, envelope.option, self.consumer_id
        )
        self._remember(envelope.envelope_id)

        if isinstance(result, AlreadyProcessed):
            log.info("envelope_duplicate", envelope_id=envelope.envelope_id)
            return AggregationOutcome.rejected(
                envelope.envelope_id, RejectionReason.DUPLICATE, "already committed"
            )

        if result.state.is_newer_than(self._state):
            self._state = result.state
        log.debug(
            "envelope_applied",
            envelope_id=envelope.envelope_id,
            option=envelope.option,
            new_total=result.new_total,
            version=result.state.version,
        )
        return AggregationOutcome.applied(envelope.envelope_id, envelope.option, result.state)

    def _remember(self, envelope_id: str) -> None:
        self._recent[envelope_id] = None
        self._recent.move_to_end(envelope_id)
        while len(self._recent) > self._window_size:
            self._recent.popitem(last=False)
