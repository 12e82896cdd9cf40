"""Update publisher: fan committed tally snapshots out to live viewers.

Each subscriber owns a bounded queue. broadcast() never awaits: when a
subscriber's queue is full its oldest pending snapshot is dropped, so a
slow viewer skips intermediate versions but always ends on the latest
one, and the commit path is never slowed down by a viewer.

Subscribers receive strictly increasing versions. A snapshot whose
version is not newer than the last one broadcast is ignored, which
makes the refresher and the consumers safe to publish the same state.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from uuid import UUID, uuid4

import structlog

from tallyflow.application.ports.tally_store import TallyStorePort
from tallyflow.domain.errors import StorageUnavailableError
from tallyflow.domain.models.tally_state import TallyState
from tallyflow.infrastructure.monitoring.metrics import MetricsCollector

log = structlog.get_logger()


class TallyBroadcaster:
    """In-process implementation of UpdatePublisherPort."""

    def __init__(
        self,
        buffer_size: int = 16,
        metrics: MetricsCollector | None = None,
    ) -> None:
        """Initialize the broadcaster.

        Args:
            buffer_size: Pending snapshots held per subscriber.
            metrics: Optional metrics collector.
        """
        if buffer_size < 1:
            raise ValueError(f"buffer_size must be positive, got {buffer_size}")
        self._buffer_size = buffer_size
        self._metrics = metrics
        self._subscribers: dict[UUID, asyncio.Queue[TallyState]] = {}
        self._current: TallyState | None = None
        self._dropped = 0

    @property
    def current(self) -> TallyState | None:
        """Latest snapshot broadcast (None before the first one)."""
        return self._current

    @property
    def dropped_count(self) -> int:
        """Snapshots dropped across all subscribers since start."""
        return self._dropped

    def get_subscriber_count(self) -> int:
        return len(self._subscribers)

    def register_subscriber(self) -> tuple[UUID, asyncio.Queue[TallyState]]:
        """Register a new subscriber.

        The current snapshot, if any, is queued first so a new viewer
        never waits for the next commit to see the tally.

        Returns:
            Tuple of (subscriber_id, snapshot_queue).
        """
        subscriber_id = uuid4()
        queue: asyncio.Queue[TallyState] = asyncio.Queue(maxsize=self._buffer_size)
        if self._current is not None:
            queue.put_nowait(self._current)
        self._subscribers[subscriber_id] = queue
        self._update_subscriber_gauge()

        log.info(
            "subscriber_registered",
            subscriber_id=str(subscriber_id),
            version=self._current.version if self._current else None,
        )
        return subscriber_id, queue

    def unregister_subscriber(self, subscriber_id: UUID) -> None:
        """Remove a subscriber.

        Args:
            subscriber_id: ID returned by register_subscriber.
        """
        if subscriber_id in self._subscribers:
            del self._subscribers[subscriber_id]
            self._update_subscriber_gauge()
            log.info("subscriber_closed", subscriber_id=str(subscriber_id))

    async def subscribe(self) -> AsyncIterator[TallyState]:
        """Yield snapshots for one subscriber until the iterator is closed.

        Starts with the current snapshot, if any. Closing the iterator
        unsubscribes.
        """
        subscriber_id, queue = self.register_subscriber()
        try:
            while True:
                yield await queue.get()
        finally:
            self.unregister_subscriber(subscriber_id)

    def broadcast(self, state: TallyState) -> int:
        """Offer ``state`` to every subscriber without blocking.

        Args:
            state: Committed snapshot.

        Returns:
            Number of subscribers the snapshot was offered to (0 if the
            snapshot was stale).
        """
        if self._current is not None and not state.is_newer_than(self._current):
            return 0

        self._current = state
        if self._metrics is not None:
            self._metrics.set_tally_version(state.version)

        count = 0
        for subscriber_id, queue in list(self._subscribers.items()):
            self._offer(subscriber_id, queue, state)
            count += 1
        return count

    def _offer(
        self,
        subscriber_id: UUID,
        queue: asyncio.Queue[TallyState],
        state: TallyState,
    ) -> None:
        if queue.full():
            try:
                stale = queue.get_nowait()
            except asyncio.QueueEmpty:
                stale = None
            if stale is not None:
                self._dropped += 1
                if self._metrics is not None:
                    self._metrics.increment_pushes_dropped()
                log.debug(
                    "subscriber_snapshot_dropped",
                    subscriber_id=str(subscriber_id),
                    dropped_version=stale.version,
                    version=state.version,
                )
        queue.put_nowait(state)

    def _update_subscriber_gauge(self) -> None:
        if self._metrics is not None:
            self._metrics.set_subscribers(len(self._subscribers))

    async def run_refresher(
        self,
        store: TallyStorePort,
        interval: float,
        stop_event: asyncio.Event,
    ) -> None:
        """Periodically broadcast committed state read from storage.

        Picks up commits made by consumers in other processes. Runs until
        ``stop_event`` is set. A store outage is logged and retried on the
        next tick.

        Args:
            store: Tally store to read from.
            interval: Seconds between reads.
            stop_event: Set to stop the loop.
        """
        log.info("tally_refresher_started", interval=interval)
        while not stop_event.is_set():
            try:
                state = await store.load_state()
            except StorageUnavailableError as e:
                log.warning("tally_refresh_failed", error=str(e))
            else:
                if self.broadcast(state):
                    log.debug("tally_refreshed", version=state.version)
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
        log.info("tally_refresher_stopped")
