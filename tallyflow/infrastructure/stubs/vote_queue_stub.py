"""In-memory vote queue stub.

Implements VoteQueuePort with the same delivery semantics as the Redis
queue: a polled envelope is leased until acknowledged, requeued or its
visibility timeout lapses, after which it is delivered again with a
higher delivery_count.

NOT suitable for production use.
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from collections.abc import Callable
from typing import Any

from tallyflow.domain.errors import TransientQueueError
from tallyflow.domain.models.vote_envelope import QueuedEnvelope, VoteEnvelope


class VoteQueueStub:
    """In-memory implementation of VoteQueuePort.

    Failure injection:
        fail_next(operation, count): the next ``count`` calls of
        ``operation`` ("poll", "acknowledge", "requeue", "dead_letter")
        raise TransientQueueError.

    Attributes:
        acknowledged: Envelope ids acknowledged, in order.
        requeued: (envelope_id, delay) pairs, in order.
        dead_letters: Dead-letter records, in order.
    """

    def __init__(
        self,
        visibility_timeout: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._visibility_timeout = visibility_timeout
        self._clock = clock
        self._ready: deque[str] = deque()
        self._bodies: dict[str, Any] = {}
        self._deliveries: dict[str, int] = {}
        self._inflight: dict[str, float] = {}
        self._delayed: dict[str, float] = {}
        self._failures: dict[str, int] = {}
        self.acknowledged: list[str] = []
        self.requeued: list[tuple[str, float]] = []
        self.dead_letters: list[dict[str, Any]] = []

    # Submission side

    def enqueue(self, envelope: VoteEnvelope) -> str:
        """Enqueue a validated envelope under its own envelope_id."""
        return self.enqueue_raw(envelope.to_payload(), envelope.envelope_id)

    def enqueue_raw(self, payload: Any, envelope_id: str | None = None) -> str:
        """Enqueue any payload (malformed ones included).

        Re-enqueueing an id that is still pending keeps a single copy.
        """
        if envelope_id is None:
            envelope_id = f"raw-{len(self._bodies) + len(self.acknowledged) + 1}"
        if envelope_id not in self._bodies:
            self._ready.append(envelope_id)
        self._bodies[envelope_id] = payload
        return envelope_id

    # Failure injection

    def fail_next(self, operation: str, count: int = 1) -> None:
        self._failures[operation] = self._failures.get(operation, 0) + count

    def _maybe_fail(self, operation: str) -> None:
        remaining = self._failures.get(operation, 0)
        if remaining:
            self._failures[operation] = remaining - 1
            raise TransientQueueError(operation, "injected failure")

    # VoteQueuePort

    async def poll(self, timeout: float) -> QueuedEnvelope | None:
        self._maybe_fail("poll")
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            claimed = self._claim()
            if claimed is not None:
                return claimed
            remaining = deadline - loop.time()
            if remaining <= 0:
                return None
            await asyncio.sleep(min(remaining, 0.01))

    async def acknowledge(self, envelope_id: str) -> None:
        self._maybe_fail("acknowledge")
        self._inflight.pop(envelope_id, None)
        self._bodies.pop(envelope_id, None)
        self._deliveries.pop(envelope_id, None)
        self.acknowledged.append(envelope_id)

    async def requeue(self, envelope_id: str, delay: float) -> None:
        self._maybe_fail("requeue")
        self._inflight.pop(envelope_id, None)
        if envelope_id in self._bodies:
            self._delayed[envelope_id] = self._clock() + max(delay, 0.0)
        self.requeued.append((envelope_id, delay))

    async def dead_letter(self, envelope_id: str, record: dict[str, Any]) -> None:
        self._maybe_fail("dead_letter")
        self.dead_letters.append(dict(record, envelope_id=envelope_id))

    # Test helpers

    def expire_inflight(self) -> int:
        """Lapse every lease now, as if the visibility timeout passed."""
        expired = list(self._inflight)
        for envelope_id in expired:
            del self._inflight[envelope_id]
            self._ready.append(envelope_id)
        return len(expired)

    @property
    def pending(self) -> int:
        """Envelopes not yet acknowledged (ready, delayed or in flight)."""
        return len(self._bodies)

    @property
    def in_flight(self) -> set[str]:
        return set(self._inflight)

    def _promote(self) -> None:
        now = self._clock()
        for envelope_id, due in list(self._delayed.items()):
            if due <= now:
                del self._delayed[envelope_id]
                self._ready.append(envelope_id)
        for envelope_id, lease_deadline in list(self._inflight.items()):
            if lease_deadline <= now:
                del self._inflight[envelope_id]
                self._ready.append(envelope_id)

    def _claim(self) -> QueuedEnvelope | None:
        self._promote()
        while self._ready:
            envelope_id = self._ready.popleft()
            if envelope_id not in self._bodies:
                continue  # acknowledged while waiting
            self._inflight[envelope_id] = self._clock() + self._visibility_timeout
            self._deliveries[envelope_id] = self._deliveries.get(envelope_id, 0) + 1
            return QueuedEnvelope(
                envelope_id=envelope_id,
                payload=self._bodies[envelope_id],
                delivery_count=self._deliveries[envelope_id],
            )
        return None
