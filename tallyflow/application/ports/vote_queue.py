"""Port interface for the durable vote queue.

The queue is an external collaborator offering at-least-once delivery:
a polled envelope stays owned by the consumer until it is acknowledged,
requeued, or its visibility timeout lapses (then it is redelivered).

Constraints:
- acknowledge() is called only after the tally commit succeeded, or
  after an explicit decision to drop/dead-letter the envelope
- poll() timing out is not an error: it returns None
- Queue unavailability surfaces as TransientQueueError
"""

from typing import Any, Protocol

from tallyflow.domain.models.vote_envelope import QueuedEnvelope


class VoteQueuePort(Protocol):
    """Port for consuming vote envelopes from a durable queue."""

    async def poll(self, timeout: float) -> QueuedEnvelope | None:
        """Take the next envelope, waiting up to ``timeout`` seconds.

        Args:
            timeout: Maximum seconds to block.

        Returns:
            The next QueuedEnvelope, or None if none arrived in time.

        Raises:
            TransientQueueError: If the queue service is unreachable.
        """
        ...

    async def acknowledge(self, envelope_id: str) -> None:
        """Remove a delivered envelope permanently.

        Raises:
            TransientQueueError: If the queue service is unreachable.
        """
        ...

    async def requeue(self, envelope_id: str, delay: float) -> None:
        """Return a delivered envelope for redelivery after ``delay`` seconds.

        Raises:
            TransientQueueError: If the queue service is unreachable.
        """
        ...

    async def dead_letter(self, envelope_id: str, record: dict[str, Any]) -> None:
        """Copy a delivered envelope to the dead-letter path.

        The caller acknowledges the original afterwards.

        Args:
            envelope_id: The envelope being dead-lettered.
            record: Failure details (reason, category, attempts, payload).

        Raises:
            TransientQueueError: If the queue service is unreachable.
        """
        ...
