"""Queue service errors."""

from __future__ import annotations

from tallyflow.domain.exceptions import TallyError


class TransientQueueError(TallyError):
    """Raised when the queue service is temporarily unreachable.

    Never escalated: the consumer backs off and polls again. Envelopes
    that were in flight stay unacknowledged and are redelivered.

    Attributes:
        operation: Queue operation that failed (poll, acknowledge, ...).
    """

    def __init__(self, operation: str, message: str = "") -> None:
        self.operation = operation
        super().__init__(
            f"Queue {operation} failed: {message}"
            if message
            else f"Queue {operation} failed"
        )
