"""Domain errors for tallyflow.

All exceptions inherit from TallyError.
"""

from tallyflow.domain.errors.envelope import InvalidEnvelopeError, InvalidOptionError
from tallyflow.domain.errors.queue import TransientQueueError
from tallyflow.domain.errors.storage import (
    ConstraintViolationError,
    StorageUnavailableError,
    TransientStorageError,
)

__all__: list[str] = [
    "ConstraintViolationError",
    "InvalidEnvelopeError",
    "InvalidOptionError",
    "StorageUnavailableError",
    "TransientQueueError",
    "TransientStorageError",
]
