"""Category-specific error handling for tally consumers.

Error handling strategy (RETRY, DEAD_LETTER, SKIP):

- RETRY: Transient errors that may succeed on retry (queue or storage
  unavailable, commit timeout)
- DEAD_LETTER: Permanent errors (malformed envelope, unknown option,
  constraint violation) or transient errors after max attempts
- SKIP: Duplicates, which are expected under at-least-once delivery and
  are acknowledged without effect

There is no PROPAGATE action: no single envelope may stop a consumer.
"""

import logging
import random
from dataclasses import dataclass
from enum import Enum
from typing import Any

from tallyflow.domain.errors import (
    ConstraintViolationError,
    InvalidEnvelopeError,
    InvalidOptionError,
    StorageUnavailableError,
    TransientQueueError,
)
from tallyflow.domain.models.aggregation import RejectionReason

logger = logging.getLogger(__name__)


class ErrorCategory(Enum):
    """Categories of errors encountered while tallying."""

    # Transient - may succeed on retry
    QUEUE_UNAVAILABLE = "queue_unavailable"
    STORAGE_UNAVAILABLE = "storage_unavailable"

    # Permanent - the envelope can never be counted
    INVALID_ENVELOPE = "invalid_envelope"
    INVALID_OPTION = "invalid_option"
    CONSTRAINT_VIOLATION = "constraint_violation"

    # Idempotent - safe to skip
    DUPLICATE = "duplicate"

    # Unknown - requires investigation
    UNKNOWN = "unknown"


class ErrorAction(Enum):
    """Action to take when an error occurs."""

    RETRY = "retry"  # Retry with backoff (if under max attempts)
    DEAD_LETTER = "dead_letter"  # Copy to dead-letter path, then ack
    SKIP = "skip"  # Ack and drop (duplicate)


@dataclass(frozen=True)
class ErrorDecision:
    """Decision about how to handle an error.

    Attributes:
        action: The action to take
        category: The error category
        log_level: Logging level for the decision
        retry_delay_seconds: Delay before retry (if action is RETRY)
        context: Additional context for logging/dead-letter records
    """

    action: ErrorAction
    category: ErrorCategory
    log_level: str = "warning"
    retry_delay_seconds: float = 0.0
    context: dict[str, Any] | None = None

    @property
    def is_terminal(self) -> bool:
        """Check if this decision ends processing for this envelope."""
        return self.action in {ErrorAction.DEAD_LETTER, ErrorAction.SKIP}


# Error type to category mapping
ERROR_CATEGORIES: dict[type[Exception], ErrorCategory] = {}


def register_error_category(
    error_type: type[Exception],
    category: ErrorCategory,
) -> None:
    """Register an error type with its category.

    Args:
        error_type: The exception type
        category: The category to assign
    """
    ERROR_CATEGORIES[error_type] = category


def categorize_error(error: Exception) -> ErrorCategory:
    """Determine the category of an error.

    Registered types win; the most specific registration is checked first
    so subclasses (InvalidOptionError) beat their bases.

    Args:
        error: The exception to categorize

    Returns:
        ErrorCategory for the error
    """
    for error_type in type(error).__mro__:
        category = ERROR_CATEGORIES.get(error_type)
        if category is not None:
            return category

    error_name = type(error).__name__.lower()

    # Driver-level failures that escaped the store's own mapping
    if any(p in error_name for p in ["timeout", "connection", "operational"]):
        return ErrorCategory.STORAGE_UNAVAILABLE

    return ErrorCategory.UNKNOWN


class ErrorHandler:
    """Error handler that decides actions based on error category.

    - Transient errors -> RETRY (with backoff, up to max attempts)
    - Permanent errors -> DEAD_LETTER
    - Duplicates -> SKIP

    Usage:
        handler = ErrorHandler(max_attempts=5)

        while True:
            try:
                outcome = await engine.process(queued)
                break
            except Exception as e:
                decision = handler.handle(e, attempt=attempt)
                if decision.action == ErrorAction.RETRY:
                    await asyncio.sleep(decision.retry_delay_seconds)
                    attempt += 1
                    continue
                await dead_letter(queued, decision)
                break
    """

    RETRYABLE_CATEGORIES: set[ErrorCategory] = {
        ErrorCategory.QUEUE_UNAVAILABLE,
        ErrorCategory.STORAGE_UNAVAILABLE,
        ErrorCategory.UNKNOWN,
    }

    IMMEDIATE_DLQ_CATEGORIES: set[ErrorCategory] = {
        ErrorCategory.INVALID_ENVELOPE,
        ErrorCategory.INVALID_OPTION,
        ErrorCategory.CONSTRAINT_VIOLATION,
    }

    SKIP_CATEGORIES: set[ErrorCategory] = {
        ErrorCategory.DUPLICATE,
    }

    REJECTION_CATEGORIES: dict[RejectionReason, ErrorCategory] = {
        RejectionReason.DUPLICATE: ErrorCategory.DUPLICATE,
        RejectionReason.INVALID_OPTION: ErrorCategory.INVALID_OPTION,
        RejectionReason.INVALID_ENVELOPE: ErrorCategory.INVALID_ENVELOPE,
    }

    def __init__(
        self,
        max_attempts: int = 5,
        base_delay_seconds: float = 0.2,
        max_delay_seconds: float = 30.0,
        jitter: float = 0.2,
    ) -> None:
        """Initialize the error handler.

        Args:
            max_attempts: Maximum processing attempts before dead-letter
            base_delay_seconds: Base delay for exponential backoff
            max_delay_seconds: Maximum delay cap
            jitter: Relative jitter applied to each delay
        """
        self._max_attempts = max_attempts
        self._base_delay = base_delay_seconds
        self._max_delay = max_delay_seconds
        self._jitter = jitter

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    def handle(
        self,
        error: Exception,
        attempt: int = 1,
        context: dict[str, Any] | None = None,
    ) -> ErrorDecision:
        """Handle an error and decide the action.

        Args:
            error: The exception that occurred
            attempt: Current attempt number (1-based, counts redeliveries)
            context: Optional context for logging

        Returns:
            ErrorDecision with action and details
        """
        category = categorize_error(error)

        logger.debug(
            "Handling error: category=%s, attempt=%d/%d, error=%s",
            category.value,
            attempt,
            self._max_attempts,
            error,
        )

        if category in self.SKIP_CATEGORIES:
            return self._skip(category, context)

        if category in self.IMMEDIATE_DLQ_CATEGORIES:
            logger.warning(
                "Permanent error - routing to dead-letter: %s (category=%s)",
                error,
                category.value,
            )
            return ErrorDecision(
                action=ErrorAction.DEAD_LETTER,
                category=category,
                log_level="warning",
                context=context,
            )

        if attempt < self._max_attempts:
            delay = self.backoff_delay(attempt)
            logger.warning(
                "Transient error - RETRYING in %.2fs: %s (attempt %d/%d, category=%s)",
                delay,
                error,
                attempt,
                self._max_attempts,
                category.value,
            )
            return ErrorDecision(
                action=ErrorAction.RETRY,
                category=category,
                log_level="warning",
                retry_delay_seconds=delay,
                context=context,
            )

        logger.error(
            "Max attempts exhausted - routing to dead-letter: %s (attempts=%d, category=%s)",
            error,
            attempt,
            category.value,
        )
        return ErrorDecision(
            action=ErrorAction.DEAD_LETTER,
            category=category,
            log_level="error",
            context=context,
        )

    def decide_rejection(
        self,
        reason: RejectionReason,
        context: dict[str, Any] | None = None,
    ) -> ErrorDecision:
        """Decide the action for an envelope the engine rejected.

        Args:
            reason: Rejection reason from the aggregation outcome
            context: Optional context for logging

        Returns:
            SKIP for duplicates, DEAD_LETTER for invalid envelopes
        """
        category = self.REJECTION_CATEGORIES[reason]
        if category in self.SKIP_CATEGORIES:
            return self._skip(category, context)
        return ErrorDecision(
            action=ErrorAction.DEAD_LETTER,
            category=category,
            log_level="warning",
            context=context,
        )

    def backoff_delay(self, attempt: int) -> float:
        """Calculate retry delay: capped exponential with jitter.

        The cap is a hard ceiling applied after jitter, so once the
        exponential term reaches the cap jitter can only shorten the delay
        (range ``[cap * (1 - jitter), cap]``). Below the cap jitter is ±.

        Args:
            attempt: Attempt number that just failed (1-based)

        Returns:
            Delay in seconds, never above the cap
        """
        exponent = max(attempt - 1, 0)
        delay = min(self._max_delay, self._base_delay * (2**exponent))
        if self._jitter:
            delay *= random.uniform(1 - self._jitter, 1 + self._jitter)
        return min(delay, self._max_delay)

    def _skip(
        self, category: ErrorCategory, context: dict[str, Any] | None
    ) -> ErrorDecision:
        return ErrorDecision(
            action=ErrorAction.SKIP,
            category=category,
            log_level="debug",
            context=context,
        )


# Register domain error types
register_error_category(TransientQueueError, ErrorCategory.QUEUE_UNAVAILABLE)
register_error_category(StorageUnavailableError, ErrorCategory.STORAGE_UNAVAILABLE)
register_error_category(ConstraintViolationError, ErrorCategory.CONSTRAINT_VIOLATION)
register_error_category(InvalidEnvelopeError, ErrorCategory.INVALID_ENVELOPE)
register_error_category(InvalidOptionError, ErrorCategory.INVALID_OPTION)

# Register standard library exceptions
register_error_category(TimeoutError, ErrorCategory.STORAGE_UNAVAILABLE)
register_error_category(ConnectionError, ErrorCategory.STORAGE_UNAVAILABLE)
