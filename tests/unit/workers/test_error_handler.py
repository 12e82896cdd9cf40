import random

import pytest

from tallyflow.domain.errors import (
    ConstraintViolationError,
    InvalidEnvelopeError,
    InvalidOptionError,
    StorageUnavailableError,
    TransientQueueError,
    TransientStorageError,
)
from tallyflow.domain.models.aggregation import RejectionReason
from tallyflow.workers.error_handler import (
    ErrorAction,
    ErrorCategory,
    ErrorHandler,
    categorize_error,
)


class TestCategorizeError:
    """Verify domain and driver errors map to the right category."""

    @pytest.mark.parametrize(
        ("error", "category"),
        [
            (StorageUnavailableError("commit", "down"), ErrorCategory.STORAGE_UNAVAILABLE),
            (TransientStorageError("commit"), ErrorCategory.STORAGE_UNAVAILABLE),
            (TransientQueueError("poll"), ErrorCategory.QUEUE_UNAVAILABLE),
            (ConstraintViolationError("e", "tally_option_exists"), ErrorCategory.CONSTRAINT_VIOLATION),
            (InvalidEnvelopeError("bad"), ErrorCategory.INVALID_ENVELOPE),
            (InvalidOptionError("Z"), ErrorCategory.INVALID_OPTION),
            (TimeoutError(), ErrorCategory.STORAGE_UNAVAILABLE),
            (ConnectionResetError(), ErrorCategory.STORAGE_UNAVAILABLE),
            (RuntimeError("boom"), ErrorCategory.UNKNOWN),
        ],
    )
    def test_category(self, error: Exception, category: ErrorCategory) -> None:
        assert categorize_error(error) == category

    def test_unregistered_driver_error_by_name(self) -> None:
        class OperationalFailure(Exception):
            pass

        assert categorize_error(OperationalFailure()) == ErrorCategory.STORAGE_UNAVAILABLE


class TestRetryDecisions:
    """Verify transient errors retry until max attempts, then dead-letter."""

    def test_transient_error_returns_retry(self) -> None:
        handler = ErrorHandler(max_attempts=3)

        decision = handler.handle(StorageUnavailableError("commit", "down"), attempt=1)

        assert decision.action == ErrorAction.RETRY
        assert decision.category == ErrorCategory.STORAGE_UNAVAILABLE
        assert decision.retry_delay_seconds > 0
        assert not decision.is_terminal

    def test_max_attempts_returns_dead_letter(self) -> None:
        handler = ErrorHandler(max_attempts=3)

        decision = handler.handle(StorageUnavailableError("commit", "down"), attempt=3)

        assert decision.action == ErrorAction.DEAD_LETTER
        assert decision.is_terminal

    def test_unknown_error_is_retried(self) -> None:
        handler = ErrorHandler(max_attempts=3)

        decision = handler.handle(RuntimeError("boom"), attempt=1)

        assert decision.action == ErrorAction.RETRY
        assert decision.category == ErrorCategory.UNKNOWN

    @pytest.mark.parametrize(
        "error",
        [
            ConstraintViolationError("e", "ck_tally_count_non_negative"),
            InvalidEnvelopeError("bad"),
            InvalidOptionError("Z"),
        ],
    )
    def test_permanent_errors_dead_letter_on_first_attempt(self, error: Exception) -> None:
        handler = ErrorHandler(max_attempts=5)

        decision = handler.handle(error, attempt=1)

        assert decision.action == ErrorAction.DEAD_LETTER

    def test_context_is_carried(self) -> None:
        handler = ErrorHandler()

        decision = handler.handle(RuntimeError("x"), context={"envelope_id": "env-1"})

        assert decision.context == {"envelope_id": "env-1"}


class TestRejectionDecisions:
    def test_duplicate_is_skipped(self) -> None:
        decision = ErrorHandler().decide_rejection(RejectionReason.DUPLICATE)

        assert decision.action == ErrorAction.SKIP
        assert decision.category == ErrorCategory.DUPLICATE

    @pytest.mark.parametrize(
        ("reason", "category"),
        [
            (RejectionReason.INVALID_OPTION, ErrorCategory.INVALID_OPTION),
            (RejectionReason.INVALID_ENVELOPE, ErrorCategory.INVALID_ENVELOPE),
        ],
    )
    def test_invalid_is_dead_lettered(
        self, reason: RejectionReason, category: ErrorCategory
    ) -> None:
        decision = ErrorHandler().decide_rejection(reason)

        assert decision.action == ErrorAction.DEAD_LETTER
        assert decision.category == category


class TestBackoff:
    """Verify backoff stays within bounds and has variance."""

    def test_backoff_respects_max_delay(self) -> None:
        handler = ErrorHandler(
            max_attempts=20,
            base_delay_seconds=1.0,
            max_delay_seconds=10.0,
        )

        for attempt in range(1, 20):
            delay = handler.backoff_delay(attempt)
            assert delay <= 10.0, f"Attempt {attempt} exceeded max_delay"

    def test_backoff_grows_exponentially_without_jitter(self) -> None:
        handler = ErrorHandler(base_delay_seconds=0.5, max_delay_seconds=60.0, jitter=0.0)

        delays = [handler.backoff_delay(attempt) for attempt in range(1, 5)]

        assert delays == [0.5, 1.0, 2.0, 4.0]

    def test_backoff_has_jitter(self) -> None:
        handler = ErrorHandler(base_delay_seconds=1.0, max_delay_seconds=60.0, jitter=0.2)
        random.seed(0)

        delays = [handler.backoff_delay(3) for _ in range(10)]

        assert len(set(delays)) > 1
        assert all(3.2 <= d <= 4.8 for d in delays)

    def test_jitter_only_shortens_at_the_cap(self) -> None:
        handler = ErrorHandler(base_delay_seconds=1.0, max_delay_seconds=30.0, jitter=0.2)
        random.seed(1)

        delays = [handler.backoff_delay(10) for _ in range(50)]

        assert all(24.0 <= d <= 30.0 for d in delays)
        assert any(d < 30.0 for d in delays)
