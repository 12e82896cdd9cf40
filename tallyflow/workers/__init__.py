"""Async workers for the tally pipeline.

Workers:
- TallyConsumerWorker: polls vote envelopes, commits them through the
  aggregation engine, acknowledges after commit
- ErrorHandler: category-based retry / dead-letter / skip decisions
"""

from tallyflow.workers.error_handler import (
    ErrorAction,
    ErrorCategory,
    ErrorDecision,
    ErrorHandler,
    categorize_error,
    register_error_category,
)
from tallyflow.workers.tally_consumer import ConsumerMetrics, TallyConsumerWorker

__all__ = [
    "ConsumerMetrics",
    "ErrorAction",
    "ErrorCategory",
    "ErrorDecision",
    "ErrorHandler",
    "TallyConsumerWorker",
    "categorize_error",
    "register_error_category",
]
