"""Correlation ID management for tracing an envelope through the pipeline.

The consumer sets the correlation ID to the envelope_id while it handles
one delivery, so every log line emitted on that envelope's behalf (engine,
store, publisher) can be joined. HTTP requests use the X-Correlation-ID
header or a fresh UUID.

Usage:
    with correlation_scope(queued.envelope_id):
        await engine.process(queued)

    # In structlog configuration
    processors = [..., correlation_id_processor, ...]
"""

from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any
from uuid import uuid4

# Default is empty string to avoid None type issues
_correlation_id: ContextVar[str] = ContextVar("correlation_id", default="")


def generate_correlation_id() -> str:
    """Generate a new correlation ID (UUID4)."""
    return str(uuid4())


def get_correlation_id() -> str:
    """Get the current correlation ID from context.

    Returns:
        The current correlation ID or empty string if not set.
    """
    return _correlation_id.get()


def set_correlation_id(correlation_id: str) -> None:
    """Set the correlation ID in the current context.

    Args:
        correlation_id: The correlation ID to set.
    """
    _correlation_id.set(correlation_id)


@contextmanager
def correlation_scope(correlation_id: str) -> Iterator[str]:
    """Set the correlation ID for the duration of a block, then restore it."""
    token = _correlation_id.set(correlation_id)
    try:
        yield correlation_id
    finally:
        _correlation_id.reset(token)


def correlation_id_processor(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Structlog processor to add correlation_id to every log entry.

    Args:
        logger: The logger instance (unused, required by structlog).
        method_name: The logging method name (unused, required by structlog).
        event_dict: The event dictionary to modify.

    Returns:
        The event dictionary with correlation_id added.
    """
    correlation_id = get_correlation_id()
    if correlation_id:
        event_dict["correlation_id"] = correlation_id
    return event_dict
