"""Structured logging configuration with structlog.

Services log through structlog (event name plus key/value context).
Workers log through the standard library ``logging`` module; both end
up on stdout at the level set by LOG_LEVEL.

Log Entry Format (production):
    {
        "timestamp": "2024-01-01T00:00:00.000000Z",
        "level": "info",
        "event": "envelope_applied",
        "correlation_id": "<envelope_id>",
        ...additional context
    }

Usage:
    configure_structlog(environment="production")  # JSON output
    configure_structlog(environment="development")  # Console output

    log = structlog.get_logger()
    log.info("event_name", key="value")
"""

import logging
import os
from typing import cast

import structlog
from structlog.typing import Processor

from tallyflow.infrastructure.observability.correlation import correlation_id_processor

# Environment variable for log level (default: INFO)
LOG_LEVEL_ENV = "LOG_LEVEL"
DEFAULT_LOG_LEVEL = "INFO"

STDLIB_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _get_log_level() -> int:
    """Get the configured log level from environment.

    Returns:
        The logging level integer (e.g., logging.INFO).
    """
    level_name = os.getenv(LOG_LEVEL_ENV, DEFAULT_LOG_LEVEL).upper()
    return getattr(logging, level_name, logging.INFO)


def configure_structlog(environment: str = "production") -> None:
    """Configure structlog and stdlib logging for the process.

    Should be called once at startup.

    Args:
        environment: 'production' for JSON output, 'development' for console.
    """
    level = _get_log_level()

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        cast(Processor, correlation_id_processor),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if environment == "production":
        final_processor: Processor = structlog.processors.JSONRenderer()
    else:
        final_processor = structlog.dev.ConsoleRenderer(colors=True)

    structlog.configure(
        processors=shared_processors + [final_processor],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(level=level, format=STDLIB_LOG_FORMAT)
