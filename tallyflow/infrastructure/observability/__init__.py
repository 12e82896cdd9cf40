"""Observability infrastructure: structured logging and correlation IDs.

Usage:
    from tallyflow.infrastructure.observability import (
        configure_structlog,
        correlation_scope,
    )

    configure_structlog(environment="production")

    with correlation_scope(envelope_id):
        ...
"""

from tallyflow.infrastructure.observability.correlation import (
    correlation_id_processor,
    correlation_scope,
    generate_correlation_id,
    get_correlation_id,
    set_correlation_id,
)
from tallyflow.infrastructure.observability.logging import (
    configure_structlog,
)

__all__: list[str] = [
    "configure_structlog",
    "correlation_id_processor",
    "correlation_scope",
    "generate_correlation_id",
    "get_correlation_id",
    "set_correlation_id",
]
