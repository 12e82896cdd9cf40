"""FastAPI dependencies."""

from tallyflow.api.dependencies.tally import (
    get_broadcaster,
    get_keepalive_seconds,
    get_tally_store,
    reset_tally_dependencies,
    set_tally_dependencies,
)

__all__ = [
    "get_broadcaster",
    "get_keepalive_seconds",
    "get_tally_store",
    "reset_tally_dependencies",
    "set_tally_dependencies",
]
