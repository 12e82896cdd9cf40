"""Tally dependencies for API endpoints.

The pipeline bootstrap installs the process-wide broadcaster and store
with set_tally_dependencies(); tests install stubs the same way.
"""

from __future__ import annotations

from tallyflow.application.ports.tally_store import TallyStorePort
from tallyflow.application.services.tally_broadcaster import TallyBroadcaster

# Keepalive comment interval for the SSE stream
DEFAULT_KEEPALIVE_SECONDS = 30.0

_broadcaster: TallyBroadcaster | None = None
_tally_store: TallyStorePort | None = None
_keepalive_seconds: float = DEFAULT_KEEPALIVE_SECONDS


def get_broadcaster() -> TallyBroadcaster:
    """Get the broadcaster instance (created on first use)."""
    global _broadcaster
    if _broadcaster is None:
        _broadcaster = TallyBroadcaster()
    return _broadcaster


def get_tally_store() -> TallyStorePort | None:
    """Get the tally store used for cold reads (None if not wired)."""
    return _tally_store


def get_keepalive_seconds() -> float:
    return _keepalive_seconds


def set_tally_dependencies(
    broadcaster: TallyBroadcaster,
    store: TallyStorePort | None = None,
    keepalive_seconds: float = DEFAULT_KEEPALIVE_SECONDS,
) -> None:
    """Install the broadcaster and store (bootstrap and tests)."""
    global _broadcaster, _tally_store, _keepalive_seconds
    _broadcaster = broadcaster
    _tally_store = store
    _keepalive_seconds = keepalive_seconds


def reset_tally_dependencies() -> None:
    """Reset singletons (testing cleanup)."""
    global _broadcaster, _tally_store, _keepalive_seconds
    _broadcaster = None
    _tally_store = None
    _keepalive_seconds = DEFAULT_KEEPALIVE_SECONDS
