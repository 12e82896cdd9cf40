"""Shared test helpers.

Usage:
    from tests.helpers import make_envelope, make_queued
"""

from tests.helpers.envelopes import make_envelope, make_queued, make_state

__all__ = ["make_envelope", "make_queued", "make_state"]
