"""
tallyflow - vote tally pipeline core.

Votes arrive on a durable queue, are de-duplicated and aggregated into
per-option counts, committed transactionally, and pushed to live viewers.

Guarantees:
- At-least-once input, idempotent aggregation (no double counting)
- Acknowledge only after commit
- Viewers see consistent snapshots with a monotonically increasing version
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
