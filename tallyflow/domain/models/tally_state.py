"""Tally state domain models.

TallyState is the aggregate: a count per known option plus a version
that increases by one with every committed envelope. The version lets
viewers detect stale or out-of-order snapshots.

Invariants:
- Every count is a non-negative integer
- Sum of counts == number of distinct accepted envelope_ids
- Version never decreases

Vote application is a pure function of (current counts, option). The
de-dup check that decides whether it runs at all lives in storage.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any


def apply_vote(counts: Mapping[str, int], option: str) -> dict[str, int]:
    """Return a new count mapping with one more vote for ``option``.

    The input is never mutated. Options absent from ``counts`` start at 0.

    Args:
        counts: Current per-option counts.
        option: Option receiving the vote.

    Returns:
        New mapping with the incremented count.
    """
    updated = dict(counts)
    updated[option] = updated.get(option, 0) + 1
    return updated


@dataclass(frozen=True)
class TallyState:
    """Snapshot of per-option counts at a specific version.

    Attributes:
        counts: Option -> count for every known option.
        version: Number of commits applied so far (0 for a fresh store).
        updated_at: Time of the commit that produced this version.
    """

    counts: dict[str, int] = field(default_factory=dict)
    version: int = 0
    updated_at: datetime | None = None

    def __post_init__(self) -> None:
        """Validate counts and version."""
        for option, count in self.counts.items():
            if count < 0:
                raise ValueError(f"Count for {option!r} must be non-negative, got {count}")
        if self.version < 0:
            raise ValueError(f"version must be non-negative, got {self.version}")

    @classmethod
    def empty(cls, options: frozenset[str] | set[str] | list[str]) -> TallyState:
        """Create a zeroed state for the given options."""
        return cls(counts={option: 0 for option in sorted(options)})

    @property
    def total(self) -> int:
        """Total accepted votes across all options."""
        return sum(self.counts.values())

    def count_for(self, option: str) -> int:
        """Count for one option (0 if unknown)."""
        return self.counts.get(option, 0)

    def with_vote(self, option: str, at: datetime | None = None) -> TallyState:
        """Return the next state after one accepted vote for ``option``."""
        return TallyState(
            counts=apply_vote(self.counts, option),
            version=self.version + 1,
            updated_at=at or datetime.now(timezone.utc),
        )

    def is_newer_than(self, other: TallyState | None) -> bool:
        """True if this state supersedes ``other``."""
        return other is None or self.version > other.version

    def to_payload(self) -> dict[str, Any]:
        """Serialize for subscribers.

        Returns:
            Dict with version, counts, total and updated_at.
        """
        return {
            "version": self.version,
            "counts": dict(sorted(self.counts.items())),
            "total": self.total,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


@dataclass(frozen=True)
class ProcessedMarker:
    """Durable per-consumer progress record.

    Written in the same transaction as each commit. committed_count only
    ever grows, so the marker never regresses.

    Attributes:
        consumer_id: Consumer that committed.
        last_envelope_id: Most recent envelope it committed.
        committed_count: Total envelopes it has committed.
        updated_at: Time of the last commit.
    """

    consumer_id: str
    last_envelope_id: str
    committed_count: int
    updated_at: datetime


@dataclass(frozen=True)
class Committed:
    """Commit applied: the envelope was counted.

    Attributes:
        envelope_id: The committed envelope.
        option: Option that was incremented.
        new_total: Count for ``option`` after the commit.
        state: Full TallyState read inside the commit transaction.
    """

    envelope_id: str
    option: str
    new_total: int
    state: TallyState


@dataclass(frozen=True)
class AlreadyProcessed:
    """Commit skipped: the envelope_id was already in the processed set.

    Attributes:
        envelope_id: The redelivered envelope.
    """

    envelope_id: str


CommitResult = Committed | AlreadyProcessed
