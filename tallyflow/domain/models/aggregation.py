"""Aggregation outcome models.

Each envelope handed to the aggregation engine ends in exactly one
outcome: APPLIED (counted, committed) or REJECTED with a reason.
Duplicates are REJECTED but are not errors: under at-least-once
delivery they are expected, and the consumer acknowledges them.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from tallyflow.domain.models.tally_state import TallyState


class EnvelopeStatus(str, Enum):
    """Terminal state of an envelope in the aggregation state machine."""

    APPLIED = "applied"
    REJECTED = "rejected"


class RejectionReason(str, Enum):
    """Why an envelope was not counted."""

    DUPLICATE = "duplicate"
    """Envelope_id already committed (redelivery)."""

    INVALID_OPTION = "invalid_option"
    """Option is not in the candidate set."""

    INVALID_ENVELOPE = "invalid_envelope"
    """Missing or malformed fields."""


@dataclass(frozen=True)
class AggregationOutcome:
    """Result of processing one envelope.

    Attributes:
        envelope_id: The processed envelope.
        status: APPLIED or REJECTED.
        reason: Rejection reason (None when applied).
        detail: Human-readable detail for rejections.
        option: Option counted (None unless applied).
        state: Committed TallyState after an APPLIED outcome.
    """

    envelope_id: str
    status: EnvelopeStatus
    reason: RejectionReason | None = None
    detail: str | None = None
    option: str | None = None
    state: TallyState | None = None

    @classmethod
    def applied(cls, envelope_id: str, option: str, state: TallyState) -> AggregationOutcome:
        return cls(
            envelope_id=envelope_id,
            status=EnvelopeStatus.APPLIED,
            option=option,
            state=state,
        )

    @classmethod
    def rejected(
        cls,
        envelope_id: str,
        reason: RejectionReason,
        detail: str | None = None,
    ) -> AggregationOutcome:
        return cls(
            envelope_id=envelope_id,
            status=EnvelopeStatus.REJECTED,
            reason=reason,
            detail=detail,
        )

    @property
    def is_applied(self) -> bool:
        return self.status == EnvelopeStatus.APPLIED

    @property
    def is_duplicate(self) -> bool:
        return self.reason == RejectionReason.DUPLICATE
