"""Domain models for the tally pipeline."""

from tallyflow.domain.models.aggregation import (
    AggregationOutcome,
    EnvelopeStatus,
    RejectionReason,
)
from tallyflow.domain.models.tally_state import (
    AlreadyProcessed,
    Committed,
    CommitResult,
    ProcessedMarker,
    TallyState,
    apply_vote,
)
from tallyflow.domain.models.vote_envelope import (
    QueuedEnvelope,
    VoteEnvelope,
    new_envelope,
)

__all__ = [
    "AggregationOutcome",
    "AlreadyProcessed",
    "Committed",
    "CommitResult",
    "EnvelopeStatus",
    "ProcessedMarker",
    "QueuedEnvelope",
    "RejectionReason",
    "TallyState",
    "VoteEnvelope",
    "apply_vote",
    "new_envelope",
]
