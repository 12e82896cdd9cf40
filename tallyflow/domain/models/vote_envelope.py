"""Vote envelope domain models.

A VoteEnvelope is one cast vote plus its identity. The envelope_id is
assigned at submission time, never at processing time, so a redelivered
envelope carries the same id and can be recognised as a duplicate.

Envelope lifecycle through the pipeline:
    Received (QueuedEnvelope) -> Validated (VoteEnvelope) -> Applied
    Received -> Rejected(duplicate | invalid_option | invalid_envelope)

Wire format (JSON object):
    {
        "envelope_id": "5b0c...",
        "voter_id": "voter-17",
        "option": "A",
        "submitted_at": "2024-01-01T00:00:00+00:00"
    }
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from tallyflow.domain.errors.envelope import InvalidEnvelopeError

REQUIRED_FIELDS = ("envelope_id", "voter_id", "option", "submitted_at")


def _utc_now() -> datetime:
    """Return current UTC time with timezone info."""
    return datetime.now(timezone.utc)


def _require_text(payload: Mapping[str, Any], name: str, envelope_id: str | None) -> str:
    value = payload.get(name)
    if value is None:
        raise InvalidEnvelopeError(
            f"Missing required field {name!r}", envelope_id=envelope_id, field=name
        )
    if not isinstance(value, str) or not value.strip():
        raise InvalidEnvelopeError(
            f"Field {name!r} must be a non-empty string",
            envelope_id=envelope_id,
            field=name,
        )
    return value.strip()


def _parse_timestamp(value: Any, envelope_id: str | None) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as e:
            raise InvalidEnvelopeError(
                f"Field 'submitted_at' is not an ISO-8601 timestamp: {value!r}",
                envelope_id=envelope_id,
                field="submitted_at",
            ) from e
    else:
        raise InvalidEnvelopeError(
            "Missing required field 'submitted_at'"
            if value is None
            else f"Field 'submitted_at' has unsupported type {type(value).__name__}",
            envelope_id=envelope_id,
            field="submitted_at",
        )

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True, eq=True)
class VoteEnvelope:
    """A single validated vote submission.

    Attributes:
        envelope_id: Unique per submission attempt, assigned at submission.
        voter_id: Opaque voter identifier (not authenticated here).
        option: Candidate option the vote is cast for.
        submitted_at: When the vote was submitted (UTC).
    """

    envelope_id: str
    voter_id: str
    option: str
    submitted_at: datetime

    @classmethod
    def from_payload(cls, payload: Any) -> VoteEnvelope:
        """Validate a received payload into an envelope.

        Checks presence and shape of every field. Candidate-set membership
        is checked by the aggregation engine, which owns the candidate set.

        Args:
            payload: Decoded queue message body.

        Returns:
            The validated VoteEnvelope.

        Raises:
            InvalidEnvelopeError: If any field is missing or malformed.
        """
        if not isinstance(payload, Mapping):
            raise InvalidEnvelopeError(
                f"Envelope payload must be an object, got {type(payload).__name__}"
            )

        raw_id = payload.get("envelope_id")
        known_id = raw_id if isinstance(raw_id, str) and raw_id else None

        envelope_id = _require_text(payload, "envelope_id", known_id)
        voter_id = _require_text(payload, "voter_id", envelope_id)
        option = _require_text(payload, "option", envelope_id)
        submitted_at = _parse_timestamp(payload.get("submitted_at"), envelope_id)

        return cls(
            envelope_id=envelope_id,
            voter_id=voter_id,
            option=option,
            submitted_at=submitted_at,
        )

    def to_payload(self) -> dict[str, Any]:
        """Convert to the JSON wire form."""
        return {
            "envelope_id": self.envelope_id,
            "voter_id": self.voter_id,
            "option": self.option,
            "submitted_at": self.submitted_at.isoformat(),
        }


def new_envelope(
    voter_id: str,
    option: str,
    submitted_at: datetime | None = None,
    envelope_id: str | None = None,
) -> VoteEnvelope:
    """Create an envelope at submission time.

    This is the seam the submission endpoint uses: the envelope_id is
    minted here, once, before the envelope is enqueued.

    Args:
        voter_id: Opaque voter identifier.
        option: Chosen option.
        submitted_at: Submission time (defaults to now, UTC).
        envelope_id: Explicit id (defaults to a new UUID4).

    Returns:
        A new VoteEnvelope.
    """
    return VoteEnvelope(
        envelope_id=envelope_id or str(uuid4()),
        voter_id=voter_id,
        option=option,
        submitted_at=submitted_at or _utc_now(),
    )


@dataclass(frozen=True)
class QueuedEnvelope:
    """An envelope as delivered by the queue, not yet validated.

    Attributes:
        envelope_id: Identifier used to acknowledge/requeue the delivery.
        payload: Decoded message body (may be malformed).
        delivery_count: How many times the queue has delivered it (1-based).
        received_at: When this delivery was pulled from the queue.
    """

    envelope_id: str
    payload: Any
    delivery_count: int = 1
    received_at: datetime = field(default_factory=_utc_now)

    @property
    def is_redelivery(self) -> bool:
        """True if the queue has delivered this envelope before."""
        return self.delivery_count > 1
