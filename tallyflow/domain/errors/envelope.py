"""Envelope validation errors.

Raised while turning a received queue payload into a validated
VoteEnvelope. These are permanent for the envelope: retrying the same
payload can never succeed, so the consumer dead-letters it immediately.
"""

from __future__ import annotations

from tallyflow.domain.exceptions import TallyError


class InvalidEnvelopeError(TallyError):
    """Raised when an envelope has missing or malformed fields.

    Attributes:
        envelope_id: The envelope identifier, if one could be read.
        field: Name of the offending field (None for whole-payload errors).
    """

    reason = "invalid_envelope"

    def __init__(
        self,
        message: str,
        envelope_id: str | None = None,
        field: str | None = None,
    ) -> None:
        self.envelope_id = envelope_id
        self.field = field
        super().__init__(message)


class InvalidOptionError(InvalidEnvelopeError):
    """Raised when an envelope names an option outside the candidate set.

    Attributes:
        option: The rejected option value.
    """

    reason = "invalid_option"

    def __init__(self, option: str, envelope_id: str | None = None) -> None:
        self.option = option
        super().__init__(
            f"Option {option!r} is not in the candidate set",
            envelope_id=envelope_id,
            field="option",
        )
