"""Tally snapshot response models."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from tallyflow.domain.models.tally_state import TallyState


class TallySnapshotResponse(BaseModel):
    """Current tally as served to viewers.

    The version increases by one per counted vote; a viewer holding a
    higher version than a received snapshot can discard the snapshot.
    """

    version: int = Field(ge=0)
    counts: dict[str, int]
    total: int = Field(ge=0)
    updated_at: datetime | None = None

    @classmethod
    def from_state(cls, state: TallyState) -> TallySnapshotResponse:
        return cls(
            version=state.version,
            counts=dict(sorted(state.counts.items())),
            total=state.total,
            updated_at=state.updated_at,
        )
