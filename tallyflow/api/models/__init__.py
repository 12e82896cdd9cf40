"""API response models."""

from tallyflow.api.models.health import HealthResponse
from tallyflow.api.models.tally import TallySnapshotResponse

__all__ = ["HealthResponse", "TallySnapshotResponse"]
