"""Health check response models."""

from pydantic import BaseModel


class HealthResponse(BaseModel):
    """Health check response model.

    Attributes:
        status: "healthy" once a tally snapshot is available, else "starting".
        tally_version: Version of the latest snapshot (None before the first).
        subscribers: Live update subscribers connected to this process.
    """

    status: str
    tally_version: int | None = None
    subscribers: int = 0
