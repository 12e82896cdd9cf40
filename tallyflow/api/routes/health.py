"""Health check endpoint."""

from fastapi import APIRouter, Depends

from tallyflow.api.dependencies.tally import get_broadcaster
from tallyflow.api.models.health import HealthResponse
from tallyflow.application.services.tally_broadcaster import TallyBroadcaster

router = APIRouter(prefix="/v1", tags=["health"])


@router.get("/health", response_model=HealthResponse)
async def health_check(
    broadcaster: TallyBroadcaster = Depends(get_broadcaster),
) -> HealthResponse:
    """Return health status.

    Returns:
        Health status with 200 OK.
    """
    current = broadcaster.current
    return HealthResponse(
        status="healthy" if current is not None else "starting",
        tally_version=current.version if current is not None else None,
        subscribers=broadcaster.get_subscriber_count(),
    )
