"""Tally read and live-update endpoints.

- GET /v1/tallies: current snapshot
- GET /v1/tallies/stream: Server-Sent Events, one ``tally`` event per new
  version, keepalive comments while idle
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator

from fastapi import APIRouter, Depends, HTTPException
from sse_starlette.sse import EventSourceResponse

from tallyflow.api.dependencies.tally import (
    get_broadcaster,
    get_keepalive_seconds,
    get_tally_store,
)
from tallyflow.api.models.tally import TallySnapshotResponse
from tallyflow.application.ports.tally_store import TallyStorePort
from tallyflow.application.services.tally_broadcaster import TallyBroadcaster
from tallyflow.domain.errors import StorageUnavailableError
from tallyflow.domain.models.tally_state import TallyState

router = APIRouter(prefix="/v1", tags=["tallies"])

TALLY_EVENT = "tally"


@router.get("/tallies", response_model=TallySnapshotResponse)
async def get_tallies(
    broadcaster: TallyBroadcaster = Depends(get_broadcaster),
    store: TallyStorePort | None = Depends(get_tally_store),
) -> TallySnapshotResponse:
    """Return the current tally snapshot.

    Served from the latest broadcast; before the first broadcast the
    committed state is read from storage.

    Raises:
        HTTPException: 503 if storage is unavailable for the cold read.
    """
    state = broadcaster.current
    if state is None and store is not None:
        try:
            state = await store.load_state()
        except StorageUnavailableError as e:
            raise HTTPException(status_code=503, detail=str(e)) from e
        broadcaster.broadcast(state)
    return TallySnapshotResponse.from_state(state or TallyState())


async def tally_event_stream(
    broadcaster: TallyBroadcaster,
    keepalive_seconds: float,
) -> AsyncIterator[dict[str, str]]:
    """Yield SSE events for one subscriber until the client disconnects."""
    subscriber_id, queue = broadcaster.register_subscriber()
    try:
        while True:
            try:
                state = await asyncio.wait_for(queue.get(), timeout=keepalive_seconds)
                yield {
                    "event": TALLY_EVENT,
                    "id": str(state.version),
                    "data": json.dumps(state.to_payload()),
                }
            except asyncio.TimeoutError:
                yield {"comment": "keepalive"}
    finally:
        broadcaster.unregister_subscriber(subscriber_id)


@router.get("/tallies/stream")
async def stream_tallies(
    broadcaster: TallyBroadcaster = Depends(get_broadcaster),
    keepalive_seconds: float = Depends(get_keepalive_seconds),
) -> EventSourceResponse:
    """Stream tally snapshots via Server-Sent Events.

    The current snapshot is sent on connect. A slow client skips
    intermediate versions but always receives the latest one.
    """
    return EventSourceResponse(tally_event_stream(broadcaster, keepalive_seconds))
