"""Processed-set retention sweep.

The processed set grows by one row per counted envelope. Entries older
than the retention window can no longer be redelivered by the queue, so
they are pruned on a fixed interval. The window is validated at startup
to exceed the queue's maximum redelivery lag.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import structlog

from tallyflow.application.ports.tally_store import TallyStorePort
from tallyflow.domain.errors import StorageUnavailableError

log = structlog.get_logger()


class DedupRetentionService:
    """Prunes processed-set entries past the retention window."""

    def __init__(
        self,
        store: TallyStorePort,
        retention: timedelta,
        interval: float = 3600.0,
    ) -> None:
        """Initialize the service.

        Args:
            store: Tally store owning the processed set.
            retention: How long processed ids are kept.
            interval: Seconds between sweeps.
        """
        self._store = store
        self._retention = retention
        self._interval = interval
        self._total_pruned = 0

    @property
    def total_pruned(self) -> int:
        return self._total_pruned

    async def prune_once(self, now: datetime | None = None) -> int:
        """Run one sweep.

        Args:
            now: Reference time (defaults to current UTC time).

        Returns:
            Number of processed entries removed.
        """
        cutoff = (now or datetime.now(timezone.utc)) - self._retention
        removed = await self._store.prune_processed(cutoff)
        self._total_pruned += removed
        log.info("processed_set_pruned", removed=removed, cutoff=cutoff.isoformat())
        return removed

    async def run(self, stop_event: asyncio.Event) -> None:
        """Sweep every interval until ``stop_event`` is set."""
        while not stop_event.is_set():
            try:
                await self.prune_once()
            except StorageUnavailableError as e:
                log.warning("processed_set_prune_failed", error=str(e))
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                pass
