"""Integration tests for SqlTallyStore on PostgreSQL."""

import asyncio

import pytest

from tallyflow.domain.errors import ConstraintViolationError
from tallyflow.domain.models.tally_state import AlreadyProcessed, Committed
from tallyflow.infrastructure.adapters.persistence import SqlTallyStore

pytestmark = pytest.mark.integration


class TestPostgresCommit:
    @pytest.mark.asyncio
    async def test_commit_and_redelivery(self, pg_store: SqlTallyStore) -> None:
        first = await pg_store.commit("env-1", "A", consumer_id="c-1")
        second = await pg_store.commit("env-1", "A", consumer_id="c-2")

        assert isinstance(first, Committed)
        assert isinstance(second, AlreadyProcessed)
        state = await pg_store.load_state()
        assert state.counts == {"A": 1, "B": 0, "C": 0}
        assert state.version == 1

    @pytest.mark.asyncio
    async def test_concurrent_same_envelope_counted_once(
        self, pg_store: SqlTallyStore
    ) -> None:
        results = await asyncio.gather(
            *(pg_store.commit("env-1", "B", consumer_id=f"c-{i}") for i in range(8))
        )

        assert sum(isinstance(r, Committed) for r in results) == 1
        state = await pg_store.load_state()
        assert state.counts["B"] == 1
        assert state.version == 1

    @pytest.mark.asyncio
    async def test_concurrent_distinct_envelopes(self, pg_store: SqlTallyStore) -> None:
        results = await asyncio.gather(
            *(pg_store.commit(f"env-{n}", "ABC"[n % 3]) for n in range(30))
        )

        versions = sorted(r.state.version for r in results if isinstance(r, Committed))
        assert versions == list(range(1, 31))
        state = await pg_store.load_state()
        assert state.total == 30 == await pg_store.count_processed()

    @pytest.mark.asyncio
    async def test_long_envelope_id_is_counted_once(self, pg_store: SqlTallyStore) -> None:
        envelope_id = "sha256:" + "f" * 1000

        first = await pg_store.commit(envelope_id, "C", consumer_id="c-1")
        second = await pg_store.commit(envelope_id, "C", consumer_id="c-1")

        assert isinstance(first, Committed)
        assert isinstance(second, AlreadyProcessed)
        assert (await pg_store.load_state()).counts["C"] == 1
        marker = await pg_store.get_marker("c-1")
        assert marker is not None
        assert marker.last_envelope_id == envelope_id

    @pytest.mark.asyncio
    async def test_unknown_option_rolls_back(self, pg_store: SqlTallyStore) -> None:
        with pytest.raises(ConstraintViolationError):
            await pg_store.commit("env-1", "Z")

        assert not await pg_store.is_processed("env-1")
        assert (await pg_store.load_state()).version == 0

    @pytest.mark.asyncio
    async def test_marker_and_recovery_read(self, pg_store: SqlTallyStore) -> None:
        for n in range(3):
            await pg_store.commit(f"env-{n}", "C", consumer_id="c-1")

        marker = await pg_store.get_marker("c-1")
        state = await pg_store.load_state()

        assert marker is not None
        assert marker.committed_count == 3
        assert marker.last_envelope_id == "env-2"
        assert state.counts["C"] == 3
        assert state.updated_at is not None
