"""Unit tests for AggregationEngine."""

import asyncio

import pytest

from tallyflow.application.services.aggregation_engine import AggregationEngine
from tallyflow.domain.errors import StorageUnavailableError
from tallyflow.domain.models.aggregation import EnvelopeStatus, RejectionReason
from tallyflow.infrastructure.stubs import TallyStoreStub
from tests.helpers import make_queued


@pytest.fixture
async def engine(candidates: frozenset[str], store: TallyStoreStub) -> AggregationEngine:
    engine = AggregationEngine(candidates, store, consumer_id="consumer-1")
    await engine.recover()
    return engine


class TestRecover:
    """Tests for recovery from committed storage."""

    @pytest.mark.asyncio
    async def test_recover_creates_zero_rows(self, store: TallyStoreStub) -> None:
        engine = AggregationEngine(frozenset({"A", "B"}), store)

        state = await engine.recover()

        assert state.counts == {"A": 0, "B": 0}
        assert state.version == 0
        assert engine.recovered

    @pytest.mark.asyncio
    async def test_recover_loads_committed_counts(self, store: TallyStoreStub) -> None:
        await store.ensure_options(frozenset({"A", "B"}))
        await store.commit("env-1", "A")
        await store.commit("env-2", "A")

        engine = AggregationEngine(frozenset({"A", "B"}), store)
        state = await engine.recover()

        assert state.counts == {"A": 2, "B": 0}
        assert state.version == 2
        assert engine.snapshot() == state

    @pytest.mark.asyncio
    async def test_recover_adds_new_candidate(self, store: TallyStoreStub) -> None:
        await store.ensure_options(frozenset({"A"}))
        await store.commit("env-1", "A")

        engine = AggregationEngine(frozenset({"A", "B"}), store)
        state = await engine.recover()

        assert state.counts == {"A": 1, "B": 0}

    @pytest.mark.asyncio
    async def test_recover_propagates_storage_errors(self, store: TallyStoreStub) -> None:
        store.set_unavailable(True)
        engine = AggregationEngine(frozenset({"A"}), store)

        with pytest.raises(StorageUnavailableError):
            await engine.recover()
        assert not engine.recovered

    def test_empty_candidates_rejected(self, store: TallyStoreStub) -> None:
        with pytest.raises(ValueError, match="candidates"):
            AggregationEngine(frozenset(), store)


class TestProcess:
    """Tests for the per-envelope state machine."""

    @pytest.mark.asyncio
    async def test_applies_valid_envelope(self, engine: AggregationEngine) -> None:
        outcome = await engine.process(make_queued("env-1", "A"))

        assert outcome.status == EnvelopeStatus.APPLIED
        assert outcome.option == "A"
        assert outcome.state is not None
        assert outcome.state.counts["A"] == 1
        assert outcome.state.version == 1
        assert engine.snapshot() == outcome.state

    @pytest.mark.asyncio
    async def test_redelivery_is_duplicate(self, engine: AggregationEngine) -> None:
        await engine.process(make_queued("env-1", "A"))

        outcome = await engine.process(make_queued("env-1", "A", delivery_count=2))

        assert outcome.reason == RejectionReason.DUPLICATE
        assert engine.snapshot().counts["A"] == 1

    @pytest.mark.asyncio
    async def test_duplicate_committed_by_another_consumer(
        self, candidates: frozenset[str], store: TallyStoreStub, engine: AggregationEngine
    ) -> None:
        other = AggregationEngine(candidates, store, consumer_id="consumer-2")
        await other.recover()
        await other.process(make_queued("env-1", "B"))

        outcome = await engine.process(make_queued("env-1", "B"))

        assert outcome.is_duplicate
        assert (await store.load_state()).counts["B"] == 1

    @pytest.mark.asyncio
    async def test_local_window_short_circuits_store(
        self, store: TallyStoreStub, engine: AggregationEngine
    ) -> None:
        await engine.process(make_queued("env-1", "A"))
        await engine.process(make_queued("env-1", "A"))

        assert len(store.commit_calls()) == 1

    @pytest.mark.asyncio
    async def test_window_evicts_oldest(self, store: TallyStoreStub) -> None:
        engine = AggregationEngine(frozenset({"A"}), store, dedup_window_size=1)
        await engine.recover()
        await engine.process(make_queued("env-1"))
        await engine.process(make_queued("env-2"))

        outcome = await engine.process(make_queued("env-1"))

        # Evicted locally, still rejected by the store's processed set
        assert outcome.is_duplicate
        assert len(store.commit_calls()) == 3

    @pytest.mark.asyncio
    async def test_invalid_option_rejected_without_commit(
        self, store: TallyStoreStub, engine: AggregationEngine
    ) -> None:
        outcome = await engine.process(make_queued("env-1", "Z"))

        assert outcome.reason == RejectionReason.INVALID_OPTION
        assert store.commit_calls() == []
        assert engine.snapshot().total == 0

    @pytest.mark.asyncio
    async def test_malformed_payload_rejected(self, engine: AggregationEngine) -> None:
        outcome = await engine.process(make_queued("raw-1", payload={"option": "A"}))

        assert outcome.status == EnvelopeStatus.REJECTED
        assert outcome.reason == RejectionReason.INVALID_ENVELOPE
        assert outcome.envelope_id == "raw-1"
        assert "envelope_id" in (outcome.detail or "")

    @pytest.mark.asyncio
    async def test_storage_error_propagates_and_is_not_remembered(
        self, store: TallyStoreStub, engine: AggregationEngine
    ) -> None:
        store.fail_commits(1)

        with pytest.raises(StorageUnavailableError):
            await engine.process(make_queued("env-1", "A"))

        outcome = await engine.process(make_queued("env-1", "A"))
        assert outcome.is_applied

    @pytest.mark.asyncio
    async def test_sequence_with_redelivery(self, engine: AggregationEngine) -> None:
        outcomes = [
            await engine.process(make_queued("1", "A")),
            await engine.process(make_queued("2", "B")),
            await engine.process(make_queued("1", "A", delivery_count=2)),
        ]

        assert [o.status for o in outcomes] == [
            EnvelopeStatus.APPLIED,
            EnvelopeStatus.APPLIED,
            EnvelopeStatus.REJECTED,
        ]
        assert engine.snapshot().counts == {"A": 1, "B": 1, "C": 0}
        assert engine.snapshot().version == 2

    @pytest.mark.asyncio
    async def test_concurrent_engines_never_double_count(
        self, candidates: frozenset[str], store: TallyStoreStub
    ) -> None:
        engines = [
            AggregationEngine(candidates, store, consumer_id=f"consumer-{i}")
            for i in range(4)
        ]
        for engine in engines:
            await engine.recover()

        envelope_ids = [f"env-{n}" for n in range(25)]
        await asyncio.gather(
            *(
                engine.process(make_queued(envelope_id, "A"))
                for engine in engines
                for envelope_id in envelope_ids
            )
        )

        state = await store.load_state()
        assert state.counts["A"] == 25
        assert state.version == 25
        assert store.processed_ids == set(envelope_ids)
