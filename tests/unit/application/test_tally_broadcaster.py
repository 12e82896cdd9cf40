"""Unit tests for TallyBroadcaster (the update publisher)."""

import asyncio

import pytest
from prometheus_client import CollectorRegistry

from tallyflow.application.services.tally_broadcaster import TallyBroadcaster
from tallyflow.infrastructure.monitoring.metrics import MetricsCollector
from tallyflow.infrastructure.stubs import TallyStoreStub
from tests.helpers import make_state


class TestSubscribers:
    def test_register_and_unregister(self) -> None:
        broadcaster = TallyBroadcaster()

        subscriber_id, _ = broadcaster.register_subscriber()
        assert broadcaster.get_subscriber_count() == 1

        broadcaster.unregister_subscriber(subscriber_id)
        assert broadcaster.get_subscriber_count() == 0

    def test_unregister_unknown_is_noop(self) -> None:
        from uuid import uuid4

        broadcaster = TallyBroadcaster()

        broadcaster.unregister_subscriber(uuid4())

        assert broadcaster.get_subscriber_count() == 0

    def test_new_subscriber_gets_current_snapshot(self) -> None:
        broadcaster = TallyBroadcaster()
        broadcaster.broadcast(make_state(3, A=2, B=1))

        _, queue = broadcaster.register_subscriber()

        assert queue.get_nowait().version == 3

    def test_new_subscriber_before_first_broadcast_gets_nothing(self) -> None:
        _, queue = TallyBroadcaster().register_subscriber()

        assert queue.empty()

    def test_invalid_buffer_size(self) -> None:
        with pytest.raises(ValueError, match="buffer_size"):
            TallyBroadcaster(buffer_size=0)


class TestBroadcast:
    """Tests for ordering and backpressure."""

    def test_broadcast_reaches_every_subscriber(self) -> None:
        broadcaster = TallyBroadcaster()
        queues = [broadcaster.register_subscriber()[1] for _ in range(3)]

        offered = broadcaster.broadcast(make_state(1, A=1))

        assert offered == 3
        assert [q.get_nowait().version for q in queues] == [1, 1, 1]

    def test_stale_snapshot_is_ignored(self) -> None:
        broadcaster = TallyBroadcaster()
        _, queue = broadcaster.register_subscriber()
        broadcaster.broadcast(make_state(2, A=2))

        assert broadcaster.broadcast(make_state(1, A=1)) == 0
        assert broadcaster.broadcast(make_state(2, A=2)) == 0

        assert queue.qsize() == 1
        assert broadcaster.current.version == 2

    def test_versions_are_strictly_increasing(self) -> None:
        broadcaster = TallyBroadcaster()
        _, queue = broadcaster.register_subscriber()

        for version in (1, 3, 2, 4, 4):
            broadcaster.broadcast(make_state(version, A=version))

        received = []
        while not queue.empty():
            received.append(queue.get_nowait().version)
        assert received == [1, 3, 4]

    def test_slow_subscriber_drops_oldest_keeps_latest(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("ENVIRONMENT", "test")
        monkeypatch.setenv("SERVICE_NAME", "tallyflow")
        registry = CollectorRegistry()
        broadcaster = TallyBroadcaster(buffer_size=2, metrics=MetricsCollector(registry))
        _, slow = broadcaster.register_subscriber()

        for version in range(1, 6):
            broadcaster.broadcast(make_state(version, A=version))

        assert [slow.get_nowait().version, slow.get_nowait().version] == [4, 5]
        assert broadcaster.dropped_count == 3
        dropped = registry.get_sample_value(
            "tally_pushes_dropped_total",
            {"service": "tallyflow", "environment": "test"},
        )
        assert dropped == 3.0

    def test_slow_subscriber_does_not_affect_fast_one(self) -> None:
        broadcaster = TallyBroadcaster(buffer_size=1)
        _, slow = broadcaster.register_subscriber()
        _, fast = broadcaster.register_subscriber()

        received = []
        for version in range(1, 4):
            broadcaster.broadcast(make_state(version, A=version))
            received.append(fast.get_nowait().version)

        assert received == [1, 2, 3]
        assert slow.get_nowait().version == 3


class TestRefresher:
    @pytest.mark.asyncio
    async def test_refresher_publishes_committed_state(self) -> None:
        store = TallyStoreStub()
        await store.ensure_options(frozenset({"A"}))
        await store.commit("env-1", "A", consumer_id="other-process")

        broadcaster = TallyBroadcaster()
        _, queue = broadcaster.register_subscriber()
        stop = asyncio.Event()
        task = asyncio.create_task(broadcaster.run_refresher(store, 0.01, stop))

        state = await asyncio.wait_for(queue.get(), timeout=1.0)
        stop.set()
        await asyncio.wait_for(task, timeout=1.0)

        assert state.counts == {"A": 1}
        assert state.version == 1

    @pytest.mark.asyncio
    async def test_refresher_survives_storage_outage(self) -> None:
        store = TallyStoreStub()
        store.set_unavailable(True)
        broadcaster = TallyBroadcaster()
        stop = asyncio.Event()
        task = asyncio.create_task(broadcaster.run_refresher(store, 0.01, stop))

        await asyncio.sleep(0.05)
        assert not task.done()

        store.set_unavailable(False)
        await store.ensure_options(frozenset({"A"}))
        await store.commit("env-1", "A")
        await asyncio.sleep(0.05)
        stop.set()
        await asyncio.wait_for(task, timeout=1.0)

        assert broadcaster.current is not None
        assert broadcaster.current.version == 1


class TestSubscribeStream:
    @pytest.mark.asyncio
    async def test_stream_yields_snapshot_then_updates(self) -> None:
        broadcaster = TallyBroadcaster()
        broadcaster.broadcast(make_state(1, A=1))
        stream = broadcaster.subscribe()

        first = await anext(stream)
        broadcaster.broadcast(make_state(2, A=2))
        second = await anext(stream)

        assert [first.version, second.version] == [1, 2]
        await stream.aclose()
        assert broadcaster.get_subscriber_count() == 0
