"""Unit tests for VoteQueueStub delivery semantics."""

import pytest

from tallyflow.domain.errors import TransientQueueError
from tallyflow.infrastructure.stubs import VoteQueueStub
from tests.helpers import make_envelope


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class TestDelivery:
    @pytest.mark.asyncio
    async def test_fifo_and_delivery_count(self) -> None:
        queue = VoteQueueStub()
        queue.enqueue(make_envelope("1"))
        queue.enqueue(make_envelope("2"))

        first = await queue.poll(0.01)
        second = await queue.poll(0.01)

        assert first is not None and second is not None
        assert [first.envelope_id, second.envelope_id] == ["1", "2"]
        assert first.delivery_count == 1
        assert first.payload["option"] == "A"

    @pytest.mark.asyncio
    async def test_poll_times_out_empty(self) -> None:
        assert await VoteQueueStub().poll(0.01) is None

    @pytest.mark.asyncio
    async def test_lapsed_lease_is_redelivered(self) -> None:
        clock = FakeClock()
        queue = VoteQueueStub(visibility_timeout=30.0, clock=clock)
        queue.enqueue(make_envelope("1"))
        await queue.poll(0.01)

        assert await queue.poll(0.01) is None
        clock.now += 31.0
        redelivered = await queue.poll(0.01)

        assert redelivered is not None
        assert redelivered.delivery_count == 2
        assert redelivered.is_redelivery

    @pytest.mark.asyncio
    async def test_requeue_with_delay(self) -> None:
        clock = FakeClock()
        queue = VoteQueueStub(clock=clock)
        queue.enqueue(make_envelope("1"))
        await queue.poll(0.01)

        await queue.requeue("1", 5.0)

        assert await queue.poll(0.01) is None
        clock.now += 5.0
        again = await queue.poll(0.01)
        assert again is not None
        assert again.delivery_count == 2

    @pytest.mark.asyncio
    async def test_acknowledged_envelope_is_gone(self) -> None:
        queue = VoteQueueStub()
        queue.enqueue(make_envelope("1"))
        await queue.poll(0.01)

        await queue.acknowledge("1")
        queue.expire_inflight()

        assert queue.pending == 0
        assert await queue.poll(0.01) is None

    def test_pending_duplicate_enqueue_keeps_one_copy(self) -> None:
        queue = VoteQueueStub()
        queue.enqueue(make_envelope("1"))
        queue.enqueue(make_envelope("1"))

        assert queue.pending == 1


class TestFailureInjection:
    @pytest.mark.asyncio
    async def test_fail_next(self) -> None:
        queue = VoteQueueStub()
        queue.fail_next("poll")

        with pytest.raises(TransientQueueError) as exc_info:
            await queue.poll(0.01)

        assert exc_info.value.operation == "poll"
        assert await queue.poll(0.01) is None
