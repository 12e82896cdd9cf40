"""Redis implementation of VoteQueuePort (reliable-queue pattern).

Keys (prefix defaults to ``tally:votes``):
    {prefix}:ready       LIST   envelope ids waiting for delivery (FIFO)
    {prefix}:bodies      HASH   envelope id -> JSON body
    {prefix}:deliveries  HASH   envelope id -> delivery count
    {prefix}:inflight    ZSET   envelope id scored by lease deadline
    {prefix}:delayed     ZSET   envelope id scored by redelivery time
    {prefix}:dead        LIST   dead-letter records (JSON)

An envelope stays in ``bodies`` until it is acknowledged, so a consumer
that dies while holding it cannot lose it: once the lease deadline
passes, the next poll moves it back to ``ready``. All timing uses the
Redis server clock, so consumers on different hosts agree on deadlines.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
from typing import Any

import redis.asyncio as aioredis
from redis.exceptions import RedisError
from structlog import get_logger

from tallyflow.domain.errors import TransientQueueError
from tallyflow.domain.models.vote_envelope import QueuedEnvelope, VoteEnvelope

logger = get_logger()

# Sleep between empty claim attempts while a poll waits for work
POLL_INTERVAL_SECONDS = 0.05

_SERVER_NOW = """
local t = redis.call('TIME')
local now = tonumber(t[1]) + tonumber(t[2]) / 1000000
"""

# KEYS: ready, inflight, delayed, bodies, deliveries  ARGV: visibility seconds
CLAIM_SCRIPT = (
    _SERVER_NOW
    + """
for _, id in ipairs(redis.call('ZRANGEBYSCORE', KEYS[3], '-inf', now)) do
  redis.call('ZREM', KEYS[3], id)
  redis.call('RPUSH', KEYS[1], id)
end
for _, id in ipairs(redis.call('ZRANGEBYSCORE', KEYS[2], '-inf', now)) do
  redis.call('ZREM', KEYS[2], id)
  redis.call('RPUSH', KEYS[1], id)
end
while true do
  local id = redis.call('LPOP', KEYS[1])
  if not id then
    return false
  end
  local body = redis.call('HGET', KEYS[4], id)
  if body then
    redis.call('ZADD', KEYS[2], now + tonumber(ARGV[1]), id)
    local count = redis.call('HINCRBY', KEYS[5], id, 1)
    return {id, body, count}
  end
end
"""
)

# KEYS: bodies, ready  ARGV: envelope id, body
ENQUEUE_SCRIPT = """
if redis.call('HSETNX', KEYS[1], ARGV[1], ARGV[2]) == 1 then
  redis.call('RPUSH', KEYS[2], ARGV[1])
  return 1
end
return 0
"""

# KEYS: inflight, delayed, bodies  ARGV: envelope id, delay seconds
REQUEUE_SCRIPT = (
    _SERVER_NOW
    + """
redis.call('ZREM', KEYS[1], ARGV[1])
if redis.call('HEXISTS', KEYS[3], ARGV[1]) == 1 then
  redis.call('ZADD', KEYS[2], now + tonumber(ARGV[2]), ARGV[1])
  return 1
end
return 0
"""
)


def _text(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="backslashreplace")
    return str(value)


def decode_body(raw: bytes | str) -> Any:
    """Decode a stored body into a payload for validation.

    A body that is not UTF-8 JSON is returned as text, which envelope
    validation rejects as malformed. Decoding never raises, so one bad
    body cannot stop a consumer.
    """
    if isinstance(raw, bytes):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError:
            return raw.decode("utf-8", errors="backslashreplace")
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw


def fallback_envelope_id(body: str) -> str:
    """Derive a stable id for a body that carries none."""
    return "sha256:" + hashlib.sha256(body.encode("utf-8")).hexdigest()


class RedisVoteQueue:
    """Durable vote queue on Redis with leases, delays and dead-letters."""

    def __init__(
        self,
        client: aioredis.Redis,
        key_prefix: str = "tally:votes",
        visibility_timeout: float = 300.0,
    ) -> None:
        """Initialize the queue.

        Args:
            client: Async Redis client.
            key_prefix: Prefix for every queue key.
            visibility_timeout: Lease length for a polled envelope.
        """
        self._client = client
        self._visibility_timeout = visibility_timeout
        self.ready_key = f"{key_prefix}:ready"
        self.bodies_key = f"{key_prefix}:bodies"
        self.deliveries_key = f"{key_prefix}:deliveries"
        self.inflight_key = f"{key_prefix}:inflight"
        self.delayed_key = f"{key_prefix}:delayed"
        self.dead_key = f"{key_prefix}:dead"

        self._claim = client.register_script(CLAIM_SCRIPT)
        self._enqueue = client.register_script(ENQUEUE_SCRIPT)
        self._requeue = client.register_script(REQUEUE_SCRIPT)

    @classmethod
    def from_url(
        cls,
        url: str,
        key_prefix: str = "tally:votes",
        visibility_timeout: float = 300.0,
    ) -> RedisVoteQueue:
        # Raw bytes: bodies are decoded per envelope in poll()
        client = aioredis.from_url(url)
        return cls(client, key_prefix=key_prefix, visibility_timeout=visibility_timeout)

    # Submission side

    async def enqueue(self, envelope: VoteEnvelope) -> bool:
        """Enqueue an envelope under its own envelope_id.

        Re-enqueueing an id that is still pending is a no-op.

        Returns:
            True if the envelope was added.
        """
        return await self.enqueue_raw(
            json.dumps(envelope.to_payload()), envelope.envelope_id
        )

    async def enqueue_raw(self, body: str, envelope_id: str | None = None) -> bool:
        """Enqueue an already encoded body."""
        envelope_id = envelope_id or fallback_envelope_id(body)
        try:
            added = await self._enqueue(
                keys=[self.bodies_key, self.ready_key], args=[envelope_id, body]
            )
        except RedisError as e:
            raise TransientQueueError("enqueue", str(e)) from e
        return bool(added)

    # VoteQueuePort

    async def poll(self, timeout: float) -> QueuedEnvelope | None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            try:
                claimed = await self._claim(
                    keys=[
                        self.ready_key,
                        self.inflight_key,
                        self.delayed_key,
                        self.bodies_key,
                        self.deliveries_key,
                    ],
                    args=[self._visibility_timeout],
                )
            except RedisError as e:
                raise TransientQueueError("poll", str(e)) from e

            if claimed:
                envelope_id, body, count = claimed
                return QueuedEnvelope(
                    envelope_id=_text(envelope_id),
                    payload=decode_body(body),
                    delivery_count=int(count),
                )

            remaining = deadline - loop.time()
            if remaining <= 0:
                return None
            await asyncio.sleep(min(POLL_INTERVAL_SECONDS, remaining))

    async def acknowledge(self, envelope_id: str) -> None:
        try:
            async with self._client.pipeline(transaction=True) as pipe:
                pipe.zrem(self.inflight_key, envelope_id)
                pipe.zrem(self.delayed_key, envelope_id)
                pipe.hdel(self.bodies_key, envelope_id)
                pipe.hdel(self.deliveries_key, envelope_id)
                await pipe.execute()
        except RedisError as e:
            raise TransientQueueError("acknowledge", str(e)) from e

    async def requeue(self, envelope_id: str, delay: float) -> None:
        try:
            await self._requeue(
                keys=[self.inflight_key, self.delayed_key, self.bodies_key],
                args=[envelope_id, max(delay, 0.0)],
            )
        except RedisError as e:
            raise TransientQueueError("requeue", str(e)) from e

    async def dead_letter(self, envelope_id: str, record: dict[str, Any]) -> None:
        entry = json.dumps(dict(record, envelope_id=envelope_id), default=str)
        try:
            await self._client.lpush(self.dead_key, entry)
        except RedisError as e:
            raise TransientQueueError("dead_letter", str(e)) from e
        logger.info("envelope_dead_lettered", envelope_id=envelope_id, reason=record.get("reason"))

    # Diagnostics

    async def dead_letters(self, limit: int = 100) -> list[dict[str, Any]]:
        """Most recent dead-letter records, newest first."""
        try:
            entries = await self._client.lrange(self.dead_key, 0, limit - 1)
        except RedisError as e:
            raise TransientQueueError("dead_letters", str(e)) from e
        return [json.loads(_text(entry)) for entry in entries]

    async def stats(self) -> dict[str, int]:
        """Queue depths by state."""
        try:
            async with self._client.pipeline(transaction=False) as pipe:
                pipe.llen(self.ready_key)
                pipe.zcard(self.inflight_key)
                pipe.zcard(self.delayed_key)
                pipe.llen(self.dead_key)
                ready, inflight, delayed, dead = await pipe.execute()
        except RedisError as e:
            raise TransientQueueError("stats", str(e)) from e
        return {
            "ready": int(ready),
            "in_flight": int(inflight),
            "delayed": int(delayed),
            "dead_lettered": int(dead),
        }

    async def close(self) -> None:
        await self._client.aclose()

