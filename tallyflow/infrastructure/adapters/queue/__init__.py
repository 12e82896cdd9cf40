"""Vote queue adapters."""

from tallyflow.infrastructure.adapters.queue.redis_vote_queue import RedisVoteQueue

__all__ = ["RedisVoteQueue"]
