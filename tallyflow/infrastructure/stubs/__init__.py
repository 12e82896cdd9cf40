"""In-memory stubs for development and testing."""

from tallyflow.infrastructure.stubs.tally_store_stub import (
    TallyStoreOperation,
    TallyStoreStub,
)
from tallyflow.infrastructure.stubs.vote_queue_stub import VoteQueueStub

__all__ = ["TallyStoreOperation", "TallyStoreStub", "VoteQueueStub"]
