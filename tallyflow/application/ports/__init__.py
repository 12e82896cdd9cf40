"""Ports (interfaces) to the queue, storage and subscriber transport."""

from tallyflow.application.ports.tally_store import TallyStorePort
from tallyflow.application.ports.update_publisher import UpdatePublisherPort
from tallyflow.application.ports.vote_queue import VoteQueuePort

__all__ = [
    "TallyStorePort",
    "UpdatePublisherPort",
    "VoteQueuePort",
]
