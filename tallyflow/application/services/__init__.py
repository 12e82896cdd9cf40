"""Application services."""

from tallyflow.application.services.aggregation_engine import AggregationEngine
from tallyflow.application.services.dedup_retention_service import DedupRetentionService
from tallyflow.application.services.tally_broadcaster import TallyBroadcaster

__all__ = [
    "AggregationEngine",
    "DedupRetentionService",
    "TallyBroadcaster",
]
