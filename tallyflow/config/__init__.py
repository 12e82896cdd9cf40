"""Configuration module for tallyflow.

Available Configurations:
- PipelineConfig: Top-level settings (candidate set, environment)
- QueueConfig, ConsumerConfig, StorageConfig, PublisherConfig: Per component
"""

from tallyflow.config.pipeline_config import (
    TEST_CONSUMER_CONFIG,
    ApiConfig,
    ConsumerConfig,
    PipelineConfig,
    PublisherConfig,
    QueueConfig,
    StorageConfig,
    parse_candidates,
)

__all__ = [
    "ApiConfig",
    "ConsumerConfig",
    "PipelineConfig",
    "PublisherConfig",
    "QueueConfig",
    "StorageConfig",
    "TEST_CONSUMER_CONFIG",
    "parse_candidates",
]
