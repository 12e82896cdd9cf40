"""Tally pipeline configuration.

This module defines configuration for the queue consumer, tally store,
update publisher and candidate set, with environment variable overrides
for production tuning.

Environment Variables (Queue):
- TALLY_REDIS_URL: Queue service URL (default: redis://localhost:6379/0)
- TALLY_QUEUE_PREFIX: Key prefix for queue structures (default: tally:votes)
- TALLY_QUEUE_VISIBILITY_SECONDS: In-flight lease before redelivery (default: 300)
- TALLY_POLL_TIMEOUT_SECONDS: Poll block time (default: 1.0)

Environment Variables (Consumer):
- TALLY_CONSUMER_ID: Consumer identity for ProcessedMarker (default: consumer-1)
- TALLY_CONSUMER_COUNT: Consumer tasks per process (default: 1)
- TALLY_MAX_ATTEMPTS: Attempts before dead-letter (default: 5)
- TALLY_BACKOFF_BASE_SECONDS: Backoff base (default: 0.2)
- TALLY_BACKOFF_MAX_SECONDS: Backoff cap (default: 30.0)
- TALLY_BACKOFF_JITTER: Jitter ratio, +/- (default: 0.2)
- TALLY_DRAIN_TIMEOUT_SECONDS: Graceful drain bound on shutdown (default: 10.0)

Environment Variables (Storage):
- DATABASE_URL: Tally database URL (required in production)
- TALLY_COMMIT_TIMEOUT_SECONDS: Commit timeout (default: 5.0)
- TALLY_DEDUP_RETENTION_HOURS: Processed-set retention (default: 168)
- TALLY_PRUNE_INTERVAL_SECONDS: Retention sweep interval (default: 3600)

Environment Variables (Publisher):
- TALLY_SUBSCRIBER_BUFFER: Pending snapshots per subscriber (default: 16)
- TALLY_REFRESH_INTERVAL_SECONDS: Storage snapshot refresh (default: 2.0)
- TALLY_KEEPALIVE_SECONDS: SSE keepalive interval (default: 30.0)

Environment Variables (General):
- TALLY_CANDIDATES: Comma-separated fixed candidate set (required)
- ENVIRONMENT: production|development (default: development)
- TALLY_API_HOST / TALLY_API_PORT: HTTP bind address (default: 0.0.0.0:8000)
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field


def _get_int_env(key: str, default: int) -> int:
    """Get integer environment variable with default.

    Args:
        key: Environment variable name.
        default: Default value if not set or invalid.

    Returns:
        Parsed integer value or default.
    """
    value = os.environ.get(key)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _get_float_env(key: str, default: float) -> float:
    """Get float environment variable with default.

    Args:
        key: Environment variable name.
        default: Default value if not set or invalid.

    Returns:
        Parsed float value or default.
    """
    value = os.environ.get(key)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _get_str_env(key: str, default: str) -> str:
    value = os.environ.get(key)
    if value is None or value.strip() == "":
        return default
    return value.strip()


def parse_candidates(raw: str) -> frozenset[str]:
    """Parse a comma-separated candidate list.

    Blank entries are ignored; surrounding whitespace is stripped.

    Args:
        raw: e.g. "A, B, C".

    Returns:
        The candidate set.
    """
    return frozenset(part.strip() for part in raw.split(",") if part.strip())


@dataclass(frozen=True)
class QueueConfig:
    """Queue service settings.

    Attributes:
        redis_url: Queue service URL.
        key_prefix: Prefix for every queue key.
        visibility_timeout_seconds: How long a polled envelope stays owned
            by its consumer before the queue redelivers it.
        poll_timeout_seconds: How long poll() blocks before returning None.
    """

    redis_url: str = "redis://localhost:6379/0"
    key_prefix: str = "tally:votes"
    visibility_timeout_seconds: float = 300.0
    poll_timeout_seconds: float = 1.0

    def __post_init__(self) -> None:
        """Validate configuration values."""
        if self.visibility_timeout_seconds <= 0:
            raise ValueError(
                "visibility_timeout_seconds must be positive, "
                f"got {self.visibility_timeout_seconds}"
            )
        if self.poll_timeout_seconds <= 0:
            raise ValueError(
                f"poll_timeout_seconds must be positive, got {self.poll_timeout_seconds}"
            )
        if not self.key_prefix:
            raise ValueError("key_prefix must not be empty")

    @classmethod
    def from_environment(cls) -> QueueConfig:
        """Create config from environment variables with defaults."""
        return cls(
            redis_url=_get_str_env("TALLY_REDIS_URL", "redis://localhost:6379/0"),
            key_prefix=_get_str_env("TALLY_QUEUE_PREFIX", "tally:votes"),
            visibility_timeout_seconds=_get_float_env(
                "TALLY_QUEUE_VISIBILITY_SECONDS", 300.0
            ),
            poll_timeout_seconds=_get_float_env("TALLY_POLL_TIMEOUT_SECONDS", 1.0),
        )


@dataclass(frozen=True)
class ConsumerConfig:
    """Queue consumer settings.

    Attributes:
        consumer_id: Identity recorded in the ProcessedMarker.
        consumer_count: Consumer tasks to run in this process.
        max_attempts: Processing attempts before dead-letter.
        backoff_base_seconds: First retry delay.
        backoff_max_seconds: Retry delay cap.
        backoff_jitter: Relative jitter applied to each delay (0.2 = +/-20%).
        drain_timeout_seconds: How long shutdown waits for in-flight work.
    """

    consumer_id: str = "consumer-1"
    consumer_count: int = 1
    max_attempts: int = 5
    backoff_base_seconds: float = 0.2
    backoff_max_seconds: float = 30.0
    backoff_jitter: float = 0.2
    drain_timeout_seconds: float = 10.0

    def __post_init__(self) -> None:
        """Validate configuration values."""
        if not self.consumer_id:
            raise ValueError("consumer_id must not be empty")
        if self.consumer_count < 1:
            raise ValueError(f"consumer_count must be positive, got {self.consumer_count}")
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be positive, got {self.max_attempts}")
        if self.backoff_base_seconds <= 0:
            raise ValueError(
                f"backoff_base_seconds must be positive, got {self.backoff_base_seconds}"
            )
        if self.backoff_max_seconds < self.backoff_base_seconds:
            raise ValueError(
                f"backoff_max_seconds ({self.backoff_max_seconds}) must be at least "
                f"backoff_base_seconds ({self.backoff_base_seconds})"
            )
        if not 0 <= self.backoff_jitter < 1:
            raise ValueError(
                f"backoff_jitter must be in [0, 1), got {self.backoff_jitter}"
            )
        if self.drain_timeout_seconds <= 0:
            raise ValueError(
                f"drain_timeout_seconds must be positive, got {self.drain_timeout_seconds}"
            )

    @classmethod
    def from_environment(cls) -> ConsumerConfig:
        """Create config from environment variables with defaults."""
        return cls(
            consumer_id=_get_str_env("TALLY_CONSUMER_ID", "consumer-1"),
            consumer_count=_get_int_env("TALLY_CONSUMER_COUNT", 1),
            max_attempts=_get_int_env("TALLY_MAX_ATTEMPTS", 5),
            backoff_base_seconds=_get_float_env("TALLY_BACKOFF_BASE_SECONDS", 0.2),
            backoff_max_seconds=_get_float_env("TALLY_BACKOFF_MAX_SECONDS", 30.0),
            backoff_jitter=_get_float_env("TALLY_BACKOFF_JITTER", 0.2),
            drain_timeout_seconds=_get_float_env("TALLY_DRAIN_TIMEOUT_SECONDS", 10.0),
        )


@dataclass(frozen=True)
class StorageConfig:
    """Tally store settings.

    Attributes:
        database_url: SQLAlchemy URL (postgresql or sqlite).
        commit_timeout_seconds: Upper bound on a single commit.
        dedup_retention_hours: How long processed envelope_ids are kept.
            Must exceed the queue's maximum redelivery lag, otherwise a
            late redelivery would be counted twice.
        prune_interval_seconds: How often the retention sweep runs.
    """

    database_url: str = "sqlite+aiosqlite:///./tally.db"
    commit_timeout_seconds: float = 5.0
    dedup_retention_hours: int = 168
    prune_interval_seconds: float = 3600.0

    def __post_init__(self) -> None:
        """Validate configuration values."""
        if self.commit_timeout_seconds <= 0:
            raise ValueError(
                "commit_timeout_seconds must be positive, "
                f"got {self.commit_timeout_seconds}"
            )
        if self.dedup_retention_hours < 1:
            raise ValueError(
                f"dedup_retention_hours must be positive, got {self.dedup_retention_hours}"
            )
        if self.prune_interval_seconds <= 0:
            raise ValueError(
                "prune_interval_seconds must be positive, "
                f"got {self.prune_interval_seconds}"
            )

    @property
    def dedup_retention_seconds(self) -> float:
        return self.dedup_retention_hours * 3600.0

    @classmethod
    def from_environment(cls) -> StorageConfig:
        """Create config from environment variables with defaults."""
        return cls(
            database_url=_get_str_env("DATABASE_URL", "sqlite+aiosqlite:///./tally.db"),
            commit_timeout_seconds=_get_float_env("TALLY_COMMIT_TIMEOUT_SECONDS", 5.0),
            dedup_retention_hours=_get_int_env("TALLY_DEDUP_RETENTION_HOURS", 168),
            prune_interval_seconds=_get_float_env("TALLY_PRUNE_INTERVAL_SECONDS", 3600.0),
        )


@dataclass(frozen=True)
class PublisherConfig:
    """Update publisher settings.

    Attributes:
        subscriber_buffer: Snapshots held per subscriber before the oldest
            is dropped.
        refresh_interval_seconds: How often committed state is re-read to
            pick up commits made by other consumer processes.
        keepalive_seconds: SSE keepalive comment interval.
    """

    subscriber_buffer: int = 16
    refresh_interval_seconds: float = 2.0
    keepalive_seconds: float = 30.0

    def __post_init__(self) -> None:
        """Validate configuration values."""
        if self.subscriber_buffer < 1:
            raise ValueError(
                f"subscriber_buffer must be positive, got {self.subscriber_buffer}"
            )
        if self.refresh_interval_seconds <= 0:
            raise ValueError(
                "refresh_interval_seconds must be positive, "
                f"got {self.refresh_interval_seconds}"
            )
        if self.keepalive_seconds <= 0:
            raise ValueError(
                f"keepalive_seconds must be positive, got {self.keepalive_seconds}"
            )

    @classmethod
    def from_environment(cls) -> PublisherConfig:
        """Create config from environment variables with defaults."""
        return cls(
            subscriber_buffer=_get_int_env("TALLY_SUBSCRIBER_BUFFER", 16),
            refresh_interval_seconds=_get_float_env("TALLY_REFRESH_INTERVAL_SECONDS", 2.0),
            keepalive_seconds=_get_float_env("TALLY_KEEPALIVE_SECONDS", 30.0),
        )


@dataclass(frozen=True)
class ApiConfig:
    """HTTP server settings.

    Attributes:
        host: Bind address.
        port: Bind port.
    """

    host: str = "0.0.0.0"
    port: int = 8000

    def __post_init__(self) -> None:
        """Validate configuration values."""
        if not 0 < self.port < 65536:
            raise ValueError(f"port must be in 1..65535, got {self.port}")

    @classmethod
    def from_environment(cls) -> ApiConfig:
        """Create config from environment variables with defaults."""
        return cls(
            host=_get_str_env("TALLY_API_HOST", "0.0.0.0"),
            port=_get_int_env("TALLY_API_PORT", 8000),
        )


@dataclass(frozen=True)
class PipelineConfig:
    """Top-level pipeline configuration.

    Attributes:
        candidates: Fixed candidate set loaded at startup.
        environment: production (JSON logs) or development (console logs).
        queue: Queue settings.
        consumer: Consumer settings.
        storage: Store settings.
        publisher: Publisher settings.
        api: HTTP server settings.
    """

    candidates: frozenset[str]
    environment: str = "development"
    queue: QueueConfig = field(default_factory=QueueConfig)
    consumer: ConsumerConfig = field(default_factory=ConsumerConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    publisher: PublisherConfig = field(default_factory=PublisherConfig)
    api: ApiConfig = field(default_factory=ApiConfig)

    def __post_init__(self) -> None:
        """Validate cross-section constraints."""
        if not self.candidates:
            raise ValueError("candidates must contain at least one option")

        # The de-dup window must outlive every redelivery the queue can
        # still make: a lapsed lease plus the longest requeue delay.
        max_redelivery_lag = (
            self.queue.visibility_timeout_seconds + self.consumer.backoff_max_seconds
        )
        if self.storage.dedup_retention_seconds <= max_redelivery_lag:
            raise ValueError(
                f"dedup_retention_hours ({self.storage.dedup_retention_hours}h) must "
                f"exceed the maximum redelivery lag ({max_redelivery_lag:.0f}s)"
            )

    @classmethod
    def from_environment(cls) -> PipelineConfig:
        """Create config from environment variables.

        Raises:
            ValueError: If TALLY_CANDIDATES is missing or any value is invalid.
        """
        candidates = parse_candidates(os.environ.get("TALLY_CANDIDATES", ""))
        if not candidates:
            raise ValueError(
                "TALLY_CANDIDATES environment variable not set. "
                "Provide the fixed candidate set, e.g. TALLY_CANDIDATES=A,B,C"
            )
        return cls(
            candidates=candidates,
            environment=_get_str_env("ENVIRONMENT", "development"),
            queue=QueueConfig.from_environment(),
            consumer=ConsumerConfig.from_environment(),
            storage=StorageConfig.from_environment(),
            publisher=PublisherConfig.from_environment(),
            api=ApiConfig.from_environment(),
        )


# Testing config: fast backoff and short timeouts for unit tests
TEST_CONSUMER_CONFIG = ConsumerConfig(
    consumer_id="test-consumer",
    max_attempts=3,
    backoff_base_seconds=0.001,
    backoff_max_seconds=0.01,
    drain_timeout_seconds=1.0,
)
