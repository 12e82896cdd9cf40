"""Unit tests for pipeline configuration."""

import pytest

from tallyflow.config import (
    ApiConfig,
    ConsumerConfig,
    PipelineConfig,
    PublisherConfig,
    QueueConfig,
    StorageConfig,
    TEST_CONSUMER_CONFIG,
    parse_candidates,
)


class TestParseCandidates:
    def test_strips_and_ignores_blanks(self) -> None:
        assert parse_candidates(" A, B ,,C, ") == frozenset({"A", "B", "C"})

    def test_empty_string(self) -> None:
        assert parse_candidates("") == frozenset()


class TestSectionValidation:
    """Each section rejects values that would break the pipeline."""

    def test_defaults_are_valid(self) -> None:
        QueueConfig()
        ConsumerConfig()
        StorageConfig()
        PublisherConfig()
        ApiConfig()

    def test_test_consumer_config_is_fast(self) -> None:
        assert TEST_CONSUMER_CONFIG.backoff_max_seconds < 1
        assert TEST_CONSUMER_CONFIG.max_attempts == 3

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"max_attempts": 0},
            {"consumer_count": 0},
            {"backoff_base_seconds": 0},
            {"backoff_base_seconds": 2.0, "backoff_max_seconds": 1.0},
            {"backoff_jitter": 1.0},
            {"consumer_id": ""},
        ],
    )
    def test_invalid_consumer_config(self, kwargs: dict) -> None:
        with pytest.raises(ValueError):
            ConsumerConfig(**kwargs)

    def test_invalid_visibility_timeout(self) -> None:
        with pytest.raises(ValueError, match="visibility_timeout_seconds"):
            QueueConfig(visibility_timeout_seconds=0)

    def test_invalid_subscriber_buffer(self) -> None:
        with pytest.raises(ValueError, match="subscriber_buffer"):
            PublisherConfig(subscriber_buffer=0)

    def test_invalid_port(self) -> None:
        with pytest.raises(ValueError, match="port"):
            ApiConfig(port=70000)

    def test_retention_in_seconds(self) -> None:
        assert StorageConfig(dedup_retention_hours=2).dedup_retention_seconds == 7200.0


class TestPipelineConfig:
    """Tests for cross-section validation and environment loading."""

    def test_requires_candidates(self) -> None:
        with pytest.raises(ValueError, match="candidates"):
            PipelineConfig(candidates=frozenset())

    def test_retention_must_outlive_redelivery(self) -> None:
        with pytest.raises(ValueError, match="redelivery lag"):
            PipelineConfig(
                candidates=frozenset({"A"}),
                queue=QueueConfig(visibility_timeout_seconds=7200.0),
                storage=StorageConfig(dedup_retention_hours=2),
            )

    def test_from_environment_requires_candidates(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.delenv("TALLY_CANDIDATES", raising=False)

        with pytest.raises(ValueError, match="TALLY_CANDIDATES"):
            PipelineConfig.from_environment()

    def test_from_environment(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("TALLY_CANDIDATES", "yes,no")
        monkeypatch.setenv("TALLY_CONSUMER_ID", "worker-7")
        monkeypatch.setenv("TALLY_MAX_ATTEMPTS", "9")
        monkeypatch.setenv("TALLY_QUEUE_VISIBILITY_SECONDS", "60")
        monkeypatch.setenv("DATABASE_URL", "postgresql://u:p@db/tally")
        monkeypatch.setenv("TALLY_API_PORT", "9000")
        monkeypatch.setenv("ENVIRONMENT", "production")

        config = PipelineConfig.from_environment()

        assert config.candidates == frozenset({"yes", "no"})
        assert config.consumer.consumer_id == "worker-7"
        assert config.consumer.max_attempts == 9
        assert config.queue.visibility_timeout_seconds == 60.0
        assert config.storage.database_url == "postgresql://u:p@db/tally"
        assert config.api.port == 9000
        assert config.environment == "production"

    def test_unparseable_number_falls_back_to_default(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("TALLY_MAX_ATTEMPTS", "many")

        assert ConsumerConfig.from_environment().max_attempts == 5
