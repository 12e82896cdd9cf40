"""Unit tests for correlation ID propagation."""

from tallyflow.infrastructure.observability import (
    correlation_id_processor,
    correlation_scope,
    get_correlation_id,
    set_correlation_id,
)


class TestCorrelationScope:
    def test_scope_sets_and_restores(self) -> None:
        set_correlation_id("outer")

        with correlation_scope("env-1") as correlation_id:
            assert correlation_id == "env-1"
            assert get_correlation_id() == "env-1"

        assert get_correlation_id() == "outer"
        set_correlation_id("")

    def test_processor_adds_id_inside_scope(self) -> None:
        with correlation_scope("env-2"):
            event = correlation_id_processor(None, "info", {"event": "envelope_applied"})

        assert event["correlation_id"] == "env-2"

    def test_processor_leaves_event_alone_outside_scope(self) -> None:
        event = correlation_id_processor(None, "info", {"event": "tally_recovered"})

        assert "correlation_id" not in event
