"""Prometheus metrics for the tally pipeline.

Operational metrics only: throughput, retries, dead-letters, commit
latency and subscriber fan-out. Vote counts themselves are served by the
tallies endpoint, not exported as metrics.

Labels: service, environment on every series.
"""

import os
import threading
import time

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

# Content type for Prometheus metrics endpoint
METRICS_CONTENT_TYPE = "text/plain; version=0.0.4; charset=utf-8"

# Thread lock for singleton initialization
_collector_lock = threading.Lock()

# Commit latency buckets (1ms to 5s)
COMMIT_HISTOGRAM_BUCKETS = (0.001, 0.0025, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0)


class MetricsCollector:
    """Collects and manages pipeline Prometheus metrics.

    Attributes:
        envelopes_processed_total: Envelopes finished, by outcome.
        dead_letters_total: Envelopes dead-lettered, by reason.
        commit_retries_total: Commit attempts that were retried.
        queue_errors_total: Queue operations that failed, by operation.
        commit_duration_seconds: Histogram of commit latency.
        subscribers_active: Live update subscribers.
        pushes_dropped_total: Snapshots dropped for slow subscribers.
        tally_version: Latest broadcast TallyState version.
        startup_times: Dict mapping service name to startup timestamp.
    """

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        """Initialize metrics collector.

        Args:
            registry: Optional custom registry for testing isolation.
        """
        self._registry = registry or CollectorRegistry()
        self.startup_times: dict[str, float] = {}

        self._environment = os.environ.get("ENVIRONMENT", "development")
        self._service_name = os.environ.get("SERVICE_NAME", "tallyflow")

        self.uptime_seconds = Gauge(
            name="uptime_seconds",
            documentation="Seconds since service start",
            labelnames=["service", "environment"],
            registry=self._registry,
        )

        self.envelopes_processed_total = Counter(
            name="tally_envelopes_processed_total",
            documentation="Envelopes finished by the consumer, by outcome",
            labelnames=["service", "environment", "outcome"],
            registry=self._registry,
        )

        self.dead_letters_total = Counter(
            name="tally_dead_letters_total",
            documentation="Envelopes routed to the dead-letter path",
            labelnames=["service", "environment", "reason"],
            registry=self._registry,
        )

        self.commit_retries_total = Counter(
            name="tally_commit_retries_total",
            documentation="Envelope processing attempts scheduled for retry",
            labelnames=["service", "environment", "category"],
            registry=self._registry,
        )

        self.queue_errors_total = Counter(
            name="tally_queue_errors_total",
            documentation="Queue operations that failed transiently",
            labelnames=["service", "environment", "operation"],
            registry=self._registry,
        )

        self.commit_duration_seconds = Histogram(
            name="tally_commit_duration_seconds",
            documentation="Tally commit transaction duration in seconds",
            labelnames=["service", "environment"],
            buckets=COMMIT_HISTOGRAM_BUCKETS,
            registry=self._registry,
        )

        self.subscribers_active = Gauge(
            name="tally_subscribers_active",
            documentation="Live update subscribers currently connected",
            labelnames=["service", "environment"],
            registry=self._registry,
        )

        self.pushes_dropped_total = Counter(
            name="tally_pushes_dropped_total",
            documentation="Snapshots dropped because a subscriber buffer was full",
            labelnames=["service", "environment"],
            registry=self._registry,
        )

        self.tally_version = Gauge(
            name="tally_version",
            documentation="Latest TallyState version broadcast to subscribers",
            labelnames=["service", "environment"],
            registry=self._registry,
        )

    def _labels(self) -> dict[str, str]:
        return {"service": self._service_name, "environment": self._environment}

    def increment_processed(self, outcome: str) -> None:
        """Count a finished envelope.

        Args:
            outcome: applied, duplicate, dead_lettered or requeued.
        """
        self.envelopes_processed_total.labels(**self._labels(), outcome=outcome).inc()

    def increment_dead_letters(self, reason: str) -> None:
        self.dead_letters_total.labels(**self._labels(), reason=reason).inc()

    def increment_commit_retries(self, category: str) -> None:
        self.commit_retries_total.labels(**self._labels(), category=category).inc()

    def increment_queue_errors(self, operation: str) -> None:
        self.queue_errors_total.labels(**self._labels(), operation=operation).inc()

    def observe_commit_duration(self, duration: float) -> None:
        """Record a commit duration observation.

        Args:
            duration: Commit duration in seconds.
        """
        self.commit_duration_seconds.labels(**self._labels()).observe(duration)

    def set_subscribers(self, count: int) -> None:
        self.subscribers_active.labels(**self._labels()).set(count)

    def increment_pushes_dropped(self, count: int = 1) -> None:
        self.pushes_dropped_total.labels(**self._labels()).inc(count)

    def set_tally_version(self, version: int) -> None:
        self.tally_version.labels(**self._labels()).set(version)

    def record_startup(self, service: str) -> None:
        """Record service startup time.

        Args:
            service: Service name.
        """
        self.startup_times[service] = time.time()

    def update_uptime_gauges(self) -> None:
        """Update uptime gauges for all registered services."""
        for service, started in self.startup_times.items():
            self.uptime_seconds.labels(
                service=service, environment=self._environment
            ).set(time.time() - started)

    def get_registry(self) -> CollectorRegistry:
        """Get the collector registry.

        Returns:
            The Prometheus collector registry.
        """
        return self._registry


# Singleton instance
_metrics_collector: MetricsCollector | None = None


def get_metrics_collector() -> MetricsCollector:
    """Get the singleton MetricsCollector instance (thread-safe).

    Uses double-checked locking pattern for thread-safe lazy initialization.

    Returns:
        The global MetricsCollector instance.
    """
    global _metrics_collector
    if _metrics_collector is None:
        with _collector_lock:
            if _metrics_collector is None:
                _metrics_collector = MetricsCollector()
    return _metrics_collector


def generate_metrics() -> bytes:
    """Generate Prometheus metrics in exposition format.

    Returns:
        Metrics in Prometheus text format as bytes.
    """
    collector = get_metrics_collector()
    collector.update_uptime_gauges()
    return generate_latest(collector.get_registry())


def reset_metrics_collector() -> None:
    """Reset the singleton collector (for testing only)."""
    global _metrics_collector
    with _collector_lock:
        _metrics_collector = None
