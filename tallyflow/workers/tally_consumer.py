"""Queue consumer for vote envelopes.

Delivery contract (at-least-once in, exactly-once effect out):
  1. Poll one envelope from the vote queue
  2. Hand it to the aggregation engine (validate, de-dup, commit)
  3. Acknowledge ONLY after the commit succeeded, or after an explicit
     decision to drop (duplicate) or dead-letter (invalid) the envelope
  4. Broadcast the committed snapshot to live viewers

A crash between commit and acknowledge leads to a redelivery, which the
store's processed set turns into a no-op. Transient storage failures are
retried in-process with capped exponential backoff; the queue's
delivery_count counts toward the attempt limit so redelivery loops end
in the dead-letter path as well.

Usage:
    # TALLY_CANDIDATES=A,B,C python -m tallyflow.workers.tally_consumer

    worker = TallyConsumerWorker(queue=queue, engine=engine, publisher=broadcaster)
    await worker.run()
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from tallyflow.application.ports.update_publisher import UpdatePublisherPort
from tallyflow.application.ports.vote_queue import VoteQueuePort
from tallyflow.application.services.aggregation_engine import AggregationEngine
from tallyflow.domain.errors import StorageUnavailableError, TransientQueueError
from tallyflow.domain.models.aggregation import AggregationOutcome, RejectionReason
from tallyflow.domain.models.vote_envelope import QueuedEnvelope
from tallyflow.infrastructure.monitoring.metrics import MetricsCollector
from tallyflow.infrastructure.observability.correlation import correlation_scope
from tallyflow.workers.error_handler import ErrorAction, ErrorDecision, ErrorHandler

logger = logging.getLogger(__name__)


@dataclass
class ConsumerMetrics:
    """Metrics tracked by the consumer worker."""

    envelopes_received: int = 0
    envelopes_applied: int = 0
    duplicates_skipped: int = 0
    dead_lettered: int = 0
    requeued: int = 0
    retries: int = 0
    queue_errors: int = 0
    ack_failures: int = 0
    publish_failures: int = 0
    unexpected_errors: int = 0
    total_processing_time_ms: float = 0.0
    last_envelope_time: float | None = None


class TallyConsumerWorker:
    """Consumes vote envelopes and commits them to the tally.

    Several workers may share one queue and one store; correctness never
    depends on how many run or where.
    """

    def __init__(
        self,
        queue: VoteQueuePort,
        engine: AggregationEngine,
        publisher: UpdatePublisherPort | None = None,
        error_handler: ErrorHandler | None = None,
        metrics_collector: MetricsCollector | None = None,
        poll_timeout_seconds: float = 1.0,
        drain_timeout_seconds: float = 10.0,
    ) -> None:
        """Initialize the consumer worker.

        Args:
            queue: Vote queue to consume from
            engine: Aggregation engine (owns validation and commit)
            publisher: Optional update publisher for committed snapshots
            error_handler: Optional error handler (creates default if None)
            metrics_collector: Optional Prometheus collector
            poll_timeout_seconds: Poll timeout
            drain_timeout_seconds: Max wait for in-flight work on drain()
        """
        self._queue = queue
        self._engine = engine
        self._publisher = publisher
        self._error_handler = error_handler or ErrorHandler()
        self._collector = metrics_collector
        self._poll_timeout = poll_timeout_seconds
        self._drain_timeout = drain_timeout_seconds

        self._running = False
        self._stop_event = asyncio.Event()
        self._run_task: asyncio.Task[None] | None = None
        self._metrics = ConsumerMetrics()

        logger.info(
            "TallyConsumerWorker initialized: consumer_id=%s, candidates=%s",
            engine.consumer_id,
            ",".join(sorted(engine.candidates)),
        )

    @property
    def consumer_id(self) -> str:
        return self._engine.consumer_id

    @property
    def is_running(self) -> bool:
        return self._running

    async def run(self) -> None:
        """Run the consumer loop until stop() is called.

        Recovery from storage completes before the first poll. No single
        envelope can end this loop: every failure is resolved to retry,
        requeue, skip or dead-letter.
        """
        if self._stop_event.is_set():
            # stop() arrived before the loop started
            self._stop_event.clear()
            return

        self._running = True
        self._run_task = asyncio.current_task()

        logger.info("TallyConsumerWorker starting: consumer_id=%s", self.consumer_id)

        try:
            if not await self._recover():
                return

            queue_failures = 0
            while self._running:
                try:
                    queued = await self._queue.poll(self._poll_timeout)
                except TransientQueueError as e:
                    queue_failures += 1
                    self._record_queue_error("poll")
                    delay = self._error_handler.backoff_delay(queue_failures)
                    logger.warning(
                        "Queue unavailable - polling again in %.2fs: %s", delay, e
                    )
                    await self._sleep_unless_stopped(delay)
                    continue
                except Exception:
                    queue_failures += 1
                    self._record_queue_error("poll")
                    delay = self._error_handler.backoff_delay(queue_failures)
                    logger.exception(
                        "Unexpected poll failure - polling again in %.2fs", delay
                    )
                    await self._sleep_unless_stopped(delay)
                    continue

                queue_failures = 0
                if queued is None:
                    continue

                try:
                    await self._handle(queued)
                except Exception:
                    # Left unacknowledged; the queue redelivers it after the lease lapses.
                    self._metrics.unexpected_errors += 1
                    logger.exception(
                        "Unexpected failure handling envelope - left for redelivery: %s",
                        queued.envelope_id,
                    )

        except asyncio.CancelledError:
            logger.warning(
                "Worker cancelled with work in flight: consumer_id=%s", self.consumer_id
            )
            raise

        finally:
            self._running = False
            self._stop_event.clear()
            self._cleanup()

    def stop(self) -> None:
        """Signal the worker to stop polling.

        In-flight work finishes; an envelope waiting on a retry backoff is
        handed back to the queue instead.
        """
        logger.info("Worker stop requested: consumer_id=%s", self.consumer_id)
        self._running = False
        self._stop_event.set()

    async def drain(self, timeout: float | None = None) -> bool:
        """Stop and wait for in-flight work, bounded by ``timeout``.

        If the bound passes, the run task is cancelled; its envelope stays
        unacknowledged and is redelivered after the visibility timeout.

        Returns:
            True if the worker finished within the bound.
        """
        self.stop()
        task = self._run_task
        if task is None or task.done():
            return True

        bound = self._drain_timeout if timeout is None else timeout
        done, _ = await asyncio.wait({task}, timeout=bound)
        if done:
            return True

        logger.warning(
            "Drain timed out after %.1fs - cancelling in-flight work: consumer_id=%s",
            bound,
            self.consumer_id,
        )
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        return False

    def _cleanup(self) -> None:
        """Clean up worker state."""
        self._run_task = None
        logger.info(
            "TallyConsumerWorker stopped: consumer_id=%s, applied=%d, dead_lettered=%d",
            self.consumer_id,
            self._metrics.envelopes_applied,
            self._metrics.dead_lettered,
        )

    async def _recover(self) -> bool:
        """Recover engine state, retrying while storage is unavailable.

        Returns:
            False if the worker was stopped before recovery completed.
        """
        attempt = 0
        while self._running:
            try:
                await self._engine.recover()
                return True
            except StorageUnavailableError as e:
                attempt += 1
                delay = self._error_handler.backoff_delay(attempt)
                logger.warning(
                    "Recovery failed - retrying in %.2fs (attempt %d): %s",
                    delay,
                    attempt,
                    e,
                )
                await self._sleep_unless_stopped(delay)
        return False

    async def _handle(self, queued: QueuedEnvelope) -> None:
        """Process one delivery to a terminal queue action."""
        self._metrics.envelopes_received += 1
        start_time = time.monotonic()
        attempt = max(queued.delivery_count, 1)

        with correlation_scope(queued.envelope_id):
            try:
                while True:
                    commit_start = time.monotonic()
                    try:
                        outcome = await self._engine.process(queued)
                    except Exception as e:
                        decision = self._error_handler.handle(
                            e,
                            attempt=attempt,
                            context={"envelope_id": queued.envelope_id},
                        )

                        if decision.action == ErrorAction.RETRY:
                            self._metrics.retries += 1
                            if self._collector is not None:
                                self._collector.increment_commit_retries(
                                    decision.category.value
                                )
                            if await self._sleep_unless_stopped(
                                decision.retry_delay_seconds
                            ):
                                attempt += 1
                                continue
                            await self._requeue(queued, decision.retry_delay_seconds)
                            return

                        if decision.action == ErrorAction.DEAD_LETTER:
                            reason = (
                                "retries_exhausted"
                                if decision.category
                                in self._error_handler.RETRYABLE_CATEGORIES
                                else decision.category.value
                            )
                            await self._dead_letter(
                                queued, decision, reason, str(e), attempt
                            )
                            return

                        await self._acknowledge(queued)
                        return

                    if self._collector is not None:
                        self._collector.observe_commit_duration(
                            time.monotonic() - commit_start
                        )
                    await self._finish(queued, outcome, attempt)
                    return

            finally:
                processing_time = (time.monotonic() - start_time) * 1000
                self._metrics.total_processing_time_ms += processing_time
                self._metrics.last_envelope_time = time.monotonic()

    async def _finish(
        self, queued: QueuedEnvelope, outcome: AggregationOutcome, attempt: int
    ) -> None:
        if outcome.is_applied:
            self._metrics.envelopes_applied += 1
            self._record_outcome("applied")
            await self._acknowledge(queued)
            if outcome.state is not None:
                self._publish(outcome)
            return

        reason = outcome.reason or RejectionReason.INVALID_ENVELOPE
        decision = self._error_handler.decide_rejection(
            reason, context={"envelope_id": outcome.envelope_id}
        )
        if decision.action == ErrorAction.SKIP:
            self._metrics.duplicates_skipped += 1
            self._record_outcome("duplicate")
            logger.debug("Duplicate envelope acknowledged: %s", outcome.envelope_id)
            await self._acknowledge(queued)
            return

        await self._dead_letter(
            queued, decision, reason.value, outcome.detail or "", attempt
        )

    def _publish(self, outcome: AggregationOutcome) -> None:
        """Broadcast a committed snapshot; never fails the commit path."""
        if self._publisher is None or outcome.state is None:
            return
        try:
            self._publisher.broadcast(outcome.state)
        except Exception:
            self._metrics.publish_failures += 1
            logger.exception(
                "Broadcast failed after commit (tally is durable): envelope=%s version=%d",
                outcome.envelope_id,
                outcome.state.version,
            )

    async def _acknowledge(self, queued: QueuedEnvelope) -> None:
        try:
            await self._queue.acknowledge(queued.envelope_id)
        except TransientQueueError as e:
            # Redelivery of an already committed id is a no-op.
            self._metrics.ack_failures += 1
            self._record_queue_error("acknowledge")
            logger.warning(
                "Acknowledge failed - envelope will be redelivered: %s (%s)",
                queued.envelope_id,
                e,
            )

    async def _requeue(self, queued: QueuedEnvelope, delay: float) -> None:
        try:
            await self._queue.requeue(queued.envelope_id, delay)
        except TransientQueueError as e:
            self._record_queue_error("requeue")
            logger.warning(
                "Requeue failed - envelope returns after its visibility timeout: %s (%s)",
                queued.envelope_id,
                e,
            )
            return
        self._metrics.requeued += 1
        self._record_outcome("requeued")
        logger.info(
            "Envelope handed back to queue on shutdown: %s (delay=%.2fs)",
            queued.envelope_id,
            delay,
        )

    async def _dead_letter(
        self,
        queued: QueuedEnvelope,
        decision: ErrorDecision,
        reason: str,
        detail: str,
        attempt: int,
    ) -> None:
        """Copy the envelope to the dead-letter path, then acknowledge it.

        If the dead-letter write fails the envelope stays unacknowledged,
        so it is never lost.
        """
        record: dict[str, Any] = {
            "reason": reason,
            "category": decision.category.value,
            "detail": detail,
            "attempts": attempt,
            "delivery_count": queued.delivery_count,
            "consumer_id": self.consumer_id,
            "payload": queued.payload,
            "dead_lettered_at": datetime.now(timezone.utc).isoformat(),
        }
        try:
            await self._queue.dead_letter(queued.envelope_id, record)
        except TransientQueueError as e:
            self._record_queue_error("dead_letter")
            logger.error(
                "Dead-letter write failed - leaving envelope unacknowledged: %s (%s)",
                queued.envelope_id,
                e,
            )
            return

        self._metrics.dead_lettered += 1
        self._record_outcome("dead_lettered")
        if self._collector is not None:
            self._collector.increment_dead_letters(reason)
        logger.warning(
            "Envelope dead-lettered: %s (reason=%s, attempts=%d, detail=%s)",
            queued.envelope_id,
            reason,
            attempt,
            detail,
        )
        await self._acknowledge(queued)

    async def _sleep_unless_stopped(self, delay: float) -> bool:
        """Sleep for ``delay`` seconds.

        Returns:
            True if the full delay elapsed, False if stop() interrupted it.
        """
        if self._stop_event.is_set():
            return False
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return True
        return False

    def _record_outcome(self, outcome: str) -> None:
        if self._collector is not None:
            self._collector.increment_processed(outcome)

    def _record_queue_error(self, operation: str) -> None:
        self._metrics.queue_errors += 1
        if self._collector is not None:
            self._collector.increment_queue_errors(operation)

    def get_metrics(self) -> dict[str, Any]:
        """Get worker metrics for monitoring."""
        handled = (
            self._metrics.envelopes_applied
            + self._metrics.duplicates_skipped
            + self._metrics.dead_lettered
        )
        avg_processing_time = 0.0
        if handled > 0:
            avg_processing_time = self._metrics.total_processing_time_ms / handled

        return {
            "consumer_id": self.consumer_id,
            "envelopes_received": self._metrics.envelopes_received,
            "envelopes_applied": self._metrics.envelopes_applied,
            "duplicates_skipped": self._metrics.duplicates_skipped,
            "dead_lettered": self._metrics.dead_lettered,
            "requeued": self._metrics.requeued,
            "retries": self._metrics.retries,
            "queue_errors": self._metrics.queue_errors,
            "ack_failures": self._metrics.ack_failures,
            "publish_failures": self._metrics.publish_failures,
            "unexpected_errors": self._metrics.unexpected_errors,
            "avg_processing_time_ms": avg_processing_time,
            "tally_version": self._engine.snapshot().version,
            "running": self._running,
        }


if __name__ == "__main__":
    from tallyflow.bootstrap.pipeline import run_consumer_only

    asyncio.run(run_consumer_only())
