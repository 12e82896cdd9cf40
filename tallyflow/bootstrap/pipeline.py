"""Pipeline wiring: queue, store, engines, consumers and publisher.

Two ways to run:
    python -m tallyflow                          HTTP API + consumers (uvicorn)
    python -m tallyflow.workers.tally_consumer   consumers only

In the HTTP mode the pipeline starts and stops inside the FastAPI
lifespan, so uvicorn owns signal handling. In consumer-only mode
SIGINT/SIGTERM drain the workers before the process exits.
"""

from __future__ import annotations

import asyncio
import signal
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import timedelta

from dotenv import load_dotenv
from fastapi import FastAPI
from sqlalchemy.ext.asyncio import AsyncEngine
from structlog import get_logger

from tallyflow.api.dependencies.tally import (
    reset_tally_dependencies,
    set_tally_dependencies,
)
from tallyflow.api.main import create_app
from tallyflow.application.ports.tally_store import TallyStorePort
from tallyflow.application.ports.vote_queue import VoteQueuePort
from tallyflow.application.services.aggregation_engine import AggregationEngine
from tallyflow.application.services.dedup_retention_service import (
    DedupRetentionService,
)
from tallyflow.application.services.tally_broadcaster import TallyBroadcaster
from tallyflow.bootstrap.database import create_engine_for_url, create_session_factory
from tallyflow.bootstrap.logging import configure_structlog
from tallyflow.config import PipelineConfig
from tallyflow.infrastructure.adapters.persistence import SqlTallyStore, create_schema
from tallyflow.infrastructure.adapters.queue import RedisVoteQueue
from tallyflow.infrastructure.monitoring.metrics import (
    MetricsCollector,
    get_metrics_collector,
)
from tallyflow.workers.error_handler import ErrorHandler
from tallyflow.workers.tally_consumer import TallyConsumerWorker

logger = get_logger()


class TallyPipeline:
    """Owns the long-running pieces of one tallyflow process.

    Every consumer gets its own AggregationEngine (and so its own
    ProcessedMarker) but all of them share the queue, the store and the
    broadcaster.
    """

    def __init__(
        self,
        config: PipelineConfig,
        queue: VoteQueuePort,
        store: TallyStorePort,
        broadcaster: TallyBroadcaster | None = None,
        metrics: MetricsCollector | None = None,
        db_engine: AsyncEngine | None = None,
    ) -> None:
        self.config = config
        self.queue = queue
        self.store = store
        self.metrics = metrics
        self.broadcaster = broadcaster or TallyBroadcaster(
            buffer_size=config.publisher.subscriber_buffer,
            metrics=metrics,
        )
        self.workers: list[TallyConsumerWorker] = []
        self.retention = DedupRetentionService(
            store,
            retention=timedelta(hours=config.storage.dedup_retention_hours),
            interval=config.storage.prune_interval_seconds,
        )

        self._db_engine = db_engine
        self._stop_event = asyncio.Event()
        self._tasks: list[asyncio.Task[None]] = []
        self._started = False
        self.consumer_restarts = 0

    @classmethod
    async def from_config(cls, config: PipelineConfig) -> TallyPipeline:
        """Connect to Redis and the database and create the schema."""
        db_engine = create_engine_for_url(config.storage.database_url)
        await create_schema(db_engine)
        store = SqlTallyStore(
            create_session_factory(db_engine),
            commit_timeout=config.storage.commit_timeout_seconds,
        )
        queue = RedisVoteQueue.from_url(
            config.queue.redis_url,
            key_prefix=config.queue.key_prefix,
            visibility_timeout=config.queue.visibility_timeout_seconds,
        )
        return cls(
            config,
            queue=queue,
            store=store,
            metrics=get_metrics_collector(),
            db_engine=db_engine,
        )

    @property
    def is_running(self) -> bool:
        return self._started

    def _consumer_ids(self) -> list[str]:
        base = self.config.consumer.consumer_id
        count = self.config.consumer.consumer_count
        if count == 1:
            return [base]
        return [f"{base}-{i}" for i in range(1, count + 1)]

    def _build_worker(self, consumer_id: str) -> TallyConsumerWorker:
        consumer = self.config.consumer
        engine = AggregationEngine(
            self.config.candidates,
            self.store,
            consumer_id=consumer_id,
        )
        handler = ErrorHandler(
            max_attempts=consumer.max_attempts,
            base_delay_seconds=consumer.backoff_base_seconds,
            max_delay_seconds=consumer.backoff_max_seconds,
            jitter=consumer.backoff_jitter,
        )
        return TallyConsumerWorker(
            queue=self.queue,
            engine=engine,
            publisher=self.broadcaster,
            error_handler=handler,
            metrics_collector=self.metrics,
            poll_timeout_seconds=self.config.queue.poll_timeout_seconds,
            drain_timeout_seconds=consumer.drain_timeout_seconds,
        )

    async def _supervise(self, worker: TallyConsumerWorker) -> None:
        """Run one consumer, restarting it if its loop dies.

        A normal return from run() means the worker was stopped.
        """
        consumer = self.config.consumer
        failures = 0
        while True:
            try:
                await worker.run()
                return
            except Exception:
                failures += 1
                self.consumer_restarts += 1
                delay = min(
                    consumer.backoff_max_seconds,
                    consumer.backoff_base_seconds * (2 ** (failures - 1)),
                )
                logger.exception(
                    "consumer_crashed",
                    consumer_id=worker.consumer_id,
                    failures=failures,
                    restart_in_seconds=delay,
                )

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
                return
            except asyncio.TimeoutError:
                logger.info("consumer_restarting", consumer_id=worker.consumer_id)

    async def start(self) -> None:
        """Start consumers, the snapshot refresher and the retention sweep."""
        if self._started:
            return
        self._stop_event.clear()

        self.workers = [self._build_worker(cid) for cid in self._consumer_ids()]
        for worker in self.workers:
            self._tasks.append(asyncio.create_task(self._supervise(worker)))

        self._tasks.append(
            asyncio.create_task(
                self.broadcaster.run_refresher(
                    self.store,
                    self.config.publisher.refresh_interval_seconds,
                    self._stop_event,
                )
            )
        )
        self._tasks.append(asyncio.create_task(self.retention.run(self._stop_event)))

        set_tally_dependencies(
            self.broadcaster,
            store=self.store,
            keepalive_seconds=self.config.publisher.keepalive_seconds,
        )
        if self.metrics is not None:
            self.metrics.record_startup("tallyflow")

        self._started = True
        logger.info(
            "pipeline_started",
            consumers=[w.consumer_id for w in self.workers],
            candidates=sorted(self.config.candidates),
        )

    async def stop(self) -> None:
        """Drain consumers, stop background tasks and close connections."""
        if not self._started:
            return

        # Set first so no supervisor restarts a consumer mid-drain
        self._stop_event.set()
        drained = await asyncio.gather(*(worker.drain() for worker in self.workers))
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

        close = getattr(self.queue, "close", None)
        if close is not None:
            await close()
        if self._db_engine is not None:
            await self._db_engine.dispose()

        self._started = False
        logger.info("pipeline_stopped", drained_cleanly=all(drained))

    async def wait(self) -> None:
        """Wait until every consumer loop has exited."""
        await asyncio.gather(*self._tasks[: len(self.workers)], return_exceptions=True)


def pipeline_lifespan(config: PipelineConfig):
    """Build a FastAPI lifespan that runs the pipeline alongside the API."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        pipeline = await TallyPipeline.from_config(config)
        app.state.pipeline = pipeline
        await pipeline.start()
        try:
            yield
        finally:
            await pipeline.stop()
            reset_tally_dependencies()

    return lifespan


def create_pipeline_app(config: PipelineConfig) -> FastAPI:
    return create_app(lifespan=pipeline_lifespan(config))


async def run_consumer_only(config: PipelineConfig | None = None) -> None:
    """Run consumers without the HTTP API until SIGINT/SIGTERM."""
    if config is None:
        load_dotenv()
        config = PipelineConfig.from_environment()
        configure_structlog(config.environment)

    pipeline = await TallyPipeline.from_config(config)
    loop = asyncio.get_running_loop()
    pending: set[asyncio.Task[None]] = set()

    def signal_handler() -> None:
        logger.info("shutdown_signal_received")
        task = loop.create_task(pipeline.stop())
        pending.add(task)
        task.add_done_callback(pending.discard)

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    await pipeline.start()
    await pipeline.wait()
    if pending:
        await asyncio.gather(*pending)
    await pipeline.stop()
