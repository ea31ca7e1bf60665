"""
Long-running bucketing service.

Builds the stores, publisher, engine, feed consumer and threshold monitor
from an AppConfig and drives them: the feed is polled every
feed.poll_interval_seconds and the monitor sweeps every
monitor.interval_seconds, on one thread.
"""

import threading
import time
from collections.abc import Callable
from datetime import datetime
from typing import Any, Optional

import structlog

from claim_bucketing.config.models import AppConfig
from claim_bucketing.core.checkpoint import FileCheckpointStore
from claim_bucketing.core.engine import BucketingEngine
from claim_bucketing.core.errors import ClaimBucketingError
from claim_bucketing.core.feed_consumer import FeedConsumer, PollResult
from claim_bucketing.core.threshold_monitor import SweepResult, ThresholdMonitor
from claim_bucketing.domain import BucketStatus
from claim_bucketing.streaming.factory import create_publisher
from claim_bucketing.streaming.publisher import ReleasePublisher

logger = structlog.get_logger()


class BucketingService:
    """
    Wires the engine to its stores and runs the poll/sweep loop.

    With memory=True every store is in-process (demos and tests); otherwise
    the SQL stores are used against config.database.

    Usage:
        service = BucketingService(config)
        service.run(stop_event)
    """

    def __init__(
        self,
        config: AppConfig,
        memory: bool = False,
        publisher: Optional[ReleasePublisher] = None,
        clock: Callable[[], datetime] = datetime.now,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self.clock = clock
        self.monotonic = monotonic
        self.db_engine = None

        if memory:
            from claim_bucketing.db.memory import (
                InMemoryBucketStore,
                InMemoryCheckpointStore,
                InMemoryConfigurationStore,
                InMemoryFeedSource,
            )

            self.feed_source = InMemoryFeedSource()
            self.bucket_store = InMemoryBucketStore()
            self.config_store = InMemoryConfigurationStore()
            self.checkpoints = InMemoryCheckpointStore()
        else:
            from claim_bucketing.db.connection import create_engine_from_config
            from claim_bucketing.db.sql_store import (
                SqlBucketStore,
                SqlCheckpointStore,
                SqlConfigurationStore,
                SqlFeedSource,
            )

            self.db_engine = create_engine_from_config(config.database)
            self.feed_source = SqlFeedSource(self.db_engine)
            self.bucket_store = SqlBucketStore(self.db_engine)
            self.config_store = SqlConfigurationStore(self.db_engine)
            self.checkpoints = SqlCheckpointStore(self.db_engine)

        if config.checkpoint.backend == "file":
            self.checkpoints = FileCheckpointStore(config.checkpoint.checkpoint_dir)

        self.publisher = publisher or create_publisher(config.release)

        self.engine = BucketingEngine(
            self.bucket_store,
            self.config_store,
            self.publisher,
            settled_statuses=config.feed.settled_statuses,
            claim_tables=config.feed.claim_tables,
            cache_ttl_seconds=config.configuration_cache_ttl_seconds,
            clock=clock,
        )
        self.consumer = FeedConsumer(
            config.feed.consumer_id,
            self.feed_source,
            self.checkpoints,
            self.engine,
            batch_size=config.feed.batch_size,
            clock=clock,
        )
        self.monitor = ThresholdMonitor(
            self.engine,
            stale_bucket_days=config.monitor.stale_bucket_days,
            clock=clock,
        )

    # ---- Single steps ----

    def poll(self) -> PollResult:
        """Drain the feed from the current checkpoint."""
        return self.consumer.drain()

    def sweep(self) -> SweepResult:
        return self.monitor.sweep()

    def status(self) -> dict[str, Any]:
        """Checkpoint, feed backlog and bucket counts per status."""
        checkpoint = self.consumer.current_checkpoint()
        counts = {status.value: 0 for status in BucketStatus}
        for bucket in self.engine.list_buckets():
            counts[bucket.status.value] += 1
        return {
            "consumer_id": checkpoint.consumer_id,
            "feed_version": checkpoint.last_feed_version,
            "sequence_number": checkpoint.last_sequence_number,
            "total_processed": checkpoint.total_processed,
            "last_checkpoint_at": checkpoint.last_checkpoint_at,
            "feed": self.feed_source.counts(),
            "buckets": counts,
            "releases": self.publisher.stats,
        }

    # ---- Loop ----

    def run(self, stop_event: Optional[threading.Event] = None, max_ticks: Optional[int] = None) -> int:
        """
        Poll and sweep until stop_event is set (or max_ticks ticks have run).

        A failing tick is logged and the loop carries on; a stuck database
        therefore shows up as repeated warnings, not a crashed service.

        Returns:
            Number of ticks run
        """
        stop_event = stop_event or threading.Event()
        poll_interval = self.config.feed.poll_interval_seconds
        sweep_interval = self.config.monitor.interval_seconds
        next_sweep = self.monotonic()
        ticks = 0

        logger.info(
            "service_starting",
            consumer_id=self.consumer.consumer_id,
            poll_interval_seconds=poll_interval,
            monitor_enabled=self.config.monitor.enabled,
            monitor_interval_seconds=sweep_interval,
            release_backend=self.config.release.backend,
        )

        while not stop_event.is_set():
            self._run_step("poll", self.poll)

            if self.config.monitor.enabled and self.monotonic() >= next_sweep:
                self._run_step("sweep", self.sweep)
                next_sweep = self.monotonic() + sweep_interval

            ticks += 1
            if max_ticks is not None and ticks >= max_ticks:
                break
            stop_event.wait(poll_interval)

        logger.info("service_stopped", ticks=ticks)
        return ticks

    def _run_step(self, name: str, step: Callable[[], Any]) -> None:
        try:
            step()
        except ClaimBucketingError as e:
            logger.warning("service_step_failed", step=name, error=str(e))
        except Exception:
            logger.exception("service_step_crashed", step=name)

    def close(self) -> None:
        """Flush and close the publisher and dispose of the connection pool."""
        self.publisher.flush()
        self.publisher.close()
        if self.db_engine is not None:
            self.db_engine.dispose()
