"""
Change feed consumer.

Pulls bounded batches of change events after the stored checkpoint, hands
each one to the engine, and moves the checkpoint forward only past events
whose handling has been durably recorded. Delivery is at-least-once: a crash
between handling and checkpointing replays those events, and the engine's
per-claim idempotency keeps replays from being counted twice.
"""

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

import structlog

from claim_bucketing.core.engine import BucketingEngine, ClaimOutcome
from claim_bucketing.core.errors import TransientStoreError
from claim_bucketing.db.protocol import CheckpointStore, FeedSource
from claim_bucketing.domain import START_OF_FEED, ChangeEvent, Checkpoint, FeedPosition

logger = structlog.get_logger()

DEFAULT_BATCH_SIZE = 100


@dataclass
class PollResult:
    """Statistics for one poll."""

    fetched: int = 0
    processed: int = 0
    duplicates: int = 0
    skipped: int = 0
    rejected: int = 0
    errors: int = 0
    interrupted: bool = False
    position: FeedPosition = START_OF_FEED
    bucket_ids: set[str] = field(default_factory=set)

    @property
    def handled(self) -> int:
        return self.processed + self.duplicates + self.skipped + self.rejected

    def as_log_fields(self) -> dict:
        return {
            "fetched": self.fetched,
            "processed": self.processed,
            "duplicates": self.duplicates,
            "skipped": self.skipped,
            "rejected": self.rejected,
            "errors": self.errors,
            "interrupted": self.interrupted,
            "feed_version": self.position.version,
            "sequence_number": self.position.sequence,
        }


class FeedConsumer:
    """
    Polls a feed source on behalf of one logical consumer.

    Usage:
        consumer = FeedConsumer("claim-bucketing-default", source, checkpoints, engine)
        result = consumer.poll_once()
    """

    def __init__(
        self,
        consumer_id: str,
        source: FeedSource,
        checkpoints: CheckpointStore,
        engine: BucketingEngine,
        batch_size: int = DEFAULT_BATCH_SIZE,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.consumer_id = consumer_id
        self.source = source
        self.checkpoints = checkpoints
        self.engine = engine
        self.batch_size = batch_size
        self.clock = clock

    def current_checkpoint(self) -> Checkpoint:
        checkpoint = self.checkpoints.load_checkpoint(self.consumer_id)
        if checkpoint is None:
            checkpoint = Checkpoint(consumer_id=self.consumer_id)
        return checkpoint

    def poll_once(self) -> PollResult:
        """
        Fetch and handle one batch.

        A transient failure while fetching returns an empty, interrupted
        result. A transient failure while handling stops the batch; the
        checkpoint is saved just before the failing event so it is
        retried on the next poll. Any other failure is permanent: the event
        is logged, recorded as a rejected claim with the error on its feed
        row, counted in errors and skipped.

        Returns:
            Batch statistics
        """
        checkpoint = self.current_checkpoint()
        result = PollResult(position=checkpoint.position)

        try:
            events = self.source.fetch_since(checkpoint.position, self.batch_size)
        except TransientStoreError as e:
            logger.warning("feed_fetch_failed", consumer_id=self.consumer_id, error=str(e))
            result.errors += 1
            result.interrupted = True
            return result

        result.fetched = len(events)
        if not events:
            return result

        handled: list[ChangeEvent] = []
        failed: set[str] = set()
        for event in events:
            try:
                outcome = self.engine.handle_event(event)
            except TransientStoreError as e:
                logger.warning(
                    "feed_event_retry_later",
                    consumer_id=self.consumer_id,
                    change_id=event.change_id,
                    feed_version=event.position.version,
                    sequence_number=event.position.sequence,
                    error=str(e),
                )
                result.errors += 1
                result.interrupted = True
                break
            except Exception as e:
                try:
                    self._record_failure(event, e)
                except TransientStoreError as store_error:
                    logger.warning(
                        "feed_event_failure_not_recorded",
                        consumer_id=self.consumer_id,
                        change_id=event.change_id,
                        error=str(store_error),
                    )
                    result.errors += 1
                    result.interrupted = True
                    break
                handled.append(event)
                failed.add(event.change_id)
                result.errors += 1
                continue

            handled.append(event)
            self._count(result, outcome.outcome)
            if outcome.bucket_id:
                result.bucket_ids.add(outcome.bucket_id)

        if handled:
            self._commit(checkpoint, handled, failed, result)

        logger.info("feed_batch_processed", consumer_id=self.consumer_id, **result.as_log_fields())
        return result

    def _record_failure(self, event: ChangeEvent, error: Exception) -> None:
        """
        Log a permanently failing event and attach the error to its claim
        and its feed row. The event is then treated as handled so it cannot
        block the events behind it.
        """
        message = f"{type(error).__name__}: {error}"
        logger.error(
            "feed_event_failed",
            consumer_id=self.consumer_id,
            change_id=event.change_id,
            feed_version=event.position.version,
            sequence_number=event.position.sequence,
            error=message,
            exc_info=True,
        )
        self.engine.record_event_failure(event, message)
        try:
            self.source.mark_failed(event, message, self.clock())
        except TransientStoreError as e:
            logger.warning("feed_mark_failed_failed", consumer_id=self.consumer_id, error=str(e))

    def _commit(
        self,
        checkpoint: Checkpoint,
        handled: list[ChangeEvent],
        failed: set[str],
        result: PollResult,
    ) -> None:
        now = self.clock()
        try:
            self.source.mark_processed([e for e in handled if e.change_id not in failed], now)
        except TransientStoreError as e:
            # Audit flag only; the checkpoint is what drives replay
            logger.warning("feed_mark_processed_failed", consumer_id=self.consumer_id, error=str(e))
        advanced = checkpoint.advanced_to(handled[-1].position, len(handled), now)
        self.checkpoints.save_checkpoint(advanced)
        result.position = advanced.position
        logger.debug(
            "checkpoint_saved",
            consumer_id=self.consumer_id,
            feed_version=advanced.last_feed_version,
            sequence_number=advanced.last_sequence_number,
            total_processed=advanced.total_processed,
        )

    @staticmethod
    def _count(result: PollResult, outcome: ClaimOutcome) -> None:
        if outcome == ClaimOutcome.PROCESSED:
            result.processed += 1
        elif outcome == ClaimOutcome.DUPLICATE:
            result.duplicates += 1
        elif outcome == ClaimOutcome.SKIPPED:
            result.skipped += 1
        else:
            result.rejected += 1

    def drain(self, max_batches: Optional[int] = None) -> PollResult:
        """
        Poll until the feed is exhausted, a batch is interrupted, or
        max_batches is reached. Returns the summed statistics.
        """
        total = PollResult()
        batches = 0
        while max_batches is None or batches < max_batches:
            result = self.poll_once()
            batches += 1
            total.fetched += result.fetched
            total.processed += result.processed
            total.duplicates += result.duplicates
            total.skipped += result.skipped
            total.rejected += result.rejected
            total.errors += result.errors
            total.bucket_ids |= result.bucket_ids
            total.position = result.position
            if result.interrupted:
                total.interrupted = True
                break
            if result.fetched < self.batch_size:
                break
        return total

    # ---- Replay control ----

    def reset_checkpoint(self, position: FeedPosition = START_OF_FEED) -> Checkpoint:
        """Move this consumer's checkpoint to position; later events are replayed."""
        checkpoint = self.current_checkpoint().model_copy(
            update={
                "last_feed_version": position.version,
                "last_sequence_number": position.sequence,
                "last_checkpoint_at": self.clock(),
            }
        )
        self.checkpoints.save_checkpoint(checkpoint)
        logger.info(
            "checkpoint_reset",
            consumer_id=self.consumer_id,
            feed_version=position.version,
            sequence_number=position.sequence,
        )
        return checkpoint

    def mark_all_unprocessed(self) -> int:
        """
        Clear every processed flag on the source and drop all checkpoints,
        so the whole feed is replayed from the start.
        """
        reset = self.source.mark_all_unprocessed()
        dropped = self.checkpoints.delete_all_checkpoints()
        logger.warning("feed_marked_unprocessed", events_reset=reset, checkpoints_dropped=dropped)
        return reset
