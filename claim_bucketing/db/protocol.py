"""
Protocol definitions for the stores the engine depends on.

The engine never talks to a database directly. Both the in-memory stores
(tests, demos) and the SQLAlchemy stores satisfy these protocols.
"""

from collections.abc import Sequence
from datetime import datetime
from decimal import Decimal
from typing import Optional, Protocol, runtime_checkable

from claim_bucketing.domain import (
    ApprovalLogEntry,
    Bucket,
    BucketChanges,
    BucketingRule,
    BucketStatus,
    ChangeEvent,
    Checkpoint,
    CommitCriteria,
    FeedPosition,
    ProcessingLogEntry,
    Threshold,
)


@runtime_checkable
class FeedSource(Protocol):
    """Ordered, replayable stream of claim change events."""

    def fetch_since(self, position: FeedPosition, limit: int) -> list[ChangeEvent]:
        """Events strictly after position, in position order, at most limit."""
        ...

    def mark_processed(self, events: Sequence[ChangeEvent], processed_at: datetime) -> None:
        """Set the audit flag on handled events."""
        ...

    def mark_failed(self, event: ChangeEvent, message: str, failed_at: datetime) -> None:
        """Record why an event could not be handled. The audit flag stays clear."""
        ...

    def mark_all_unprocessed(self) -> int:
        """Clear every audit flag. Returns the number of events reset."""
        ...


@runtime_checkable
class CheckpointStore(Protocol):
    """Durable consumer progress."""

    def load_checkpoint(self, consumer_id: str) -> Optional[Checkpoint]:
        ...

    def save_checkpoint(self, checkpoint: Checkpoint) -> None:
        ...

    def delete_all_checkpoints(self) -> int:
        """Remove every consumer's checkpoint. Returns the number removed."""
        ...


@runtime_checkable
class ConfigurationStore(Protocol):
    """Read access to bucketing configuration."""

    def active_rules(self) -> list[BucketingRule]:
        ...

    def thresholds_for_rule(self, rule_id: str) -> list[Threshold]:
        """Active thresholds linked to a rule."""
        ...

    def commit_criteria_for_rule(self, rule_id: str) -> list[CommitCriteria]:
        """Active commit criteria linked to a rule."""
        ...

    def payer_exists(self, payer_id: str) -> bool:
        ...

    def payee_exists(self, payee_id: str) -> bool:
        ...


@runtime_checkable
class BucketStore(Protocol):
    """
    Bucket state, processing log and approval log.

    Implementations guarantee:
    - at most one open bucket per grouping key (create raises
      ConcurrentModificationError for the losing writer)
    - at most one PROCESSED entry per claim id
    - transition only applies when the stored status equals the expected one
    """

    def get(self, bucket_id: str) -> Optional[Bucket]:
        ...

    def find_open_by_key(self, grouping_key: str) -> Optional[Bucket]:
        ...

    def create(self, bucket: Bucket) -> Bucket:
        ...

    def accumulate(
        self,
        bucket_id: str,
        amount: Decimal,
        entry: ProcessingLogEntry,
        updated_at: datetime,
    ) -> Bucket:
        """
        Add one claim to a bucket and record it, in one atomic step.

        Raises ConcurrentModificationError if the claim already has a
        PROCESSED entry or the bucket is no longer ACCUMULATING, leaving the
        bucket untouched.
        """
        ...

    def has_processed_claim(self, claim_id: str) -> bool:
        ...

    def append_processing_log(self, entry: ProcessingLogEntry) -> None:
        ...

    def transition(
        self,
        bucket_id: str,
        expected: BucketStatus,
        new_status: BucketStatus,
        changes: BucketChanges,
        updated_at: datetime,
        approval: Optional[ApprovalLogEntry] = None,
    ) -> Bucket:
        """
        Compare-and-set the bucket status, apply changes and append the
        approval entry in one atomic step.

        Raises ConcurrentModificationError if the stored status is not
        `expected`.
        """
        ...

    def record_error(self, bucket_id: str, message: str, at: datetime) -> Bucket:
        """Set the bucket's last error without changing its status."""
        ...

    def list_buckets(self, statuses: Optional[Sequence[BucketStatus]] = None) -> list[Bucket]:
        ...

    def claim_ids(self, bucket_id: str) -> list[str]:
        ...

    def processing_log(self, claim_id: Optional[str] = None, bucket_id: Optional[str] = None) -> list[ProcessingLogEntry]:
        ...

    def approval_log(self, bucket_id: str) -> list[ApprovalLogEntry]:
        ...
