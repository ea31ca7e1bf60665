"""
In-memory store implementations.

Used by unit tests and the `--memory` demo mode. Each store guards its state
with a single lock so the same storage guarantees hold as in the SQL stores.
"""

import threading
from collections.abc import Iterable, Sequence
from dataclasses import replace
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional
from uuid import uuid4

from claim_bucketing.core.errors import BucketNotFoundError, ConcurrentModificationError
from claim_bucketing.domain import (
    OPEN_BUCKET_STATUSES,
    ApprovalLogEntry,
    Bucket,
    BucketChanges,
    BucketingRule,
    BucketStatus,
    ChangeEvent,
    ChangeOperation,
    Checkpoint,
    CommitCriteria,
    FeedPosition,
    Payee,
    Payer,
    ProcessingLogEntry,
    ProcessingStatus,
    Threshold,
)


class InMemoryFeedSource:
    """Change feed held in a list, ordered by position."""

    def __init__(self, feed_version: int = 1) -> None:
        self._lock = threading.Lock()
        self._events: list[ChangeEvent] = []
        self._feed_version = feed_version
        self._next_sequence = 1

    def append(self, event: ChangeEvent) -> None:
        with self._lock:
            self._events.append(event)
            self._events.sort(key=lambda e: e.position)

    def append_claim(
        self,
        payload: dict[str, Any],
        operation: ChangeOperation = ChangeOperation.INSERT,
        table_name: str = "claims",
    ) -> ChangeEvent:
        """Append a claim snapshot at the next sequence number."""
        with self._lock:
            event = ChangeEvent(
                change_id=str(uuid4()),
                position=FeedPosition(self._feed_version, self._next_sequence),
                table_name=table_name,
                operation=operation,
                row_id=str(payload.get("id", "")),
                payload=dict(payload),
            )
            self._next_sequence += 1
            self._events.append(event)
            self._events.sort(key=lambda e: e.position)
        return event

    def fetch_since(self, position: FeedPosition, limit: int) -> list[ChangeEvent]:
        with self._lock:
            return [e for e in self._events if e.position > position][:limit]

    def mark_processed(self, events: Sequence[ChangeEvent], processed_at: datetime) -> None:
        handled = {e.change_id for e in events}
        with self._lock:
            self._events = [
                replace(e, processed=True, error_message=None) if e.change_id in handled else e
                for e in self._events
            ]

    def mark_failed(self, event: ChangeEvent, message: str, failed_at: datetime) -> None:
        with self._lock:
            self._events = [
                replace(e, processed=False, error_message=message) if e.change_id == event.change_id else e
                for e in self._events
            ]

    def mark_all_unprocessed(self) -> int:
        with self._lock:
            count = sum(1 for e in self._events if e.processed)
            self._events = [replace(e, processed=False) for e in self._events]
        return count

    def counts(self) -> dict[str, int]:
        with self._lock:
            pending = sum(1 for e in self._events if not e.processed)
            return {"total": len(self._events), "unprocessed": pending}

    @property
    def events(self) -> list[ChangeEvent]:
        with self._lock:
            return list(self._events)


class InMemoryCheckpointStore:
    """Checkpoints keyed by consumer id."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._checkpoints: dict[str, Checkpoint] = {}

    def load_checkpoint(self, consumer_id: str) -> Optional[Checkpoint]:
        with self._lock:
            return self._checkpoints.get(consumer_id)

    def save_checkpoint(self, checkpoint: Checkpoint) -> None:
        with self._lock:
            self._checkpoints[checkpoint.consumer_id] = checkpoint

    def delete_all_checkpoints(self) -> int:
        with self._lock:
            count = len(self._checkpoints)
            self._checkpoints.clear()
        return count


class InMemoryConfigurationStore:
    """Bucketing configuration held in dictionaries."""

    def __init__(
        self,
        rules: Iterable[BucketingRule] = (),
        thresholds: Iterable[Threshold] = (),
        criteria: Iterable[CommitCriteria] = (),
        payers: Iterable[Payer] = (),
        payees: Iterable[Payee] = (),
    ) -> None:
        self._lock = threading.Lock()
        self.rules: dict[str, BucketingRule] = {r.id: r for r in rules}
        self.thresholds: dict[str, Threshold] = {t.id: t for t in thresholds}
        self.criteria: dict[str, CommitCriteria] = {c.id: c for c in criteria}
        self.payers: dict[str, Payer] = {p.payer_id: p for p in payers}
        self.payees: dict[str, Payee] = {p.payee_id: p for p in payees}

    def save_rule(self, rule: BucketingRule) -> None:
        with self._lock:
            self.rules[rule.id] = rule

    def save_threshold(self, threshold: Threshold) -> None:
        with self._lock:
            self.thresholds[threshold.id] = threshold

    def save_criteria(self, criteria: CommitCriteria) -> None:
        with self._lock:
            self.criteria[criteria.id] = criteria

    def save_payer(self, payer: Payer) -> None:
        with self._lock:
            self.payers[payer.payer_id] = payer

    def save_payee(self, payee: Payee) -> None:
        with self._lock:
            self.payees[payee.payee_id] = payee

    def active_rules(self) -> list[BucketingRule]:
        with self._lock:
            return [r for r in self.rules.values() if r.active]

    def thresholds_for_rule(self, rule_id: str) -> list[Threshold]:
        with self._lock:
            return [t for t in self.thresholds.values() if t.rule_id == rule_id and t.active]

    def commit_criteria_for_rule(self, rule_id: str) -> list[CommitCriteria]:
        with self._lock:
            return [c for c in self.criteria.values() if c.rule_id == rule_id and c.active]

    def payer_exists(self, payer_id: str) -> bool:
        with self._lock:
            payer = self.payers.get(payer_id)
            return payer is not None and payer.active

    def payee_exists(self, payee_id: str) -> bool:
        with self._lock:
            payee = self.payees.get(payee_id)
            return payee is not None and payee.active


class InMemoryBucketStore:
    """Buckets and audit logs held in dictionaries and lists."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._buckets: dict[str, Bucket] = {}
        self._processing_log: list[ProcessingLogEntry] = []
        self._processed_claims: set[str] = set()
        self._approval_log: list[ApprovalLogEntry] = []

    def _require(self, bucket_id: str) -> Bucket:
        bucket = self._buckets.get(bucket_id)
        if bucket is None:
            raise BucketNotFoundError(bucket_id)
        return bucket

    def get(self, bucket_id: str) -> Optional[Bucket]:
        with self._lock:
            bucket = self._buckets.get(bucket_id)
            return bucket.model_copy() if bucket else None

    def find_open_by_key(self, grouping_key: str) -> Optional[Bucket]:
        with self._lock:
            for bucket in self._buckets.values():
                if bucket.grouping_key == grouping_key and bucket.is_open:
                    return bucket.model_copy()
        return None

    def create(self, bucket: Bucket) -> Bucket:
        with self._lock:
            for existing in self._buckets.values():
                if existing.grouping_key == bucket.grouping_key and existing.is_open:
                    raise ConcurrentModificationError(
                        f"Open bucket already exists for key {bucket.grouping_key}"
                    )
            self._buckets[bucket.id] = bucket.model_copy()
            return bucket.model_copy()

    def accumulate(
        self,
        bucket_id: str,
        amount: Decimal,
        entry: ProcessingLogEntry,
        updated_at: datetime,
    ) -> Bucket:
        with self._lock:
            bucket = self._require(bucket_id)
            if entry.claim_id in self._processed_claims:
                raise ConcurrentModificationError(f"Claim {entry.claim_id} already processed")
            if not bucket.is_open:
                raise ConcurrentModificationError(
                    f"Bucket {bucket_id} is {bucket.status.value}, no longer accumulating"
                )
            updated = bucket.model_copy(
                update={
                    "claim_count": bucket.claim_count + 1,
                    "total_amount": bucket.total_amount + amount,
                    "last_updated": updated_at,
                }
            )
            self._buckets[bucket_id] = updated
            self._processing_log.append(entry)
            self._processed_claims.add(entry.claim_id)
            return updated.model_copy()

    def has_processed_claim(self, claim_id: str) -> bool:
        with self._lock:
            return claim_id in self._processed_claims

    def append_processing_log(self, entry: ProcessingLogEntry) -> None:
        with self._lock:
            if entry.status == ProcessingStatus.PROCESSED:
                if entry.claim_id in self._processed_claims:
                    raise ConcurrentModificationError(f"Claim {entry.claim_id} already processed")
                self._processed_claims.add(entry.claim_id)
            self._processing_log.append(entry)

    def transition(
        self,
        bucket_id: str,
        expected: BucketStatus,
        new_status: BucketStatus,
        changes: BucketChanges,
        updated_at: datetime,
        approval: Optional[ApprovalLogEntry] = None,
    ) -> Bucket:
        with self._lock:
            bucket = self._require(bucket_id)
            if bucket.status != expected:
                raise ConcurrentModificationError(
                    f"Bucket {bucket_id} is {bucket.status.value}, expected {expected.value}"
                )
            if new_status in OPEN_BUCKET_STATUSES:
                for other in self._buckets.values():
                    if (
                        other.id != bucket_id
                        and other.grouping_key == bucket.grouping_key
                        and other.is_open
                    ):
                        raise ConcurrentModificationError(
                            f"Bucket {other.id} is already accumulating for key {bucket.grouping_key}"
                        )
            update: dict[str, Any] = changes.field_updates()
            update["status"] = new_status
            update["last_updated"] = updated_at
            update["rejection_count"] = bucket.rejection_count + changes.rejection_increment
            updated = bucket.model_copy(update=update)
            self._buckets[bucket_id] = updated
            if approval is not None:
                self._approval_log.append(approval)
            return updated.model_copy()

    def record_error(self, bucket_id: str, message: str, at: datetime) -> Bucket:
        with self._lock:
            bucket = self._require(bucket_id)
            updated = bucket.model_copy(
                update={"last_error_message": message, "last_error_at": at, "last_updated": at}
            )
            self._buckets[bucket_id] = updated
            return updated.model_copy()

    def list_buckets(self, statuses: Optional[Sequence[BucketStatus]] = None) -> list[Bucket]:
        with self._lock:
            buckets = [
                b.model_copy()
                for b in self._buckets.values()
                if statuses is None or b.status in statuses
            ]
        return sorted(buckets, key=lambda b: b.created_at)

    def claim_ids(self, bucket_id: str) -> list[str]:
        with self._lock:
            return [
                e.claim_id
                for e in self._processing_log
                if e.bucket_id == bucket_id and e.status == ProcessingStatus.PROCESSED
            ]

    def processing_log(
        self,
        claim_id: Optional[str] = None,
        bucket_id: Optional[str] = None,
    ) -> list[ProcessingLogEntry]:
        with self._lock:
            return [
                e
                for e in self._processing_log
                if (claim_id is None or e.claim_id == claim_id)
                and (bucket_id is None or e.bucket_id == bucket_id)
            ]

    def approval_log(self, bucket_id: str) -> list[ApprovalLogEntry]:
        with self._lock:
            return [e for e in self._approval_log if e.bucket_id == bucket_id]
