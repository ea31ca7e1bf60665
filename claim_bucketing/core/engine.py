"""
Bucketing engine.

Wires the claim filter, rule resolver, aggregator, threshold evaluator,
commit policy and lifecycle manager together, and exposes the
administrative surface (approve, reject, override, re-drive, generator
feedback, queries).

All work on one bucket runs under the keyed lock for its grouping key:
aggregation, the threshold check it triggers and the commit decision happen
as one serialized step, and administrative actions take the same lock
before re-reading the bucket.
"""

from collections.abc import Callable, Iterable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

import structlog

from claim_bucketing.core.aggregator import Aggregator
from claim_bucketing.core.claim_filter import ClaimFilter, FilterOutcome
from claim_bucketing.core.commit_policy import CommitPolicy, select_criteria
from claim_bucketing.core.config_snapshot import ConfigurationSnapshot, SnapshotProvider
from claim_bucketing.core.errors import (
    BucketNotFoundError,
    ClaimValidationError,
    MissingConfigurationError,
    NoActiveRulesError,
)
from claim_bucketing.core.lifecycle import LifecycleManager
from claim_bucketing.core.locks import KeyedLocks
from claim_bucketing.core.rule_resolver import RuleResolver
from claim_bucketing.core.threshold_evaluator import ThresholdEvaluator
from claim_bucketing.db.protocol import BucketStore, ConfigurationStore
from claim_bucketing.domain import (
    ApprovalLogEntry,
    Bucket,
    BucketStatus,
    ChangeEvent,
    Claim,
    CommitDecision,
    ProcessingLogEntry,
    ProcessingStatus,
    ReleaseTrigger,
)
from claim_bucketing.streaming.publisher import ReleasePublisher

logger = structlog.get_logger()


class ClaimOutcome(str, Enum):
    """What happened to one change event."""
    PROCESSED = "PROCESSED"  # Counted into a bucket
    DUPLICATE = "DUPLICATE"  # Already counted on an earlier delivery
    SKIPPED = "SKIPPED"      # Not eligible (unsettled, deleted, other table)
    REJECTED = "REJECTED"    # Malformed or invalid; logged with a reason


@dataclass(frozen=True)
class EventResult:
    outcome: ClaimOutcome
    claim_id: str
    bucket_id: Optional[str] = None
    bucket_status: Optional[BucketStatus] = None
    reason: Optional[str] = None


class BucketingEngine:
    """
    Claim ingestion and bucket lifecycle engine.

    Usage:
        engine = BucketingEngine(bucket_store, config_store, publisher)
        result = engine.handle_event(event)
        engine.approve(bucket_id, actor="jdoe", comments="checked totals")
    """

    def __init__(
        self,
        bucket_store: BucketStore,
        config_store: ConfigurationStore,
        publisher: ReleasePublisher,
        settled_statuses: Iterable[str] = ("PROCESSED", "PAID"),
        claim_tables: Iterable[str] = ("claims",),
        cache_ttl_seconds: float = 30.0,
        clock: Callable[[], datetime] = datetime.now,
        locks: Optional[KeyedLocks] = None,
    ):
        self.bucket_store = bucket_store
        self.config_store = config_store
        self.clock = clock
        self.locks = locks or KeyedLocks()

        self.snapshots = SnapshotProvider(config_store, ttl_seconds=cache_ttl_seconds, clock=clock)
        self.claim_filter = ClaimFilter(settled_statuses, claim_tables)
        self.resolver = RuleResolver()
        self.aggregator = Aggregator(bucket_store, clock=clock)
        self.evaluator = ThresholdEvaluator()
        self.policy = CommitPolicy()
        self.lifecycle = LifecycleManager(bucket_store, publisher, clock=clock)

    # ---- Ingestion ----

    def handle_event(self, event: ChangeEvent) -> EventResult:
        """
        Handle one change event end to end.

        Bad input never raises: it is skipped or rejected with a logged
        reason. TransientStoreError propagates so the caller can retry the
        event later.
        """
        filtered = self.claim_filter.accept(event)
        if filtered.outcome == FilterOutcome.SKIPPED:
            return EventResult(ClaimOutcome.SKIPPED, filtered.claim_id, reason=filtered.reason)
        if filtered.outcome == FilterOutcome.REJECTED:
            return self._reject_claim(filtered.claim_id, filtered.reason or "malformed payload")
        return self.process_claim(filtered.claim)

    def process_claim(self, claim: Claim) -> EventResult:
        """Resolve, aggregate and evaluate one settled claim."""
        snapshot = self.snapshots.get()

        try:
            rule = self.resolver.resolve(claim, snapshot)
        except NoActiveRulesError as e:
            return self._reject_claim(claim.id, str(e), claim)

        try:
            placement = self.aggregator.place(claim, rule)
        except ClaimValidationError as e:
            return self._reject_claim(claim.id, str(e), claim)

        with self.locks.hold(placement.grouping_key):
            result = self.aggregator.aggregate(placement)
            if result.duplicate:
                bucket = self._recheck_after_redelivery(claim.id, placement.grouping_key, snapshot)
                return EventResult(
                    ClaimOutcome.DUPLICATE,
                    claim.id,
                    bucket_id=bucket.id if bucket else None,
                    bucket_status=bucket.status if bucket else None,
                    reason="already processed",
                )
            bucket = self._evaluate_locked(result.bucket, snapshot)

        return EventResult(
            ClaimOutcome.PROCESSED,
            claim.id,
            bucket_id=bucket.id,
            bucket_status=bucket.status,
        )

    def record_event_failure(self, event: ChangeEvent, message: str) -> EventResult:
        """
        Record a change event that could not be handled as a rejected claim,
        so the failure stays attached to the claim after the feed moves on.
        """
        claim_id = str(event.payload.get("id") or event.row_id or event.change_id)
        return self._reject_claim(claim_id, f"Processing error: {message}")

    def _recheck_after_redelivery(
        self,
        claim_id: str,
        grouping_key: str,
        snapshot: ConfigurationSnapshot,
    ) -> Optional[Bucket]:
        """
        Re-evaluate the bucket a redelivered claim was counted into. Covers a
        crash between counting the claim and evaluating its thresholds.
        Caller holds the lock for grouping_key.
        """
        for entry in self.bucket_store.processing_log(claim_id=claim_id):
            if entry.status != ProcessingStatus.PROCESSED or entry.bucket_id is None:
                continue
            bucket = self.bucket_store.get(entry.bucket_id)
            if (
                bucket is not None
                and bucket.status == BucketStatus.ACCUMULATING
                and bucket.grouping_key == grouping_key
            ):
                return self._evaluate_locked(bucket, snapshot)
            return bucket
        return None

    def _reject_claim(self, claim_id: str, reason: str, claim: Optional[Claim] = None) -> EventResult:
        entry = ProcessingLogEntry.for_rejected_claim(claim_id, reason, self.clock(), claim=claim)
        self.bucket_store.append_processing_log(entry)
        logger.warning("claim_rejected", claim_id=claim_id, reason=reason)
        return EventResult(ClaimOutcome.REJECTED, claim_id, reason=reason)

    def _evaluate_locked(self, bucket: Bucket, snapshot: ConfigurationSnapshot) -> Bucket:
        """Check thresholds and apply the commit policy. Caller holds the bucket lock."""
        now = self.clock()
        threshold = self.evaluator.first_fired(bucket, snapshot.thresholds_for(bucket.rule_id), now)
        if threshold is None:
            return bucket

        problem = self._configuration_problem(bucket)
        if problem:
            logger.warning("bucket_missing_configuration", bucket_id=bucket.id, problem=problem)
            return self.lifecycle.mark_missing_configuration(bucket, problem)

        criteria = select_criteria(bucket, snapshot.criteria_for(bucket.rule_id))
        decision = self.policy.decide(bucket, criteria)
        if decision == CommitDecision.AUTO_RELEASE:
            return self.lifecycle.release(bucket, ReleaseTrigger.AUTO_RELEASE)
        return self.lifecycle.request_approval(bucket)

    def _configuration_problem(self, bucket: Bucket) -> Optional[str]:
        missing = []
        if not self.config_store.payer_exists(bucket.payer_id):
            missing.append(f"payer {bucket.payer_id}")
        if not self.config_store.payee_exists(bucket.payee_id):
            missing.append(f"payee {bucket.payee_id}")
        if missing:
            return f"Missing configuration: {', '.join(missing)}"
        return None

    def _require_configuration(self, bucket: Bucket) -> Bucket:
        """
        Generation-time check. Raises if payer/payee are unknown, after
        moving the bucket to MISSING_CONFIGURATION (or, for a FAILED bucket,
        recording the problem as its last error).
        """
        problem = self._configuration_problem(bucket)
        if problem is None:
            return bucket
        if bucket.status == BucketStatus.FAILED:
            self.bucket_store.record_error(bucket.id, problem, self.clock())
        else:
            self.lifecycle.mark_missing_configuration(bucket, problem)
        raise MissingConfigurationError(problem, payer_id=bucket.payer_id, payee_id=bucket.payee_id)

    # ---- Administrative actions ----

    @contextmanager
    def _locked_bucket(self, bucket_id: str) -> Iterator[Bucket]:
        bucket = self._load(bucket_id)
        with self.locks.hold(bucket.grouping_key):
            yield self._load(bucket_id)

    def _load(self, bucket_id: str) -> Bucket:
        bucket = self.bucket_store.get(bucket_id)
        if bucket is None:
            raise BucketNotFoundError(bucket_id)
        return bucket

    def evaluate_thresholds(self, bucket_id: str) -> Bucket:
        """
        Re-evaluate a bucket now.

        An ACCUMULATING bucket is checked against its thresholds (this is
        how TIME thresholds fire between claims). A MISSING_CONFIGURATION
        bucket whose payer and payee now exist returns to ACCUMULATING and
        is checked straight away. Other states are returned unchanged.
        """
        with self._locked_bucket(bucket_id) as bucket:
            if bucket.status == BucketStatus.MISSING_CONFIGURATION:
                problem = self._configuration_problem(bucket)
                if problem:
                    logger.info("bucket_configuration_still_missing", bucket_id=bucket.id, problem=problem)
                    return self.bucket_store.record_error(bucket.id, problem, self.clock())
                bucket = self.lifecycle.restore_configuration(bucket)
            if bucket.status != BucketStatus.ACCUMULATING:
                return bucket
            return self._evaluate_locked(bucket, self.snapshots.get())

    def approve(
        self,
        bucket_id: str,
        actor: str,
        comments: Optional[str] = None,
        roles: Optional[Iterable[str]] = None,
        scheduled_generation_time: Optional[datetime] = None,
    ) -> Bucket:
        with self._locked_bucket(bucket_id) as bucket:
            criteria = select_criteria(bucket, self.snapshots.get().criteria_for(bucket.rule_id))
            self.lifecycle.require_status(bucket, {BucketStatus.PENDING_APPROVAL}, BucketStatus.GENERATING)
            self._require_configuration(bucket)
            return self.lifecycle.approve(
                bucket,
                actor,
                comments,
                roles=roles,
                criteria=criteria,
                scheduled_generation_time=scheduled_generation_time,
            )

    def reject(
        self,
        bucket_id: str,
        actor: str,
        comments: Optional[str] = None,
        roles: Optional[Iterable[str]] = None,
    ) -> Bucket:
        with self._locked_bucket(bucket_id) as bucket:
            criteria = select_criteria(bucket, self.snapshots.get().criteria_for(bucket.rule_id))
            return self.lifecycle.reject(bucket, actor, comments, roles=roles, criteria=criteria)

    def override(
        self,
        bucket_id: str,
        actor: str,
        comments: Optional[str] = None,
        roles: Optional[Iterable[str]] = None,
    ) -> Bucket:
        with self._locked_bucket(bucket_id) as bucket:
            criteria = select_criteria(bucket, self.snapshots.get().criteria_for(bucket.rule_id))
            self.lifecycle.require_status(
                bucket,
                {BucketStatus.ACCUMULATING, BucketStatus.PENDING_APPROVAL},
                BucketStatus.GENERATING,
            )
            self._require_configuration(bucket)
            return self.lifecycle.override(bucket, actor, comments, roles=roles, criteria=criteria)

    def redrive(
        self,
        bucket_id: str,
        actor: str,
        comments: Optional[str] = None,
        roles: Optional[Iterable[str]] = None,
    ) -> Bucket:
        with self._locked_bucket(bucket_id) as bucket:
            criteria = select_criteria(bucket, self.snapshots.get().criteria_for(bucket.rule_id))
            self.lifecycle.require_status(bucket, {BucketStatus.FAILED}, BucketStatus.GENERATING)
            self._require_configuration(bucket)
            return self.lifecycle.redrive(bucket, actor, comments, roles=roles, criteria=criteria)

    def reset(
        self,
        bucket_id: str,
        actor: str,
        comments: Optional[str] = None,
        roles: Optional[Iterable[str]] = None,
    ) -> Bucket:
        """Return a FAILED bucket to ACCUMULATING; the next monitor pass re-evaluates it."""
        with self._locked_bucket(bucket_id) as bucket:
            criteria = select_criteria(bucket, self.snapshots.get().criteria_for(bucket.rule_id))
            return self.lifecycle.reset(bucket, actor, comments, roles=roles, criteria=criteria)

    # ---- Generator feedback ----

    def report_generation_success(self, bucket_id: str) -> Bucket:
        with self._locked_bucket(bucket_id) as bucket:
            return self.lifecycle.complete(bucket)

    def report_generation_failure(self, bucket_id: str, message: str) -> Bucket:
        with self._locked_bucket(bucket_id) as bucket:
            logger.error("bucket_generation_failed", bucket_id=bucket_id, error=message)
            return self.lifecycle.fail(bucket, message)

    def report_missing_configuration(self, bucket_id: str, message: str) -> Bucket:
        with self._locked_bucket(bucket_id) as bucket:
            return self.lifecycle.mark_missing_configuration(bucket, message)

    # ---- Queries ----

    def bucket(self, bucket_id: str) -> Bucket:
        return self._load(bucket_id)

    def pending_approvals(self) -> list[Bucket]:
        return self.bucket_store.list_buckets([BucketStatus.PENDING_APPROVAL])

    def list_buckets(self, statuses: Optional[Sequence[BucketStatus]] = None) -> list[Bucket]:
        return self.bucket_store.list_buckets(statuses)

    def approval_history(self, bucket_id: str) -> list[ApprovalLogEntry]:
        self._load(bucket_id)
        return self.bucket_store.approval_log(bucket_id)

    def claim_ids(self, bucket_id: str) -> list[str]:
        return self.bucket_store.claim_ids(bucket_id)

    def processing_history(self, claim_id: str) -> list[ProcessingLogEntry]:
        return self.bucket_store.processing_log(claim_id=claim_id)

    def invalidate_configuration(self) -> None:
        """Drop the cached configuration snapshot after an operator edit."""
        self.snapshots.invalidate()
