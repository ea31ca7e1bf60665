"""
Bucket lifecycle manager.

The only component that changes bucket status. Every transition is checked
against the state machine, persisted with a compare-and-set on the prior
status, and logged. Operator decisions are written to the approval log in
the same store call as the transition they cause.

State machine:

    ACCUMULATING          -> PENDING_APPROVAL      (commit policy: approval)
    ACCUMULATING          -> GENERATING            (commit policy: auto, or override)
    PENDING_APPROVAL      -> GENERATING            (approve, or override)
    PENDING_APPROVAL      -> FAILED                (reject)
    GENERATING            -> COMPLETED | FAILED    (generator feedback)
    FAILED                -> GENERATING            (re-drive)
    FAILED                -> ACCUMULATING          (reset)
    ACCUMULATING, PENDING_APPROVAL, GENERATING
                          -> MISSING_CONFIGURATION (payer/payee not configured)
    MISSING_CONFIGURATION -> ACCUMULATING          (configuration supplied)
"""

from collections.abc import Callable, Iterable
from datetime import datetime
from typing import Optional

import structlog

from claim_bucketing.core.errors import InvalidTransitionError, PermissionDeniedError
from claim_bucketing.db.protocol import BucketStore
from claim_bucketing.domain import (
    ApprovalAction,
    ApprovalLogEntry,
    Bucket,
    BucketChanges,
    BucketStatus,
    CommitCriteria,
    ReleaseTrigger,
)
from claim_bucketing.streaming.publisher import (
    ReleasePublisher,
    ReleasePublishError,
    create_release_event,
)

logger = structlog.get_logger()

S = BucketStatus

TRANSITIONS: dict[BucketStatus, frozenset[BucketStatus]] = {
    S.ACCUMULATING: frozenset({S.PENDING_APPROVAL, S.GENERATING, S.MISSING_CONFIGURATION}),
    S.PENDING_APPROVAL: frozenset({S.GENERATING, S.FAILED, S.MISSING_CONFIGURATION}),
    S.GENERATING: frozenset({S.COMPLETED, S.FAILED, S.MISSING_CONFIGURATION}),
    S.FAILED: frozenset({S.GENERATING, S.ACCUMULATING}),
    S.MISSING_CONFIGURATION: frozenset({S.ACCUMULATING}),
    S.COMPLETED: frozenset(),
}


def can_transition(current: BucketStatus, target: BucketStatus) -> bool:
    return target in TRANSITIONS[current]


class LifecycleManager:
    """Owns bucket state transitions and the approval audit trail."""

    def __init__(
        self,
        bucket_store: BucketStore,
        publisher: ReleasePublisher,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.bucket_store = bucket_store
        self.publisher = publisher
        self.clock = clock

    # ---- Policy-driven transitions ----

    def request_approval(self, bucket: Bucket) -> Bucket:
        """ACCUMULATING -> PENDING_APPROVAL."""
        self.require_status(bucket, {S.ACCUMULATING}, S.PENDING_APPROVAL)
        now = self.clock()
        return self._transition(
            bucket,
            S.PENDING_APPROVAL,
            BucketChanges(awaiting_approval_since=now),
            now,
        )

    def release(
        self,
        bucket: Bucket,
        trigger: ReleaseTrigger,
        actor: Optional[str] = None,
        approval: Optional[ApprovalLogEntry] = None,
        changes: Optional[BucketChanges] = None,
    ) -> Bucket:
        """
        Move a bucket into GENERATING and notify the file generator.

        The claim list is read after the transition: once the bucket has left
        ACCUMULATING no further claim can be counted into it. If building or
        delivering the notification fails for any reason the bucket is moved
        on to FAILED with the error, from where an operator can re-drive it.
        """
        now = self.clock()
        changes = changes or BucketChanges()
        changes.generation_started_at = now
        updated = self._transition(bucket, S.GENERATING, changes, now, approval)

        try:
            claim_ids = self.bucket_store.claim_ids(updated.id)
            self.publisher.publish(create_release_event(updated, claim_ids, trigger, now, actor))
        except ReleasePublishError as e:
            logger.error("release_publish_failed", bucket_id=updated.id, error=str(e))
            return self.fail(updated, f"Release notification failed: {e}")
        except Exception as e:
            logger.error("release_notification_failed", bucket_id=updated.id, error=str(e), exc_info=True)
            return self.fail(updated, f"Release notification failed: {e}")

        logger.info(
            "bucket_released",
            bucket_id=updated.id,
            trigger=trigger.value,
            claim_count=updated.claim_count,
            total_amount=str(updated.total_amount),
        )
        return updated

    # ---- Operator actions ----

    def approve(
        self,
        bucket: Bucket,
        actor: str,
        comments: Optional[str] = None,
        roles: Optional[Iterable[str]] = None,
        criteria: Optional[CommitCriteria] = None,
        scheduled_generation_time: Optional[datetime] = None,
    ) -> Bucket:
        """PENDING_APPROVAL -> GENERATING, recording the approver."""
        self.require_status(bucket, {S.PENDING_APPROVAL}, S.GENERATING)
        self._check_roles(criteria.approval_required_roles if criteria else (), roles, actor, "approve")
        now = self.clock()
        entry = self._approval_entry(bucket, ApprovalAction.APPROVE, actor, comments, now, scheduled_generation_time)
        return self.release(
            bucket,
            ReleaseTrigger.APPROVED,
            actor=actor,
            approval=entry,
            changes=BucketChanges(approved_by=actor, approved_at=now),
        )

    def reject(
        self,
        bucket: Bucket,
        actor: str,
        comments: Optional[str] = None,
        roles: Optional[Iterable[str]] = None,
        criteria: Optional[CommitCriteria] = None,
    ) -> Bucket:
        """PENDING_APPROVAL -> FAILED, counting the rejection."""
        self.require_status(bucket, {S.PENDING_APPROVAL}, S.FAILED)
        self._check_roles(criteria.approval_required_roles if criteria else (), roles, actor, "reject")
        now = self.clock()
        entry = self._approval_entry(bucket, ApprovalAction.REJECT, actor, comments, now)
        message = f"Rejected by {actor}: {comments or 'no reason given'}"
        return self._transition(
            bucket,
            S.FAILED,
            BucketChanges(last_error_message=message, last_error_at=now, rejection_increment=1),
            now,
            entry,
        )

    def override(
        self,
        bucket: Bucket,
        actor: str,
        comments: Optional[str] = None,
        roles: Optional[Iterable[str]] = None,
        criteria: Optional[CommitCriteria] = None,
    ) -> Bucket:
        """ACCUMULATING | PENDING_APPROVAL -> GENERATING, bypassing thresholds and approval."""
        self.require_status(bucket, {S.ACCUMULATING, S.PENDING_APPROVAL}, S.GENERATING)
        self._check_roles(criteria.override_permissions if criteria else (), roles, actor, "override")
        now = self.clock()
        entry = self._approval_entry(bucket, ApprovalAction.OVERRIDE, actor, comments, now)
        return self.release(bucket, ReleaseTrigger.OVERRIDE, actor=actor, approval=entry)

    def redrive(
        self,
        bucket: Bucket,
        actor: str,
        comments: Optional[str] = None,
        roles: Optional[Iterable[str]] = None,
        criteria: Optional[CommitCriteria] = None,
    ) -> Bucket:
        """FAILED -> GENERATING."""
        self.require_status(bucket, {S.FAILED}, S.GENERATING)
        self._check_roles(criteria.override_permissions if criteria else (), roles, actor, "redrive")
        now = self.clock()
        entry = self._approval_entry(bucket, ApprovalAction.OVERRIDE, actor, comments or "re-drive", now)
        return self.release(bucket, ReleaseTrigger.REDRIVE, actor=actor, approval=entry)

    def reset(
        self,
        bucket: Bucket,
        actor: str,
        comments: Optional[str] = None,
        roles: Optional[Iterable[str]] = None,
        criteria: Optional[CommitCriteria] = None,
    ) -> Bucket:
        """
        FAILED -> ACCUMULATING, for a rejection made in error.

        The bucket collects claims again and is re-evaluated against its
        thresholds. The store refuses the reset while another bucket is
        accumulating for the same grouping key.
        """
        self.require_status(bucket, {S.FAILED}, S.ACCUMULATING)
        self._check_roles(criteria.override_permissions if criteria else (), roles, actor, "reset")
        now = self.clock()
        entry = self._approval_entry(
            bucket, ApprovalAction.OVERRIDE, actor, f"RESET: {comments or 'no reason given'}", now
        )
        return self._transition(
            bucket,
            S.ACCUMULATING,
            BucketChanges(awaiting_approval_since=None),
            now,
            entry,
        )

    # ---- Generator feedback ----

    def complete(self, bucket: Bucket) -> Bucket:
        """GENERATING -> COMPLETED."""
        self.require_status(bucket, {S.GENERATING}, S.COMPLETED)
        now = self.clock()
        return self._transition(bucket, S.COMPLETED, BucketChanges(generation_completed_at=now), now)

    def fail(self, bucket: Bucket, message: str) -> Bucket:
        """GENERATING -> FAILED with the error recorded."""
        self.require_status(bucket, {S.GENERATING}, S.FAILED)
        now = self.clock()
        return self._transition(
            bucket,
            S.FAILED,
            BucketChanges(last_error_message=message, last_error_at=now),
            now,
        )

    # ---- Configuration ----

    def mark_missing_configuration(self, bucket: Bucket, message: str) -> Bucket:
        """ACCUMULATING | PENDING_APPROVAL | GENERATING -> MISSING_CONFIGURATION."""
        self.require_status(
            bucket,
            {S.ACCUMULATING, S.PENDING_APPROVAL, S.GENERATING},
            S.MISSING_CONFIGURATION,
        )
        now = self.clock()
        return self._transition(
            bucket,
            S.MISSING_CONFIGURATION,
            BucketChanges(last_error_message=message, last_error_at=now),
            now,
        )

    def restore_configuration(self, bucket: Bucket) -> Bucket:
        """MISSING_CONFIGURATION -> ACCUMULATING."""
        self.require_status(bucket, {S.MISSING_CONFIGURATION}, S.ACCUMULATING)
        now = self.clock()
        return self._transition(bucket, S.ACCUMULATING, BucketChanges(), now)

    # ---- Internals ----

    def _transition(
        self,
        bucket: Bucket,
        target: BucketStatus,
        changes: BucketChanges,
        now: datetime,
        approval: Optional[ApprovalLogEntry] = None,
    ) -> Bucket:
        if not can_transition(bucket.status, target):
            raise InvalidTransitionError(bucket.id, bucket.status.value, target.value)

        updated = self.bucket_store.transition(bucket.id, bucket.status, target, changes, now, approval)
        logger.info(
            "bucket_transitioned",
            bucket_id=bucket.id,
            from_status=bucket.status.value,
            to_status=target.value,
            action=approval.action.value if approval else None,
            actor=approval.actor if approval else None,
        )
        return updated

    @staticmethod
    def require_status(bucket: Bucket, allowed: set[BucketStatus], target: BucketStatus) -> None:
        if bucket.status not in allowed:
            raise InvalidTransitionError(bucket.id, bucket.status.value, target.value)

    @staticmethod
    def _check_roles(
        required: Iterable[str],
        roles: Optional[Iterable[str]],
        actor: str,
        action: str,
    ) -> None:
        """Enforce required roles when the caller supplies its roles."""
        required = set(required)
        if not required or roles is None:
            return
        if required.isdisjoint(roles):
            raise PermissionDeniedError(
                f"{actor} may not {action}: requires one of {sorted(required)}"
            )

    @staticmethod
    def _approval_entry(
        bucket: Bucket,
        action: ApprovalAction,
        actor: str,
        comments: Optional[str],
        now: datetime,
        scheduled_generation_time: Optional[datetime] = None,
    ) -> ApprovalLogEntry:
        return ApprovalLogEntry(
            bucket_id=bucket.id,
            action=action,
            actor=actor,
            comments=comments,
            scheduled_generation_time=scheduled_generation_time,
            created_at=now,
        )
