"""
Tests for the bucket lifecycle state machine.
"""

from datetime import datetime
from decimal import Decimal

import pytest

from claim_bucketing.core.errors import (
    ConcurrentModificationError,
    InvalidTransitionError,
    PermissionDeniedError,
    TransientStoreError,
)
from claim_bucketing.core.lifecycle import TRANSITIONS, LifecycleManager, can_transition
from claim_bucketing.domain import (
    ApprovalAction,
    Bucket,
    BucketChanges,
    BucketStatus,
    CommitCriteria,
    CommitMode,
    ReleaseTrigger,
)

S = BucketStatus


@pytest.fixture
def lifecycle(bucket_store, publisher, clock):
    return LifecycleManager(bucket_store, publisher, clock=clock)


@pytest.fixture
def make_bucket(bucket_store, clock):
    def _make(status=S.ACCUMULATING, key="r1|ACME|CLINIC_9"):
        bucket = Bucket(
            status=S.ACCUMULATING,
            rule_id="r1",
            rule_name="r1",
            grouping_key=key,
            payer_id="ACME",
            payee_id="CLINIC_9",
            claim_count=2,
            total_amount=Decimal("1200.00"),
            created_at=clock(),
            last_updated=clock(),
        )
        bucket_store.create(bucket)
        if status != S.ACCUMULATING:
            bucket = bucket_store.transition(bucket.id, S.ACCUMULATING, status, BucketChanges(), clock())
        return bucket

    return _make


class TestStateMachine:
    def test_completed_is_terminal(self):
        assert TRANSITIONS[S.COMPLETED] == frozenset()

    @pytest.mark.parametrize(
        "current, target",
        [
            (S.ACCUMULATING, S.COMPLETED),
            (S.ACCUMULATING, S.FAILED),
            (S.PENDING_APPROVAL, S.ACCUMULATING),
            (S.GENERATING, S.ACCUMULATING),
            (S.COMPLETED, S.GENERATING),
            (S.FAILED, S.COMPLETED),
            (S.MISSING_CONFIGURATION, S.GENERATING),
        ],
    )
    def test_illegal_transitions(self, current, target):
        assert not can_transition(current, target)

    def test_every_status_has_an_entry(self):
        assert set(TRANSITIONS) == set(BucketStatus)


class TestLifecycleManager:
    def test_request_approval(self, lifecycle, make_bucket, clock):
        bucket = lifecycle.request_approval(make_bucket())
        assert bucket.status == S.PENDING_APPROVAL
        assert bucket.awaiting_approval_since == clock()

    def test_release_publishes_event(self, lifecycle, make_bucket, publisher, clock):
        bucket = lifecycle.release(make_bucket(), ReleaseTrigger.AUTO_RELEASE)
        assert bucket.status == S.GENERATING
        assert bucket.generation_started_at == clock()
        [event] = publisher.events
        assert event.bucket_id == bucket.id
        assert event.trigger == ReleaseTrigger.AUTO_RELEASE
        assert event.total_amount == Decimal("1200.00")

    def test_release_failure_moves_bucket_to_failed(self, lifecycle, make_bucket, publisher):
        publisher.fail_with = "generator offline"
        bucket = lifecycle.release(make_bucket(), ReleaseTrigger.AUTO_RELEASE)
        assert bucket.status == S.FAILED
        assert "generator offline" in bucket.last_error_message

    def test_approve_records_approver(self, lifecycle, make_bucket, bucket_store, clock):
        bucket = make_bucket(S.PENDING_APPROVAL)
        scheduled = datetime(2025, 3, 4, 6, 0)
        approved = lifecycle.approve(bucket, "jdoe", "totals checked", scheduled_generation_time=scheduled)
        assert approved.status == S.GENERATING
        assert approved.approved_by == "jdoe"
        assert approved.approved_at == clock()
        [entry] = bucket_store.approval_log(bucket.id)
        assert entry.action == ApprovalAction.APPROVE
        assert entry.comments == "totals checked"
        assert entry.scheduled_generation_time == scheduled

    def test_approve_requires_pending_approval(self, lifecycle, make_bucket, bucket_store):
        bucket = make_bucket()
        with pytest.raises(InvalidTransitionError):
            lifecycle.approve(bucket, "jdoe")
        assert bucket_store.get(bucket.id).status == S.ACCUMULATING
        assert bucket_store.approval_log(bucket.id) == []

    def test_reject_counts_rejection(self, lifecycle, make_bucket, bucket_store):
        bucket = lifecycle.reject(make_bucket(S.PENDING_APPROVAL), "jdoe", "wrong payee")
        assert bucket.status == S.FAILED
        assert bucket.rejection_count == 1
        assert bucket.last_error_message == "Rejected by jdoe: wrong payee"
        [entry] = bucket_store.approval_log(bucket.id)
        assert entry.action == ApprovalAction.REJECT

    def test_override_from_accumulating(self, lifecycle, make_bucket, publisher):
        bucket = lifecycle.override(make_bucket(), "ops", "month end")
        assert bucket.status == S.GENERATING
        assert publisher.events[0].trigger == ReleaseTrigger.OVERRIDE
        assert publisher.events[0].actor == "ops"

    def test_redrive_from_failed(self, lifecycle, make_bucket, bucket_store):
        failed = lifecycle.reject(make_bucket(S.PENDING_APPROVAL), "jdoe", "hold")
        redriven = lifecycle.redrive(failed, "ops")
        assert redriven.status == S.GENERATING
        entries = bucket_store.approval_log(failed.id)
        assert [e.action for e in entries] == [ApprovalAction.REJECT, ApprovalAction.OVERRIDE]
        assert entries[-1].comments == "re-drive"

    def test_release_survives_claim_list_failure(self, lifecycle, make_bucket, publisher, monkeypatch):
        def unavailable(bucket_id):
            raise TransientStoreError("connection reset")

        monkeypatch.setattr(lifecycle.bucket_store, "claim_ids", unavailable)
        bucket = lifecycle.release(make_bucket(), ReleaseTrigger.AUTO_RELEASE)
        assert bucket.status == S.FAILED
        assert bucket.last_error_message == "Release notification failed: connection reset"
        assert publisher.events == []

    def test_reset_after_mistaken_rejection(self, lifecycle, make_bucket, bucket_store):
        pending = lifecycle.request_approval(make_bucket())
        failed = lifecycle.reject(pending, "jdoe", "wrong payee")

        reset = lifecycle.reset(failed, "jdoe", "payee was right")
        assert reset.status == S.ACCUMULATING
        assert reset.awaiting_approval_since is None
        assert reset.rejection_count == 1
        entries = bucket_store.approval_log(failed.id)
        assert [e.action for e in entries] == [ApprovalAction.REJECT, ApprovalAction.OVERRIDE]
        assert entries[-1].comments == "RESET: payee was right"
        assert entries[-1].actor == "jdoe"

    def test_reset_requires_failed(self, lifecycle, make_bucket, bucket_store):
        bucket = make_bucket(S.GENERATING)
        with pytest.raises(InvalidTransitionError):
            lifecycle.reset(bucket, "jdoe")
        assert bucket_store.approval_log(bucket.id) == []

    def test_reset_refused_while_key_has_newer_bucket(self, lifecycle, make_bucket, bucket_store):
        failed = lifecycle.reject(make_bucket(S.PENDING_APPROVAL), "jdoe")
        make_bucket()
        with pytest.raises(ConcurrentModificationError):
            lifecycle.reset(failed, "jdoe", "rejected in error")
        assert bucket_store.get(failed.id).status == S.FAILED
        assert [e.action for e in bucket_store.approval_log(failed.id)] == [ApprovalAction.REJECT]

    def test_complete_and_fail(self, lifecycle, make_bucket, clock):
        done = lifecycle.complete(make_bucket(S.GENERATING))
        assert done.status == S.COMPLETED
        assert done.generation_completed_at == clock()

        failed = lifecycle.fail(make_bucket(S.GENERATING, key="r1|ACME|OTHER"), "disk full")
        assert failed.status == S.FAILED
        assert failed.last_error_message == "disk full"

    def test_completed_bucket_cannot_fail(self, lifecycle, make_bucket):
        done = lifecycle.complete(make_bucket(S.GENERATING))
        with pytest.raises(InvalidTransitionError):
            lifecycle.fail(done, "late error")

    def test_missing_configuration_round_trip(self, lifecycle, make_bucket):
        missing = lifecycle.mark_missing_configuration(make_bucket(), "Missing configuration: payer ACME")
        assert missing.status == S.MISSING_CONFIGURATION
        restored = lifecycle.restore_configuration(missing)
        assert restored.status == S.ACCUMULATING

    def test_stale_status_is_a_conflict(self, lifecycle, make_bucket, bucket_store, clock):
        bucket = make_bucket()
        bucket_store.transition(bucket.id, S.ACCUMULATING, S.PENDING_APPROVAL, BucketChanges(), clock())
        with pytest.raises(ConcurrentModificationError):
            lifecycle.request_approval(bucket)


class TestRoles:
    @pytest.fixture
    def criteria(self):
        return CommitCriteria(
            id="cc",
            name="cc",
            mode=CommitMode.MANUAL,
            rule_id="r1",
            approval_required_roles=("finance_approver",),
            override_permissions=("ops_admin",),
        )

    def test_missing_role_is_denied(self, lifecycle, make_bucket, criteria):
        with pytest.raises(PermissionDeniedError):
            lifecycle.approve(make_bucket(S.PENDING_APPROVAL), "jdoe", roles=["viewer"], criteria=criteria)

    def test_matching_role_is_allowed(self, lifecycle, make_bucket, criteria):
        bucket = lifecycle.approve(
            make_bucket(S.PENDING_APPROVAL), "jdoe", roles=["finance_approver"], criteria=criteria
        )
        assert bucket.status == S.GENERATING

    def test_roles_not_checked_when_caller_supplies_none(self, lifecycle, make_bucket, criteria):
        bucket = lifecycle.override(make_bucket(), "ops", criteria=criteria)
        assert bucket.status == S.GENERATING

    def test_override_uses_override_permissions(self, lifecycle, make_bucket, criteria):
        with pytest.raises(PermissionDeniedError):
            lifecycle.override(make_bucket(), "jdoe", roles=["finance_approver"], criteria=criteria)

    def test_reset_uses_override_permissions(self, lifecycle, make_bucket, criteria):
        failed = lifecycle.reject(make_bucket(S.PENDING_APPROVAL), "jdoe")
        with pytest.raises(PermissionDeniedError):
            lifecycle.reset(failed, "jdoe", roles=["finance_approver"], criteria=criteria)
        assert lifecycle.reset(failed, "ops", roles=["ops_admin"], criteria=criteria).status == S.ACCUMULATING
