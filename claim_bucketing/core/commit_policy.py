"""
Commit policy: whether a bucket whose threshold fired is released
automatically or waits for a human.
"""

from collections.abc import Sequence
from typing import Optional

import structlog

from claim_bucketing.domain import Bucket, CommitCriteria, CommitDecision, CommitMode

logger = structlog.get_logger()


def select_criteria(bucket: Bucket, criteria: Sequence[CommitCriteria]) -> Optional[CommitCriteria]:
    """First active criteria for the bucket's rule. Several active ones is a misconfiguration."""
    active = [c for c in criteria if c.active]
    if not active:
        return None
    if len(active) > 1:
        logger.warning(
            "multiple_commit_criteria",
            bucket_id=bucket.id,
            rule_id=bucket.rule_id,
            using=active[0].name,
            ignored=[c.name for c in active[1:]],
        )
    return active[0]


class CommitPolicy:
    """
    Applies commit criteria to a bucket.

    - No criteria: MANUAL
    - AUTO: release
    - MANUAL: approval
    - HYBRID with auto_commit_threshold: release at or above it, approval below
    - HYBRID with only manual_approval_threshold: approval at or above it,
      release below
    - HYBRID with neither bound: approval
    """

    def decide(self, bucket: Bucket, criteria: Optional[CommitCriteria]) -> CommitDecision:
        if criteria is None:
            decision = CommitDecision.REQUIRE_APPROVAL
        elif criteria.mode == CommitMode.AUTO:
            decision = CommitDecision.AUTO_RELEASE
        elif criteria.mode == CommitMode.MANUAL:
            decision = CommitDecision.REQUIRE_APPROVAL
        else:
            decision = self._hybrid(bucket, criteria)

        logger.info(
            "commit_decision",
            bucket_id=bucket.id,
            criteria=criteria.name if criteria else None,
            mode=criteria.mode.value if criteria else CommitMode.MANUAL.value,
            total_amount=str(bucket.total_amount),
            decision=decision.value,
        )
        return decision

    @staticmethod
    def _hybrid(bucket: Bucket, criteria: CommitCriteria) -> CommitDecision:
        if criteria.auto_commit_threshold is not None:
            if bucket.total_amount >= criteria.auto_commit_threshold:
                return CommitDecision.AUTO_RELEASE
            return CommitDecision.REQUIRE_APPROVAL
        if criteria.manual_approval_threshold is not None:
            if bucket.total_amount >= criteria.manual_approval_threshold:
                return CommitDecision.REQUIRE_APPROVAL
            return CommitDecision.AUTO_RELEASE
        return CommitDecision.REQUIRE_APPROVAL
