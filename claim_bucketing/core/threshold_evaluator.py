"""
Threshold evaluator: decides whether a bucket is ready for release.
"""

from collections.abc import Iterable
from datetime import datetime
from typing import Optional

import structlog

from claim_bucketing.core.config_snapshot import ConfigurationSnapshot
from claim_bucketing.domain import Bucket, BucketStatus, Threshold, ThresholdType

logger = structlog.get_logger()


def count_reached(bucket: Bucket, threshold: Threshold) -> bool:
    return threshold.max_claims is not None and bucket.claim_count >= threshold.max_claims


def amount_reached(bucket: Bucket, threshold: Threshold) -> bool:
    return threshold.max_amount is not None and bucket.total_amount >= threshold.max_amount


def time_reached(bucket: Bucket, threshold: Threshold, now: datetime) -> bool:
    if threshold.time_duration is None:
        return False
    return bucket.age_hours(now) >= threshold.time_duration.hours


def threshold_met(bucket: Bucket, threshold: Threshold, now: datetime) -> bool:
    """
    Check one threshold against a bucket.

    A bound that is not set never fires. HYBRID fires if any of its set
    bounds fires.
    """
    if threshold.type == ThresholdType.CLAIM_COUNT:
        return count_reached(bucket, threshold)
    if threshold.type == ThresholdType.AMOUNT:
        return amount_reached(bucket, threshold)
    if threshold.type == ThresholdType.TIME:
        return time_reached(bucket, threshold, now)
    if threshold.type == ThresholdType.HYBRID:
        return (
            count_reached(bucket, threshold)
            or amount_reached(bucket, threshold)
            or time_reached(bucket, threshold, now)
        )
    return False


class ThresholdEvaluator:
    """Evaluates the thresholds linked to a bucket's rule."""

    def first_fired(
        self,
        bucket: Bucket,
        thresholds: Iterable[Threshold],
        now: datetime,
    ) -> Optional[Threshold]:
        """
        First threshold the bucket meets, or None.

        Only ACCUMULATING buckets are eligible.
        """
        if bucket.status != BucketStatus.ACCUMULATING:
            return None
        for threshold in thresholds:
            if threshold.active and threshold_met(bucket, threshold, now):
                logger.info(
                    "threshold_met",
                    bucket_id=bucket.id,
                    threshold=threshold.name,
                    threshold_type=threshold.type.value,
                    claim_count=bucket.claim_count,
                    total_amount=str(bucket.total_amount),
                )
                return threshold
        return None

    def evaluate(self, bucket: Bucket, snapshot: ConfigurationSnapshot, now: datetime) -> bool:
        """Whether any threshold linked to the bucket's rule fires."""
        return self.first_fired(bucket, snapshot.thresholds_for(bucket.rule_id), now) is not None
