"""
Periodic threshold monitor.

Claims only trigger evaluation of the bucket they land in, so a bucket that
stops receiving claims would never notice its TIME threshold passing. The
monitor sweeps every accumulating bucket on a schedule, reports the approval
queue and warns about buckets that have been accumulating for too long.
"""

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta

import structlog

from claim_bucketing.core.engine import BucketingEngine
from claim_bucketing.core.errors import ClaimBucketingError, TransientStoreError
from claim_bucketing.domain import BucketStatus

logger = structlog.get_logger()


@dataclass
class SweepResult:
    """Statistics for one sweep."""

    evaluated: int = 0
    released: int = 0
    awaiting_approval: int = 0
    missing_configuration: int = 0
    errors: int = 0
    pending_approval_total: int = 0
    stale_bucket_ids: list[str] = field(default_factory=list)


class ThresholdMonitor:
    """Re-evaluates accumulating buckets and reports on the queues."""

    def __init__(
        self,
        engine: BucketingEngine,
        stale_bucket_days: int = 30,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.engine = engine
        self.stale_after = timedelta(days=stale_bucket_days)
        self.clock = clock

    def sweep(self) -> SweepResult:
        """
        Run one sweep.

        A failure on one bucket is logged and counted; the sweep carries on
        with the rest. A transient store failure ends the sweep early.
        """
        result = SweepResult()

        for bucket in self.engine.list_buckets([BucketStatus.ACCUMULATING]):
            try:
                updated = self.engine.evaluate_thresholds(bucket.id)
            except TransientStoreError:
                raise
            except ClaimBucketingError as e:
                result.errors += 1
                logger.warning("sweep_bucket_failed", bucket_id=bucket.id, error=str(e))
                continue

            result.evaluated += 1
            if updated.status == BucketStatus.GENERATING:
                result.released += 1
            elif updated.status == BucketStatus.PENDING_APPROVAL:
                result.awaiting_approval += 1
            elif updated.status == BucketStatus.MISSING_CONFIGURATION:
                result.missing_configuration += 1

        self._report_pending(result)
        self._report_stale(result)

        logger.info(
            "threshold_sweep_completed",
            evaluated=result.evaluated,
            released=result.released,
            awaiting_approval=result.awaiting_approval,
            missing_configuration=result.missing_configuration,
            pending_approval_total=result.pending_approval_total,
            stale=len(result.stale_bucket_ids),
            errors=result.errors,
        )
        return result

    def _report_pending(self, result: SweepResult) -> None:
        pending = self.engine.pending_approvals()
        result.pending_approval_total = len(pending)
        now = self.clock()
        for bucket in pending:
            waiting_since = bucket.awaiting_approval_since or bucket.last_updated
            logger.info(
                "bucket_awaiting_approval",
                bucket_id=bucket.id,
                payer_id=bucket.payer_id,
                payee_id=bucket.payee_id,
                claim_count=bucket.claim_count,
                total_amount=str(bucket.total_amount),
                waiting_hours=round((now - waiting_since).total_seconds() / 3600, 1),
            )

    def _report_stale(self, result: SweepResult) -> None:
        now = self.clock()
        for bucket in self.engine.list_buckets([BucketStatus.ACCUMULATING]):
            age = now - bucket.created_at
            if age >= self.stale_after:
                result.stale_bucket_ids.append(bucket.id)
                logger.warning(
                    "bucket_stale",
                    bucket_id=bucket.id,
                    rule=bucket.rule_name,
                    age_days=age.days,
                    claim_count=bucket.claim_count,
                )
