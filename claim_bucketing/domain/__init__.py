"""
Domain models for the claim bucketing engine.

Pydantic models representing claims, bucketing configuration, buckets,
audit records and change feed events.
"""

from claim_bucketing.domain.enums import (
    OPEN_BUCKET_STATUSES,
    ApprovalAction,
    BucketStatus,
    ChangeOperation,
    CommitDecision,
    CommitMode,
    ProcessingStatus,
    ReleaseTrigger,
    RuleKind,
    ThresholdType,
    TimeDuration,
)
from claim_bucketing.domain.claims import Claim
from claim_bucketing.domain.rules import (
    BucketingRule,
    CommitCriteria,
    Payee,
    Payer,
    Threshold,
)
from claim_bucketing.domain.bucket import Bucket, BucketChanges, build_grouping_key
from claim_bucketing.domain.audit import ApprovalLogEntry, ProcessingLogEntry
from claim_bucketing.domain.feed import (
    START_OF_FEED,
    ChangeEvent,
    Checkpoint,
    FeedPosition,
)

__all__ = [
    # Enums
    "OPEN_BUCKET_STATUSES",
    "ApprovalAction",
    "BucketStatus",
    "ChangeOperation",
    "CommitDecision",
    "CommitMode",
    "ProcessingStatus",
    "ReleaseTrigger",
    "RuleKind",
    "ThresholdType",
    "TimeDuration",
    # Claims
    "Claim",
    # Configuration
    "BucketingRule",
    "CommitCriteria",
    "Payee",
    "Payer",
    "Threshold",
    # Buckets
    "Bucket",
    "BucketChanges",
    "build_grouping_key",
    # Audit
    "ApprovalLogEntry",
    "ProcessingLogEntry",
    # Feed
    "START_OF_FEED",
    "ChangeEvent",
    "Checkpoint",
    "FeedPosition",
]
