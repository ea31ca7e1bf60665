"""
Enumeration types for claim bucketing domain models.
"""

from enum import Enum


class RuleKind(str, Enum):
    """How a bucketing rule decides whether it applies to a claim."""
    PAYER_PAYEE = "PAYER_PAYEE"  # Always applies unless scoped to a payer/payee
    BIN_PCN = "BIN_PCN"          # Claim must carry a BIN
    CUSTOM = "CUSTOM"            # Claim must satisfy the grouping expression


class BucketStatus(str, Enum):
    """Bucket lifecycle state."""
    ACCUMULATING = "ACCUMULATING"
    PENDING_APPROVAL = "PENDING_APPROVAL"
    GENERATING = "GENERATING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    MISSING_CONFIGURATION = "MISSING_CONFIGURATION"


# Only an accumulating bucket accepts claims; at most one exists per grouping key.
OPEN_BUCKET_STATUSES = (BucketStatus.ACCUMULATING,)


class ThresholdType(str, Enum):
    """Release threshold type."""
    CLAIM_COUNT = "CLAIM_COUNT"
    AMOUNT = "AMOUNT"
    TIME = "TIME"
    HYBRID = "HYBRID"


class TimeDuration(str, Enum):
    """
    Time window for TIME and HYBRID thresholds.

    Months are approximated as 30 days.
    """
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    BIWEEKLY = "BIWEEKLY"
    MONTHLY = "MONTHLY"

    @property
    def hours(self) -> int:
        return _DURATION_HOURS[self]


_DURATION_HOURS = {
    TimeDuration.DAILY: 24,
    TimeDuration.WEEKLY: 168,
    TimeDuration.BIWEEKLY: 336,
    TimeDuration.MONTHLY: 720,
}


class CommitMode(str, Enum):
    """Commit criteria mode."""
    AUTO = "AUTO"
    MANUAL = "MANUAL"
    HYBRID = "HYBRID"


class CommitDecision(str, Enum):
    """Outcome of the commit policy when a threshold fires."""
    AUTO_RELEASE = "AUTO_RELEASE"
    REQUIRE_APPROVAL = "REQUIRE_APPROVAL"


class ProcessingStatus(str, Enum):
    """Outcome recorded in the claim processing log."""
    PROCESSED = "PROCESSED"
    REJECTED = "REJECTED"


class ApprovalAction(str, Enum):
    """Operator action recorded in the approval log."""
    APPROVE = "APPROVE"
    REJECT = "REJECT"
    OVERRIDE = "OVERRIDE"


class ChangeOperation(str, Enum):
    """Mutation type carried by a change feed event."""
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    UNKNOWN = "UNKNOWN"  # Anything else a writer put on the feed

    @classmethod
    def _missing_(cls, value):
        if isinstance(value, str):
            for member in cls:
                if member.value == value.strip().upper():
                    return member
        return cls.UNKNOWN


class ReleaseTrigger(str, Enum):
    """Why a bucket entered GENERATING."""
    AUTO_RELEASE = "AUTO_RELEASE"
    APPROVED = "APPROVED"
    OVERRIDE = "OVERRIDE"
    REDRIVE = "REDRIVE"
