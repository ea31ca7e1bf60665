"""
Bucket domain model.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel, Field

from claim_bucketing.domain.enums import OPEN_BUCKET_STATUSES, BucketStatus


def build_grouping_key(
    rule_id: str,
    payer_id: str,
    payee_id: str,
    bin_number: Optional[str] = None,
    pcn_number: Optional[str] = None,
) -> str:
    """
    Build the key that identifies an open bucket.

    Args:
        rule_id: Owning rule
        payer_id: Normalized payer identifier
        payee_id: Normalized payee identifier
        bin_number: BIN, only for BIN_PCN rules
        pcn_number: PCN, only for BIN_PCN rules

    Returns:
        Pipe-separated key, e.g. "rule-1|ACME|CLINIC_9" or
        "rule-2|ACME|CLINIC_9|610014|ADV"
    """
    parts = [rule_id, payer_id, payee_id]
    if bin_number:
        parts.extend([bin_number, pcn_number or ""])
    return "|".join(parts)


class Bucket(BaseModel):
    """
    A group of claims sharing a grouping key, released together.

    Buckets are never deleted; finished buckets stay in COMPLETED or FAILED.
    """

    id: str = Field(default_factory=lambda: str(uuid4()))
    status: BucketStatus = BucketStatus.ACCUMULATING

    rule_id: str
    rule_name: str
    grouping_key: str

    payer_id: str
    payee_id: str
    bin_number: Optional[str] = None
    pcn_number: Optional[str] = None

    claim_count: int = Field(default=0, ge=0)
    total_amount: Decimal = Field(default=Decimal("0.00"))
    rejection_count: int = Field(default=0, ge=0)

    created_at: datetime
    last_updated: datetime

    awaiting_approval_since: Optional[datetime] = None
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    generation_started_at: Optional[datetime] = None
    generation_completed_at: Optional[datetime] = None

    last_error_message: Optional[str] = None
    last_error_at: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        """True while the bucket still accepts claims."""
        return self.status in OPEN_BUCKET_STATUSES

    def age_hours(self, now: datetime) -> float:
        return (now - self.created_at).total_seconds() / 3600


class BucketChanges(BaseModel):
    """
    Field updates applied together with a status transition.

    Only fields explicitly set are written; rejection_increment is added to
    the stored rejection_count.
    """

    awaiting_approval_since: Optional[datetime] = None
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    generation_started_at: Optional[datetime] = None
    generation_completed_at: Optional[datetime] = None
    last_error_message: Optional[str] = None
    last_error_at: Optional[datetime] = None
    rejection_increment: int = 0

    def field_updates(self) -> dict:
        """Set fields, excluding the rejection counter."""
        return self.model_dump(exclude_unset=True, exclude={"rejection_increment"})
