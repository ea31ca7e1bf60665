"""
Append-only audit records: per-claim processing log and per-bucket approval log.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel, Field

from claim_bucketing.domain.claims import Claim
from claim_bucketing.domain.enums import ApprovalAction, ProcessingStatus


class ProcessingLogEntry(BaseModel):
    """Outcome of handling one claim."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    claim_id: str
    bucket_id: Optional[str] = None

    payer_id: Optional[str] = None
    payee_id: Optional[str] = None
    claim_amount: Optional[Decimal] = None
    paid_amount: Optional[Decimal] = None

    status: ProcessingStatus
    rejection_reason: Optional[str] = None
    processed_at: datetime

    @classmethod
    def for_processed_claim(
        cls,
        claim: Claim,
        bucket_id: str,
        processed_at: datetime,
        payer_id: Optional[str] = None,
        payee_id: Optional[str] = None,
    ) -> "ProcessingLogEntry":
        """
        Entry for a claim counted into a bucket.

        payer_id/payee_id default to the claim's own values; the aggregator
        passes the normalized forms.
        """
        return cls(
            claim_id=claim.id,
            bucket_id=bucket_id,
            payer_id=payer_id or claim.payer_id,
            payee_id=payee_id or claim.payee_id,
            claim_amount=claim.total_charge_amount,
            paid_amount=claim.paid_amount,
            status=ProcessingStatus.PROCESSED,
            processed_at=processed_at,
        )

    @classmethod
    def for_rejected_claim(
        cls,
        claim_id: str,
        reason: str,
        processed_at: datetime,
        claim: Optional[Claim] = None,
    ) -> "ProcessingLogEntry":
        """Entry for a claim that was not counted, with the reason."""
        return cls(
            claim_id=claim_id,
            bucket_id=None,
            payer_id=claim.payer_id if claim else None,
            payee_id=claim.payee_id if claim else None,
            claim_amount=claim.total_charge_amount if claim else None,
            paid_amount=claim.paid_amount if claim else None,
            status=ProcessingStatus.REJECTED,
            rejection_reason=reason,
            processed_at=processed_at,
        )


class ApprovalLogEntry(BaseModel):
    """An operator decision on a bucket."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    bucket_id: str
    action: ApprovalAction
    actor: str
    comments: Optional[str] = None
    scheduled_generation_time: Optional[datetime] = None
    created_at: datetime
