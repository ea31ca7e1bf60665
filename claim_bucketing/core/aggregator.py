"""
Aggregator: places a claim into the accumulating bucket for its grouping key.
"""

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

import structlog

from claim_bucketing.core.errors import (
    ClaimValidationError,
    ConcurrentModificationError,
    TransientStoreError,
)
from claim_bucketing.db.protocol import BucketStore
from claim_bucketing.domain import (
    Bucket,
    BucketingRule,
    BucketStatus,
    Claim,
    ProcessingLogEntry,
    RuleKind,
    build_grouping_key,
)
from claim_bucketing.utils.identifiers import normalize_payer_payee_id

logger = structlog.get_logger()

MAX_ACCUMULATE_ATTEMPTS = 3


@dataclass(frozen=True)
class Placement:
    """Where a validated claim goes: normalized identifiers and grouping key."""

    claim: Claim
    rule: BucketingRule
    payer_id: str
    payee_id: str
    bin_number: Optional[str]
    pcn_number: Optional[str]
    grouping_key: str

    @property
    def amount(self) -> Decimal:
        return self.claim.paid_amount or Decimal("0")


@dataclass(frozen=True)
class AggregationResult:
    """Outcome of aggregating one claim."""

    bucket: Optional[Bucket]
    created: bool = False
    duplicate: bool = False


class Aggregator:
    """
    Finds or creates the accumulating bucket for a claim and counts it.

    Callers hold the keyed lock for placement.grouping_key around
    aggregate(). The store still guards bucket creation, duplicate claims
    and counting into a bucket that is no longer ACCUMULATING, so a race
    with another process degrades to a re-read, never to a double count or
    a claim missing from a released bucket.
    """

    def __init__(self, bucket_store: BucketStore, clock: Callable[[], datetime] = datetime.now):
        self.bucket_store = bucket_store
        self.clock = clock

    def place(self, claim: Claim, rule: BucketingRule) -> Placement:
        """
        Validate a claim and derive its grouping key.

        Raises:
            ClaimValidationError: If payer/payee are missing after
                normalization or the paid amount is missing or negative
        """
        payer_id = normalize_payer_payee_id(claim.payer_id)
        payee_id = normalize_payer_payee_id(claim.payee_id)

        if not payer_id:
            raise ClaimValidationError("Missing payer ID")
        if not payee_id:
            raise ClaimValidationError("Missing payee ID")
        if claim.paid_amount is None:
            raise ClaimValidationError("Missing paid amount")
        if claim.paid_amount < 0:
            raise ClaimValidationError(f"Negative paid amount: {claim.paid_amount}")

        bin_number = pcn_number = None
        if rule.kind == RuleKind.BIN_PCN and claim.has_bin:
            bin_number = claim.bin_number
            pcn_number = claim.pcn_number

        return Placement(
            claim=claim,
            rule=rule,
            payer_id=payer_id,
            payee_id=payee_id,
            bin_number=bin_number,
            pcn_number=pcn_number,
            grouping_key=build_grouping_key(rule.id, payer_id, payee_id, bin_number, pcn_number),
        )

    def aggregate(self, placement: Placement) -> AggregationResult:
        """
        Count a placed claim into its bucket.

        A claim that already has a PROCESSED log entry is reported as a
        duplicate and not counted again.
        """
        claim = placement.claim

        if self.bucket_store.has_processed_claim(claim.id):
            logger.info("claim_already_processed", claim_id=claim.id)
            return AggregationResult(bucket=None, duplicate=True)

        for _ in range(MAX_ACCUMULATE_ATTEMPTS):
            bucket, created = self._find_or_create(placement)

            now = self.clock()
            entry = ProcessingLogEntry.for_processed_claim(
                claim,
                bucket.id,
                now,
                payer_id=placement.payer_id,
                payee_id=placement.payee_id,
            )
            try:
                bucket = self.bucket_store.accumulate(bucket.id, placement.amount, entry, now)
                break
            except ConcurrentModificationError:
                if self.bucket_store.has_processed_claim(claim.id):
                    logger.info("claim_already_processed", claim_id=claim.id, bucket_id=bucket.id)
                    return AggregationResult(bucket=None, duplicate=True)
                # Released by another writer between lookup and update
                logger.info("bucket_closed_before_accumulate", claim_id=claim.id, bucket_id=bucket.id)
        else:
            raise TransientStoreError(
                f"No accumulating bucket for {placement.grouping_key} after {MAX_ACCUMULATE_ATTEMPTS} attempts"
            )

        logger.debug(
            "claim_aggregated",
            claim_id=claim.id,
            bucket_id=bucket.id,
            claim_count=bucket.claim_count,
            total_amount=str(bucket.total_amount),
        )
        return AggregationResult(bucket=bucket, created=created)

    def _find_or_create(self, placement: Placement) -> tuple[Bucket, bool]:
        existing = self.bucket_store.find_open_by_key(placement.grouping_key)
        if existing is not None:
            return existing, False

        now = self.clock()
        bucket = Bucket(
            status=BucketStatus.ACCUMULATING,
            rule_id=placement.rule.id,
            rule_name=placement.rule.name,
            grouping_key=placement.grouping_key,
            payer_id=placement.payer_id,
            payee_id=placement.payee_id,
            bin_number=placement.bin_number,
            pcn_number=placement.pcn_number,
            created_at=now,
            last_updated=now,
        )
        try:
            created = self.bucket_store.create(bucket)
        except ConcurrentModificationError:
            # Another writer created the bucket first
            existing = self.bucket_store.find_open_by_key(placement.grouping_key)
            if existing is None:
                raise
            return existing, False

        logger.info(
            "bucket_created",
            bucket_id=created.id,
            rule=placement.rule.name,
            payer_id=placement.payer_id,
            payee_id=placement.payee_id,
            bin_number=placement.bin_number,
        )
        return created, True
