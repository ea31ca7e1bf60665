"""
Claim filter: decides which change events become bucketable claims.

Only claims whose adjudication has completed are bucketed. Events for other
tables, deletions and unsettled claims are skipped; payloads that cannot be
parsed are rejected with a reason. The filter never raises for bad input.
"""

from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import structlog
from pydantic import ValidationError

from claim_bucketing.core.errors import MalformedClaimError
from claim_bucketing.domain import ChangeEvent, ChangeOperation, Claim

logger = structlog.get_logger()

DEFAULT_SETTLED_STATUSES = ("PROCESSED", "PAID")


class FilterOutcome(str, Enum):
    ACCEPTED = "ACCEPTED"
    SKIPPED = "SKIPPED"
    REJECTED = "REJECTED"


@dataclass(frozen=True)
class FilterResult:
    """Result of filtering one change event."""

    outcome: FilterOutcome
    claim_id: str
    claim: Optional[Claim] = None
    reason: Optional[str] = None

    @property
    def accepted(self) -> bool:
        return self.outcome == FilterOutcome.ACCEPTED


class ClaimFilter:
    """Turns change events into claims eligible for bucketing."""

    def __init__(
        self,
        settled_statuses: Iterable[str] = DEFAULT_SETTLED_STATUSES,
        claim_tables: Iterable[str] = ("claims",),
    ):
        self.settled_statuses = frozenset(s.upper() for s in settled_statuses)
        self.claim_tables = frozenset(t.lower() for t in claim_tables)

    def accept(self, event: ChangeEvent) -> FilterResult:
        """
        Filter one change event.

        Args:
            event: Change event from the feed

        Returns:
            ACCEPTED with the parsed claim, SKIPPED with the reason it is not
            eligible, or REJECTED with the reason it is malformed
        """
        claim_id = str(event.payload.get("id") or event.row_id or event.change_id)

        if event.table_name.lower() not in self.claim_tables:
            return FilterResult(FilterOutcome.SKIPPED, claim_id, reason=f"not a claim table: {event.table_name}")

        if event.operation == ChangeOperation.DELETE:
            return FilterResult(FilterOutcome.SKIPPED, claim_id, reason="claim deleted")
        if event.operation == ChangeOperation.UNKNOWN:
            return FilterResult(FilterOutcome.SKIPPED, claim_id, reason="unsupported change operation")

        try:
            claim = self.parse(event)
        except MalformedClaimError as e:
            logger.warning(
                "claim_payload_malformed",
                change_id=event.change_id,
                claim_id=claim_id,
                reason=str(e),
            )
            return FilterResult(FilterOutcome.REJECTED, claim_id, reason=str(e))

        if claim.status not in self.settled_statuses:
            logger.debug("claim_not_settled", claim_id=claim.id, status=claim.status)
            return FilterResult(
                FilterOutcome.SKIPPED,
                claim.id,
                claim=claim,
                reason=f"status not settled: {claim.status}",
            )

        return FilterResult(FilterOutcome.ACCEPTED, claim.id, claim=claim)

    @staticmethod
    def parse(event: ChangeEvent) -> Claim:
        """
        Parse an event payload into a Claim.

        The row id stands in for a missing "id" field.

        Raises:
            MalformedClaimError: If the payload is empty or fails validation
        """
        if not event.payload:
            raise MalformedClaimError("empty payload")

        payload = dict(event.payload)
        if not payload.get("id") and event.row_id:
            payload["id"] = event.row_id

        try:
            return Claim.model_validate(payload)
        except ValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
            )
            raise MalformedClaimError(problems) from e
