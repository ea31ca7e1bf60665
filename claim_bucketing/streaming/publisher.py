"""
Core publisher abstractions: ReleaseEvent dataclass and ReleasePublisher protocol.

A release event tells the downstream file generator that a bucket has
entered GENERATING and which claims it carries.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Optional, Protocol, runtime_checkable
from uuid import UUID, uuid4

from claim_bucketing.domain import Bucket, ReleaseTrigger


@dataclass(frozen=True)
class ReleaseEvent:
    """A bucket released for file generation."""

    event_id: UUID
    bucket_id: str
    rule_id: str
    payer_id: str
    payee_id: str
    claim_count: int
    total_amount: Decimal
    released_at: datetime
    trigger: ReleaseTrigger
    claim_ids: tuple[str, ...] = field(default_factory=tuple)
    bin_number: Optional[str] = None
    pcn_number: Optional[str] = None
    actor: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        """
        Plain dict representation for JSON serialization (json_file/log backends).
        """
        return {
            "_event_id": str(self.event_id),
            "_event_timestamp": self.released_at.isoformat(),
            "_trigger": self.trigger.value,
            "bucket_id": self.bucket_id,
            "rule_id": self.rule_id,
            "payer_id": self.payer_id,
            "payee_id": self.payee_id,
            "bin_number": self.bin_number,
            "pcn_number": self.pcn_number,
            "claim_count": self.claim_count,
            "total_amount": _serialize(self.total_amount),
            "claim_ids": list(self.claim_ids),
            "actor": self.actor,
        }


def create_release_event(
    bucket: Bucket,
    claim_ids: list[str],
    trigger: ReleaseTrigger,
    released_at: datetime,
    actor: Optional[str] = None,
) -> ReleaseEvent:
    """Factory to create a ReleaseEvent with auto-generated event_id."""
    return ReleaseEvent(
        event_id=uuid4(),
        bucket_id=bucket.id,
        rule_id=bucket.rule_id,
        payer_id=bucket.payer_id,
        payee_id=bucket.payee_id,
        claim_count=bucket.claim_count,
        total_amount=bucket.total_amount,
        released_at=released_at,
        trigger=trigger,
        claim_ids=tuple(claim_ids),
        bin_number=bucket.bin_number,
        pcn_number=bucket.pcn_number,
        actor=actor,
    )


def _serialize(value: Any) -> Any:
    """Serialize a value for JSON output."""
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    # Amounts keep their exact decimal text
    if isinstance(value, Decimal):
        return str(value)
    return value


class ReleasePublishError(Exception):
    """A backend could not deliver a release event."""

    pass


@runtime_checkable
class ReleasePublisher(Protocol):
    """Protocol for release publisher backends."""

    def publish(self, event: ReleaseEvent) -> None:
        """Publish a single release event. Raises ReleasePublishError on failure."""
        ...

    def flush(self) -> None:
        """Flush any internal buffers."""
        ...

    def close(self) -> None:
        """Close the publisher and release resources."""
        ...

    @property
    def stats(self) -> dict[str, int]:
        """Return publishing statistics."""
        ...
