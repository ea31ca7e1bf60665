"""
Change feed models: positions, events and consumer checkpoints.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, NamedTuple, Optional

from pydantic import BaseModel, Field

from claim_bucketing.domain.enums import ChangeOperation


class FeedPosition(NamedTuple):
    """
    Position of an event in the change feed.

    Ordered lexicographically: feed version first, then sequence number.
    """

    version: int
    sequence: int


START_OF_FEED = FeedPosition(0, 0)


@dataclass(frozen=True)
class ChangeEvent:
    """
    One claim mutation from the change feed.

    The payload is the row snapshot after the change (before it, for DELETE).
    """

    change_id: str
    position: FeedPosition
    table_name: str
    operation: ChangeOperation
    row_id: str
    payload: dict[str, Any] = field(default_factory=dict)
    processed: bool = False
    error_message: Optional[str] = None


class Checkpoint(BaseModel):
    """Durable consumer progress. One per logical consumer."""

    consumer_id: str
    last_feed_version: int = 0
    last_sequence_number: int = 0
    total_processed: int = Field(default=0, ge=0)
    last_checkpoint_at: Optional[datetime] = None

    @property
    def position(self) -> FeedPosition:
        return FeedPosition(self.last_feed_version, self.last_sequence_number)

    def advanced_to(self, position: FeedPosition, handled: int, now: datetime) -> "Checkpoint":
        """Copy moved forward to position after handling `handled` more events."""
        return self.model_copy(
            update={
                "last_feed_version": position.version,
                "last_sequence_number": position.sequence,
                "total_processed": self.total_processed + handled,
                "last_checkpoint_at": now,
            }
        )
