"""
Log publisher: emits release events through structlog.
"""

import structlog

from claim_bucketing.streaming.publisher import ReleaseEvent

logger = structlog.get_logger()


class LogPublisher:
    """Publishes release events by logging them via structlog."""

    def __init__(self, level: str = "info") -> None:
        self._level = level.lower()
        self._count = 0

    def _log(self, **kwargs: object) -> None:
        log_fn = getattr(logger, self._level, logger.info)
        log_fn(**kwargs)

    def publish(self, event: ReleaseEvent) -> None:
        self._log(
            event="bucket_released",
            event_id=str(event.event_id),
            bucket_id=event.bucket_id,
            trigger=event.trigger.value,
            payer_id=event.payer_id,
            payee_id=event.payee_id,
            claim_count=event.claim_count,
            total_amount=str(event.total_amount),
        )
        self._count += 1

    def flush(self) -> None:
        pass

    def close(self) -> None:
        pass

    @property
    def stats(self) -> dict[str, int]:
        return {"log_events": self._count}
