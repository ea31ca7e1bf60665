"""
No-op publisher: discards all release events silently.
"""

from claim_bucketing.streaming.publisher import ReleaseEvent


class NoopPublisher:
    """Publisher that discards all events. Used when no generator is listening."""

    def publish(self, event: ReleaseEvent) -> None:
        pass

    def flush(self) -> None:
        pass

    def close(self) -> None:
        pass

    @property
    def stats(self) -> dict[str, int]:
        return {}
