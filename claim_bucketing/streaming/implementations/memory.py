"""
In-memory publisher for unit testing.
"""

import threading

from claim_bucketing.streaming.publisher import ReleaseEvent, ReleasePublishError


class InMemoryPublisher:
    """
    Captures all release events in memory for testing and inspection.

    Set fail_with to make the next publish calls raise, to exercise the
    release failure path.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._events: list[ReleaseEvent] = []
        self._publish_count = 0
        self._failure_count = 0
        self.fail_with: str | None = None

    def publish(self, event: ReleaseEvent) -> None:
        with self._lock:
            if self.fail_with is not None:
                self._failure_count += 1
                raise ReleasePublishError(self.fail_with)
            self._events.append(event)
            self._publish_count += 1

    def flush(self) -> None:
        pass

    def close(self) -> None:
        pass

    @property
    def stats(self) -> dict[str, int]:
        return {
            "publish_count": self._publish_count,
            "failure_count": self._failure_count,
            "total_events": len(self._events),
        }

    # ---- Test helpers ----

    @property
    def events(self) -> list[ReleaseEvent]:
        """All captured release events."""
        with self._lock:
            return list(self._events)

    def events_for_bucket(self, bucket_id: str) -> list[ReleaseEvent]:
        return [e for e in self.events if e.bucket_id == bucket_id]

    def clear(self) -> None:
        """Clear all captured events."""
        with self._lock:
            self._events.clear()
            self._publish_count = 0
            self._failure_count = 0
