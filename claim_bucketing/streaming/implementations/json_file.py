"""
NDJSON file publisher: appends release events to a newline-delimited JSON file.
"""

import json
import threading
from pathlib import Path
from typing import IO, Optional

import structlog

from claim_bucketing.streaming.publisher import ReleaseEvent, ReleasePublishError

logger = structlog.get_logger()


class JsonFilePublisher:
    """
    Writes release events as NDJSON (one JSON object per line).

    File naming: {output_dir}/{file_name}; flushed after every event so the
    generator can tail the file.
    """

    def __init__(self, output_dir: str, file_name: str = "releases.ndjson") -> None:
        self._output_dir = Path(output_dir)
        self._output_dir.mkdir(parents=True, exist_ok=True)
        self._path = self._output_dir / file_name
        self._handle: Optional[IO[str]] = None
        self._lock = threading.Lock()
        self._write_count = 0

    @property
    def path(self) -> Path:
        return self._path

    def _get_handle(self) -> IO[str]:
        if self._handle is None:
            self._handle = open(self._path, "a", encoding="utf-8")  # noqa: SIM115
        return self._handle

    def publish(self, event: ReleaseEvent) -> None:
        line = json.dumps(event.to_dict(), separators=(",", ":"))
        with self._lock:
            try:
                handle = self._get_handle()
                handle.write(line + "\n")
                handle.flush()
            except OSError as e:
                raise ReleasePublishError(f"Failed to write release event to {self._path}: {e}") from e
            self._write_count += 1

    def flush(self) -> None:
        with self._lock:
            if self._handle is not None:
                self._handle.flush()

    def close(self) -> None:
        with self._lock:
            if self._handle is not None:
                self._handle.close()
                self._handle = None

    @property
    def stats(self) -> dict[str, int]:
        return {
            "json_file_writes": self._write_count,
            "open_files": 1 if self._handle is not None else 0,
        }
