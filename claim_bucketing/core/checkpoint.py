"""
File-backed checkpoint store.

Keeps each consumer's feed checkpoint in its own JSON file. Used when the
engine should not write checkpoints into the database it reads the feed
from (for example when replaying a copied feed).
"""

import json
import os
import re
import tempfile
from pathlib import Path
from typing import Optional

import structlog

from claim_bucketing.domain import Checkpoint

logger = structlog.get_logger()

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_.-]")


class FileCheckpointStore:
    """
    Stores consumer checkpoints as JSON files.

    Checkpoints are saved atomically using temp file + rename
    to prevent corruption from crashes during write.

    Usage:
        store = FileCheckpointStore(checkpoint_dir)
        store.save_checkpoint(checkpoint)
        checkpoint = store.load_checkpoint("claim-bucketing-default")
    """

    CHECKPOINT_PREFIX = "checkpoint_"
    CHECKPOINT_SUFFIX = ".json"

    def __init__(self, checkpoint_dir: Path | str):
        """
        Initialize the store.

        Args:
            checkpoint_dir: Directory to store checkpoints
        """
        self.checkpoint_dir = Path(checkpoint_dir)
        self.checkpoint_dir.mkdir(parents=True, exist_ok=True)

    def save_checkpoint(self, checkpoint: Checkpoint) -> None:
        """Save a checkpoint atomically."""
        checkpoint_path = self._get_checkpoint_path(checkpoint.consumer_id)

        with tempfile.NamedTemporaryFile(
            mode="w",
            dir=self.checkpoint_dir,
            prefix=f"tmp_{self.CHECKPOINT_PREFIX}",
            suffix=self.CHECKPOINT_SUFFIX,
            delete=False,
        ) as f:
            f.write(checkpoint.model_dump_json(indent=2))
            temp_path = f.name

        os.replace(temp_path, checkpoint_path)

        logger.debug(
            "checkpoint_file_saved",
            consumer_id=checkpoint.consumer_id,
            path=str(checkpoint_path),
        )

    def load_checkpoint(self, consumer_id: str) -> Optional[Checkpoint]:
        """
        Load a consumer's checkpoint.

        A missing file means the consumer starts from the beginning of the
        feed. An unreadable file is logged and treated the same way; the
        engine's idempotency makes the resulting replay harmless.
        """
        checkpoint_path = self._get_checkpoint_path(consumer_id)

        if not checkpoint_path.exists():
            return None

        try:
            with open(checkpoint_path) as f:
                data = json.load(f)
            return Checkpoint.model_validate(data)
        except (json.JSONDecodeError, ValueError, OSError) as e:
            logger.warning(
                "checkpoint_load_failed",
                consumer_id=consumer_id,
                path=str(checkpoint_path),
                error=str(e),
            )
            return None

    def delete_all_checkpoints(self) -> int:
        """Delete every checkpoint file. Returns the number deleted."""
        count = 0
        for path in self.checkpoint_dir.glob(f"{self.CHECKPOINT_PREFIX}*{self.CHECKPOINT_SUFFIX}"):
            path.unlink()
            count += 1
        return count

    def _get_checkpoint_path(self, consumer_id: str) -> Path:
        safe_id = _UNSAFE_CHARS.sub("_", consumer_id)
        return self.checkpoint_dir / f"{self.CHECKPOINT_PREFIX}{safe_id}{self.CHECKPOINT_SUFFIX}"
