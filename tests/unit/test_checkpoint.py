"""
Tests for the file-backed checkpoint store.
"""

from datetime import datetime

from claim_bucketing.core.checkpoint import FileCheckpointStore
from claim_bucketing.domain import Checkpoint, FeedPosition


class TestFileCheckpointStore:
    def test_missing_checkpoint_is_none(self, tmp_path):
        assert FileCheckpointStore(tmp_path).load_checkpoint("nightly") is None

    def test_save_and_load(self, tmp_path):
        store = FileCheckpointStore(tmp_path / "checkpoints")
        saved = Checkpoint(
            consumer_id="nightly",
            last_feed_version=2,
            last_sequence_number=41,
            total_processed=1200,
            last_checkpoint_at=datetime(2025, 3, 3, 9, 0),
        )
        store.save_checkpoint(saved)

        loaded = store.load_checkpoint("nightly")
        assert loaded == saved
        assert loaded.position == FeedPosition(2, 41)

    def test_save_overwrites(self, tmp_path):
        store = FileCheckpointStore(tmp_path)
        store.save_checkpoint(Checkpoint(consumer_id="nightly", last_sequence_number=1))
        store.save_checkpoint(Checkpoint(consumer_id="nightly", last_sequence_number=2))
        assert store.load_checkpoint("nightly").last_sequence_number == 2
        assert not list(tmp_path.glob("tmp_*"))

    def test_consumer_id_is_made_file_safe(self, tmp_path):
        store = FileCheckpointStore(tmp_path)
        store.save_checkpoint(Checkpoint(consumer_id="team/a b"))
        assert (tmp_path / "checkpoint_team_a_b.json").exists()
        assert store.load_checkpoint("team/a b").consumer_id == "team/a b"

    def test_corrupt_file_is_treated_as_missing(self, tmp_path):
        store = FileCheckpointStore(tmp_path)
        (tmp_path / "checkpoint_nightly.json").write_text("{not json")
        assert store.load_checkpoint("nightly") is None

    def test_delete_all(self, tmp_path):
        store = FileCheckpointStore(tmp_path)
        store.save_checkpoint(Checkpoint(consumer_id="a"))
        store.save_checkpoint(Checkpoint(consumer_id="b"))
        assert store.delete_all_checkpoints() == 2
        assert store.load_checkpoint("a") is None
