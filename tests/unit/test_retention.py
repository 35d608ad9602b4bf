"""
Unit tests for retention.

Tests cover:
- No-op below the keep window
- Threshold deletion across shard directories
- Empty directory pruning
- Refusal without a valid apply cursor
- Full purge for recovery
"""

import pytest

from osmsync.replicator.errors import CursorReadError, RetentionError
from osmsync.replicator.retention import RetentionCleaner
from osmsync.replicator.store.cursor import CURSOR_FILENAME, Cursor


class TestPrune:
    """Tests for RetentionCleaner.prune."""

    @pytest.fixture
    def apply_cursor(self, db_dir):
        return Cursor(db_dir / CURSOR_FILENAME, "apply")

    @pytest.fixture
    def cleaner(self, diff_dir, apply_cursor):
        return RetentionCleaner(diff_dir, apply_cursor)

    def test_below_window_is_noop(self, cleaner, apply_cursor, make_artifact, store):
        """C=100, K=360: nothing is deleted."""
        make_artifact(*range(1, 101))
        apply_cursor.write(100)

        result = cleaner.prune(360)

        assert result.threshold == -260
        assert result.files_deleted == 0
        assert all(store.is_available(i) for i in range(1, 101))

    def test_deletes_up_to_threshold(self, cleaner, apply_cursor, make_artifact, store, diff_dir):
        """C=1000, K=360: only IDs <= 640 are deleted."""
        make_artifact(*range(600, 1001))
        apply_cursor.write(1000)

        result = cleaner.prune(360)

        assert result.threshold == 640
        assert result.files_deleted == 2 * len(range(600, 641))
        assert not any(store.change_path(i).exists() for i in range(600, 641))
        assert not any(store.state_path(i).exists() for i in range(600, 641))
        assert all(store.is_available(i) for i in range(641, 1001))

    def test_prunes_empty_directories(self, cleaner, apply_cursor, make_artifact, diff_dir):
        """Shard directories emptied by the cleanup are removed."""
        make_artifact(*range(990, 1010))
        apply_cursor.write(1369)

        result = cleaner.prune(360)

        assert result.threshold == 1009
        assert result.files_deleted == 40
        assert not (diff_dir / "000" / "000").exists()
        assert not (diff_dir / "000" / "001").exists()
        assert not (diff_dir / "000").exists()
        assert result.dirs_removed == 3

    def test_keeps_subtrees_above_threshold(self, cleaner, apply_cursor, make_artifact, store):
        make_artifact(5, 1_000_005, 2_000_005)
        apply_cursor.write(1_500_000)

        cleaner.prune(0)

        assert not store.change_path(5).exists()
        assert not store.change_path(1_000_005).exists()
        assert store.is_available(2_000_005)

    def test_ignores_foreign_files(self, cleaner, apply_cursor, make_artifact, store):
        make_artifact(1)
        note = store.change_path(1).parent / "README"
        note.write_text("keep me")
        apply_cursor.write(500)

        cleaner.prune(0)

        assert note.exists()
        assert not store.change_path(1).exists()

    def test_zero_cursor_refused(self, cleaner, apply_cursor, make_artifact, store):
        make_artifact(1)
        apply_cursor.write(0)

        with pytest.raises(RetentionError):
            cleaner.prune(0)

        assert store.is_available(1)

    def test_missing_cursor_refused(self, cleaner):
        with pytest.raises(CursorReadError):
            cleaner.prune()

    def test_corrupt_cursor_refused(self, cleaner, apply_cursor):
        apply_cursor.path.write_text("garbage\n")
        with pytest.raises(CursorReadError):
            cleaner.prune()

    def test_negative_keep_count(self, cleaner, apply_cursor):
        apply_cursor.write(10)
        with pytest.raises(RetentionError):
            cleaner.prune(-1)


class TestPurgeAll:
    """Tests for RetentionCleaner.purge_all."""

    def test_removes_everything(self, diff_dir, make_artifact):
        make_artifact(1, 2, 1_000_001)
        (diff_dir / "state.txt").write_text("sequenceNumber=1000001\n")
        fetch_cursor = Cursor(diff_dir / CURSOR_FILENAME, "fetch")
        fetch_cursor.write(1_000_001)
        (diff_dir / "fetch_osc.log").write_text("log\n")

        result = RetentionCleaner(diff_dir).purge_all()

        assert result.files_deleted == 6
        assert result.dirs_removed == 2
        assert sorted(p.name for p in diff_dir.iterdir()) == ["fetch_osc.log"]

    def test_empty_directory(self, diff_dir):
        result = RetentionCleaner(diff_dir).purge_all()
        assert result.files_deleted == 0
        assert result.dirs_removed == 0
