"""
Unit tests for the local backup store.

Tests the LocalBackupStore class for writing, listing, reading and deleting
snapshot files, the metadata index, and the retention policies for backups
and restore points.
"""

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import patch

import pytest

from subtrack_backup.backup.errors import (
    BackupIOError,
    InvalidSnapshotError,
    NotFoundError,
)
from subtrack_backup.backup.manager import (
    DEFAULT_BACKUP_RETENTION,
    DEFAULT_RESTORE_POINT_RETENTION,
    BackupLocation,
    BackupRecord,
    LocalBackupStore,
)

START_TIME = datetime(2026, 10, 17, 10, 30, 0, tzinfo=timezone.utc)


def write_series(store, snapshot_factory, count, is_restore_point=False, start=START_TIME):
    """Write count snapshots one minute apart and return their records."""
    return [
        store.write(
            snapshot_factory(
                created_at=start + timedelta(minutes=i),
                is_restore_point=is_restore_point,
            )
        )
        for i in range(count)
    ]


class TestLocalBackupStoreInitialization:
    """Tests for LocalBackupStore initialization."""

    def test_create_with_defaults(self, tmp_path):
        """Test creating a store with default retention limits."""
        store = LocalBackupStore(tmp_path / "backups")
        assert store.backup_dir == tmp_path / "backups"
        assert store.retention_count == DEFAULT_BACKUP_RETENTION
        assert store.restore_point_retention == DEFAULT_RESTORE_POINT_RETENTION

    def test_initialization_creates_directory(self, tmp_path):
        """Test that initialization creates the backup directory."""
        backup_dir = tmp_path / "backups" / "nested"
        assert not backup_dir.exists()

        LocalBackupStore(backup_dir)
        assert backup_dir.is_dir()

    def test_path_expansion_with_tilde(self):
        """Test that paths with ~ are expanded."""
        with patch.object(Path, "mkdir"):
            store = LocalBackupStore("~/test_backups")
        assert "~" not in str(store.backup_dir)

    @pytest.mark.parametrize("retention, points", [(0, 1), (1, 0), (-3, 1)])
    def test_invalid_retention(self, tmp_path, retention, points):
        """Test that retention limits below one are rejected."""
        with pytest.raises(ValueError, match="at least 1"):
            LocalBackupStore(
                tmp_path, retention_count=retention, restore_point_retention=points
            )

    def test_unwritable_directory(self, tmp_path):
        """Test that a directory that cannot be created raises BackupIOError."""
        blocker = tmp_path / "file"
        blocker.write_text("not a directory")

        with pytest.raises(BackupIOError, match="Cannot create backup directory"):
            LocalBackupStore(blocker / "backups")


class TestBackupWriting:
    """Tests for writing snapshots."""

    def test_write_creates_file(self, local_store, snapshot_factory):
        """Test that write persists the snapshot as JSON."""
        record = local_store.write(snapshot_factory())

        path = local_store.backup_dir / record.filename
        assert path.is_file()
        assert json.loads(path.read_bytes())["version"] == "1.0"

    def test_write_record_fields(self, local_store, snapshot_factory):
        """Test the metadata of the returned record."""
        snapshot = snapshot_factory()
        record = local_store.write(snapshot)

        assert record.id == record.filename
        assert record.filename == "subtrack-backup-20261017T103000000000Z.json"
        assert record.size_bytes == len(snapshot.to_json())
        assert record.created_at == START_TIME
        assert record.location == BackupLocation.LOCAL
        assert record.is_restore_point is False

    def test_restore_point_prefix(self, local_store, snapshot_factory):
        """Test that restore points use their own file prefix."""
        record = local_store.write(snapshot_factory(is_restore_point=True))

        assert record.filename.startswith("subtrack-restore-point-")
        assert record.is_restore_point is True

    def test_same_timestamp_does_not_overwrite(self, local_store, snapshot_factory):
        """Test that two snapshots with one timestamp get distinct files."""
        first = local_store.write(snapshot_factory())
        second = local_store.write(snapshot_factory())

        assert first.filename != second.filename
        assert len(local_store.list()) == 2

    def test_write_failure_raises_io_error(self, local_store, snapshot_factory):
        """Test that an OS error while writing raises BackupIOError."""
        with patch(
            "subtrack_backup.backup.manager.os.replace",
            side_effect=OSError("No space left on device"),
        ):
            with pytest.raises(BackupIOError, match="No space left") as exc_info:
                local_store.write(snapshot_factory())

        assert exc_info.value.step == "writing_local"
        assert local_store.list() == []
        assert not list(local_store.backup_dir.glob(".tmp-*"))

    def test_write_updates_index(self, local_store, snapshot_factory):
        """Test that the metadata index lists written backups."""
        record = local_store.write(snapshot_factory())

        entries = json.loads(local_store.index_path.read_text())
        assert [e["id"] for e in entries] == [record.id]


class TestBackupListing:
    """Tests for listing backups."""

    def test_list_empty(self, local_store):
        """Test listing an empty directory."""
        assert local_store.list() == []
        assert local_store.latest() is None

    def test_list_newest_first(self, local_store, snapshot_factory):
        """Test that backups are listed newest first."""
        records = write_series(local_store, snapshot_factory, 3)

        listed = local_store.list()
        assert [r.id for r in listed] == [r.id for r in reversed(records)]
        assert local_store.latest() == records[-1]

    def test_list_without_restore_points(self, local_store, snapshot_factory):
        """Test filtering restore points out of the listing."""
        backup = local_store.write(snapshot_factory())
        point = local_store.write(
            snapshot_factory(
                created_at=START_TIME + timedelta(hours=1), is_restore_point=True
            )
        )

        assert [r.id for r in local_store.list()] == [point.id, backup.id]
        assert local_store.list(include_restore_points=False) == [backup]

    def test_latest_skips_restore_points(self, local_store, snapshot_factory):
        """Test that latest() ignores restore points by default."""
        backup = local_store.write(snapshot_factory())
        point = local_store.write(
            snapshot_factory(
                created_at=START_TIME + timedelta(hours=1), is_restore_point=True
            )
        )

        assert local_store.latest() == backup
        assert local_store.latest(include_restore_points=True) == point
        assert local_store.latest_restore_point() == point

    def test_lost_file_is_dropped(self, local_store, snapshot_factory, caplog):
        """Test that a record whose file disappeared is reported and dropped."""
        kept, lost = write_series(local_store, snapshot_factory, 2)
        (local_store.backup_dir / lost.filename).unlink()

        with caplog.at_level("WARNING"):
            assert local_store.list() == [kept]

        assert "lost" in caplog.text
        entries = json.loads(local_store.index_path.read_text())
        assert [e["id"] for e in entries] == [kept.id]

    def test_total_size(self, local_store, snapshot_factory):
        """Test that total_size sums the listed backups."""
        records = write_series(local_store, snapshot_factory, 2)
        assert local_store.total_size() == sum(r.size_bytes for r in records)


class TestBackupIndex:
    """Tests for the metadata index."""

    def test_missing_index_is_rebuilt(self, local_store, snapshot_factory):
        """Test that deleting the index loses no backups."""
        records = write_series(local_store, snapshot_factory, 2)
        local_store.index_path.unlink()

        listed = local_store.list()
        assert {r.id for r in listed} == {r.id for r in records}
        assert listed[0].created_at == records[-1].created_at

    def test_corrupt_index_is_rebuilt(self, local_store, snapshot_factory, caplog):
        """Test that an unreadable index is rebuilt from the files."""
        record = local_store.write(snapshot_factory())
        local_store.index_path.write_text("{ not json")

        with caplog.at_level("WARNING"):
            assert [r.id for r in local_store.list()] == [record.id]
        assert "rebuilding" in caplog.text

    def test_unindexed_file_is_picked_up(self, local_store, snapshot_factory):
        """Test that a backup file missing from the index is still listed."""
        local_store.write(snapshot_factory())
        extra = snapshot_factory(created_at=START_TIME + timedelta(days=1))
        name = "subtrack-backup-20261018T103000000000Z.json"
        (local_store.backup_dir / name).write_bytes(extra.to_json())

        assert local_store.latest().id == name

    def test_unreadable_file_is_skipped(self, local_store, snapshot_factory):
        """Test that a corrupt backup file does not break listing."""
        record = local_store.write(snapshot_factory())
        (local_store.backup_dir / "subtrack-backup-garbage.json").write_text("nope")

        assert [r.id for r in local_store.list()] == [record.id]

    def test_record_from_dict(self):
        """Test building a record from an index entry."""
        record = BackupRecord.from_dict(
            {"id": "a.json", "created_at": "2026-10-17T10:30:00Z"}
        )
        assert record.filename == "a.json"
        assert record.size_bytes == 0
        assert record.location == BackupLocation.LOCAL
        assert record.created_at == START_TIME


class TestBackupReading:
    """Tests for reading snapshots back."""

    def test_read_returns_snapshot(self, local_store, snapshot_factory):
        """Test that read returns the written snapshot."""
        snapshot = snapshot_factory()
        record = local_store.write(snapshot)

        assert local_store.read(record.id) == snapshot

    def test_read_missing(self, local_store):
        """Test that reading an unknown id raises NotFoundError."""
        with pytest.raises(NotFoundError):
            local_store.read("subtrack-backup-20200101T000000000000Z.json")

    @pytest.mark.parametrize(
        "backup_id",
        ["../secrets.json", "/etc/passwd", "sub/dir.json", "index.json", "backup.txt", ""],
    )
    def test_read_rejects_non_backup_ids(self, local_store, backup_id):
        """Test that ids outside the backup directory are not found."""
        with pytest.raises(NotFoundError):
            local_store.read(backup_id)

    def test_read_corrupt_file(self, local_store, snapshot_factory):
        """Test that a corrupt file raises InvalidSnapshotError."""
        record = local_store.write(snapshot_factory())
        (local_store.backup_dir / record.filename).write_text('{"version": ')

        with pytest.raises(InvalidSnapshotError):
            local_store.read(record.id)


class TestBackupDeletion:
    """Tests for deleting backups."""

    def test_delete(self, local_store, snapshot_factory):
        """Test that delete removes the file and the index entry."""
        record = local_store.write(snapshot_factory())

        local_store.delete(record.id)

        assert not (local_store.backup_dir / record.filename).exists()
        assert local_store.list() == []

    def test_delete_missing(self, local_store):
        """Test that deleting an unknown id raises NotFoundError."""
        with pytest.raises(NotFoundError):
            local_store.delete("subtrack-backup-20200101T000000000000Z.json")

    def test_delete_rejects_traversal(self, local_store, tmp_path):
        """Test that delete never touches files outside the directory."""
        outside = tmp_path / "important.json"
        outside.write_text("{}")

        with pytest.raises(NotFoundError):
            local_store.delete("../important.json")
        assert outside.exists()


class TestBackupRetention:
    """Tests for retention of backups and restore points."""

    def test_retention_keeps_newest(self, tmp_path, snapshot_factory):
        """Test that only the newest retention_count backups remain."""
        store = LocalBackupStore(tmp_path / "backups", retention_count=3)
        records = write_series(store, snapshot_factory, 6)

        assert [r.id for r in store.list()] == [r.id for r in reversed(records[-3:])]
        files = sorted(p.name for p in store.backup_dir.glob("subtrack-backup-*.json"))
        assert files == sorted(r.filename for r in records[-3:])

    def test_restore_points_pruned_separately(self, tmp_path, snapshot_factory):
        """Test that restore points do not count against backup retention."""
        store = LocalBackupStore(
            tmp_path / "backups", retention_count=2, restore_point_retention=1
        )
        backups = write_series(store, snapshot_factory, 2)
        points = write_series(
            store,
            snapshot_factory,
            3,
            is_restore_point=True,
            start=START_TIME + timedelta(hours=1),
        )

        assert store.list(include_restore_points=False) == list(reversed(backups))
        assert store.latest_restore_point() == points[-1]
        assert len(store.list()) == 3

    def test_apply_retention_is_idempotent(self, tmp_path, snapshot_factory):
        """Test that applying retention twice deletes nothing the second time."""
        store = LocalBackupStore(tmp_path / "backups", retention_count=2)
        write_series(store, snapshot_factory, 2)

        assert store.apply_retention() == 0
        assert store.apply_retention() == 0
        assert len(store.list()) == 2

    def test_prune_failure_does_not_fail_write(self, tmp_path, snapshot_factory, caplog):
        """Test that a backup that cannot be pruned is kept for the next run."""
        store = LocalBackupStore(tmp_path / "backups", retention_count=1)
        first = store.write(snapshot_factory())

        with patch.object(Path, "unlink", side_effect=PermissionError("read-only")):
            with caplog.at_level("WARNING"):
                second = store.write(
                    snapshot_factory(created_at=START_TIME + timedelta(minutes=1))
                )

        assert "Could not prune" in caplog.text
        assert {r.id for r in store.list()} == {first.id, second.id}

        assert store.apply_retention() == 1
        assert store.list() == [second]
