"""
Local backup store for snapshot persistence and recovery.

Provides functionality to:
- Write snapshots as JSON files with timestamp naming
- List available backups newest first from a metadata index
- Read snapshots back for restore operations
- Apply separate retention limits to backups and restore points
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any

from subtrack_backup.backup.errors import (
    BackupIOError,
    InvalidSnapshotError,
    NotFoundError,
)
from subtrack_backup.backup.snapshot import Snapshot
from subtrack_backup.utils.clock import ensure_utc, format_timestamp, parse_timestamp

logger = logging.getLogger(__name__)

# Default retention limits
DEFAULT_BACKUP_RETENTION = 5
DEFAULT_RESTORE_POINT_RETENTION = 1


class BackupLocation(str, Enum):
    """Where a backup is stored."""

    LOCAL = "local"
    CLOUD = "cloud"


@dataclass(frozen=True)
class BackupRecord:
    """
    Metadata describing one persisted snapshot.

    Attributes:
        id: Opaque handle (file name for local backups, server id for cloud)
        filename: Name of the stored file
        size_bytes: Size of the serialized snapshot
        created_at: Creation instant of the snapshot (UTC)
        location: Where the snapshot is stored
        is_restore_point: Whether the snapshot is a pre-restore safety net
    """

    id: str
    filename: str
    size_bytes: int
    created_at: datetime
    location: BackupLocation = BackupLocation.LOCAL
    is_restore_point: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "filename": self.filename,
            "size_bytes": self.size_bytes,
            "created_at": format_timestamp(self.created_at),
            "location": self.location.value,
            "is_restore_point": self.is_restore_point,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BackupRecord:
        """
        Build a record from its index entry.

        Raises:
            KeyError, ValueError, TypeError: If the entry is malformed
        """
        return cls(
            id=str(data["id"]),
            filename=str(data.get("filename", data["id"])),
            size_bytes=int(data.get("size_bytes", 0)),
            created_at=parse_timestamp(data["created_at"]),
            location=BackupLocation(data.get("location", BackupLocation.LOCAL.value)),
            is_restore_point=bool(data.get("is_restore_point", False)),
        )


class LocalBackupStore:
    """
    Store for writing and managing snapshot files on local disk.

    Each snapshot is written to its own timestamp-named JSON file, so the
    lexical order of file names matches creation order. A small index file
    lists every record for fast listing. Ordinary backups and restore points
    are pruned independently after each write.

    Attributes:
        backup_dir: Directory path where backups are stored
        retention_count: Maximum number of ordinary backups to retain
        restore_point_retention: Maximum number of restore points to retain

    Usage:
        from pathlib import Path

        store = LocalBackupStore(Path("~/.subtrack-backup/backups"))

        # Persist a snapshot
        record = store.write(snapshot)

        # List available backups
        records = store.list()

        # Load a specific backup
        snapshot = store.read(record.id)
    """

    BACKUP_PREFIX = "subtrack-backup-"
    RESTORE_POINT_PREFIX = "subtrack-restore-point-"
    BACKUP_SUFFIX = ".json"
    INDEX_FILE = "index.json"
    TIMESTAMP_FORMAT = "%Y%m%dT%H%M%S%fZ"

    def __init__(
        self,
        backup_dir: Path | str,
        retention_count: int = DEFAULT_BACKUP_RETENTION,
        restore_point_retention: int = DEFAULT_RESTORE_POINT_RETENTION,
    ):
        """
        Initialize the backup store.

        Args:
            backup_dir: Directory path where backups will be stored
            retention_count: Maximum number of ordinary backups to keep
            restore_point_retention: Maximum number of restore points to keep
        """
        if retention_count < 1 or restore_point_retention < 1:
            raise ValueError("Retention limits must be at least 1")

        self.backup_dir = Path(backup_dir).expanduser()
        self.retention_count = retention_count
        self.restore_point_retention = restore_point_retention
        self._lock = threading.RLock()

        # Ensure backup directory exists
        try:
            self.backup_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise BackupIOError(
                f"Cannot create backup directory {self.backup_dir}: {e}"
            ) from e

    @property
    def index_path(self) -> Path:
        return self.backup_dir / self.INDEX_FILE

    # =========================================================================
    # Public operations
    # =========================================================================

    def write(self, snapshot: Snapshot) -> BackupRecord:
        """
        Persist a snapshot and prune its category.

        Args:
            snapshot: Snapshot to write

        Returns:
            BackupRecord describing the written file

        Raises:
            BackupIOError: If the file cannot be written
        """
        content = snapshot.to_json()

        with self._lock:
            backup_path = self._unique_path(snapshot)
            try:
                self._atomic_write(backup_path, content)
            except OSError as e:
                logger.error(f"Failed to write backup {backup_path}: {e}")
                raise BackupIOError(
                    f"Could not write backup file: {e}", step="writing_local"
                ) from e

            record = BackupRecord(
                id=backup_path.name,
                filename=backup_path.name,
                size_bytes=len(content),
                created_at=ensure_utc(snapshot.created_at),
                location=BackupLocation.LOCAL,
                is_restore_point=snapshot.is_restore_point,
            )

            records = self._load_index()
            records.append(record)
            self._save_index_quietly(records)
            logger.info(
                f"Wrote {'restore point' if record.is_restore_point else 'backup'} "
                f"{record.filename} ({record.size_bytes} bytes)"
            )

            self.apply_retention()

        return record

    def list(self, include_restore_points: bool = True) -> list[BackupRecord]:
        """
        List stored backups sorted newest first.

        Records whose files have disappeared are reported as lost and dropped
        from the index.

        Args:
            include_restore_points: Whether to include restore point records

        Returns:
            List of BackupRecord objects, newest to oldest
        """
        with self._lock:
            records = self._load_index()
            present = []
            for record in records:
                if (self.backup_dir / record.filename).exists():
                    present.append(record)
                else:
                    logger.warning(
                        f"Backup {record.filename} is listed but its file is lost"
                    )

            if len(present) != len(records):
                self._save_index_quietly(present)

        if not include_restore_points:
            present = [r for r in present if not r.is_restore_point]

        return sorted(present, key=lambda r: (r.created_at, r.filename), reverse=True)

    def read(self, backup_id: str) -> Snapshot:
        """
        Load a stored snapshot.

        Args:
            backup_id: Record id (file name) of the backup

        Returns:
            The parsed Snapshot

        Raises:
            NotFoundError: If no such backup exists
            InvalidSnapshotError: If the file is not a valid snapshot
            BackupIOError: If the file cannot be read
        """
        backup_path = self._path_for(backup_id)
        if not backup_path.is_file():
            raise NotFoundError(f"No local backup named {backup_id}")

        try:
            content = backup_path.read_bytes()
        except OSError as e:
            raise BackupIOError(f"Could not read backup {backup_id}: {e}") from e

        try:
            return Snapshot.from_json(content)
        except InvalidSnapshotError as e:
            logger.warning(f"Backup {backup_id} is corrupt: {e}")
            raise

    def delete(self, backup_id: str) -> None:
        """
        Delete a stored backup and its index entry.

        Raises:
            NotFoundError: If no such backup exists
            BackupIOError: If the file cannot be removed
        """
        backup_path = self._path_for(backup_id)

        with self._lock:
            if not backup_path.is_file():
                raise NotFoundError(f"No local backup named {backup_id}")
            try:
                backup_path.unlink()
            except OSError as e:
                raise BackupIOError(f"Could not delete backup {backup_id}: {e}") from e

            records = [r for r in self._load_index() if r.id != backup_id]
            self._save_index_quietly(records)

        logger.info(f"Deleted backup {backup_id}")

    def latest(self, include_restore_points: bool = False) -> BackupRecord | None:
        """Return the newest record, or None if there are no backups."""
        records = self.list(include_restore_points=include_restore_points)
        return records[0] if records else None

    def latest_restore_point(self) -> BackupRecord | None:
        """Return the newest restore point, or None."""
        for record in self.list():
            if record.is_restore_point:
                return record
        return None

    def total_size(self) -> int:
        """Total size in bytes of all listed backups."""
        return sum(r.size_bytes for r in self.list())

    def apply_retention(self) -> int:
        """
        Apply retention limits by deleting the oldest files of each category.

        Deletion failures are logged and left for the next run, so calling
        this repeatedly without excess files does nothing.

        Returns:
            Number of backups deleted
        """
        deleted = 0

        with self._lock:
            records = self.list()
            limits = (
                (False, self.retention_count),
                (True, self.restore_point_retention),
            )
            removed_ids = set()

            for is_restore_point, limit in limits:
                category = [r for r in records if r.is_restore_point == is_restore_point]
                for record in category[limit:]:
                    try:
                        (self.backup_dir / record.filename).unlink()
                    except FileNotFoundError:
                        removed_ids.add(record.id)
                    except OSError as e:
                        logger.warning(
                            f"Could not prune old backup {record.filename}: {e}"
                        )
                    else:
                        removed_ids.add(record.id)
                        deleted += 1
                        logger.debug(f"Pruned old backup {record.filename}")

            if removed_ids:
                remaining = [r for r in self._load_index() if r.id not in removed_ids]
                self._save_index_quietly(remaining)

        return deleted

    # =========================================================================
    # File naming
    # =========================================================================

    def _prefix_for(self, is_restore_point: bool) -> str:
        return self.RESTORE_POINT_PREFIX if is_restore_point else self.BACKUP_PREFIX

    def _filename_for(self, created_at: datetime, is_restore_point: bool) -> str:
        ts_str = ensure_utc(created_at).strftime(self.TIMESTAMP_FORMAT)
        return f"{self._prefix_for(is_restore_point)}{ts_str}{self.BACKUP_SUFFIX}"

    def _unique_path(self, snapshot: Snapshot) -> Path:
        """Derive a file path that does not collide with an existing backup."""
        created_at = ensure_utc(snapshot.created_at)
        path = self.backup_dir / self._filename_for(created_at, snapshot.is_restore_point)
        while path.exists():
            created_at += timedelta(microseconds=1)
            path = self.backup_dir / self._filename_for(
                created_at, snapshot.is_restore_point
            )
        return path

    def _path_for(self, backup_id: str) -> Path:
        """
        Map a record id onto a path inside the backup directory.

        Raises:
            NotFoundError: If the id is not a plain backup file name
        """
        name = Path(backup_id).name
        if (
            not backup_id
            or name != backup_id
            or not name.endswith(self.BACKUP_SUFFIX)
            or name == self.INDEX_FILE
        ):
            raise NotFoundError(f"No local backup named {backup_id}")
        return self.backup_dir / name

    def _is_backup_file(self, path: Path) -> bool:
        return path.name.endswith(self.BACKUP_SUFFIX) and path.name.startswith(
            (self.BACKUP_PREFIX, self.RESTORE_POINT_PREFIX)
        )

    # =========================================================================
    # Metadata index
    # =========================================================================

    def _load_index(self) -> list[BackupRecord]:
        """Load the index, rebuilding it from the directory when unusable."""
        try:
            with open(self.index_path, encoding="utf-8") as f:
                entries = json.load(f)
            if not isinstance(entries, list):
                raise ValueError("index is not a list")
            records = [BackupRecord.from_dict(entry) for entry in entries]
        except FileNotFoundError:
            return self._rebuild_index()
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning(f"Backup index is unreadable, rebuilding: {e}")
            return self._rebuild_index()

        # Pick up files written without an index entry
        known = {r.filename for r in records}
        for path in self._scan_files():
            if path.name not in known:
                record = self._record_from_file(path)
                if record is not None:
                    records.append(record)
        return records

    def _rebuild_index(self) -> list[BackupRecord]:
        records = []
        for path in self._scan_files():
            record = self._record_from_file(path)
            if record is not None:
                records.append(record)
        if records:
            logger.info(f"Rebuilt backup index with {len(records)} record(s)")
        return records

    def _scan_files(self) -> list[Path]:
        try:
            return sorted(p for p in self.backup_dir.iterdir() if self._is_backup_file(p))
        except OSError as e:
            logger.warning(f"Could not scan backup directory {self.backup_dir}: {e}")
            return []

    def _record_from_file(self, path: Path) -> BackupRecord | None:
        """Build a record by reading a backup file header."""
        try:
            snapshot = Snapshot.from_json(path.read_bytes())
            size = path.stat().st_size
        except (OSError, InvalidSnapshotError) as e:
            logger.warning(f"Skipping unreadable backup file {path.name}: {e}")
            return None
        return BackupRecord(
            id=path.name,
            filename=path.name,
            size_bytes=size,
            created_at=snapshot.created_at,
            location=BackupLocation.LOCAL,
            is_restore_point=snapshot.is_restore_point,
        )

    def _save_index_quietly(self, records: list[BackupRecord]) -> None:
        """Write the index; failures only cost a rebuild on the next read."""
        content = json.dumps([r.to_dict() for r in records], indent=2).encode("utf-8")
        try:
            self._atomic_write(self.index_path, content)
        except OSError as e:
            logger.warning(f"Could not update backup index: {e}")

    def _atomic_write(self, path: Path, content: bytes) -> None:
        """Write content to path via a synced temporary file and rename."""
        fd, tmp_name = tempfile.mkstemp(
            dir=self.backup_dir, prefix=".tmp-", suffix=self.BACKUP_SUFFIX
        )
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, path)
        except OSError:
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
            raise


__all__ = [
    "BackupLocation",
    "BackupRecord",
    "LocalBackupStore",
    "DEFAULT_BACKUP_RETENTION",
    "DEFAULT_RESTORE_POINT_RETENTION",
]
