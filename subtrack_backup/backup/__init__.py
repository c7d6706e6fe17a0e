"""
Snapshot creation, local backup storage and import/export.

This package builds snapshots of the domain stores, persists them as local
backup files with retention, and converts them to and from export files.
"""

from subtrack_backup.backup.converter import ExportFormat, ImportExportConverter
from subtrack_backup.backup.manager import BackupLocation, BackupRecord, LocalBackupStore
from subtrack_backup.backup.snapshot import Snapshot, SnapshotBuilder

__all__ = [
    "BackupLocation",
    "BackupRecord",
    "ExportFormat",
    "ImportExportConverter",
    "LocalBackupStore",
    "Snapshot",
    "SnapshotBuilder",
]
