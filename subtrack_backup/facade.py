"""
Backup facade: the single entry point for backup, restore and sync actions.

The facade coordinates the snapshot builder, local store, remote client,
restore manager and import/export converter. It guarantees that at most one
backup, restore, import or clear-all runs at a time, tracks progress for
backups and restores, and turns every engine failure into an
OperationResult with a one-line summary instead of raising.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

from subtrack_backup.backup.converter import (
    ExportFormat,
    ImportExportConverter,
    subscription_rows,
)
from subtrack_backup.backup.errors import (
    BackupError,
    BackupIOError,
    NotFoundError,
    OperationInProgressError,
    RemoteNotConfiguredError,
    RemoteSyncError,
)
from subtrack_backup.backup.manager import BackupLocation, BackupRecord, LocalBackupStore
from subtrack_backup.backup.snapshot import SnapshotBuilder, decode_document
from subtrack_backup.daemon.scheduler import AutoBackupPolicy
from subtrack_backup.restore.manager import (
    RestoreManager,
    RestoreOutcome,
    RestoreSource,
    RestoreState,
)
from subtrack_backup.storage.db import (
    AppDatabase,
    SqliteCacheStore,
    SqliteSettingsStore,
    SqliteSubscriptionStore,
)
from subtrack_backup.storage.stores import CacheStore, SettingsStore, SubscriptionStore
from subtrack_backup.sync.remote import RemoteSyncClient
from subtrack_backup.utils.clock import Clock, SystemClock, ensure_utc

logger = logging.getLogger(__name__)

# Progress reported after each backup and restore step
BACKUP_PROGRESS = {
    "snapshot_built": 10,
    "local_written": 50,
    "uploaded": 70,
    "status_updated": 90,
    "done": 100,
}
RESTORE_PROGRESS = {
    RestoreState.VALIDATING: 20,
    RestoreState.CREATING_SAFETY_POINT: 40,
    RestoreState.APPLYING: 60,
    RestoreState.CLEARING_DERIVED_STATE: 80,
    RestoreState.DONE: 100,
}

EXPORT_FILE_PREFIX = "subtrack-export-"


class BackupTrigger(str, Enum):
    """What started a backup."""

    MANUAL = "manual"
    AUTO = "auto"


class BackupDestination(str, Enum):
    """Where a backup is written."""

    LOCAL = "local"
    CLOUD = "cloud"
    BOTH = "both"


@dataclass
class OperationResult:
    """
    Outcome of a facade operation.

    Attributes:
        operation: Operation name (backup, restore, import, ...)
        success: Whether the operation completed
        summary: One human-readable line describing the outcome
        value: Operation-specific result (record, outcome, path, list)
        warning: Non-fatal problem, such as a failed upload in a dual backup
        error: The engine error when success is False
    """

    operation: str
    success: bool
    summary: str
    value: Any = None
    warning: str | None = None
    error: BackupError | None = None


@dataclass
class SyncStatus:
    """Whether local and cloud backups are enabled, and when cloud last synced."""

    local: str
    cloud: str
    last_sync_at: datetime | None = None


@dataclass
class StorageInfo:
    """Counts and sizes of the data the engine manages."""

    subscription_count: int
    cache_entries: int
    backup_count: int
    backup_bytes: int


def format_size(size_bytes: int) -> str:
    """Human-readable byte size."""
    size = float(size_bytes)
    for unit in ("B", "KB", "MB"):
        if size < 1024 or unit == "MB":
            return f"{int(size)} {unit}" if unit == "B" else f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} MB"


def _plural(count: int, word: str) -> str:
    return f"{count} {word}{'' if count == 1 else 's'}"


class BackupFacade:
    """
    Single entry point for backup, restore, import/export and status.

    Usage:
        facade = BackupFacade.from_settings(settings)
        result = facade.perform_backup(destination=BackupDestination.BOTH)
        click.echo(result.summary)

        # Background
        future = facade.submit_restore(RestoreSource.LOCAL)
        result = future.result()

    Attributes:
        progress: Last reported progress (0-100) per operation kind
        error: The most recent failure, until cleared
        last_backup_at: When the last backup completed in this session
        last_restore_at: When the last restore completed in this session
    """

    def __init__(
        self,
        subscription_store: SubscriptionStore,
        settings_store: SettingsStore,
        cache_store: CacheStore,
        local_store: LocalBackupStore,
        remote: RemoteSyncClient | None = None,
        export_dir: Path | str | None = None,
        clock: Clock | None = None,
        platform_name: str | None = None,
        progress_callback: Callable[[str, int], None] | None = None,
    ):
        self.subscription_store = subscription_store
        self.settings_store = settings_store
        self.cache_store = cache_store
        self.local_store = local_store
        self.remote = remote
        self.export_dir = Path(export_dir) if export_dir else None
        self.clock = clock or SystemClock()
        self.progress_callback = progress_callback

        self.builder = SnapshotBuilder(
            subscription_store,
            settings_store,
            cache_store,
            clock=self.clock,
            platform_name=platform_name,
        )
        self.converter = ImportExportConverter(clock=self.clock)
        self.restore_manager = RestoreManager(
            self.builder,
            local_store,
            subscription_store,
            settings_store,
            cache_store,
            remote=remote,
            clock=self.clock,
            on_state_change=self._on_restore_state,
        )

        self.progress: dict[str, int] = {"backup": 0, "restore": 0}
        self.error: BackupError | None = None
        self.current_operation: str | None = None
        self.last_backup_at: datetime | None = None
        self.last_restore_at: datetime | None = None

        self._operation_lock = threading.Lock()
        self._executor: ThreadPoolExecutor | None = None

    @classmethod
    def from_settings(
        cls,
        settings,
        progress_callback: Callable[[str, int], None] | None = None,
    ) -> BackupFacade:
        """
        Build a facade over the SQLite stores described by EngineSettings.

        Raises:
            BackupIOError: If the backup directory cannot be created
        """
        try:
            Path(settings.database_path).parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise BackupIOError(f"Cannot create data directory: {e}") from e

        db = AppDatabase(str(settings.database_path))
        db.initialize()
        settings_store = SqliteSettingsStore(db)

        remote = None
        if settings.remote_url:
            remote = RemoteSyncClient(
                settings.remote_url,
                settings.remote_token,
                settings.remote_timeout,
                last_sync_at=settings_store.get_last_cloud_sync_at(),
            )

        return cls(
            SqliteSubscriptionStore(db),
            settings_store,
            SqliteCacheStore(db),
            LocalBackupStore(
                settings.backup_dir,
                retention_count=settings.backup_retention_count,
                restore_point_retention=settings.restore_point_retention_count,
            ),
            remote=remote,
            export_dir=settings.export_dir,
            platform_name=settings.platform_name,
            progress_callback=progress_callback,
        )

    # =========================================================================
    # Single-flight plumbing
    # =========================================================================

    @property
    def busy(self) -> bool:
        return self._operation_lock.locked()

    def _rejected(self, operation: str) -> OperationResult:
        error = OperationInProgressError(operation=operation)
        running = self.current_operation or "another operation"
        logger.info(f"Rejected {operation}: {running} is in progress")
        return OperationResult(
            operation=operation,
            success=False,
            summary=f"Cannot start {operation}: {running} is already running",
            error=error,
        )

    def _exclusive(self, operation: str, func: Callable[..., OperationResult], *args):
        if not self._operation_lock.acquire(blocking=False):
            return self._rejected(operation)
        try:
            return self._run_locked(operation, func, *args)
        finally:
            self._operation_lock.release()

    def _run_locked(self, operation: str, func, *args) -> OperationResult:
        self.current_operation = operation
        try:
            return self._guard(operation, func, *args)
        finally:
            self.current_operation = None

    def _submit(self, operation: str, func, *args) -> Future:
        if not self._operation_lock.acquire(blocking=False):
            future: Future = Future()
            future.set_result(self._rejected(operation))
            return future

        def run() -> OperationResult:
            try:
                return self._run_locked(operation, func, *args)
            finally:
                self._operation_lock.release()

        try:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=1, thread_name_prefix="subtrack-backup"
                )
            return self._executor.submit(run)
        except RuntimeError:
            self._operation_lock.release()
            raise

    def _guard(self, operation: str, func, *args) -> OperationResult:
        """Run func and convert any failure into a failed OperationResult."""
        try:
            result = func(*args)
        except BackupError as e:
            if e.operation is None:
                e.operation = operation
            logger.error(f"{operation.capitalize()} failed: {e}")
            return self._failure(operation, e)
        except Exception as e:
            logger.exception(f"Unexpected error during {operation}")
            error = BackupError(f"Unexpected error: {e}", operation=operation)
            return self._failure(operation, error)

        self.error = None
        return result

    def _failure(self, operation: str, error: BackupError) -> OperationResult:
        self.error = error
        return OperationResult(
            operation=operation,
            success=False,
            summary=error.user_message,
            error=error,
        )

    def shutdown(self, wait: bool = True) -> None:
        """Stop the background worker used by submit_backup/submit_restore."""
        if self._executor is not None:
            self._executor.shutdown(wait=wait)
            self._executor = None

    # =========================================================================
    # Progress
    # =========================================================================

    def _set_progress(self, kind: str, value: int) -> None:
        self.progress[kind] = value
        if self.progress_callback is not None:
            try:
                self.progress_callback(kind, value)
            except Exception as e:
                logger.warning(f"Progress callback failed: {e}")

    def _on_restore_state(self, state: RestoreState) -> None:
        if state in RESTORE_PROGRESS:
            self._set_progress("restore", RESTORE_PROGRESS[state])

    # =========================================================================
    # Backup
    # =========================================================================

    def perform_backup(
        self,
        trigger: BackupTrigger = BackupTrigger.MANUAL,
        destination: BackupDestination = BackupDestination.LOCAL,
    ) -> OperationResult:
        """
        Snapshot the stores and persist the snapshot.

        With destination BOTH the local write happens first; a failed upload
        then still yields success with a warning.
        """
        return self._exclusive(
            "backup", self._backup, BackupTrigger(trigger), BackupDestination(destination)
        )

    def submit_backup(
        self,
        trigger: BackupTrigger = BackupTrigger.MANUAL,
        destination: BackupDestination = BackupDestination.LOCAL,
    ) -> Future:
        """Run perform_backup on the background worker."""
        return self._submit(
            "backup", self._backup, BackupTrigger(trigger), BackupDestination(destination)
        )

    def run_auto_backup(self, policy: AutoBackupPolicy) -> bool:
        """Scheduler callback: run an automatic backup for the given policy."""
        destination = (
            BackupDestination.BOTH if policy.cloud_enabled else BackupDestination.LOCAL
        )
        result = self.perform_backup(BackupTrigger.AUTO, destination)
        if isinstance(result.error, OperationInProgressError):
            logger.info("Automatic backup skipped, another operation is running")
        return result.success

    def _backup(
        self, trigger: BackupTrigger, destination: BackupDestination
    ) -> OperationResult:
        self._set_progress("backup", 0)
        write_local = destination in (BackupDestination.LOCAL, BackupDestination.BOTH)
        upload = destination in (BackupDestination.CLOUD, BackupDestination.BOTH)

        if destination is BackupDestination.CLOUD and self.remote is None:
            raise RemoteNotConfiguredError(step="uploading")

        snapshot = self.builder.build()
        self._set_progress("backup", BACKUP_PROGRESS["snapshot_built"])

        local_record: BackupRecord | None = None
        if write_local:
            local_record = self.local_store.write(snapshot)
        self._set_progress("backup", BACKUP_PROGRESS["local_written"])

        cloud_record: BackupRecord | None = None
        warning = None
        if upload:
            try:
                if self.remote is None:
                    raise RemoteNotConfiguredError()
                cloud_record = self.remote.upload(snapshot)
            except RemoteSyncError as e:
                e.operation, e.step = "backup", "uploading"
                if destination is BackupDestination.CLOUD:
                    raise
                warning = f"Saved locally, but the cloud upload failed: {e}"
                logger.warning(warning)
            else:
                self._record_cloud_sync()
        self._set_progress("backup", BACKUP_PROGRESS["uploaded"])

        now = ensure_utc(self.clock.now())
        self.last_backup_at = now
        try:
            self.settings_store.set_last_run_at(now)
        except Exception as e:
            logger.warning(f"Could not record backup time: {e}")
        self._set_progress("backup", BACKUP_PROGRESS["status_updated"])

        record = local_record or cloud_record
        size = format_size(record.size_bytes) if record else "0 B"
        if local_record and cloud_record:
            where = "locally and to the cloud"
        elif cloud_record:
            where = "to the cloud"
        else:
            where = "locally"
        kind = "Automatic backup" if trigger is BackupTrigger.AUTO else "Backup"
        summary = f"{kind} saved {where} ({size})"

        self._set_progress("backup", BACKUP_PROGRESS["done"])
        logger.info(summary)
        return OperationResult("backup", True, summary, value=record, warning=warning)

    def _record_cloud_sync(self) -> None:
        synced_at = self.remote.last_sync_at if self.remote else None
        if synced_at is None:
            return
        try:
            self.settings_store.set_last_cloud_sync_at(synced_at)
        except Exception as e:
            logger.warning(f"Could not record cloud sync time: {e}")

    # =========================================================================
    # Restore
    # =========================================================================

    def restore_from_backup(
        self,
        source: RestoreSource = RestoreSource.LOCAL,
        backup_id: str | None = None,
    ) -> OperationResult:
        """Restore a local or cloud backup (the newest when backup_id is None)."""
        return self._exclusive("restore", self._restore, RestoreSource(source), backup_id)

    def submit_restore(
        self,
        source: RestoreSource = RestoreSource.LOCAL,
        backup_id: str | None = None,
    ) -> Future:
        """Run restore_from_backup on the background worker."""
        return self._submit("restore", self._restore, RestoreSource(source), backup_id)

    def undo_last_restore(self) -> OperationResult:
        """Restore the newest restore point."""
        return self._exclusive("restore", self._undo_restore)

    def cancel_restore(self) -> bool:
        """Cancel the running restore if it has not started writing stores."""
        return self.restore_manager.cancel()

    def _restore(self, source: RestoreSource, backup_id: str | None) -> OperationResult:
        self._set_progress("restore", 0)
        outcome = self.restore_manager.restore(source, backup_id)
        origin = "cloud" if source is RestoreSource.CLOUD else "local"
        return self._restored("restore", outcome, f"{origin} backup")

    def _undo_restore(self) -> OperationResult:
        record = self.local_store.latest_restore_point()
        if record is None:
            raise NotFoundError("There is no restore point to undo")
        self._set_progress("restore", 0)
        outcome = self.restore_manager.restore(RestoreSource.LOCAL, record.id)
        return self._restored("restore", outcome, "restore point")

    def _restored(
        self, operation: str, outcome: RestoreOutcome, origin: str
    ) -> OperationResult:
        self.last_restore_at = ensure_utc(self.clock.now())
        when = outcome.snapshot_created_at.strftime("%Y-%m-%d %H:%M")
        summary = (
            f"Restored {_plural(outcome.subscription_count, 'subscription')} "
            f"from {origin} of {when} UTC"
        )
        logger.info(f"{summary}; restore point {outcome.restore_point.id}")
        return OperationResult(operation, True, summary, value=outcome)

    # =========================================================================
    # Listing and deletion
    # =========================================================================

    def get_available_backups(
        self, location: BackupLocation | None = None
    ) -> OperationResult:
        """
        List backups newest first.

        With location None, local backups are always listed and cloud backups
        are added when a remote is configured; any cloud failure is a warning.
        """
        return self._guard("list", self._list_backups, location)

    def _list_backups(self, location: BackupLocation | None) -> OperationResult:
        location = BackupLocation(location) if location is not None else None
        records: list[BackupRecord] = []
        warning = None

        if location in (None, BackupLocation.LOCAL):
            records.extend(self.local_store.list())

        if location is BackupLocation.CLOUD:
            if self.remote is None:
                raise RemoteNotConfiguredError(step="listing")
            records.extend(self.remote.list())
        elif location is None and self.remote is not None:
            try:
                records.extend(self.remote.list())
            except BackupError as e:
                warning = f"Cloud backups unavailable: {e}"
                logger.warning(warning)

        records.sort(key=lambda r: r.created_at, reverse=True)
        summary = f"Found {_plural(len(records), 'backup')}"
        return OperationResult("list", True, summary, value=records, warning=warning)

    def delete_backup(self, backup_id: str) -> OperationResult:
        """Delete a local backup."""
        return self._guard("delete", self._delete_backup, backup_id)

    def _delete_backup(self, backup_id: str) -> OperationResult:
        self.local_store.delete(backup_id)
        return OperationResult("delete", True, f"Deleted backup {backup_id}")

    # =========================================================================
    # Import / export
    # =========================================================================

    def export_data(self, fmt: ExportFormat = ExportFormat.JSON) -> OperationResult:
        """Write the current data to a file in the exports directory."""
        return self._guard("export", self._export, ExportFormat(fmt))

    def _export(self, fmt: ExportFormat) -> OperationResult:
        if self.export_dir is None:
            raise BackupIOError("No export directory is configured", step="exporting")

        snapshot = self.builder.build()
        content = self.converter.export_snapshot(snapshot, fmt)
        stamp = ensure_utc(snapshot.created_at).strftime("%Y%m%dT%H%M%SZ")
        path = self.export_dir / f"{EXPORT_FILE_PREFIX}{stamp}.{fmt.value}"

        try:
            self.export_dir.mkdir(parents=True, exist_ok=True)
            path.write_bytes(content)
        except OSError as e:
            raise BackupIOError(f"Could not write {path}: {e}", step="exporting") from e

        count = len(subscription_rows(snapshot.payload.subscriptions))
        summary = (
            f"Exported {_plural(count, 'subscription')} as {fmt.value.upper()} "
            f"to {path} ({format_size(len(content))})"
        )
        logger.info(summary)
        return OperationResult("export", True, summary, value=path)

    def import_data(self, data: bytes, fmt: ExportFormat) -> OperationResult:
        """Parse an import file and restore it, creating a restore point first."""
        return self._exclusive("import", self._import, data, ExportFormat(fmt))

    def _import(self, data: bytes, fmt: ExportFormat) -> OperationResult:
        self._set_progress("restore", 0)
        snapshot = self.converter.parse_import(data, fmt)
        outcome = self.restore_manager.restore_snapshot(snapshot)
        self.last_restore_at = ensure_utc(self.clock.now())
        summary = (
            f"Imported {_plural(outcome.subscription_count, 'subscription')} "
            f"from {fmt.value.upper()}"
        )
        logger.info(f"{summary}; restore point {outcome.restore_point.id}")
        return OperationResult("import", True, summary, value=outcome)

    # =========================================================================
    # Clearing
    # =========================================================================

    def clear_all_data(self) -> OperationResult:
        """Erase subscriptions, settings and cache. Backups are kept."""
        return self._exclusive("clear", self._clear_all)

    def _clear_all(self) -> OperationResult:
        self.subscription_store.clear_all()
        self.settings_store.clear_all()
        self.cache_store.clear_all()
        kept = len(self.local_store.list())
        summary = f"Cleared all app data; {_plural(kept, 'backup')} kept"
        logger.info(summary)
        return OperationResult("clear", True, summary)

    def clear_cache(self) -> OperationResult:
        """Erase cached data only."""
        return self._guard("clear_cache", self._clear_cache)

    def _clear_cache(self) -> OperationResult:
        entries = self.cache_store.info().entry_count
        self.cache_store.clear_all()
        summary = f"Cleared {entries} cached {'entry' if entries == 1 else 'entries'}"
        return OperationResult("clear_cache", True, summary)

    # =========================================================================
    # Status
    # =========================================================================

    def get_sync_status(self) -> SyncStatus:
        """
        Recompute local and cloud backup status from the settings store.

        Raises:
            BackupError: If the settings store cannot be read
        """
        return self._read_status(self._sync_status)

    def _sync_status(self) -> SyncStatus:
        policy = self.settings_store.get_backup_policy()
        cloud_on = policy.cloud_enabled and self.remote is not None
        return SyncStatus(
            local="enabled" if policy.enabled else "disabled",
            cloud="enabled" if cloud_on else "disabled",
            last_sync_at=self.settings_store.get_last_cloud_sync_at(),
        )

    def get_storage_info(self) -> StorageInfo:
        """
        Count stored subscriptions, cache entries and local backups.

        Raises:
            BackupError: If a store or the backup directory cannot be read
        """
        return self._read_status(self._storage_info)

    def _storage_info(self) -> StorageInfo:
        document = self.subscription_store.export_all()
        subscriptions = subscription_rows(decode_document(document, "Subscriptions"))
        backups = self.local_store.list()
        return StorageInfo(
            subscription_count=len(subscriptions),
            cache_entries=self.cache_store.info().entry_count,
            backup_count=len(backups),
            backup_bytes=sum(r.size_bytes for r in backups),
        )

    def _read_status(self, func: Callable[[], Any]) -> Any:
        try:
            return func()
        except BackupError as e:
            e.operation = e.operation or "status"
            raise
        except Exception as e:
            logger.exception(f"Status read failed: {e}")
            raise BackupError(f"Unexpected error: {e}", operation="status") from e

    def clear_error(self) -> None:
        self.error = None


__all__ = [
    "BackupDestination",
    "BackupFacade",
    "BackupTrigger",
    "OperationResult",
    "RestoreSource",
    "StorageInfo",
    "SyncStatus",
    "format_size",
]
