"""
Restore of snapshots into the domain stores.

A restore runs as a small state machine:

    IDLE -> VALIDATING -> CREATING_SAFETY_POINT -> APPLYING
         -> CLEARING_DERIVED_STATE -> DONE

with FAILED reachable from every step and CANCELLED reachable before any
store has been written. The current state is written to local storage as a
restore point before anything is applied, so an unwanted restore can be
undone by restoring that point.

Stores are applied one after another and are not rolled back together: if
applying fails partway the stores are left mixed and the restore point is
the recovery path.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from subtrack_backup.backup.errors import (
    BackupError,
    NotFoundError,
    RemoteNotConfiguredError,
    RestoreApplyError,
    RestoreCancelledError,
    SafetyPointError,
)
from subtrack_backup.backup.manager import BackupRecord, LocalBackupStore
from subtrack_backup.backup.snapshot import (
    Snapshot,
    SnapshotBuilder,
    encode_document,
    validate_snapshot,
)
from subtrack_backup.storage.stores import CacheStore, SettingsStore, SubscriptionStore
from subtrack_backup.sync.remote import RemoteSyncClient
from subtrack_backup.utils.clock import Clock, SystemClock, ensure_utc

logger = logging.getLogger(__name__)


class RestoreSource(str, Enum):
    """Where a restore reads its snapshot from."""

    LOCAL = "local"
    CLOUD = "cloud"


class RestoreState(str, Enum):
    """Steps of a restore run."""

    IDLE = "idle"
    VALIDATING = "validating"
    CREATING_SAFETY_POINT = "creating_safety_point"
    APPLYING = "applying"
    CLEARING_DERIVED_STATE = "clearing_derived_state"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class RestoreOutcome:
    """
    Result of a completed restore.

    Attributes:
        snapshot_created_at: Creation time of the restored snapshot
        restore_point: Record of the safety snapshot taken beforehand
        applied: Names of the stores that were written, in order
        cache_restored: Whether the cache was restored from the snapshot
        subscription_count: Number of subscriptions in the restored snapshot
    """

    snapshot_created_at: datetime
    restore_point: BackupRecord
    applied: tuple[str, ...] = ()
    cache_restored: bool = False
    subscription_count: int = 0


@dataclass
class RestoreProgress:
    """Current state of the manager, plus the failure if it ended in FAILED."""

    state: RestoreState = RestoreState.IDLE
    failed_step: RestoreState | None = None
    error: BackupError | None = None
    history: list[RestoreState] = field(default_factory=list)


def _count_subscriptions(document) -> int:
    if isinstance(document, dict):
        rows = document.get("subscriptions")
        return len(rows) if isinstance(rows, list) else 0
    if isinstance(document, list):
        return len(document)
    return 0


class RestoreManager:
    """
    Validates snapshots and applies them to the domain stores.

    Usage:
        manager = RestoreManager(builder, local_store, subs, settings, cache)
        outcome = manager.restore(RestoreSource.LOCAL)

        # Undo
        manager.restore(RestoreSource.LOCAL, outcome.restore_point.id)
    """

    def __init__(
        self,
        builder: SnapshotBuilder,
        local_store: LocalBackupStore,
        subscription_store: SubscriptionStore,
        settings_store: SettingsStore,
        cache_store: CacheStore,
        remote: RemoteSyncClient | None = None,
        clock: Clock | None = None,
        on_state_change: Callable[[RestoreState], None] | None = None,
    ):
        self.builder = builder
        self.local_store = local_store
        self.subscription_store = subscription_store
        self.settings_store = settings_store
        self.cache_store = cache_store
        self.remote = remote
        self.clock = clock or SystemClock()
        self.on_state_change = on_state_change
        self.progress = RestoreProgress()
        self._cancel_requested = threading.Event()
        self._lock = threading.Lock()

    @property
    def state(self) -> RestoreState:
        return self.progress.state

    def cancel(self) -> bool:
        """
        Request cancellation of the running restore.

        Returns:
            True if the request was accepted, False once stores are being
            written or no restore is running
        """
        with self._lock:
            if self.progress.state in (
                RestoreState.VALIDATING,
                RestoreState.CREATING_SAFETY_POINT,
            ):
                self._cancel_requested.set()
                logger.info("Restore cancellation requested")
                return True
        return False

    def restore(
        self, source: RestoreSource, backup_id: str | None = None
    ) -> RestoreOutcome:
        """
        Restore from local storage or the cloud.

        Args:
            source: Where to read the snapshot from
            backup_id: Backup to restore, or None for the newest

        Returns:
            RestoreOutcome describing what was applied

        Raises:
            NotFoundError: If the backup does not exist
            InvalidSnapshotError: If the snapshot fails validation
            SafetyPointError: If the restore point could not be written
            RestoreApplyError: If a store rejected the restored data
            RestoreCancelledError: If cancel() was called in time
        """
        source = RestoreSource(source)
        self._begin()
        try:
            self._set_state(RestoreState.VALIDATING)
            snapshot = self._fetch(source, backup_id)
            return self._run(snapshot)
        except BackupError as e:
            self._fail(e)
            raise
        except Exception as e:
            error = self._unexpected(e)
            self._fail(error)
            raise error from e

    def restore_snapshot(self, snapshot: Snapshot) -> RestoreOutcome:
        """Restore a snapshot already in memory, such as a parsed import."""
        self._begin()
        try:
            self._set_state(RestoreState.VALIDATING)
            return self._run(snapshot)
        except BackupError as e:
            self._fail(e)
            raise
        except Exception as e:
            error = self._unexpected(e)
            self._fail(error)
            raise error from e

    # =========================================================================
    # Steps
    # =========================================================================

    def _fetch(self, source: RestoreSource, backup_id: str | None) -> Snapshot:
        if source is RestoreSource.CLOUD:
            if self.remote is None:
                raise RemoteNotConfiguredError(step="validating")
            return self.remote.download(backup_id)

        if backup_id is None:
            record = self.local_store.latest()
            if record is None:
                raise NotFoundError("There are no local backups to restore")
            backup_id = record.id
        return self.local_store.read(backup_id)

    def _run(self, snapshot: Snapshot) -> RestoreOutcome:
        validate_snapshot(snapshot)
        self._check_cancelled()

        self._set_state(RestoreState.CREATING_SAFETY_POINT)
        restore_point = self._create_safety_point()
        self._check_cancelled()

        self._set_state(RestoreState.APPLYING)
        try:
            include_cache = self.settings_store.include_cache()
        except Exception as e:
            raise RestoreApplyError(
                f"Could not read backup settings: {e}", step="applying"
            ) from e
        restore_cache = include_cache and snapshot.payload.cache is not None
        applied = self._apply(snapshot, restore_cache)

        self._set_state(RestoreState.CLEARING_DERIVED_STATE)
        if not restore_cache:
            try:
                self.cache_store.clear_all()
            except Exception as e:
                raise RestoreApplyError(
                    f"Could not clear cached data: {e}",
                    applied=applied,
                    step="clearing_derived_state",
                ) from e

        try:
            self.settings_store.set_last_restored_at(ensure_utc(self.clock.now()))
        except Exception as e:
            logger.warning(f"Could not record restore time: {e}")
        self._set_state(RestoreState.DONE)

        logger.info(
            f"Restored snapshot from {snapshot.created_at.isoformat()} "
            f"({', '.join(applied)})"
        )
        return RestoreOutcome(
            snapshot_created_at=snapshot.created_at,
            restore_point=restore_point,
            applied=applied,
            cache_restored=restore_cache,
            subscription_count=_count_subscriptions(snapshot.payload.subscriptions),
        )

    def _create_safety_point(self) -> BackupRecord:
        try:
            current = self.builder.build(is_restore_point=True)
            record = self.local_store.write(current)
        except Exception as e:
            logger.error(f"Could not create restore point: {e}")
            raise SafetyPointError(
                f"Could not save the current data before restoring: {e}",
                step="creating_safety_point",
            ) from e
        logger.info(f"Created restore point {record.id}")
        return record

    def _apply(self, snapshot: Snapshot, restore_cache: bool) -> tuple[str, ...]:
        steps = [
            ("subscriptions", self.subscription_store, snapshot.payload.subscriptions),
        ]
        # Imports that carry no settings leave the stored ones untouched
        if snapshot.payload.settings is not None:
            steps.append(("settings", self.settings_store, snapshot.payload.settings))
        if restore_cache:
            steps.append(("cache", self.cache_store, snapshot.payload.cache))

        applied: list[str] = []
        for name, store, document in steps:
            try:
                store.import_all(encode_document(document))
            except Exception as e:
                logger.error(
                    f"Failed to apply {name} (already applied: "
                    f"{', '.join(applied) or 'none'}): {e}"
                )
                raise RestoreApplyError(
                    f"Could not restore {name}: {e}",
                    applied=tuple(applied),
                    step="applying",
                ) from e
            applied.append(name)
            logger.debug(f"Applied {name}")
        return tuple(applied)

    # =========================================================================
    # State tracking
    # =========================================================================

    def _begin(self) -> None:
        self._cancel_requested.clear()
        self.progress = RestoreProgress()

    def _check_cancelled(self) -> None:
        if self._cancel_requested.is_set():
            raise RestoreCancelledError(step=self.progress.state.value)

    def _set_state(self, state: RestoreState) -> None:
        with self._lock:
            self.progress.state = state
            self.progress.history.append(state)
        logger.debug(f"Restore state: {state.value}")
        if self.on_state_change is not None:
            self.on_state_change(state)

    def _unexpected(self, error: Exception) -> BackupError:
        logger.exception(f"Unexpected error during restore: {error}")
        return BackupError(
            f"Unexpected error: {error}", step=self.progress.state.value
        )

    def _fail(self, error: BackupError) -> None:
        failed_step = self.progress.state
        if error.step is None and failed_step is not RestoreState.IDLE:
            error.step = failed_step.value
        error.operation = error.operation or "restore"
        self.progress.failed_step = failed_step
        self.progress.error = error
        terminal = (
            RestoreState.CANCELLED
            if isinstance(error, RestoreCancelledError)
            else RestoreState.FAILED
        )
        self._set_state(terminal)


__all__ = [
    "RestoreManager",
    "RestoreOutcome",
    "RestoreProgress",
    "RestoreSource",
    "RestoreState",
]
