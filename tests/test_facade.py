"""
Tests for the backup facade.

Covers single-flight execution, progress reporting, dual local and cloud
backups, restore and undo, listing, import/export, clearing and status.
"""

import json
import sqlite3
import threading
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest

from subtrack_backup.backup.converter import ExportFormat
from subtrack_backup.backup.errors import (
    BackupError,
    InvalidSnapshotError,
    NetworkError,
    NotFoundError,
    OperationInProgressError,
    RemoteNotConfiguredError,
    RemoteRejectedError,
)
from subtrack_backup.backup.manager import BackupLocation, BackupRecord
from subtrack_backup.config.loader import EngineSettings
from subtrack_backup.daemon.scheduler import AutoBackupPolicy, BackupFrequency
from subtrack_backup.facade import (
    BackupDestination,
    BackupFacade,
    BackupTrigger,
    RestoreSource,
    format_size,
)
from subtrack_backup.restore.manager import RestoreOutcome

START_TIME = datetime(2026, 10, 17, 10, 30, tzinfo=timezone.utc)


def cloud_record(backup_id="cloud-1", created_at=START_TIME):
    return BackupRecord(
        id=backup_id,
        filename=f"{backup_id}.json",
        size_bytes=100,
        created_at=created_at,
        location=BackupLocation.CLOUD,
    )


@pytest.fixture
def remote(clock):
    mock = MagicMock()
    mock.upload.return_value = cloud_record()
    mock.last_sync_at = clock.now()
    mock.list.return_value = []
    return mock


@pytest.fixture
def make_facade(
    subscription_store, settings_store, cache_store, local_store, clock, tmp_path
):
    created = []

    def factory(**kwargs):
        kwargs.setdefault("export_dir", tmp_path / "exports")
        kwargs.setdefault("clock", clock)
        facade = BackupFacade(
            subscription_store, settings_store, cache_store, local_store, **kwargs
        )
        created.append(facade)
        return facade

    yield factory
    for facade in created:
        facade.shutdown()


@pytest.fixture
def with_data(subscription_store, settings_store, cache_store):
    subscription_store.add_subscription(id="s1", name="Netflix", amount=15.49)
    subscription_store.add_subscription(id="s2", name="Spotify", amount=10.99)
    settings_store.set_setting("theme", "dark")
    cache_store.put("rates", {"EUR": 0.92})


class TestFormatSize:
    """Tests for format_size."""

    @pytest.mark.parametrize(
        "size, expected",
        [(0, "0 B"), (512, "512 B"), (2048, "2.0 KB"), (5 * 1024 * 1024, "5.0 MB")],
    )
    def test_format_size(self, size, expected):
        """Test human-readable sizes."""
        assert format_size(size) == expected


class TestBackup:
    """Tests for perform_backup."""

    def test_local_backup(self, facade, with_data, local_store):
        """Test a manual local backup."""
        result = facade.perform_backup()

        assert result.success is True
        assert result.operation == "backup"
        assert result.summary.startswith("Backup saved locally (")
        assert result.value == local_store.latest()
        assert facade.last_backup_at == START_TIME
        assert facade.error is None

    def test_backup_records_last_run(self, facade, settings_store):
        """Test that completing a backup stores the run time."""
        facade.perform_backup()
        assert settings_store.get_backup_policy().last_run_at == START_TIME

    def test_backup_progress(self, make_facade):
        """Test the progress milestones of a backup."""
        reported = []
        facade = make_facade(progress_callback=lambda kind, value: reported.append(value))

        facade.perform_backup()

        assert reported == [0, 10, 50, 70, 90, 100]
        assert facade.progress["backup"] == 100

    def test_failing_progress_callback_is_ignored(self, make_facade):
        """Test that a broken progress callback does not fail the backup."""
        facade = make_facade(progress_callback=MagicMock(side_effect=RuntimeError))
        assert facade.perform_backup().success is True

    def test_both_destinations(self, make_facade, remote, settings_store, local_store):
        """Test backing up locally and to the cloud."""
        facade = make_facade(remote=remote)

        result = facade.perform_backup(destination=BackupDestination.BOTH)

        assert result.success is True
        assert "locally and to the cloud" in result.summary
        assert result.warning is None
        remote.upload.assert_called_once()
        assert len(local_store.list()) == 1
        assert settings_store.get_last_cloud_sync_at() == START_TIME

    def test_both_with_failed_upload(self, make_facade, remote, local_store, settings_store):
        """Test that a failed upload still keeps the local backup."""
        remote.upload.side_effect = NetworkError("connection refused")
        facade = make_facade(remote=remote)

        result = facade.perform_backup(destination=BackupDestination.BOTH)

        assert result.success is True
        assert result.summary.startswith("Backup saved locally")
        assert "cloud upload failed" in result.warning
        assert "connection refused" in result.warning
        assert len(local_store.list()) == 1
        assert settings_store.get_last_cloud_sync_at() is None

    def test_both_without_remote(self, facade, local_store):
        """Test that BOTH without a configured remote warns."""
        result = facade.perform_backup(destination=BackupDestination.BOTH)

        assert result.success is True
        assert "not configured" in result.warning
        assert len(local_store.list()) == 1

    def test_cloud_only(self, make_facade, remote, local_store):
        """Test a cloud-only backup writes no local file."""
        facade = make_facade(remote=remote)

        result = facade.perform_backup(destination=BackupDestination.CLOUD)

        assert result.success is True
        assert "to the cloud" in result.summary
        assert result.value.location == BackupLocation.CLOUD
        assert local_store.list() == []

    def test_cloud_only_failure(self, make_facade, remote):
        """Test that a failed cloud-only backup fails."""
        remote.upload.side_effect = RemoteRejectedError("quota exceeded", status_code=413)
        facade = make_facade(remote=remote)

        result = facade.perform_backup(destination="cloud")

        assert result.success is False
        assert isinstance(result.error, RemoteRejectedError)
        assert result.error.step == "uploading"
        assert result.summary == "Backup (uploading) failed: quota exceeded"
        assert facade.error is result.error

    def test_cloud_without_remote(self, facade):
        """Test that a cloud backup without a remote fails before building."""
        result = facade.perform_backup(destination=BackupDestination.CLOUD)

        assert result.success is False
        assert isinstance(result.error, RemoteNotConfiguredError)

    def test_snapshot_failure(self, facade, subscription_store, local_store):
        """Test that an unreadable store fails the backup and writes nothing."""
        with patch.object(
            subscription_store, "export_all", side_effect=RuntimeError("db locked")
        ):
            result = facade.perform_backup()

        assert result.success is False
        assert result.error.step == "building_snapshot"
        assert result.summary.startswith("Backup (building snapshot) failed")
        assert local_store.list() == []

    def test_unexpected_error_is_wrapped(self, facade):
        """Test that non-engine exceptions become a generic BackupError."""
        with patch.object(facade.local_store, "write", side_effect=KeyError("x")):
            result = facade.perform_backup()

        assert result.success is False
        assert type(result.error) is BackupError
        assert "Unexpected error" in result.summary

    def test_success_clears_previous_error(self, facade):
        """Test that a successful operation clears the error slot."""
        facade.perform_backup(destination=BackupDestination.CLOUD)
        assert facade.error is not None

        facade.perform_backup()
        assert facade.error is None


class TestSingleFlight:
    """Tests that only one backup, restore, import or clear runs at a time."""

    def test_second_operation_rejected_while_running(
        self, facade, subscription_store, local_store
    ):
        """Test that a request during a running backup is rejected."""
        started = threading.Event()
        release = threading.Event()
        original_export = subscription_store.export_all

        def slow_export():
            started.set()
            release.wait(5)
            return original_export()

        with patch.object(subscription_store, "export_all", side_effect=slow_export):
            future = facade.submit_backup()
            assert started.wait(5)

            assert facade.busy is True
            rejected_backup = facade.perform_backup()
            rejected_restore = facade.restore_from_backup()
            rejected_clear = facade.clear_all_data()
            queued_restore = facade.submit_restore()

            release.set()
            result = future.result(timeout=5)

        for rejected in (rejected_backup, rejected_restore, rejected_clear):
            assert rejected.success is False
            assert isinstance(rejected.error, OperationInProgressError)
            assert "backup is already running" in rejected.summary

        assert queued_restore.done()
        assert isinstance(queued_restore.result().error, OperationInProgressError)

        assert result.success is True
        assert facade.error is None
        assert len(local_store.list()) == 1
        assert facade.busy is False

    def test_non_exclusive_operations_allowed(self, facade, subscription_store):
        """Test that listing and export still work during a backup."""
        started = threading.Event()
        release = threading.Event()
        original_export = subscription_store.export_all
        calls = []

        def slow_first_export():
            calls.append(1)
            if len(calls) == 1:
                started.set()
                release.wait(5)
            return original_export()

        with patch.object(
            subscription_store, "export_all", side_effect=slow_first_export
        ):
            future = facade.submit_backup()
            assert started.wait(5)
            listing = facade.get_available_backups()
            release.set()
            future.result(timeout=5)

        assert listing.success is True

    def test_lock_released_after_failure(self, facade):
        """Test that a failed operation does not keep the lock."""
        facade.perform_backup(destination=BackupDestination.CLOUD)
        assert facade.busy is False
        assert facade.perform_backup().success is True

    def test_submit_after_shutdown_restarts_worker(self, facade):
        """Test that the worker is recreated after shutdown."""
        assert facade.submit_backup().result(timeout=5).success is True
        facade.shutdown()
        assert facade.submit_backup().result(timeout=5).success is True


class TestAutoBackup:
    """Tests for the scheduler callback."""

    def test_local_policy(self, facade, local_store):
        """Test an automatic local backup."""
        policy = AutoBackupPolicy(enabled=True, frequency=BackupFrequency.DAILY)

        assert facade.run_auto_backup(policy) is True
        assert len(local_store.list()) == 1

    def test_cloud_policy_uses_both(self, make_facade, remote, local_store):
        """Test that cloud-enabled policies back up to both destinations."""
        facade = make_facade(remote=remote)
        policy = AutoBackupPolicy(enabled=True, cloud_enabled=True)

        assert facade.run_auto_backup(policy) is True
        remote.upload.assert_called_once()
        assert len(local_store.list()) == 1

    def test_auto_summary(self, facade):
        """Test that automatic backups are labelled as such."""
        with patch.object(facade, "perform_backup", wraps=facade.perform_backup) as spy:
            facade.run_auto_backup(AutoBackupPolicy(enabled=True))
        spy.assert_called_once_with(BackupTrigger.AUTO, BackupDestination.LOCAL)


class TestRestore:
    """Tests for restore_from_backup and undo_last_restore."""

    def test_restore_and_undo(self, facade, with_data, subscription_store, clock):
        """Test restoring a backup and then undoing it."""
        backup = facade.perform_backup()
        subscription_store.add_subscription(id="s3", name="Hulu")
        clock.advance(hours=1)

        result = facade.restore_from_backup(RestoreSource.LOCAL)

        assert result.success is True
        assert isinstance(result.value, RestoreOutcome)
        assert result.summary == (
            "Restored 2 subscriptions from local backup of 2026-10-17 10:30 UTC"
        )
        assert subscription_store.count() == 2
        assert facade.last_restore_at == clock.now()

        clock.advance(minutes=5)
        undo = facade.undo_last_restore()

        assert undo.success is True
        assert "from restore point" in undo.summary
        assert subscription_store.count() == 3
        assert backup.success

    def test_restore_progress(self, make_facade, local_store, snapshot_factory):
        """Test the progress milestones of a restore."""
        local_store.write(snapshot_factory())
        reported = []
        facade = make_facade(
            progress_callback=lambda kind, value: reported.append((kind, value))
        )

        facade.restore_from_backup()

        assert [v for k, v in reported if k == "restore"] == [0, 20, 40, 60, 80, 100]

    def test_restore_without_backups(self, facade):
        """Test that restoring with no backups fails with a readable summary."""
        result = facade.restore_from_backup()

        assert result.success is False
        assert isinstance(result.error, NotFoundError)
        assert result.summary == (
            "Restore (validating) failed: There are no local backups to restore"
        )

    def test_undo_without_restore_point(self, facade):
        """Test that undo without a restore point fails."""
        result = facade.undo_last_restore()

        assert result.success is False
        assert "no restore point" in result.summary

    def test_submit_restore(self, facade, local_store, snapshot_factory):
        """Test running a restore on the background worker."""
        local_store.write(snapshot_factory())

        result = facade.submit_restore().result(timeout=5)

        assert result.success is True
        assert facade.progress["restore"] == 100

    def test_cloud_restore(self, make_facade, remote, snapshot_factory, subscription_store):
        """Test restoring the latest cloud backup."""
        remote.download.return_value = snapshot_factory(
            subscriptions=[{"name": "From Cloud"}]
        )
        facade = make_facade(remote=remote)

        result = facade.restore_from_backup(RestoreSource.CLOUD)

        assert result.success is True
        assert "from cloud backup" in result.summary
        assert [s["name"] for s in subscription_store.list_subscriptions()] == [
            "From Cloud"
        ]

    def test_cancel_restore_when_idle(self, facade):
        """Test that cancel is refused when no restore is running."""
        assert facade.cancel_restore() is False


class TestListing:
    """Tests for get_available_backups and delete_backup."""

    def test_local_listing(self, facade, clock):
        """Test listing local backups newest first."""
        facade.perform_backup()
        clock.advance(hours=1)
        facade.perform_backup()

        result = facade.get_available_backups(BackupLocation.LOCAL)

        assert result.summary == "Found 2 backups"
        assert result.value[0].created_at > result.value[1].created_at

    def test_combined_listing(self, make_facade, remote, clock):
        """Test that local and cloud backups are merged by time."""
        remote.list.return_value = [
            cloud_record("cloud-new", START_TIME + timedelta(days=1))
        ]
        facade = make_facade(remote=remote)
        facade.perform_backup()

        result = facade.get_available_backups()

        assert [r.location for r in result.value] == [
            BackupLocation.CLOUD,
            BackupLocation.LOCAL,
        ]

    def test_cloud_listing_failure_is_warning(self, make_facade, remote):
        """Test that an unreachable remote only warns in the combined listing."""
        remote.list.side_effect = NetworkError("offline")
        facade = make_facade(remote=remote)
        facade.perform_backup()

        result = facade.get_available_backups()

        assert result.success is True
        assert len(result.value) == 1
        assert "offline" in result.warning

    def test_missing_cloud_listing_is_warning(self, make_facade, remote):
        """Test that a 404 from the remote still lists the local backups."""
        remote.list.side_effect = NotFoundError("Backup list not found")
        facade = make_facade(remote=remote)
        local = facade.perform_backup(destination=BackupDestination.LOCAL).value

        result = facade.get_available_backups()

        assert result.success is True
        assert result.value == [local]
        assert result.warning.startswith("Cloud backups unavailable")
        assert facade.error is None

    def test_malformed_cloud_listing_is_warning(self, make_facade, remote):
        """Test that an unreadable remote listing only warns."""
        remote.list.side_effect = InvalidSnapshotError("Unexpected backup list")
        facade = make_facade(remote=remote)
        facade.perform_backup(destination=BackupDestination.LOCAL)

        result = facade.get_available_backups()

        assert result.success is True
        assert len(result.value) == 1
        assert "Unexpected backup list" in result.warning

    def test_cloud_listing_without_remote(self, facade):
        """Test that listing cloud backups without a remote fails."""
        result = facade.get_available_backups(BackupLocation.CLOUD)

        assert result.success is False
        assert isinstance(result.error, RemoteNotConfiguredError)

    def test_delete(self, facade, local_store):
        """Test deleting a local backup."""
        record = facade.perform_backup().value

        result = facade.delete_backup(record.id)

        assert result.success is True
        assert result.summary == f"Deleted backup {record.id}"
        assert local_store.list() == []

    def test_delete_unknown(self, facade):
        """Test deleting an unknown backup fails."""
        result = facade.delete_backup("subtrack-backup-nope.json")
        assert result.success is False
        assert isinstance(result.error, NotFoundError)


class TestImportExport:
    """Tests for export_data and import_data."""

    def test_export_json(self, facade, with_data, tmp_path):
        """Test exporting JSON to the exports directory."""
        result = facade.export_data(ExportFormat.JSON)

        assert result.success is True
        path = result.value
        assert path == tmp_path / "exports" / "subtrack-export-20261017T103000Z.json"
        document = json.loads(path.read_bytes())
        assert len(document["payload"]["subscriptions"]["subscriptions"]) == 2
        assert "Exported 2 subscriptions as JSON" in result.summary

    def test_export_csv(self, facade, with_data):
        """Test exporting CSV."""
        result = facade.export_data("csv")

        lines = result.value.read_text().splitlines()
        assert lines[0].startswith("Name,Category,Amount")
        assert len(lines) == 3

    def test_export_without_directory(self, make_facade):
        """Test that export without a directory fails."""
        facade = make_facade(export_dir=None)

        result = facade.export_data()

        assert result.success is False
        assert result.error.step == "exporting"

    def test_import_csv(self, facade, with_data, subscription_store, local_store):
        """Test importing CSV replaces subscriptions and keeps a restore point."""
        data = (
            "Name,Category,Amount,Currency,Billing Cycle,Next Payment,Status,Notes\n"
            "Hulu,Video,7.99,USD,monthly,2026-11-02,Active,\n"
        ).encode()

        result = facade.import_data(data, ExportFormat.CSV)

        assert result.success is True
        assert result.summary == "Imported 1 subscription from CSV"
        assert [s["name"] for s in subscription_store.list_subscriptions()] == ["Hulu"]
        assert local_store.latest_restore_point() is not None

    def test_import_csv_keeps_settings(
        self, facade, with_data, settings_store, subscription_store
    ):
        """Test that a CSV import leaves theme and backup policy alone."""
        settings_store.update_backup_settings(auto_backup=True, frequency="hourly")
        data = (
            "Name,Category,Amount,Currency,Billing Cycle,Next Payment,Status,Notes\n"
            "Hulu,Video,7.99,USD,monthly,2026-11-02,Active,\n"
        ).encode()

        result = facade.import_data(data, ExportFormat.CSV)

        assert result.success is True
        assert result.value.applied == ("subscriptions",)
        assert subscription_store.count() == 1
        assert settings_store.get_setting("theme") == "dark"
        policy = settings_store.get_backup_policy()
        assert policy.enabled is True
        assert policy.frequency is BackupFrequency.HOURLY

    def test_import_json_export(self, facade, with_data, subscription_store):
        """Test that a JSON export imports back."""
        exported = facade.export_data(ExportFormat.JSON).value.read_bytes()
        subscription_store.clear_all()

        result = facade.import_data(exported, ExportFormat.JSON)

        assert result.success is True
        assert subscription_store.count() == 2

    def test_import_bad_file(self, facade, with_data, subscription_store, local_store):
        """Test that a malformed import changes nothing."""
        result = facade.import_data(b"Name,Price\nHulu,7\n", ExportFormat.CSV)

        assert result.success is False
        assert result.error.operation == "import"
        assert "line 1" in result.summary
        assert subscription_store.count() == 2
        assert local_store.latest_restore_point() is None


class TestClearing:
    """Tests for clear_all_data and clear_cache."""

    def test_clear_all_keeps_backups(
        self, facade, with_data, subscription_store, settings_store, cache_store
    ):
        """Test that clear_all erases the stores but not the backups."""
        facade.perform_backup()

        result = facade.clear_all_data()

        assert result.success is True
        assert result.summary == "Cleared all app data; 1 backup kept"
        assert subscription_store.count() == 0
        assert settings_store.get_setting("theme") is None
        assert cache_store.info().entry_count == 0

        assert facade.restore_from_backup().success is True
        assert subscription_store.count() == 2

    def test_clear_cache(self, facade, with_data, cache_store, subscription_store):
        """Test that clear_cache only touches the cache."""
        result = facade.clear_cache()

        assert result.summary == "Cleared 1 cached entry"
        assert cache_store.info().entry_count == 0
        assert subscription_store.count() == 2


class TestStatus:
    """Tests for get_sync_status and get_storage_info."""

    def test_sync_status_defaults(self, facade):
        """Test status with automatic and cloud backups off."""
        status = facade.get_sync_status()

        assert status.local == "disabled"
        assert status.cloud == "disabled"
        assert status.last_sync_at is None

    def test_sync_status_reflects_settings(self, make_facade, remote, settings_store):
        """Test that status is recomputed from the settings store."""
        facade = make_facade(remote=remote)
        settings_store.update_backup_settings(auto_backup=True, cloud_backup=True)
        settings_store.set_last_cloud_sync_at(START_TIME)

        status = facade.get_sync_status()

        assert status.local == "enabled"
        assert status.cloud == "enabled"
        assert status.last_sync_at == START_TIME

    def test_cloud_disabled_without_remote(self, facade, settings_store):
        """Test that cloud reads disabled when no remote is configured."""
        settings_store.update_backup_settings(cloud_backup=True)
        assert facade.get_sync_status().cloud == "disabled"

    def test_storage_info(self, facade, with_data):
        """Test counting data and backups."""
        record = facade.perform_backup().value

        info = facade.get_storage_info()

        assert info.subscription_count == 2
        assert info.cache_entries == 1
        assert info.backup_count == 1
        assert info.backup_bytes == record.size_bytes

    def test_sync_status_store_error(self, facade, settings_store):
        """Test that a database error surfaces as a BackupError."""
        with patch.object(
            settings_store,
            "get_backup_policy",
            side_effect=sqlite3.OperationalError("database is locked"),
        ):
            with pytest.raises(BackupError) as exc_info:
                facade.get_sync_status()

        assert exc_info.value.operation == "status"
        assert isinstance(exc_info.value.__cause__, sqlite3.OperationalError)

    def test_storage_info_store_error(self, facade, cache_store):
        """Test that a failing store read surfaces as a BackupError."""
        with patch.object(cache_store, "info", side_effect=OSError("disk I/O error")):
            with pytest.raises(BackupError, match="disk I/O error"):
                facade.get_storage_info()

    def test_clear_error(self, facade):
        """Test clearing the error slot."""
        facade.perform_backup(destination=BackupDestination.CLOUD)
        facade.clear_error()
        assert facade.error is None


class TestFromSettings:
    """Tests for building a facade from EngineSettings."""

    def test_from_settings_creates_stores(self, tmp_path):
        """Test that from_settings opens the database and backup directory."""
        settings = EngineSettings.from_dict({}, tmp_path)

        facade = BackupFacade.from_settings(settings)
        try:
            assert settings.database_path.exists()
            assert facade.local_store.backup_dir == tmp_path / "backups"
            assert facade.remote is None
            assert facade.perform_backup().success is True
        finally:
            facade.shutdown()

    def test_from_settings_with_remote(self, tmp_path):
        """Test that a configured remote URL creates a client."""
        settings = EngineSettings.from_dict(
            {"remote_url": "https://backup.example.com", "remote_token": "t"}, tmp_path
        )

        facade = BackupFacade.from_settings(settings)

        assert facade.remote is not None
        assert facade.remote.token == "t"
        assert facade.remote.last_sync_at is None
