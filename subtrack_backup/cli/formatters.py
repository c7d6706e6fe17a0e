"""CLI output formatting functions.

This module contains functions for displaying operation results, backup
listings and status information on the command line.
"""

from typing import TYPE_CHECKING, Optional

import click

from subtrack_backup.facade import format_size

if TYPE_CHECKING:
    from subtrack_backup.backup.manager import BackupRecord
    from subtrack_backup.daemon.scheduler import AutoBackupPolicy
    from subtrack_backup.facade import OperationResult, StorageInfo, SyncStatus


def show_result(result: "OperationResult") -> None:
    """
    Print an operation outcome.

    The summary is green on success and red on failure; a warning is shown
    in yellow underneath. Raw exceptions are never printed.
    """
    if result.success:
        click.echo(click.style(result.summary, fg="green"))
    else:
        message = result.error.user_message if result.error else result.summary
        click.echo(click.style(f"Error: {message}", fg="red"), err=True)

    if result.warning:
        click.echo(click.style(f"Warning: {result.warning}", fg="yellow"), err=True)


def show_backup_table(records: list["BackupRecord"]) -> None:
    """Print backups as a table, newest first."""
    if not records:
        click.echo("No backups found.")
        return

    click.echo(f"{'ID':<52} {'Created (UTC)':<20} {'Size':>10}  {'Kind'}")
    click.echo("-" * 96)
    for record in records:
        created = record.created_at.strftime("%Y-%m-%d %H:%M:%S")
        kind = "restore point" if record.is_restore_point else record.location.value
        click.echo(
            f"{record.id:<52} {created:<20} "
            f"{format_size(record.size_bytes):>10}  {kind}"
        )
    click.echo(f"\nTotal: {len(records)} backup(s)")


def _format_time(value) -> str:
    if value is None:
        return "never"
    return value.strftime("%Y-%m-%d %H:%M:%S UTC")


def _state(value: str) -> str:
    return click.style(value, fg="green" if value == "enabled" else "yellow")


def show_status(
    sync_status: "SyncStatus",
    storage: "StorageInfo",
    policy: "AutoBackupPolicy",
    latest: Optional["BackupRecord"],
    restore_point: Optional["BackupRecord"],
    last_restored_at=None,
) -> None:
    """Print backup configuration, storage usage and recent activity."""
    click.echo("=== SubTrack Backup Status ===\n")

    click.echo(f"Automatic backup: {_state(sync_status.local)}")
    click.echo(f"Frequency: {policy.frequency.value}")
    click.echo(f"Last automatic run: {_format_time(policy.last_run_at)}")
    click.echo(f"Cloud backup: {_state(sync_status.cloud)}")
    click.echo(f"Last cloud sync: {_format_time(sync_status.last_sync_at)}")
    click.echo()

    click.echo(f"Subscriptions: {storage.subscription_count}")
    click.echo(f"Cache entries: {storage.cache_entries}")
    click.echo(
        f"Local backups: {storage.backup_count} "
        f"({format_size(storage.backup_bytes)})"
    )
    click.echo()

    if latest is not None:
        click.echo(f"Latest backup: {latest.id} ({_format_time(latest.created_at)})")
    else:
        click.echo("Latest backup: none")
    if restore_point is not None:
        click.echo(
            f"Restore point: {restore_point.id} "
            f"({_format_time(restore_point.created_at)})"
        )
    click.echo(f"Last restore: {_format_time(last_restored_at)}")
