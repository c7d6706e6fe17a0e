"""
Command-line interface for subtrack_backup.

Provides CLI commands for backing up, restoring, exporting and importing
SubTrack data, and for running automatic backups.

Usage:
    # Show help
    subtrack-backup --help

    # Back up locally and to the cloud
    subtrack-backup backup --destination both

    # Restore the newest local backup, then undo it
    subtrack-backup restore
    subtrack-backup undo-restore

    # Run automatic backups until interrupted
    subtrack-backup watch
"""

import sys
from pathlib import Path

import click

from subtrack_backup import __version__
from subtrack_backup.backup.converter import ExportFormat, detect_format
from subtrack_backup.backup.errors import BackupError, ImportFormatError
from subtrack_backup.backup.manager import BackupLocation
from subtrack_backup.cli.formatters import show_backup_table, show_result, show_status
from subtrack_backup.config.generator import save_config_file
from subtrack_backup.config.loader import (
    DEFAULT_CONFIG_FILE,
    ConfigError,
    ConfigLoader,
    EngineSettings,
)
from subtrack_backup.daemon.scheduler import BackupFrequency, BackupScheduler
from subtrack_backup.facade import (
    BackupDestination,
    BackupFacade,
    BackupTrigger,
    OperationResult,
    RestoreSource,
)
from subtrack_backup.utils import resolve_config_dir
from subtrack_backup.utils.logging import cleanup_old_logs, get_logger, setup_logging

DESTINATION_CHOICES = [d.value for d in BackupDestination]
SOURCE_CHOICES = [s.value for s in RestoreSource]
FORMAT_CHOICES = [f.value for f in ExportFormat]
FREQUENCY_CHOICES = [f.value for f in BackupFrequency]


def get_config_dir(config_dir: str | None) -> Path:
    """Get the configuration directory path."""
    return resolve_config_dir(config_dir)


def get_facade(ctx: click.Context) -> BackupFacade:
    """
    Return the facade for this invocation, creating it on first use.

    Exits with status 1 if local storage cannot be opened.
    """
    facade = ctx.obj.get("facade")
    if facade is not None:
        return facade

    logger = get_logger(__name__)
    settings: EngineSettings = ctx.obj["settings"]

    def report_progress(kind: str, value: int) -> None:
        logger.debug(f"{kind} progress: {value}%")

    try:
        facade = BackupFacade.from_settings(settings, progress_callback=report_progress)
    except BackupError as e:
        click.echo(click.style(f"Error: {e.user_message}", fg="red"), err=True)
        sys.exit(1)

    ctx.obj["facade"] = facade
    return facade


def finish(result: OperationResult) -> None:
    """Print a result and exit non-zero on failure."""
    show_result(result)
    if not result.success:
        sys.exit(1)


@click.group()
@click.version_option(version=__version__, prog_name="subtrack-backup")
@click.option(
    "--verbose", "-v", is_flag=True, help="Enable verbose output with detailed logging."
)
@click.option(
    "--config-dir",
    "-c",
    type=click.Path(exists=False, file_okay=False, dir_okay=True),
    envvar="SUBTRACK_BACKUP_CONFIG_DIR",
    help="Configuration directory path (default: ~/.subtrack-backup).",
)
@click.pass_context
def cli(ctx: click.Context, verbose: bool, config_dir: str | None) -> None:
    """
    SubTrack backup, restore and sync.

    Snapshots subscriptions, settings and cached data, keeps a bounded set of
    local backups, optionally replicates them to a cloud service, and rolls
    the data back on demand with an automatic restore point.
    """
    ctx.ensure_object(dict)

    resolved_config_dir = get_config_dir(config_dir)
    ctx.obj["config_dir"] = resolved_config_dir
    ctx.obj["config_file"] = resolved_config_dir / DEFAULT_CONFIG_FILE

    config = {}
    try:
        loader = ConfigLoader(config_dir=resolved_config_dir)
        config = loader.load_and_validate()
    except ConfigError as e:
        # Show error but don't fail - allow CLI to work without config file
        click.echo(
            click.style(f"Warning: Configuration error: {e}", fg="yellow"), err=True
        )
        config = {}

    ctx.obj["config"] = config
    ctx.obj["settings"] = EngineSettings.from_dict(config, resolved_config_dir)

    # CLI flag takes precedence over config file
    effective_verbose = verbose or config.get("verbose", False)
    ctx.obj["verbose"] = effective_verbose

    settings = ctx.obj["settings"]
    setup_logging(verbose=effective_verbose, log_dir=settings.log_dir)
    cleanup_old_logs(log_dir=settings.log_dir, keep_count=settings.log_retention_count)


# =============================================================================
# Backup Commands
# =============================================================================


@cli.command("backup")
@click.option(
    "--destination",
    "-d",
    type=click.Choice(DESTINATION_CHOICES, case_sensitive=False),
    default=BackupDestination.LOCAL.value,
    show_default=True,
    help="Where to store the backup.",
)
@click.pass_context
def backup_command(ctx: click.Context, destination: str) -> None:
    """
    Back up subscriptions, settings and cache.

    With --destination both, the backup is written locally first; if the
    cloud upload then fails the command still succeeds with a warning.

    Examples:

        subtrack-backup backup

        subtrack-backup backup --destination both
    """
    facade = get_facade(ctx)
    finish(
        facade.perform_backup(BackupTrigger.MANUAL, BackupDestination(destination))
    )


@cli.command("list")
@click.option("--cloud", is_flag=True, help="List cloud backups instead of local.")
@click.pass_context
def list_command(ctx: click.Context, cloud: bool) -> None:
    """List available backups, newest first."""
    facade = get_facade(ctx)
    location = BackupLocation.CLOUD if cloud else BackupLocation.LOCAL
    result = facade.get_available_backups(location)
    if not result.success:
        finish(result)
        return

    if not cloud:
        click.echo(f"Backup directory: {facade.local_store.backup_dir}\n")
    show_backup_table(result.value)
    if result.warning:
        show_result(result)


@cli.command("delete")
@click.argument("backup_id")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation prompt.")
@click.pass_context
def delete_command(ctx: click.Context, backup_id: str, yes: bool) -> None:
    """Delete a local backup by its ID."""
    facade = get_facade(ctx)
    if not yes:
        click.confirm(f"Delete backup {backup_id}?", abort=True)
    finish(facade.delete_backup(backup_id))


# =============================================================================
# Restore Commands
# =============================================================================


@cli.command("restore")
@click.option(
    "--source",
    "-s",
    type=click.Choice(SOURCE_CHOICES, case_sensitive=False),
    default=RestoreSource.LOCAL.value,
    show_default=True,
    help="Where to read the backup from.",
)
@click.option(
    "--backup-id",
    "-b",
    help="Backup to restore (default: the newest).",
)
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation prompt.")
@click.pass_context
def restore_command(
    ctx: click.Context, source: str, backup_id: str | None, yes: bool
) -> None:
    """
    Restore data from a backup.

    The current data is saved as a restore point first, so the restore can
    be undone with 'subtrack-backup undo-restore'.

    Examples:

        # Restore the newest local backup
        subtrack-backup restore

        # Restore a specific local backup
        subtrack-backup restore --backup-id subtrack-backup-20261017T103000000000Z.json

        # Restore the latest cloud backup
        subtrack-backup restore --source cloud
    """
    facade = get_facade(ctx)
    if not yes:
        target = backup_id or f"the newest {source} backup"
        click.confirm(
            f"Replace your current data with {target}?\n"
            "A restore point will be saved first. Continue?",
            abort=True,
        )

    result = facade.restore_from_backup(RestoreSource(source), backup_id)
    show_result(result)
    if not result.success:
        applied = getattr(result.error, "applied", ())
        if applied:
            click.echo(
                f"Partially restored: {', '.join(applied)}. "
                "Run 'subtrack-backup undo-restore' to return to the restore point.",
                err=True,
            )
        sys.exit(1)

    click.echo(f"Restore point: {result.value.restore_point.id}")


@cli.command("undo-restore")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation prompt.")
@click.pass_context
def undo_restore_command(ctx: click.Context, yes: bool) -> None:
    """Restore the data saved before the last restore."""
    facade = get_facade(ctx)
    if not yes:
        click.confirm("Return to the data saved before the last restore?", abort=True)
    finish(facade.undo_last_restore())


# =============================================================================
# Import / Export Commands
# =============================================================================


@cli.command("export")
@click.option(
    "--format",
    "-f",
    "fmt",
    type=click.Choice(FORMAT_CHOICES, case_sensitive=False),
    default=ExportFormat.JSON.value,
    show_default=True,
    help="Export format. CSV contains subscriptions only.",
)
@click.pass_context
def export_command(ctx: click.Context, fmt: str) -> None:
    """Export data to a file in the exports directory."""
    facade = get_facade(ctx)
    finish(facade.export_data(ExportFormat(fmt)))


@cli.command("import")
@click.argument(
    "file", type=click.Path(exists=True, file_okay=True, dir_okay=False)
)
@click.option(
    "--format",
    "-f",
    "fmt",
    type=click.Choice(FORMAT_CHOICES, case_sensitive=False),
    help="File format (default: from the file extension).",
)
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation prompt.")
@click.pass_context
def import_command(ctx: click.Context, file: str, fmt: str | None, yes: bool) -> None:
    """
    Import data from a JSON or CSV export.

    Imported data replaces the current data. A restore point is saved first.
    A CSV file only replaces subscriptions; settings are kept.
    """
    path = Path(file)
    try:
        export_format = ExportFormat(fmt) if fmt else detect_format(path)
    except ImportFormatError as e:
        click.echo(click.style(f"Error: {e}", fg="red"), err=True)
        sys.exit(1)

    facade = get_facade(ctx)
    if not yes:
        click.confirm(
            f"Replace your current data with the contents of {path.name}?",
            abort=True,
        )

    try:
        data = path.read_bytes()
    except OSError as e:
        click.echo(click.style(f"Error: Could not read {path}: {e}", fg="red"), err=True)
        sys.exit(1)

    finish(facade.import_data(data, export_format))


# =============================================================================
# Clear Commands
# =============================================================================


@cli.command("clear-cache")
@click.pass_context
def clear_cache_command(ctx: click.Context) -> None:
    """Delete cached data. Subscriptions and settings are kept."""
    finish(get_facade(ctx).clear_cache())


@cli.command("clear-all")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation prompt.")
@click.pass_context
def clear_all_command(ctx: click.Context, yes: bool) -> None:
    """
    Delete all subscriptions, settings and cached data.

    Local backups are kept and can be restored afterwards.
    """
    facade = get_facade(ctx)
    if not yes:
        click.confirm(
            "This will delete all subscriptions, settings and cached data.\n"
            "Backups are kept. Continue?",
            abort=True,
        )
    finish(facade.clear_all_data())


# =============================================================================
# Status and Scheduling
# =============================================================================


@cli.command("status")
@click.pass_context
def status_command(ctx: click.Context) -> None:
    """Show backup settings, storage usage and recent activity."""
    logger = get_logger(__name__)
    facade = get_facade(ctx)

    try:
        show_status(
            facade.get_sync_status(),
            facade.get_storage_info(),
            facade.settings_store.get_backup_policy(),
            facade.local_store.latest(),
            facade.local_store.latest_restore_point(),
            facade.settings_store.get_last_restored_at(),
        )
    except BackupError as e:
        logger.error(f"Status failed: {e}")
        click.echo(click.style(f"Error: {e.user_message}", fg="red"), err=True)
        sys.exit(1)

    if ctx.obj["verbose"]:
        click.echo(f"\nConfiguration directory: {ctx.obj['config_dir']}")
        click.echo(f"Database: {ctx.obj['settings'].database_path}")


@cli.command("schedule")
@click.option(
    "--enable/--disable", default=None, help="Turn automatic backups on or off."
)
@click.option(
    "--frequency",
    type=click.Choice(FREQUENCY_CHOICES, case_sensitive=False),
    help="How often automatic backups run.",
)
@click.option(
    "--cloud/--no-cloud", default=None, help="Also upload automatic backups."
)
@click.option(
    "--include-cache/--no-include-cache",
    default=None,
    help="Restore cached data together with subscriptions.",
)
@click.pass_context
def schedule_command(
    ctx: click.Context,
    enable: bool | None,
    frequency: str | None,
    cloud: bool | None,
    include_cache: bool | None,
) -> None:
    """
    Show or change automatic backup settings.

    Examples:

        subtrack-backup schedule --enable --frequency daily

        subtrack-backup schedule --cloud
    """
    facade = get_facade(ctx)
    updates: dict[str, object] = {}
    if enable is not None:
        updates["auto_backup"] = enable
    if frequency is not None:
        updates["frequency"] = frequency
    if cloud is not None:
        updates["cloud_backup"] = cloud
    if include_cache is not None:
        updates["include_cache"] = include_cache

    store = facade.settings_store
    try:
        settings = (
            store.update_backup_settings(**updates)
            if updates
            else store.get_backup_settings()
        )
    except ValueError as e:
        click.echo(click.style(f"Error: {e}", fg="red"), err=True)
        sys.exit(1)

    if updates:
        click.echo(click.style("Backup settings updated.", fg="green"))
    click.echo(f"Automatic backup: {'on' if settings['auto_backup'] else 'off'}")
    click.echo(f"Frequency: {settings['frequency']}")
    click.echo(f"Cloud backup: {'on' if settings['cloud_backup'] else 'off'}")
    click.echo(f"Include cache: {'yes' if settings['include_cache'] else 'no'}")


@cli.command("watch")
@click.pass_context
def watch_command(ctx: click.Context) -> None:
    """
    Run automatic backups in the foreground until stopped.

    Checks whether a backup is due on startup, then on every timer tick.
    Send SIGUSR1 to trigger a check as if the app returned to the foreground;
    SIGTERM or Ctrl+C stops the watcher.
    """
    logger = get_logger(__name__)
    facade = get_facade(ctx)
    settings: EngineSettings = ctx.obj["settings"]

    scheduler = BackupScheduler(
        policy_provider=facade.settings_store.get_backup_policy,
        backup_callback=facade.run_auto_backup,
        check_interval=settings.auto_backup_check_interval,
    )

    click.echo("Watching for due backups (Ctrl+C to stop)")
    try:
        scheduler.run_forever()
    finally:
        facade.shutdown()

    stats = scheduler.stats
    click.echo(
        f"Stopped after {stats.check_count} check(s): "
        f"{stats.run_count} backup(s), {stats.failure_count} failure(s)"
    )
    logger.info("Watcher stopped")


# =============================================================================
# Init-Config Command
# =============================================================================


@cli.command("init-config")
@click.option(
    "--force",
    "-f",
    is_flag=True,
    help="Overwrite existing configuration file if it exists.",
)
@click.pass_context
def init_config_command(ctx: click.Context, force: bool) -> None:
    """
    Generate a default configuration file.

    Creates a configuration file with all available options documented
    and commented out.
    """
    logger = get_logger(__name__)
    config_file = ctx.obj["config_file"]

    click.echo(f"Creating configuration file: {config_file}")

    success, error = save_config_file(config_file, overwrite=force)

    if success:
        click.echo(click.style("Configuration file created successfully!", fg="green"))
        click.echo(f"\nLocation: {config_file}")
        logger.info(f"Created configuration file: {config_file}")
    else:
        click.echo(click.style(f"Error: {error}", fg="red"), err=True)
        logger.error(f"Failed to create configuration file: {error}")
        sys.exit(1)


# Module entry point (for python -m subtrack_backup.cli)
if __name__ == "__main__":
    cli()
