"""CLI package for subtrack_backup."""

from subtrack_backup.cli.formatters import show_backup_table, show_result, show_status
from subtrack_backup.cli.main import cli, get_config_dir, get_facade

__all__ = [
    "cli",
    "get_config_dir",
    "get_facade",
    "show_backup_table",
    "show_result",
    "show_status",
]
