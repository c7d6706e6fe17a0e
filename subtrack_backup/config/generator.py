"""
Configuration file generator for the SubTrack backup engine.

Provides functionality to generate a default configuration file with
documentation for all available options.
"""

import logging
from pathlib import Path

logger = logging.getLogger(__name__)


def generate_default_config() -> str:
    """
    Generate default YAML configuration with all options documented.

    Returns:
        String containing YAML configuration with comments
    """
    return """# SubTrack Backup Configuration
# ============================
#
# This file sets default options for subtrack-backup.
# CLI arguments always override these values.
#
# To use this configuration:
#   1. Save as ~/.subtrack-backup/config.yaml (or custom location)
#   2. Uncomment and modify options as needed
#   3. Run subtrack-backup commands normally

# Logging Options
# ---------------

# Enable verbose output with detailed logging
# Default: false
# verbose: true

# Directory for log files
# Default: ~/.subtrack-backup/logs
# log_dir: /path/to/logs

# Number of daily log files to keep
# Default: 10
# log_retention_count: 10


# Storage Locations
# -----------------

# SQLite database holding subscriptions, settings and cache
# Default: ~/.subtrack-backup/subtrack.db
# database_path: /path/to/subtrack.db

# Directory for local backup files
# Default: ~/.subtrack-backup/backups
# backup_dir: /path/to/backups

# Directory export files are written to
# Default: ~/.subtrack-backup/exports
# export_dir: /path/to/exports


# Retention
# ---------

# Number of ordinary backups to keep; the oldest are deleted first
# Default: 5
# backup_retention_count: 5

# Number of restore points (automatic pre-restore snapshots) to keep
# Default: 1
# restore_point_retention_count: 1


# Cloud Backup
# ------------

# Base URL of the cloud backup service. Leave unset to disable cloud backup.
# remote_url: https://backup.example.com/api

# Bearer token for the cloud service. Prefer the environment variable below
# over storing the token in this file.
# remote_token: your-token

# Environment variable to read the token from
# Default: SUBTRACK_BACKUP_REMOTE_TOKEN
# remote_token_env: SUBTRACK_BACKUP_REMOTE_TOKEN

# Request timeout in seconds
# Default: 30
# remote_timeout: 30


# Automatic Backups
# -----------------
#
# Whether automatic backups run, and how often (hourly, daily, weekly or
# manual), are stored with the application settings, not in this file.

# How often the watcher checks whether an automatic backup is due.
# Accepts seconds or a unit suffix: 30s, 15m, 1h, 1d.
# Default: derived from the backup frequency
# auto_backup_check_interval: 15m


# Device
# ------

# Platform name recorded in each backup
# Default: the operating system name
# platform_name: linux
"""


def save_config_file(
    config_path: Path, overwrite: bool = False
) -> tuple[bool, str | None]:
    """
    Save default configuration file to specified path.

    Creates parent directories if they don't exist and saves
    the configuration with secure permissions.

    Args:
        config_path: Path where the config file should be saved
        overwrite: If True, overwrite existing file. If False, fail if file exists.

    Returns:
        Tuple of (success, error_message); error_message is None on success
    """
    try:
        config_path = config_path.expanduser().resolve()

        if config_path.exists() and not overwrite:
            return (
                False,
                f"Configuration file already exists: {config_path}\n"
                "Use --force to overwrite.",
            )

        config_path.parent.mkdir(parents=True, mode=0o700, exist_ok=True)
        config_path.write_text(generate_default_config(), encoding="utf-8")

        # Readable/writable by owner only, the file may hold a token
        config_path.chmod(0o600)

        logger.info(f"Created configuration file: {config_path}")
        return (True, None)

    except OSError as e:
        error_msg = f"Failed to create configuration file: {e}"
        logger.error(error_msg)
        return (False, error_msg)
