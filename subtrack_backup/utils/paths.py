"""
Path utilities for configuration directory resolution.

Provides consistent path resolution for the subtrack-backup configuration
directory and the data directories that live under it.
"""

from __future__ import annotations

import os
from pathlib import Path

# Default configuration directory
DEFAULT_CONFIG_DIR = Path.home() / ".subtrack-backup"

# Environment variable for overriding config directory
CONFIG_DIR_ENV_VAR = "SUBTRACK_BACKUP_CONFIG_DIR"

# Data locations relative to the configuration directory
BACKUP_DIR_NAME = "backups"
EXPORT_DIR_NAME = "exports"
DATABASE_FILE_NAME = "subtrack.db"


def resolve_config_dir(config_dir: Path | str | None = None) -> Path:
    """
    Resolve the configuration directory path.

    Priority:
        1. Explicit config_dir parameter (if provided)
        2. SUBTRACK_BACKUP_CONFIG_DIR environment variable
        3. Default directory (~/.subtrack-backup)

    Args:
        config_dir: Optional explicit configuration directory path.

    Returns:
        Resolved Path to the configuration directory
    """
    if config_dir is not None:
        return Path(config_dir).expanduser().resolve()

    env_dir = os.environ.get(CONFIG_DIR_ENV_VAR)
    if env_dir:
        return Path(env_dir).expanduser().resolve()

    return DEFAULT_CONFIG_DIR.expanduser().resolve()


def resolve_data_path(
    configured: str | Path | None, config_dir: Path, default_name: str
) -> Path:
    """Resolve a configured data path, falling back to config_dir/default_name."""
    if configured:
        return Path(configured).expanduser()
    return config_dir / default_name
