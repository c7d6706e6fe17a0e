"""
Configuration loader module for the SubTrack backup engine.

Provides YAML-based configuration file loading with support for:
- Loading configuration from default or custom paths
- Graceful handling of missing configuration files
- Validation of configuration keys, types and ranges
- Conversion into typed EngineSettings with defaults applied
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

import yaml

from subtrack_backup.backup.manager import (
    DEFAULT_BACKUP_RETENTION,
    DEFAULT_RESTORE_POINT_RETENTION,
)
from subtrack_backup.daemon import parse_interval
from subtrack_backup.utils.paths import (
    BACKUP_DIR_NAME,
    DATABASE_FILE_NAME,
    EXPORT_DIR_NAME,
    resolve_config_dir,
    resolve_data_path,
)

# Default configuration file name
DEFAULT_CONFIG_FILE = "config.yaml"

# Default remote request timeout in seconds
DEFAULT_REMOTE_TIMEOUT = 30

# Default number of log files to keep
DEFAULT_LOG_RETENTION = 10

# Environment variable consulted for the remote token when none is configured
DEFAULT_REMOTE_TOKEN_ENV = "SUBTRACK_BACKUP_REMOTE_TOKEN"

logger = logging.getLogger(__name__)


class ConfigError(Exception):
    """Raised when configuration loading or validation fails."""

    pass


# Valid configuration keys and their expected types
VALID_KEYS: dict[str, Any] = {
    # Output options
    "verbose": bool,
    # Logging options
    "log_dir": str,
    "log_retention_count": int,
    # Storage locations
    "database_path": str,
    "backup_dir": str,
    "export_dir": str,
    # Retention
    "backup_retention_count": int,
    "restore_point_retention_count": int,
    # Remote sync
    "remote_url": str,
    "remote_token": str,
    "remote_token_env": str,
    "remote_timeout": (int, float),
    # Scheduling
    "auto_backup_check_interval": (str, int),
    # Device
    "platform_name": str,
}

POSITIVE_INT_KEYS = [
    "log_retention_count",
    "backup_retention_count",
    "restore_point_retention_count",
]


class ConfigLoader:
    """
    YAML configuration file loader.

    Attributes:
        config_dir: Directory containing the configuration file
        config_file: Name of the configuration file

    Usage:
        loader = ConfigLoader()
        config = loader.load_and_validate()
        settings = EngineSettings.from_dict(config, loader.config_dir)
    """

    def __init__(
        self, config_dir: Optional[Path] = None, config_file: str = DEFAULT_CONFIG_FILE
    ):
        """
        Initialize the configuration loader.

        Args:
            config_dir: Directory containing the configuration file.
                       Defaults to ~/.subtrack-backup/ or
                       $SUBTRACK_BACKUP_CONFIG_DIR
            config_file: Name of the configuration file (default: config.yaml)
        """
        self.config_dir = resolve_config_dir(config_dir)
        self.config_file = config_file

    @property
    def config_path(self) -> Path:
        return self.config_dir / self.config_file

    def load(self) -> dict[str, Any]:
        """
        Load configuration from the default configuration file.

        Returns:
            Dictionary containing configuration values, or empty dict if the
            file doesn't exist

        Raises:
            ConfigError: If the configuration file exists but cannot be parsed
        """
        return self.load_from_file(self.config_path)

    def load_from_file(self, path: Path | str) -> dict[str, Any]:
        """
        Load configuration from a specific file.

        Raises:
            ConfigError: If the configuration file exists but cannot be parsed
        """
        path = Path(path)

        if not path.exists():
            logger.debug(f"Configuration file not found: {path}")
            return {}

        try:
            with open(path, encoding="utf-8") as f:
                config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Failed to parse YAML configuration file: {e}") from e
        except OSError as e:
            raise ConfigError(f"Failed to read configuration file: {e}") from e

        # Handle empty files
        if config is None:
            logger.debug(f"Configuration file is empty: {path}")
            return {}

        if not isinstance(config, dict):
            raise ConfigError(
                f"Configuration file must contain a YAML dictionary, "
                f"got {type(config).__name__}"
            )

        logger.debug(f"Loaded configuration from {path}")
        return config

    def validate(self, config: dict[str, Any]) -> None:
        """
        Validate configuration structure and values.

        Unknown keys are ignored with a debug message.

        Raises:
            ConfigError: If configuration is invalid
        """
        if not isinstance(config, dict):
            raise ConfigError(
                f"Configuration must be a dictionary, got {type(config).__name__}"
            )

        for key, value in config.items():
            if key not in VALID_KEYS:
                logger.debug(f"Ignoring unknown configuration key: {key}")
                continue
            expected_type = VALID_KEYS[key]
            # bool is an int subclass
            if (isinstance(value, bool) and expected_type is not bool) or not isinstance(
                value, expected_type
            ):
                if isinstance(expected_type, tuple):
                    type_name = " or ".join(t.__name__ for t in expected_type)
                else:
                    type_name = expected_type.__name__
                raise ConfigError(
                    f"Invalid type for '{key}': expected {type_name}, "
                    f"got {type(value).__name__}"
                )

        for key in POSITIVE_INT_KEYS:
            if key in config and config[key] < 1:
                raise ConfigError(f"{key} must be >= 1, got {config[key]}")

        if "remote_timeout" in config and config["remote_timeout"] <= 0:
            raise ConfigError(
                f"remote_timeout must be > 0, got {config['remote_timeout']}"
            )

        if "remote_url" in config and not str(config["remote_url"]).startswith(
            ("http://", "https://")
        ):
            raise ConfigError(
                f"remote_url must start with http:// or https://, "
                f"got {config['remote_url']}"
            )

        if "auto_backup_check_interval" in config:
            try:
                parse_interval(config["auto_backup_check_interval"])
            except ValueError as e:
                raise ConfigError(f"auto_backup_check_interval: {e}") from e

    def load_and_validate(self) -> dict[str, Any]:
        """
        Load configuration and validate it.

        Raises:
            ConfigError: If configuration cannot be loaded or is invalid
        """
        config = self.load()
        if config:
            self.validate(config)
        return config


@dataclass
class EngineSettings:
    """
    Typed engine settings with defaults applied.

    Attributes:
        config_dir: Directory holding config.yaml and default data paths
        database_path: SQLite database holding the domain stores
        backup_dir: Directory of local backup files
        export_dir: Directory export files are written to
        log_dir: Directory for log files (default: config_dir/logs)
        remote_url: Cloud backup service URL, or None when cloud is off
        remote_token: Bearer token for the cloud service
        remote_timeout: Remote request timeout in seconds
        auto_backup_check_interval: Fixed scheduler cadence in seconds
    """

    config_dir: Path
    database_path: Path
    backup_dir: Path
    export_dir: Path
    log_dir: Optional[Path] = None
    log_retention_count: int = DEFAULT_LOG_RETENTION
    verbose: bool = False
    backup_retention_count: int = DEFAULT_BACKUP_RETENTION
    restore_point_retention_count: int = DEFAULT_RESTORE_POINT_RETENTION
    remote_url: Optional[str] = None
    remote_token: Optional[str] = None
    remote_timeout: float = DEFAULT_REMOTE_TIMEOUT
    auto_backup_check_interval: Optional[int] = None
    platform_name: Optional[str] = None

    @property
    def cloud_configured(self) -> bool:
        return bool(self.remote_url)

    @classmethod
    def from_dict(
        cls, config: dict[str, Any], config_dir: Optional[Path] = None
    ) -> "EngineSettings":
        """
        Build settings from a validated configuration dictionary.

        Args:
            config: Configuration values (possibly empty)
            config_dir: Configuration directory used for default paths

        Raises:
            ConfigError: If the check interval cannot be parsed
        """
        config_dir = resolve_config_dir(config_dir)

        token = config.get("remote_token")
        if not token:
            token_env = config.get("remote_token_env", DEFAULT_REMOTE_TOKEN_ENV)
            token = os.environ.get(token_env) or None

        interval = config.get("auto_backup_check_interval")
        try:
            check_interval = parse_interval(interval) if interval else None
        except ValueError as e:
            raise ConfigError(f"auto_backup_check_interval: {e}") from e

        log_dir = config.get("log_dir")

        return cls(
            config_dir=config_dir,
            database_path=resolve_data_path(
                config.get("database_path"), config_dir, DATABASE_FILE_NAME
            ),
            backup_dir=resolve_data_path(
                config.get("backup_dir"), config_dir, BACKUP_DIR_NAME
            ),
            export_dir=resolve_data_path(
                config.get("export_dir"), config_dir, EXPORT_DIR_NAME
            ),
            log_dir=Path(log_dir).expanduser() if log_dir else config_dir / "logs",
            log_retention_count=config.get("log_retention_count", DEFAULT_LOG_RETENTION),
            verbose=config.get("verbose", False),
            backup_retention_count=config.get(
                "backup_retention_count", DEFAULT_BACKUP_RETENTION
            ),
            restore_point_retention_count=config.get(
                "restore_point_retention_count", DEFAULT_RESTORE_POINT_RETENTION
            ),
            remote_url=config.get("remote_url") or None,
            remote_token=token,
            remote_timeout=config.get("remote_timeout", DEFAULT_REMOTE_TIMEOUT),
            auto_backup_check_interval=check_interval,
            platform_name=config.get("platform_name"),
        )
