"""
subtrack_backup.config - Configuration management module

Contains configuration loading, validation, and default settings.
"""

from subtrack_backup.config.generator import generate_default_config, save_config_file
from subtrack_backup.config.loader import (
    DEFAULT_CONFIG_FILE,
    ConfigError,
    ConfigLoader,
    EngineSettings,
)

__all__ = [
    "ConfigError",
    "ConfigLoader",
    "EngineSettings",
    "DEFAULT_CONFIG_FILE",
    "generate_default_config",
    "save_config_file",
]
