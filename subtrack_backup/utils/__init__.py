"""
subtrack_backup.utils - Utility module

Common utilities including path resolution, clocks and logging configuration.
"""

from subtrack_backup.utils.clock import Clock, SystemClock
from subtrack_backup.utils.paths import DEFAULT_CONFIG_DIR, resolve_config_dir

__all__ = ["Clock", "SystemClock", "resolve_config_dir", "DEFAULT_CONFIG_DIR"]
