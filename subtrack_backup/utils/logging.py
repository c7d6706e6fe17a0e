"""
Logging configuration module for subtrack_backup.

Provides centralized logging configuration with support for:
- Console and daily file logging
- Configurable log levels via environment variables
- Verbose mode for detailed output
- Colored console output when the terminal supports it
- Retention of old log files
"""

import logging
import os
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

from subtrack_backup.utils.paths import resolve_config_dir

# Root logger name for the package
LOGGER_NAME = "subtrack_backup"

# Default log format
DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Simplified format for console (less verbose)
CONSOLE_FORMAT = "%(levelname)s: %(message)s"

# Verbose format (includes more details)
VERBOSE_FORMAT = (
    "%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s"
)

# Date format for log timestamps
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Log file name pattern; one file per day
LOG_FILE_PREFIX = "subtrack_backup_"

# Environment variable names
ENV_LOG_LEVEL = "SUBTRACK_BACKUP_LOG_LEVEL"
ENV_DEBUG = "SUBTRACK_BACKUP_DEBUG"
ENV_LOG_FILE = "SUBTRACK_BACKUP_LOG_FILE"

# Module-level variable to store configured log directory
_configured_log_dir: Optional[Path] = None


def default_log_dir() -> Path:
    """Log directory under the configuration directory."""
    return resolve_config_dir() / "logs"


class ColoredFormatter(logging.Formatter):
    """
    A logging formatter that adds ANSI color codes to log messages.

    Colors are only applied when output is to a terminal that supports them.
    """

    # ANSI color codes
    COLORS = {
        "DEBUG": "\033[36m",  # Cyan
        "INFO": "\033[32m",  # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",  # Red
        "CRITICAL": "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    def __init__(
        self,
        fmt: Optional[str] = None,
        datefmt: Optional[str] = None,
        use_colors: bool = True,
    ):
        super().__init__(fmt, datefmt)
        self.use_colors = use_colors and self._supports_color()

    def _supports_color(self) -> bool:
        """Check if the terminal supports colors."""
        if not hasattr(sys.stderr, "isatty") or not sys.stderr.isatty():
            return False

        # https://no-color.org/
        if os.environ.get("NO_COLOR"):
            return False

        return os.environ.get("TERM", "") != "dumb"

    def format(self, record: logging.LogRecord) -> str:
        """Format the log record with optional colors."""
        # Copy so other handlers see the uncolored record
        record = logging.makeLogRecord(record.__dict__)

        if self.use_colors and record.levelname in self.COLORS:
            color = self.COLORS[record.levelname]
            record.levelname = f"{color}{record.levelname}{self.RESET}"
            record.msg = f"{color}{record.msg}{self.RESET}"

        return super().format(record)


def get_log_level_from_env() -> int:
    """
    Get the logging level from environment variables.

    SUBTRACK_BACKUP_DEBUG takes precedence over SUBTRACK_BACKUP_LOG_LEVEL.

    Returns:
        Logging level constant (e.g., logging.DEBUG, logging.INFO)
    """
    if os.environ.get(ENV_DEBUG, "").lower() in ("1", "true", "yes"):
        return logging.DEBUG

    level_str = os.environ.get(ENV_LOG_LEVEL, "INFO").upper()

    level_map = {
        "DEBUG": logging.DEBUG,
        "INFO": logging.INFO,
        "WARNING": logging.WARNING,
        "WARN": logging.WARNING,
        "ERROR": logging.ERROR,
        "CRITICAL": logging.CRITICAL,
    }

    return level_map.get(level_str, logging.INFO)


def _daily_log_name() -> str:
    return f"{LOG_FILE_PREFIX}{datetime.now().strftime('%Y%m%d')}.log"


def get_log_file_path(log_dir: Optional[Path] = None) -> Optional[Path]:
    """
    Get the log file path from environment or default location.

    Returns:
        Path to log file, or None if file logging is disabled
    """
    log_file = os.environ.get(ENV_LOG_FILE)
    if log_file is not None:
        if log_file.lower() in ("none", "disabled", ""):
            return None
        return Path(log_file).expanduser()

    return (log_dir or default_log_dir()) / _daily_log_name()


def setup_logging(
    level: Optional[int] = None,
    verbose: bool = False,
    log_dir: Optional[Path] = None,
    enable_file_logging: bool = True,
    use_colors: bool = True,
) -> logging.Logger:
    """
    Configure logging for the subtrack_backup package.

    Args:
        level: Logging level. If None, determined from environment variables.
        verbose: If True, log at DEBUG with the detailed format.
        log_dir: Directory for log files. Defaults to ~/.subtrack-backup/logs.
        enable_file_logging: If False, disable file logging entirely.
        use_colors: If True, use colored output for console (when supported).

    Returns:
        The package logger

    Example:
        setup_logging(verbose=True, log_dir=Path("/path/to/logs"))
    """
    global _configured_log_dir

    if level is None:
        level = get_log_level_from_env()
    if verbose:
        level = logging.DEBUG

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)
    logger.handlers.clear()
    # Prevent duplicate messages via the root logger
    logger.propagate = False

    console_format = VERBOSE_FORMAT if verbose else CONSOLE_FORMAT
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(level)

    console_formatter: logging.Formatter
    if use_colors:
        console_formatter = ColoredFormatter(console_format, DATE_FORMAT)
    else:
        console_formatter = logging.Formatter(console_format, DATE_FORMAT)
    console_handler.setFormatter(console_formatter)
    logger.addHandler(console_handler)

    _configured_log_dir = log_dir

    if enable_file_logging:
        file_path = get_log_file_path(log_dir)
        if file_path:
            try:
                file_path.parent.mkdir(parents=True, exist_ok=True)
                file_handler = logging.FileHandler(file_path, encoding="utf-8")
                file_handler.setLevel(logging.DEBUG)  # Always capture debug in file
                file_handler.setFormatter(
                    logging.Formatter(VERBOSE_FORMAT, DATE_FORMAT)
                )
                logger.addHandler(file_handler)
                _configured_log_dir = file_path.parent
                logger.debug(f"Log file: {file_path}")
            except OSError as e:
                logger.warning(f"Could not create log file {file_path}: {e}")

    return logger


def cleanup_old_logs(log_dir: Optional[Path] = None, keep_count: int = 10) -> int:
    """
    Delete old daily log files, keeping the most recent keep_count.

    Args:
        log_dir: Directory containing log files. If None, uses the directory
                 chosen by setup_logging() or the default.
        keep_count: Number of log files to keep. 0 disables cleanup.

    Returns:
        Number of files deleted.
    """
    if keep_count <= 0:
        return 0

    logs_dir = log_dir or _configured_log_dir or default_log_dir()
    if not logs_dir.exists():
        return 0

    logs = sorted(
        logs_dir.glob(f"{LOG_FILE_PREFIX}*.log"),
        key=lambda p: p.stat().st_mtime,
        reverse=True,
    )
    deleted_count = 0
    for old_log in logs[keep_count:]:
        try:
            old_log.unlink()
            deleted_count += 1
        except OSError:
            pass  # Ignore errors deleting old logs

    return deleted_count


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger inside the subtrack_backup hierarchy.

    Example:
        logger = get_logger("plugins.export")
        logger.info("Operation completed")
    """
    if not name.startswith(LOGGER_NAME):
        name = f"{LOGGER_NAME}.{name}"
    return logging.getLogger(name)


def set_log_level(level: int) -> None:
    """Change the logging level at runtime; file handlers stay at DEBUG."""
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)
    for handler in logger.handlers:
        if not isinstance(handler, logging.FileHandler):
            handler.setLevel(level)


__all__ = [
    "setup_logging",
    "get_logger",
    "set_log_level",
    "cleanup_old_logs",
    "ColoredFormatter",
    "get_log_level_from_env",
    "get_log_file_path",
    "default_log_dir",
    "LOGGER_NAME",
    "DEFAULT_FORMAT",
    "CONSOLE_FORMAT",
    "VERBOSE_FORMAT",
    "DATE_FORMAT",
]
