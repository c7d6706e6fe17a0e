"""
subtrack_backup.daemon - Automatic backup scheduling

Backup policy evaluation, timer and lifecycle triggers, and interval parsing.
"""

import re


def parse_interval(interval: str | int) -> int:
    """Parse an interval string into seconds.

    Accepts interval strings with units (s, m, h, d) or plain integers.

    Args:
        interval: Interval specification. Examples:
            - "30s" -> 30 seconds
            - "15m" -> 15 minutes (900 seconds)
            - "6h" -> 6 hours (21600 seconds)
            - "1d" -> 1 day (86400 seconds)
            - 600 -> 600 seconds (pass-through)

    Returns:
        Interval in seconds as an integer.

    Raises:
        ValueError: If the interval format is invalid, uses an unknown unit,
            or is not positive.
    """
    if isinstance(interval, bool):
        raise ValueError("Invalid interval type: bool. Expected str or int.")

    if isinstance(interval, int):
        seconds = interval
    elif isinstance(interval, str):
        text = interval.lower().strip()
        if text.isdigit():
            seconds = int(text)
        else:
            match = re.match(r"^(\d+)\s*([smhd])$", text)
            if not match:
                raise ValueError(
                    f"Invalid interval format: '{interval}'. "
                    "Use format like '30s', '15m', '6h', or '1d'."
                )
            multipliers = {"s": 1, "m": 60, "h": 3600, "d": 86400}
            seconds = int(match.group(1)) * multipliers[match.group(2)]
    else:
        raise ValueError(
            f"Invalid interval type: {type(interval).__name__}. Expected str or int."
        )

    if seconds <= 0:
        raise ValueError(f"Interval must be positive, got '{interval}'")
    return seconds


# Imports after parse_interval to avoid circular dependencies
from subtrack_backup.daemon.scheduler import (  # noqa: E402
    FREQUENCY_INTERVAL_HOURS,
    AppState,
    AutoBackupPolicy,
    BackupFrequency,
    BackupScheduler,
    SchedulerStats,
    hours_since,
    interval_hours,
    should_run_auto_backup,
)

__all__ = [
    "parse_interval",
    "AppState",
    "AutoBackupPolicy",
    "BackupFrequency",
    "BackupScheduler",
    "SchedulerStats",
    "FREQUENCY_INTERVAL_HOURS",
    "hours_since",
    "interval_hours",
    "should_run_auto_backup",
]
