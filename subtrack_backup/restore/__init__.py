"""
Restore of snapshots into the domain stores, guarded by a restore point.
"""

from subtrack_backup.restore.manager import (
    RestoreManager,
    RestoreOutcome,
    RestoreSource,
    RestoreState,
)

__all__ = ["RestoreManager", "RestoreOutcome", "RestoreSource", "RestoreState"]
