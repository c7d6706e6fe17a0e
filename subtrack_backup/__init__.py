"""
subtrack_backup - Backup, restore and sync engine for SubTrack

Snapshots subscription, settings and cache data, keeps a bounded set of local
backups, optionally replicates them to a remote service and rolls the
application back to an earlier state on demand.
"""

__version__ = "0.1.0"
