"""
Interfaces of the domain stores the backup engine reads from and restores into.

The engine never inspects store internals: it exchanges whole documents as
UTF-8 JSON bytes through export_all()/import_all(). Concrete SQLite-backed
implementations live in subtrack_backup.storage.db.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from subtrack_backup.daemon.scheduler import AutoBackupPolicy


@dataclass(frozen=True)
class CacheInfo:
    """Summary of cache store contents."""

    entry_count: int


@runtime_checkable
class SubscriptionStore(Protocol):
    """Owner of subscription records."""

    def export_all(self) -> bytes: ...

    def import_all(self, data: bytes) -> None: ...

    def clear_all(self) -> None: ...


@runtime_checkable
class SettingsStore(Protocol):
    """Owner of user settings, including the automatic backup policy."""

    def export_all(self) -> bytes: ...

    def import_all(self, data: bytes) -> None: ...

    def clear_all(self) -> None: ...

    def get_backup_policy(self) -> AutoBackupPolicy: ...

    def set_last_run_at(self, value: datetime) -> None: ...

    def get_last_cloud_sync_at(self) -> datetime | None: ...

    def set_last_cloud_sync_at(self, value: datetime) -> None: ...

    def get_last_restored_at(self) -> datetime | None: ...

    def set_last_restored_at(self, value: datetime) -> None: ...

    def include_cache(self) -> bool: ...


@runtime_checkable
class CacheStore(Protocol):
    """Owner of cached, mostly derived, data."""

    def export_all(self) -> bytes: ...

    def import_all(self, data: bytes) -> None: ...

    def clear_all(self) -> None: ...

    def info(self) -> CacheInfo: ...


__all__ = ["CacheInfo", "SubscriptionStore", "SettingsStore", "CacheStore"]
