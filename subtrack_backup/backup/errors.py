"""
Exception hierarchy for the backup engine.

Every error raised by the engine derives from BackupError so callers can
catch one type at the facade boundary. Each error can carry the name of the
operation and the step that failed, which the facade uses to build the
message shown to the user.
"""

from __future__ import annotations


class BackupError(Exception):
    """Base exception for backup, restore and sync failures."""

    default_message = "The backup operation failed"

    def __init__(
        self,
        message: str | None = None,
        *,
        operation: str | None = None,
        step: str | None = None,
    ):
        super().__init__(message or self.default_message)
        self.operation = operation
        self.step = step

    @property
    def user_message(self) -> str:
        """Short message suitable for direct display."""
        parts = []
        if self.operation:
            parts.append(self.operation.capitalize())
        if self.step:
            parts.append(f"({self.step.replace('_', ' ')})")
        prefix = " ".join(parts)
        return f"{prefix} failed: {self}" if prefix else str(self)


class SnapshotAssemblyError(BackupError):
    """Raised when a domain store cannot be read while building a snapshot."""

    default_message = "Could not read application data"


class BackupIOError(BackupError):
    """Raised when the local filesystem rejects a backup read or write."""

    default_message = "Local backup storage is unavailable"


class RemoteSyncError(BackupError):
    """Base exception for remote sync failures."""

    default_message = "Cloud sync failed"


class NetworkError(RemoteSyncError):
    """Raised on transport failures, timeouts and server-side errors."""

    default_message = "Could not reach the cloud backup service"


class RemoteRejectedError(RemoteSyncError):
    """Raised when the remote service refuses a request (auth, quota, size)."""

    default_message = "The cloud backup service rejected the request"

    def __init__(self, message: str | None = None, status_code: int | None = None, **kwargs):
        super().__init__(message, **kwargs)
        self.status_code = status_code


class RemoteNotConfiguredError(RemoteSyncError):
    """Raised when a cloud operation is requested without a remote URL."""

    default_message = "Cloud backup is not configured"


class NotFoundError(BackupError):
    """Raised when a backup or record does not exist."""

    default_message = "Backup not found"


class InvalidSnapshotError(BackupError):
    """Raised when snapshot data fails validation."""

    default_message = "Backup data is invalid"


class ImportFormatError(InvalidSnapshotError):
    """Raised when an import file cannot be parsed."""

    default_message = "Import file format is invalid"

    def __init__(self, message: str | None = None, line: int | None = None, **kwargs):
        if message and line is not None:
            message = f"line {line}: {message}"
        super().__init__(message, **kwargs)
        self.line = line


class SafetyPointError(BackupError):
    """Raised when the pre-restore safety snapshot cannot be created."""

    default_message = "Could not create a restore point"


class RestoreApplyError(BackupError):
    """Raised when writing restored data into a store fails partway."""

    default_message = "Restored data could not be applied"

    def __init__(
        self,
        message: str | None = None,
        applied: tuple[str, ...] = (),
        **kwargs,
    ):
        super().__init__(message, **kwargs)
        self.applied = applied


class RestoreCancelledError(BackupError):
    """Raised when a restore is cancelled before any data was applied."""

    default_message = "Restore was cancelled"


class OperationInProgressError(BackupError):
    """Raised when a backup or restore is requested while another is running."""

    default_message = "Another backup or restore is already running"


__all__ = [
    "BackupError",
    "SnapshotAssemblyError",
    "BackupIOError",
    "RemoteSyncError",
    "NetworkError",
    "RemoteRejectedError",
    "RemoteNotConfiguredError",
    "NotFoundError",
    "InvalidSnapshotError",
    "ImportFormatError",
    "SafetyPointError",
    "RestoreApplyError",
    "RestoreCancelledError",
    "OperationInProgressError",
]
