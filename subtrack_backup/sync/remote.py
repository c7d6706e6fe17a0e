"""
Remote backup synchronization over HTTP.

Provides a thin client for the cloud backup service:
- Uploading snapshots
- Downloading a specific or the latest snapshot
- Listing remote backups
- Tracking when the last successful sync happened

The service keeps the last write; concurrent uploads from several devices are
not reconciled.
"""

import logging
from datetime import datetime
from typing import Any, Optional
from urllib.parse import quote

import requests
from requests.exceptions import RequestException

from subtrack_backup import __version__
from subtrack_backup.backup.errors import (
    InvalidSnapshotError,
    NetworkError,
    NotFoundError,
    RemoteNotConfiguredError,
    RemoteRejectedError,
)
from subtrack_backup.backup.manager import BackupLocation, BackupRecord
from subtrack_backup.backup.snapshot import Snapshot
from subtrack_backup.utils.clock import (
    Clock,
    SystemClock,
    ensure_utc,
    format_timestamp,
    parse_timestamp,
)

logger = logging.getLogger(__name__)

USER_AGENT = f"subtrack-backup/{__version__}"


class RemoteSyncClient:
    """
    Client for the cloud backup service.

    Every request uses the timeout given at construction; there are no
    retries. Transport failures, timeouts and 5xx responses raise
    NetworkError, other non-2xx responses raise RemoteRejectedError.

    Usage:
        client = RemoteSyncClient("https://backup.example.com/api", token, 30)
        record = client.upload(snapshot)
        latest = client.download()

    Attributes:
        base_url: Service root URL without trailing slash
        timeout: Request timeout in seconds
        last_sync_at: Time of the last successful upload or download
    """

    def __init__(
        self,
        base_url: str,
        token: Optional[str],
        timeout: float,
        clock: Optional[Clock] = None,
        last_sync_at: Optional[datetime] = None,
    ):
        if not base_url:
            raise RemoteNotConfiguredError()
        if not base_url.startswith(("http://", "https://")):
            raise RemoteNotConfiguredError(f"Invalid remote URL scheme: {base_url}")
        if timeout <= 0:
            raise ValueError("timeout must be positive")

        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self.clock = clock or SystemClock()
        self.last_sync_at = ensure_utc(last_sync_at) if last_sync_at else None

    def _headers(self) -> dict[str, str]:
        headers = {
            "User-Agent": USER_AGENT,
            "Accept": "application/json",
        }
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def _request(
        self, method: str, path: str, data: Optional[bytes] = None
    ) -> requests.Response:
        url = f"{self.base_url}{path}"
        headers = self._headers()
        if data is not None:
            headers["Content-Type"] = "application/json"

        logger.debug(f"{method} {url}")
        try:
            response = requests.request(
                method, url, data=data, headers=headers, timeout=self.timeout
            )
        except requests.Timeout as e:
            logger.error(f"Timeout after {self.timeout}s talking to {url}")
            raise NetworkError(
                f"Cloud backup service timed out after {self.timeout}s"
            ) from e
        except RequestException as e:
            logger.error(f"Network error talking to {url}: {e}")
            raise NetworkError(f"Could not reach the cloud backup service: {e}") from e

        status = response.status_code
        if status == 404:
            raise NotFoundError(f"No cloud backup at {path}")
        if status >= 500:
            logger.error(f"Server error ({status}) from {url}")
            raise NetworkError(f"Cloud backup service error ({status})")
        if not 200 <= status < 300:
            logger.error(f"Request to {url} rejected with status {status}")
            raise RemoteRejectedError(
                f"Cloud backup service rejected the request ({status})",
                status_code=status,
            )
        return response

    def _record_from_payload(
        self, data: Any, fallback: Optional[Snapshot] = None, size: int = 0
    ) -> BackupRecord:
        if not isinstance(data, dict):
            data = {}

        raw_created = data.get("created_at")
        created_at = None
        if raw_created:
            try:
                created_at = parse_timestamp(raw_created)
            except (TypeError, ValueError):
                logger.warning(f"Ignoring unparseable remote timestamp: {raw_created}")
        if created_at is None:
            created_at = (
                fallback.created_at if fallback else ensure_utc(self.clock.now())
            )

        backup_id = str(data.get("id") or format_timestamp(created_at))
        return BackupRecord(
            id=backup_id,
            filename=str(data.get("filename") or f"{backup_id}.json"),
            size_bytes=int(data.get("size_bytes") or size),
            created_at=created_at,
            location=BackupLocation.CLOUD,
            is_restore_point=bool(
                data.get(
                    "is_restore_point",
                    fallback.is_restore_point if fallback else False,
                )
            ),
        )

    def upload(self, snapshot: Snapshot) -> BackupRecord:
        """
        Upload a snapshot.

        Args:
            snapshot: Snapshot to send

        Returns:
            BackupRecord describing the remote copy

        Raises:
            NetworkError: On transport failures, timeouts and 5xx responses
            RemoteRejectedError: When the service refuses the upload
        """
        content = snapshot.to_json()
        response = self._request("POST", "/backups", data=content)

        try:
            data = response.json()
        except ValueError:
            data = {}

        record = self._record_from_payload(data, fallback=snapshot, size=len(content))
        self.last_sync_at = ensure_utc(self.clock.now())
        logger.info(f"Uploaded backup {record.id} ({len(content)} bytes)")
        return record

    def download(self, backup_id: Optional[str] = None) -> Snapshot:
        """
        Download a snapshot.

        Args:
            backup_id: Remote backup id, or None for the latest

        Raises:
            NotFoundError: If the backup does not exist
            InvalidSnapshotError: If the response is not a snapshot
        """
        path = "/backups/latest"
        if backup_id:
            # Fallback ids are timestamps with ":" and "+"
            path = f"/backups/{quote(backup_id, safe='')}"
        response = self._request("GET", path)
        snapshot = Snapshot.from_json(response.content)
        self.last_sync_at = ensure_utc(self.clock.now())
        logger.info(f"Downloaded cloud backup {backup_id or 'latest'}")
        return snapshot

    def list(self) -> list[BackupRecord]:
        """List remote backups, newest first."""
        response = self._request("GET", "/backups")
        try:
            data = response.json()
        except ValueError as e:
            raise InvalidSnapshotError("Cloud backup listing is not valid JSON") from e

        items = data.get("backups", []) if isinstance(data, dict) else data
        if not isinstance(items, list):
            raise InvalidSnapshotError("Cloud backup listing has an unexpected shape")

        records = [self._record_from_payload(item) for item in items]
        records.sort(key=lambda r: r.created_at, reverse=True)
        return records

    def is_stale(self, max_age_hours: float, now: Optional[datetime] = None) -> bool:
        """
        Whether the last successful sync is older than max_age_hours.

        Returns True when no successful sync is known.
        """
        if self.last_sync_at is None:
            return True
        now = ensure_utc(now or self.clock.now())
        age_hours = (now - self.last_sync_at).total_seconds() / 3600
        return age_hours >= max_age_hours


__all__ = ["RemoteSyncClient", "USER_AGENT"]
