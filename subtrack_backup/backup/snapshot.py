"""
Snapshot model and builder.

A Snapshot is an immutable capture of the subscription, settings and cache
stores at one instant. This module provides:
- The Snapshot dataclasses and their JSON dictionary form
- Parsing of both the current layout and the legacy mobile app layout
- Validation of the snapshot invariant
- SnapshotBuilder, which assembles a snapshot from the live stores
"""

from __future__ import annotations

import json
import logging
import platform
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any

from subtrack_backup.backup.errors import InvalidSnapshotError, SnapshotAssemblyError
from subtrack_backup.storage.stores import CacheStore, SettingsStore, SubscriptionStore
from subtrack_backup.utils.clock import (
    Clock,
    SystemClock,
    ensure_utc,
    format_timestamp,
    parse_timestamp,
)

logger = logging.getLogger(__name__)

# Current snapshot schema version
SNAPSHOT_VERSION = "1.0"


@dataclass(frozen=True)
class DeviceInfo:
    """Informational description of the device that produced a snapshot."""

    platform: str = "unknown"
    os_version: str = ""

    @classmethod
    def current(cls, platform_name: str | None = None) -> DeviceInfo:
        """Describe the running host."""
        return cls(
            platform=platform_name or platform.system().lower() or "unknown",
            os_version=platform.release(),
        )


@dataclass(frozen=True)
class SnapshotPayload:
    """Domain documents captured in a snapshot."""

    subscriptions: Any = None
    settings: Any = None
    cache: Any = None


@dataclass(frozen=True)
class Snapshot:
    """
    Point-in-time capture of all backed-up domain data.

    Attributes:
        version: Schema version of the snapshot format
        created_at: Creation instant (UTC)
        device: Device that produced the snapshot
        payload: Subscription, settings and cache documents
        is_restore_point: True only for automatic pre-restore snapshots
    """

    version: str
    created_at: datetime
    payload: SnapshotPayload
    device: DeviceInfo = field(default_factory=DeviceInfo)
    is_restore_point: bool = False

    def as_restore_point(self) -> Snapshot:
        """Return a copy of this snapshot flagged as a restore point."""
        return replace(self, is_restore_point=True)

    def to_dict(self) -> dict[str, Any]:
        """Convert to the JSON-compatible dictionary layout."""
        return {
            "version": self.version,
            "created_at": format_timestamp(self.created_at),
            "device": {
                "platform": self.device.platform,
                "os_version": self.device.os_version,
            },
            "is_restore_point": self.is_restore_point,
            "payload": {
                "subscriptions": self.payload.subscriptions,
                "settings": self.payload.settings,
                "cache": self.payload.cache,
            },
        }

    def to_json(self) -> bytes:
        """Serialize to pretty-printed UTF-8 JSON."""
        return json.dumps(self.to_dict(), indent=2, ensure_ascii=False).encode("utf-8")

    @classmethod
    def from_dict(cls, data: Any) -> Snapshot:
        """
        Build a Snapshot from its dictionary layout.

        Supports both the current layout and the legacy layout written by the
        mobile app ("timestamp" instead of "created_at", "data" instead of
        "payload").

        Raises:
            InvalidSnapshotError: If the structure or timestamp is unusable
        """
        if not isinstance(data, dict):
            raise InvalidSnapshotError(
                f"Snapshot must be a JSON object, got {type(data).__name__}"
            )

        raw_created = data.get("created_at", data.get("timestamp"))
        if raw_created is None:
            raise InvalidSnapshotError("Snapshot has no creation timestamp")
        try:
            created_at = parse_timestamp(raw_created)
        except (TypeError, ValueError) as e:
            raise InvalidSnapshotError(
                f"Snapshot timestamp is not parseable: {raw_created!r}"
            ) from e

        raw_payload = data.get("payload", data.get("data"))
        if raw_payload is None:
            raw_payload = {}
        if not isinstance(raw_payload, dict):
            raise InvalidSnapshotError("Snapshot payload must be a JSON object")

        raw_device = data.get("device") or {}
        if isinstance(raw_device, dict):
            device = DeviceInfo(
                platform=str(raw_device.get("platform", "unknown")),
                os_version=str(
                    raw_device.get("os_version", raw_device.get("version", ""))
                ),
            )
        else:
            device = DeviceInfo(platform=str(raw_device))

        version = data.get("version")
        return cls(
            version=str(version) if version is not None else "",
            created_at=created_at,
            payload=SnapshotPayload(
                subscriptions=raw_payload.get("subscriptions"),
                settings=raw_payload.get("settings"),
                cache=raw_payload.get("cache"),
            ),
            device=device,
            is_restore_point=bool(
                data.get("is_restore_point", data.get("isRestorePoint", False))
            ),
        )

    @classmethod
    def from_json(cls, content: bytes | str) -> Snapshot:
        """
        Parse a snapshot from JSON text.

        Raises:
            InvalidSnapshotError: If the content is not valid snapshot JSON
        """
        try:
            data = json.loads(content)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise InvalidSnapshotError(f"Snapshot is not valid JSON: {e}") from e
        return cls.from_dict(data)


def validate_snapshot(snapshot: Snapshot) -> None:
    """
    Check the snapshot invariant.

    Raises:
        InvalidSnapshotError: If version is empty, created_at is not a
            datetime, or the subscriptions document is missing
    """
    if not snapshot.version or not str(snapshot.version).strip():
        raise InvalidSnapshotError("Snapshot version is missing")
    if not isinstance(snapshot.created_at, datetime):
        try:
            parse_timestamp(snapshot.created_at)  # type: ignore[arg-type]
        except (TypeError, ValueError) as e:
            raise InvalidSnapshotError("Snapshot timestamp is not parseable") from e
    if snapshot.payload is None or snapshot.payload.subscriptions is None:
        raise InvalidSnapshotError("Snapshot contains no subscription data")


def encode_document(document: Any) -> bytes:
    """Encode a payload document back into the bytes a store imports."""
    return json.dumps(document, ensure_ascii=False).encode("utf-8")


def decode_document(data: bytes, source: str) -> Any:
    """
    Decode bytes exported by a store.

    Raises:
        SnapshotAssemblyError: If the bytes are not UTF-8 JSON
    """
    try:
        return json.loads(data.decode("utf-8"))
    except (AttributeError, UnicodeDecodeError, json.JSONDecodeError) as e:
        raise SnapshotAssemblyError(
            f"{source} store exported unreadable data: {e}"
        ) from e


class SnapshotBuilder:
    """
    Assembles snapshots from the live domain stores.

    The build either captures all three stores or fails as a whole; it never
    returns a partial snapshot and performs no writes.

    Usage:
        builder = SnapshotBuilder(subscriptions, settings, cache)
        snapshot = builder.build()
    """

    def __init__(
        self,
        subscription_store: SubscriptionStore,
        settings_store: SettingsStore,
        cache_store: CacheStore,
        clock: Clock | None = None,
        platform_name: str | None = None,
    ):
        self.subscription_store = subscription_store
        self.settings_store = settings_store
        self.cache_store = cache_store
        self.clock = clock or SystemClock()
        self.device = DeviceInfo.current(platform_name)

    def build(self, is_restore_point: bool = False) -> Snapshot:
        """
        Capture the current state of every store.

        Args:
            is_restore_point: Flag the snapshot as a pre-restore safety net

        Returns:
            A new Snapshot

        Raises:
            SnapshotAssemblyError: If any store cannot be read
        """
        documents = {}
        sources = (
            ("subscriptions", self.subscription_store),
            ("settings", self.settings_store),
            ("cache", self.cache_store),
        )
        for name, store in sources:
            try:
                raw = store.export_all()
            except Exception as e:
                logger.error(f"Failed to export {name} store: {e}")
                raise SnapshotAssemblyError(
                    f"Could not read {name}: {e}", step="building_snapshot"
                ) from e
            documents[name] = decode_document(raw, name.capitalize())

        snapshot = Snapshot(
            version=SNAPSHOT_VERSION,
            created_at=ensure_utc(self.clock.now()),
            payload=SnapshotPayload(**documents),
            device=self.device,
            is_restore_point=is_restore_point,
        )
        logger.debug(
            f"Built snapshot at {format_timestamp(snapshot.created_at)}"
            f"{' (restore point)' if is_restore_point else ''}"
        )
        return snapshot


__all__ = [
    "SNAPSHOT_VERSION",
    "DeviceInfo",
    "SnapshotPayload",
    "Snapshot",
    "SnapshotBuilder",
    "validate_snapshot",
    "encode_document",
    "decode_document",
]
