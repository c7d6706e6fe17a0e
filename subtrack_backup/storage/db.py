"""
SQLite database module for SubTrack domain data.

Provides persistent storage for subscriptions, categories, settings and cache
entries, and the store objects the backup engine exports from and imports
into.
"""

import json
import sqlite3
import threading
import uuid
from collections.abc import Generator
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Optional

from subtrack_backup.daemon.scheduler import AutoBackupPolicy, BackupFrequency
from subtrack_backup.storage.stores import CacheInfo
from subtrack_backup.utils.clock import format_timestamp, parse_timestamp

# SQL Schema for domain tables
SCHEMA = """
CREATE TABLE IF NOT EXISTS subscriptions (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    category TEXT,
    amount REAL NOT NULL DEFAULT 0,
    currency TEXT NOT NULL DEFAULT 'USD',
    billing_cycle TEXT NOT NULL DEFAULT 'monthly',
    next_payment_date TEXT,
    is_active INTEGER NOT NULL DEFAULT 1,
    notes TEXT,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_subscriptions_name ON subscriptions(name);

CREATE TABLE IF NOT EXISTS categories (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    color TEXT
);

CREATE TABLE IF NOT EXISTS settings (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS cache_entries (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    expires_at TEXT,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);
"""

SUBSCRIPTION_COLUMNS = (
    "id",
    "name",
    "category",
    "amount",
    "currency",
    "billing_cycle",
    "next_payment_date",
    "is_active",
    "notes",
)

# Settings key holding the backup preferences
BACKUP_SETTINGS_KEY = "backup"

DEFAULT_BACKUP_SETTINGS: dict[str, Any] = {
    "auto_backup": False,
    "frequency": BackupFrequency.DAILY.value,
    "cloud_backup": False,
    "include_cache": True,
    "last_run_at": None,
    "last_cloud_sync_at": None,
    "last_restored_at": None,
}


class AppDatabase:
    """
    SQLite database manager for SubTrack domain data.

    Usage:
        db = AppDatabase('/path/to/subtrack.db')
        db.initialize()

        # Or use in-memory for testing:
        db = AppDatabase(':memory:')
        db.initialize()
    """

    def __init__(self, db_path: str):
        """
        Initialize the database manager.

        Args:
            db_path: Path to SQLite database file, or ':memory:' for in-memory database
        """
        self.db_path = db_path
        self._shared_connection: Optional[sqlite3.Connection] = None
        self._shared_lock = threading.RLock()

    def _get_connection(self) -> sqlite3.Connection:
        """
        Get a database connection.

        For in-memory databases, returns a shared connection to ensure
        schema persists across operations. For file databases, creates
        a new connection each time.
        """
        if self.db_path == ":memory:":
            # Shared across the caller and the backup worker thread
            if self._shared_connection is None:
                self._shared_connection = sqlite3.connect(
                    ":memory:", check_same_thread=False
                )
                self._shared_connection.row_factory = sqlite3.Row
            return self._shared_connection
        else:
            conn = sqlite3.connect(self.db_path)
            conn.row_factory = sqlite3.Row
            return conn

    @contextmanager
    def connection(self) -> Generator[sqlite3.Connection, None, None]:
        """
        Context manager for database connections.

        Commits on success and rolls back on error, so each block is one
        transaction.

        Usage:
            with db.connection() as conn:
                conn.execute("SELECT * FROM subscriptions")
        """
        is_shared = self.db_path == ":memory:"
        if is_shared:
            self._shared_lock.acquire()
        try:
            conn = self._get_connection()
            try:
                yield conn
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                # Only close if not using shared connection
                if not is_shared:
                    conn.close()
        finally:
            if is_shared:
                self._shared_lock.release()

    def initialize(self) -> None:
        """Create the schema if it doesn't exist."""
        with self.connection() as conn:
            conn.executescript(SCHEMA)

    def close(self) -> None:
        """Close the shared in-memory connection, if any."""
        with self._shared_lock:
            if self._shared_connection is not None:
                self._shared_connection.close()
                self._shared_connection = None


def _decode_payload(data: bytes, expected: tuple[type, ...], name: str) -> Any:
    """
    Decode store import bytes.

    Raises:
        ValueError: If the bytes are not JSON of the expected shape
    """
    try:
        document = json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ValueError(f"{name} data is not valid JSON: {e}") from e
    if not isinstance(document, expected):
        kinds = " or ".join("object" if t is dict else "array" for t in expected)
        raise ValueError(
            f"{name} data must be a JSON {kinds}, "
            f"got {type(document).__name__}"
        )
    return document


def _encode(document: Any) -> bytes:
    return json.dumps(document, ensure_ascii=False).encode("utf-8")


class SqliteSubscriptionStore:
    """Subscription store backed by the subscriptions and categories tables."""

    def __init__(self, db: AppDatabase):
        self.db = db

    def add_subscription(self, **fields: Any) -> str:
        """Insert a subscription and return its id."""
        record = self._normalize(fields)
        with self.db.connection() as conn:
            self._insert(conn, record)
        return record["id"]

    def list_subscriptions(self) -> list[dict[str, Any]]:
        with self.db.connection() as conn:
            rows = conn.execute(
                f"SELECT {', '.join(SUBSCRIPTION_COLUMNS)} FROM subscriptions "
                "ORDER BY name, id"
            ).fetchall()
        return [self._row_to_dict(row) for row in rows]

    def count(self) -> int:
        with self.db.connection() as conn:
            return conn.execute("SELECT COUNT(*) FROM subscriptions").fetchone()[0]

    def export_all(self) -> bytes:
        with self.db.connection() as conn:
            categories = [
                dict(row)
                for row in conn.execute(
                    "SELECT id, name, color FROM categories ORDER BY id"
                ).fetchall()
            ]
        return _encode(
            {"subscriptions": self.list_subscriptions(), "categories": categories}
        )

    def import_all(self, data: bytes) -> None:
        """
        Replace all subscriptions and categories.

        Accepts either {"subscriptions": [...], "categories": [...]} or a bare
        list of subscriptions.

        Raises:
            ValueError: If the data cannot be decoded
        """
        document = _decode_payload(data, (dict, list), "Subscription")
        if isinstance(document, list):
            document = {"subscriptions": document}

        records = [
            self._normalize(item)
            for item in document.get("subscriptions") or []
            if isinstance(item, dict)
        ]
        categories = [
            item for item in document.get("categories") or [] if isinstance(item, dict)
        ]

        with self.db.connection() as conn:
            conn.execute("DELETE FROM subscriptions")
            conn.execute("DELETE FROM categories")
            for record in records:
                self._insert(conn, record)
            for category in categories:
                conn.execute(
                    "INSERT OR REPLACE INTO categories (id, name, color) VALUES (?, ?, ?)",
                    (
                        str(category.get("id") or uuid.uuid4().hex),
                        category.get("name") or "",
                        category.get("color"),
                    ),
                )

    def clear_all(self) -> None:
        with self.db.connection() as conn:
            conn.execute("DELETE FROM subscriptions")
            conn.execute("DELETE FROM categories")

    @staticmethod
    def _normalize(fields: dict[str, Any]) -> dict[str, Any]:
        name = fields.get("name")
        if not name:
            raise ValueError("Subscription name is required")
        return {
            "id": str(fields.get("id") or uuid.uuid4().hex),
            "name": str(name),
            "category": fields.get("category"),
            "amount": float(fields.get("amount") or 0),
            "currency": fields.get("currency") or "USD",
            "billing_cycle": fields.get("billing_cycle") or "monthly",
            "next_payment_date": fields.get("next_payment_date"),
            "is_active": bool(fields.get("is_active", True)),
            "notes": fields.get("notes"),
        }

    @staticmethod
    def _insert(conn: sqlite3.Connection, record: dict[str, Any]) -> None:
        conn.execute(
            f"INSERT OR REPLACE INTO subscriptions ({', '.join(SUBSCRIPTION_COLUMNS)}) "
            f"VALUES ({', '.join('?' for _ in SUBSCRIPTION_COLUMNS)})",
            tuple(
                int(record[c]) if c == "is_active" else record[c]
                for c in SUBSCRIPTION_COLUMNS
            ),
        )

    @staticmethod
    def _row_to_dict(row: sqlite3.Row) -> dict[str, Any]:
        result = dict(row)
        result["is_active"] = bool(result["is_active"])
        return result


class SqliteSettingsStore:
    """Settings store backed by a key/value table of JSON values."""

    def __init__(self, db: AppDatabase):
        self.db = db

    def get_setting(self, key: str, default: Any = None) -> Any:
        with self.db.connection() as conn:
            row = conn.execute(
                "SELECT value FROM settings WHERE key = ?", (key,)
            ).fetchone()
        if row is None:
            return default
        return json.loads(row["value"])

    def set_setting(self, key: str, value: Any) -> None:
        with self.db.connection() as conn:
            conn.execute(
                """
                INSERT INTO settings (key, value) VALUES (?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value
                """,
                (key, json.dumps(value)),
            )

    def get_backup_settings(self) -> dict[str, Any]:
        stored = self.get_setting(BACKUP_SETTINGS_KEY) or {}
        return {**DEFAULT_BACKUP_SETTINGS, **stored}

    def update_backup_settings(self, **updates: Any) -> dict[str, Any]:
        """Merge updates into the backup settings and return the result."""
        unknown = set(updates) - set(DEFAULT_BACKUP_SETTINGS)
        if unknown:
            raise ValueError(f"Unknown backup settings: {', '.join(sorted(unknown))}")
        if "frequency" in updates:
            updates["frequency"] = BackupFrequency(updates["frequency"]).value
        settings = {**self.get_backup_settings(), **updates}
        self.set_setting(BACKUP_SETTINGS_KEY, settings)
        return settings

    def export_all(self) -> bytes:
        with self.db.connection() as conn:
            rows = conn.execute("SELECT key, value FROM settings ORDER BY key").fetchall()
        return _encode({row["key"]: json.loads(row["value"]) for row in rows})

    def import_all(self, data: bytes) -> None:
        """
        Replace all settings.

        Raises:
            ValueError: If the data is not a JSON object
        """
        document = _decode_payload(data, (dict,), "Settings")
        with self.db.connection() as conn:
            conn.execute("DELETE FROM settings")
            for key, value in document.items():
                conn.execute(
                    "INSERT INTO settings (key, value) VALUES (?, ?)",
                    (str(key), json.dumps(value)),
                )

    def clear_all(self) -> None:
        with self.db.connection() as conn:
            conn.execute("DELETE FROM settings")

    def get_backup_policy(self) -> AutoBackupPolicy:
        settings = self.get_backup_settings()
        return AutoBackupPolicy(
            enabled=bool(settings["auto_backup"]),
            frequency=BackupFrequency(settings["frequency"]),
            last_run_at=self._parse(settings["last_run_at"]),
            cloud_enabled=bool(settings["cloud_backup"]),
        )

    def set_last_run_at(self, value: datetime) -> None:
        self.update_backup_settings(last_run_at=format_timestamp(value))

    def get_last_cloud_sync_at(self) -> Optional[datetime]:
        return self._parse(self.get_backup_settings()["last_cloud_sync_at"])

    def set_last_cloud_sync_at(self, value: datetime) -> None:
        self.update_backup_settings(last_cloud_sync_at=format_timestamp(value))

    def get_last_restored_at(self) -> Optional[datetime]:
        return self._parse(self.get_backup_settings()["last_restored_at"])

    def set_last_restored_at(self, value: datetime) -> None:
        self.update_backup_settings(last_restored_at=format_timestamp(value))

    def include_cache(self) -> bool:
        return bool(self.get_backup_settings()["include_cache"])

    @staticmethod
    def _parse(value: Optional[str]) -> Optional[datetime]:
        if not value:
            return None
        try:
            return parse_timestamp(value)
        except ValueError:
            return None


class SqliteCacheStore:
    """Cache store backed by the cache_entries table."""

    def __init__(self, db: AppDatabase):
        self.db = db

    def put(self, key: str, value: Any, expires_at: Optional[datetime] = None) -> None:
        with self.db.connection() as conn:
            conn.execute(
                """
                INSERT INTO cache_entries (key, value, expires_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    value = excluded.value,
                    expires_at = excluded.expires_at
                """,
                (
                    key,
                    json.dumps(value),
                    format_timestamp(expires_at) if expires_at else None,
                ),
            )

    def get(self, key: str, default: Any = None) -> Any:
        with self.db.connection() as conn:
            row = conn.execute(
                "SELECT value FROM cache_entries WHERE key = ?", (key,)
            ).fetchone()
        return json.loads(row["value"]) if row else default

    def export_all(self) -> bytes:
        with self.db.connection() as conn:
            rows = conn.execute(
                "SELECT key, value, expires_at FROM cache_entries ORDER BY key"
            ).fetchall()
        entries = [
            {
                "key": row["key"],
                "value": json.loads(row["value"]),
                "expires_at": row["expires_at"],
            }
            for row in rows
        ]
        return _encode({"entries": entries})

    def import_all(self, data: bytes) -> None:
        """
        Replace all cache entries.

        Raises:
            ValueError: If the data is not a JSON object
        """
        document = _decode_payload(data, (dict,), "Cache")
        entries = [e for e in document.get("entries") or [] if isinstance(e, dict)]
        with self.db.connection() as conn:
            conn.execute("DELETE FROM cache_entries")
            for entry in entries:
                if not entry.get("key"):
                    continue
                conn.execute(
                    "INSERT OR REPLACE INTO cache_entries (key, value, expires_at) "
                    "VALUES (?, ?, ?)",
                    (
                        str(entry["key"]),
                        json.dumps(entry.get("value")),
                        entry.get("expires_at"),
                    ),
                )

    def clear_all(self) -> None:
        with self.db.connection() as conn:
            conn.execute("DELETE FROM cache_entries")

    def info(self) -> CacheInfo:
        with self.db.connection() as conn:
            count = conn.execute("SELECT COUNT(*) FROM cache_entries").fetchone()[0]
        return CacheInfo(entry_count=count)
