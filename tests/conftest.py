"""
Shared fixtures for the subtrack_backup test suite.
"""

import logging
from datetime import datetime, timedelta, timezone

import pytest

from subtrack_backup.backup.manager import LocalBackupStore
from subtrack_backup.backup.snapshot import (
    SNAPSHOT_VERSION,
    DeviceInfo,
    Snapshot,
    SnapshotPayload,
)
from subtrack_backup.facade import BackupFacade
from subtrack_backup.storage.db import (
    AppDatabase,
    SqliteCacheStore,
    SqliteSettingsStore,
    SqliteSubscriptionStore,
)

START_TIME = datetime(2026, 10, 17, 10, 30, 0, tzinfo=timezone.utc)


class FixedClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime = START_TIME):
        self.current = start

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current


def make_snapshot(
    created_at: datetime = START_TIME,
    subscriptions=None,
    settings=None,
    cache=None,
    is_restore_point: bool = False,
) -> Snapshot:
    """Build a snapshot with sensible defaults."""
    if subscriptions is None:
        subscriptions = {
            "subscriptions": [
                {
                    "id": "sub-1",
                    "name": "Netflix",
                    "category": "Entertainment",
                    "amount": 15.49,
                    "currency": "USD",
                    "billing_cycle": "monthly",
                    "next_payment_date": "2026-11-01",
                    "is_active": True,
                    "notes": None,
                }
            ],
            "categories": [],
        }
    return Snapshot(
        version=SNAPSHOT_VERSION,
        created_at=created_at,
        payload=SnapshotPayload(
            subscriptions=subscriptions,
            settings=settings if settings is not None else {"theme": "dark"},
            cache=cache if cache is not None else {"entries": []},
        ),
        device=DeviceInfo(platform="linux", os_version="6.1"),
        is_restore_point=is_restore_point,
    )


@pytest.fixture(autouse=True)
def reset_package_logger():
    """Undo setup_logging() so caplog keeps working between tests."""
    yield
    logger = logging.getLogger("subtrack_backup")
    for handler in list(logger.handlers):
        handler.close()
    logger.handlers.clear()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def db():
    database = AppDatabase(":memory:")
    database.initialize()
    yield database
    database.close()


@pytest.fixture
def subscription_store(db):
    return SqliteSubscriptionStore(db)


@pytest.fixture
def settings_store(db):
    return SqliteSettingsStore(db)


@pytest.fixture
def cache_store(db):
    return SqliteCacheStore(db)


@pytest.fixture
def local_store(tmp_path):
    return LocalBackupStore(tmp_path / "backups")


@pytest.fixture
def facade(subscription_store, settings_store, cache_store, local_store, clock, tmp_path):
    backup_facade = BackupFacade(
        subscription_store,
        settings_store,
        cache_store,
        local_store,
        export_dir=tmp_path / "exports",
        clock=clock,
        platform_name="linux",
    )
    yield backup_facade
    backup_facade.shutdown()


@pytest.fixture
def snapshot_factory():
    return make_snapshot
