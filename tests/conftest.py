"""
Pytest Configuration and Fixtures
Provides shared fixtures for the backup and disaster-recovery tests.
"""
import asyncio
import shutil
import sqlite3
import tempfile
from collections.abc import Generator
from pathlib import Path

import pytest

from datavault_dr.backup.events import EventChannel, RecordingAlertSink
from datavault_dr.backup.executor import BackupExecutor
from datavault_dr.backup.executors import DumpOptions, SQLiteDumpExecutor
from datavault_dr.backup.ledger import InMemoryJobLedger
from datavault_dr.backup.manager import BackupDRManager
from datavault_dr.backup.models import (
    BackupStrategy,
    DisasterRecoveryConfig,
    RetentionPolicy,
    StorageConfig,
    StorageKind,
    StrategyKind,
)
from datavault_dr.backup.storage_backends import LocalStorageDriver, StorageAdapter
from datavault_dr.config import DisasterRecoverySettings
from datavault_dr.exceptions import StorageError


def pytest_collection_modifyitems(config, items):
    """Modify test collection to add markers automatically."""
    for item in items:
        if "integration" in item.nodeid.lower():
            item.add_marker(pytest.mark.integration)
        else:
            item.add_marker(pytest.mark.unit)


class FlakyLocalDriver(LocalStorageDriver):
    """Local driver that rejects every call when its destination sets ``fail: true``."""

    def _check(self) -> None:
        if self.config.get("fail"):
            raise StorageError(f"Destination '{self.name}' is unavailable")

    async def put(self, path, key):
        self._check()
        return await super().put(path, key)

    async def get(self, uri, destination):
        self._check()
        return await super().get(uri, destination)

    async def delete(self, uri):
        self._check()
        await super().delete(uri)

    async def exists(self, uri):
        self._check()
        return await super().exists(uri)


class SlowSQLiteDumpExecutor(SQLiteDumpExecutor):
    """SQLite executor whose dump takes at least ``delay`` seconds."""

    def __init__(self, delay: float = 0.3):
        self.delay = delay
        self.dumps = 0

    async def dump(self, connection_info, options: DumpOptions):
        self.dumps += 1
        await asyncio.sleep(self.delay)
        return await super().dump(connection_info, options)


# Temporary directories and files
@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create temporary directory for tests."""
    temp_path = Path(tempfile.mkdtemp())
    yield temp_path
    shutil.rmtree(temp_path, ignore_errors=True)


@pytest.fixture
def sqlite_db(temp_dir) -> Path:
    """SQLite database with two business tables and a scratch table."""
    db_path = temp_dir / "source.db"
    conn = sqlite3.connect(db_path)
    conn.executescript(
        """
        CREATE TABLE customers (id INTEGER PRIMARY KEY, name TEXT NOT NULL, country TEXT);
        CREATE TABLE orders (id INTEGER PRIMARY KEY, customer_id INTEGER, amount REAL);
        CREATE TABLE tmp_import (id INTEGER PRIMARY KEY, payload TEXT);
        INSERT INTO customers VALUES (1, 'Ada', 'UK'), (2, 'Grace', 'USA'), (3, 'Linus', 'Finland');
        INSERT INTO orders VALUES (10, 1, 99.5), (11, 2, 12.0), (12, 2, 45.25);
        INSERT INTO tmp_import VALUES (1, 'scratch');
        """
    )
    conn.commit()
    conn.close()
    return db_path


def read_rows(db_path: Path, table: str) -> list[tuple]:
    conn = sqlite3.connect(db_path)
    try:
        return conn.execute(f"SELECT * FROM {table} ORDER BY id").fetchall()
    finally:
        conn.close()


def table_names(db_path: Path) -> set[str]:
    conn = sqlite3.connect(db_path)
    try:
        return {name for (name,) in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")}
    finally:
        conn.close()


def local_destination(root: Path, name: str, priority: int = 1, fail: bool = False) -> StorageConfig:
    config = {"path": str(root / name)}
    if fail:
        config["fail"] = True
    return StorageConfig(name=name, kind=StorageKind.LOCAL, config=config, priority=priority)


@pytest.fixture
def make_strategy(temp_dir, sqlite_db):
    """Factory for SQLite-backed strategies writing to local destinations under temp_dir."""

    def _make(name: str = "nightly", **overrides) -> BackupStrategy:
        values = dict(
            name=name,
            kind=StrategyKind.FULL,
            schedule="0 2 * * *",
            retention=RetentionPolicy(daily=7, weekly=4, monthly=12),
            max_concurrent=1,
            timeout_seconds=30,
            storage=[local_destination(temp_dir, "primary")],
            database={"kind": "sqlite", "path": str(sqlite_db)},
        )
        values.update(overrides)
        return BackupStrategy(**values)

    return _make


@pytest.fixture
def recorder() -> RecordingAlertSink:
    return RecordingAlertSink()


@pytest.fixture
def events(recorder) -> EventChannel:
    return EventChannel([recorder])


@pytest.fixture
def ledger() -> InMemoryJobLedger:
    return InMemoryJobLedger()


@pytest.fixture
def storage() -> StorageAdapter:
    adapter = StorageAdapter()
    adapter.register_driver(StorageKind.LOCAL, FlakyLocalDriver)
    return adapter


@pytest.fixture
def executor(ledger, storage, events, temp_dir) -> BackupExecutor:
    return BackupExecutor(ledger=ledger, storage=storage, events=events, work_dir=temp_dir / "work")


@pytest.fixture
def settings(temp_dir) -> DisasterRecoverySettings:
    return DisasterRecoverySettings(
        work_dir=temp_dir / "work",
        ledger_backend="memory",
        ledger_path=temp_dir / "ledger.json",
        retention_sweep_interval=3600,
    )


@pytest.fixture
def manager(settings, storage, events) -> BackupDRManager:
    return BackupDRManager(
        settings=settings,
        dr_config=DisasterRecoveryConfig(failure_threshold=2, health_check_interval=3600),
        storage=storage,
        events=events,
        failover_retry_delay=0,
    )
