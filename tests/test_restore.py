"""
Unit Tests for the Restore Pipeline
Tests verified round trips, table-subset restores and the failure modes
callers rely on.
"""
import sqlite3
from pathlib import Path

import pytest

from conftest import local_destination, read_rows, table_names
from datavault_dr.backup.events import EventKind
from datavault_dr.backup.models import (
    BackupJob,
    CompressionAlgorithm,
    EncryptionConfig,
    JobStatus,
    RestoreOptions,
    StorageKind,
    StorageLocation,
)
from datavault_dr.backup.restore import RestorePipeline
from datavault_dr.exceptions import (
    BackupNotFound,
    IntegrityCheckFailed,
    NoAccessibleBackupLocation,
    StrategyNotFound,
)


@pytest.fixture
def strategies():
    registry = {}

    def lookup(name):
        try:
            return registry[name]
        except KeyError:
            raise StrategyNotFound(name) from None

    lookup.registry = registry
    return lookup


@pytest.fixture
def pipeline(ledger, storage, events, strategies, temp_dir):
    return RestorePipeline(
        ledger=ledger,
        storage=storage,
        events=events,
        strategies=strategies,
        work_dir=temp_dir / "work",
    )


async def back_up(executor, strategies, strategy):
    strategies.registry[strategy.name] = strategy
    return await executor.execute(strategy)


class TestRestoreRoundTrip:
    """Restoring a backup reproduces the source database."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("compression", [CompressionAlgorithm.GZIP, CompressionAlgorithm.XZ, None])
    async def test_compressed_and_encrypted(
        self, executor, pipeline, strategies, make_strategy, sqlite_db, temp_dir, compression
    ):
        strategy = make_strategy(compression=compression, encryption=EncryptionConfig(passphrase="vault"))
        job = await back_up(executor, strategies, strategy)
        target = temp_dir / "restored.db"

        result = await pipeline.restore(RestoreOptions(backup_id=job.job_id, target_location=str(target)))

        assert result.checksum == job.checksum
        assert result.verified
        for table in ("customers", "orders", "tmp_import"):
            assert read_rows(target, table) == read_rows(sqlite_db, table)

    @pytest.mark.asyncio
    async def test_restore_over_source_location(self, executor, pipeline, strategies, make_strategy, sqlite_db):
        job = await back_up(executor, strategies, make_strategy())
        conn = sqlite3.connect(sqlite_db)
        conn.execute("DELETE FROM orders")
        conn.commit()
        conn.close()

        await pipeline.restore(RestoreOptions(backup_id=job.job_id))

        assert len(read_rows(sqlite_db, "orders")) == 3

    @pytest.mark.asyncio
    async def test_table_subset(self, executor, pipeline, strategies, make_strategy, sqlite_db, temp_dir):
        job = await back_up(executor, strategies, make_strategy())
        target = temp_dir / "partial.db"
        conn = sqlite3.connect(target)
        conn.execute("CREATE TABLE orders (id INTEGER PRIMARY KEY, customer_id INTEGER, amount REAL)")
        conn.execute("INSERT INTO orders VALUES (99, 9, 1.0)")
        conn.execute("CREATE TABLE untouched (id INTEGER)")
        conn.commit()
        conn.close()

        await pipeline.restore(RestoreOptions(backup_id=job.job_id, target_location=str(target), tables=["orders"]))

        assert read_rows(target, "orders") == read_rows(sqlite_db, "orders")
        assert table_names(target) == {"orders", "untouched"}

    @pytest.mark.asyncio
    async def test_events_and_metrics(self, executor, pipeline, strategies, make_strategy, recorder, temp_dir):
        job = await back_up(executor, strategies, make_strategy())

        await pipeline.restore(RestoreOptions(backup_id=job.job_id, target_location=str(temp_dir / "r.db")))

        assert recorder.of_kind(EventKind.RESTORE_STARTED)
        assert recorder.of_kind(EventKind.RESTORE_COMPLETED)[0].context["backup_id"] == job.job_id
        assert pipeline.metrics.successful_restores == 1


class TestRestoreFailures:

    @pytest.mark.asyncio
    async def test_unknown_backup(self, pipeline, recorder):
        with pytest.raises(BackupNotFound):
            await pipeline.restore(RestoreOptions(backup_id="backup_missing"))
        assert recorder.of_kind(EventKind.RESTORE_FAILED)

    @pytest.mark.asyncio
    async def test_failed_job_is_not_restorable(self, pipeline, ledger, strategies, make_strategy):
        strategies.registry["nightly"] = make_strategy()
        job = BackupJob.create("nightly")
        job.transition(JobStatus.RUNNING)
        job.transition(JobStatus.FAILED)
        await ledger.create(job)

        with pytest.raises(BackupNotFound):
            await pipeline.restore(RestoreOptions(backup_id=job.job_id))

    @pytest.mark.asyncio
    async def test_unknown_strategy(self, executor, pipeline, strategies, make_strategy):
        job = await back_up(executor, strategies, make_strategy())
        strategies.registry.clear()

        with pytest.raises(BackupNotFound):
            await pipeline.restore(RestoreOptions(backup_id=job.job_id))

    @pytest.mark.asyncio
    async def test_tampered_artifact(self, executor, pipeline, strategies, make_strategy, temp_dir):
        job = await back_up(executor, strategies, make_strategy())
        stored = Path(job.locations[0].uri)
        stored.write_bytes(stored.read_bytes() + b"tampered")
        target = temp_dir / "never.db"

        with pytest.raises(IntegrityCheckFailed) as exc_info:
            await pipeline.restore(RestoreOptions(backup_id=job.job_id, target_location=str(target)))

        assert exc_info.value.expected == job.checksum
        assert not target.exists()

    @pytest.mark.asyncio
    async def test_every_copy_missing(self, executor, pipeline, strategies, make_strategy, temp_dir):
        strategy = make_strategy(storage=[
            local_destination(temp_dir, "d1"),
            local_destination(temp_dir, "d2", priority=2),
        ])
        job = await back_up(executor, strategies, strategy)
        for location in job.locations:
            Path(location.uri).unlink()

        with pytest.raises(NoAccessibleBackupLocation):
            await pipeline.restore(RestoreOptions(backup_id=job.job_id))

    @pytest.mark.asyncio
    async def test_falls_back_to_second_copy(self, executor, pipeline, strategies, make_strategy, sqlite_db, temp_dir):
        strategy = make_strategy(storage=[
            local_destination(temp_dir, "d1"),
            local_destination(temp_dir, "d2", priority=2),
        ])
        job = await back_up(executor, strategies, strategy)
        Path(job.locations[0].uri).unlink()
        target = temp_dir / "restored.db"

        await pipeline.restore(RestoreOptions(backup_id=job.job_id, target_location=str(target)))

        assert read_rows(target, "customers") == read_rows(sqlite_db, "customers")


class TestVerify:

    @pytest.mark.asyncio
    async def test_verify_valid_backup(self, executor, pipeline, strategies, make_strategy):
        job = await back_up(executor, strategies, make_strategy())

        result = await pipeline.verify(job.job_id)

        assert result.valid
        assert result.actual_checksum == job.checksum
        assert result.locations == {job.locations[0].uri: True}

    @pytest.mark.asyncio
    async def test_verify_detects_corruption(self, executor, pipeline, strategies, make_strategy):
        job = await back_up(executor, strategies, make_strategy())
        Path(job.locations[0].uri).write_bytes(b"garbage")

        result = await pipeline.verify(job.job_id)

        assert not result.valid

    @pytest.mark.asyncio
    async def test_verify_reports_missing_location(self, pipeline, ledger, strategies, make_strategy, temp_dir):
        strategies.registry["nightly"] = make_strategy()
        job = BackupJob.create("nightly")
        job.transition(JobStatus.RUNNING)
        job.locations = [StorageLocation("primary", StorageKind.LOCAL, str(temp_dir / "gone.gz"))]
        job.checksum = "0" * 64
        job.transition(JobStatus.COMPLETED)
        await ledger.create(job)

        with pytest.raises(NoAccessibleBackupLocation):
            await pipeline.verify(job.job_id)
