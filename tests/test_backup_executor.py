"""
Unit Tests for the Backup Executor
Tests the dump -> compress -> encrypt -> store pipeline, admission control,
cancellation, timeouts and failure recording.
"""
import asyncio
from pathlib import Path

import psutil
import pytest

from conftest import SlowSQLiteDumpExecutor, local_destination
from datavault_dr.backup.events import EventKind
from datavault_dr.backup.executor import BackupExecutor
from datavault_dr.backup.integrity import compute_checksum
from datavault_dr.backup.models import EncryptionConfig, JobStatus, JobTrigger
from datavault_dr.exceptions import (
    AllDestinationsFailed,
    BackupCancelled,
    BackupTimeout,
    ConcurrencyLimitExceeded,
    DumpFailed,
    HookFailed,
    StrategyDisabled,
)


class TestBackupPipeline:
    """Test successful backups."""

    @pytest.mark.asyncio
    async def test_completed_job_is_recorded(self, executor, ledger, recorder, make_strategy, temp_dir):
        strategy = make_strategy()

        job = await executor.execute(strategy, trigger=JobTrigger.API)

        assert job.status == JobStatus.COMPLETED
        assert job.trigger == JobTrigger.API
        assert job.size_bytes > 0
        assert len(job.locations) == 1
        stored = Path(job.locations[0].uri)
        assert stored.name.endswith(".sql.gz")
        assert await compute_checksum(stored) == job.checksum

        recorded = await ledger.get(job.job_id)
        assert recorded.status == JobStatus.COMPLETED
        assert [e.kind for e in recorder.events] == [EventKind.BACKUP_STARTED, EventKind.BACKUP_COMPLETED]
        assert not (temp_dir / "work" / job.job_id).exists()

    @pytest.mark.asyncio
    async def test_encrypted_artifact(self, executor, make_strategy):
        strategy = make_strategy(encryption=EncryptionConfig(passphrase="vault"))

        job = await executor.execute(strategy)

        assert job.encrypted
        assert job.locations[0].uri.endswith(".sql.gz.enc")
        assert job.source_checksum != job.checksum

    @pytest.mark.asyncio
    async def test_redundant_copies_survive_one_broken_destination(self, executor, make_strategy, temp_dir):
        strategy = make_strategy(storage=[
            local_destination(temp_dir, "d1", priority=1),
            local_destination(temp_dir, "d2", priority=2, fail=True),
            local_destination(temp_dir, "d3", priority=3),
        ])

        job = await executor.execute(strategy)

        assert job.status == JobStatus.COMPLETED
        assert [loc.destination for loc in job.locations] == ["d1", "d3"]

    @pytest.mark.asyncio
    async def test_all_destinations_broken_fails_job(self, executor, ledger, make_strategy, temp_dir):
        strategy = make_strategy(storage=[
            local_destination(temp_dir, "d1", fail=True),
            local_destination(temp_dir, "d2", priority=2, fail=True),
        ])

        with pytest.raises(AllDestinationsFailed):
            await executor.execute(strategy)

        [job] = await ledger.list()
        assert job.status == JobStatus.FAILED
        assert job.error_kind == "AllDestinationsFailed"
        assert job.locations == []

    @pytest.mark.asyncio
    async def test_excluded_tables_are_not_dumped(self, make_strategy, ledger, storage, events, temp_dir):
        executor = BackupExecutor(ledger, storage, events, temp_dir / "work")
        strategy = make_strategy(compression=None, exclude_patterns=["tmp_*"])

        job = await executor.execute(strategy)

        dump = Path(job.locations[0].uri).read_text()
        assert "customers" in dump
        assert "tmp_import" not in dump


class TestAdmission:
    """Test concurrency limits and disabled strategies."""

    @pytest.mark.asyncio
    async def test_second_job_rejected_at_limit(self, ledger, storage, events, make_strategy, temp_dir):
        slow = SlowSQLiteDumpExecutor(delay=0.3)
        executor = BackupExecutor(ledger, storage, events, temp_dir / "work", executors={"sqlite": slow})
        strategy = make_strategy(max_concurrent=1)

        first = asyncio.create_task(executor.execute(strategy))
        await asyncio.sleep(0.05)
        with pytest.raises(ConcurrencyLimitExceeded):
            await executor.execute(strategy)
        job = await first

        assert job.status == JobStatus.COMPLETED
        assert slow.dumps == 1
        assert len(await ledger.list()) == 1

    @pytest.mark.asyncio
    async def test_simultaneous_calls_admit_exactly_limit(self, ledger, storage, events, make_strategy, temp_dir):
        slow = SlowSQLiteDumpExecutor(delay=0.2)
        executor = BackupExecutor(ledger, storage, events, temp_dir / "work", executors={"sqlite": slow})
        strategy = make_strategy(max_concurrent=2)

        results = await asyncio.gather(*(executor.execute(strategy) for _ in range(4)), return_exceptions=True)

        completed = [r for r in results if not isinstance(r, Exception)]
        rejected = [r for r in results if isinstance(r, ConcurrencyLimitExceeded)]
        assert len(completed) == 2
        assert len(rejected) == 2

    @pytest.mark.asyncio
    async def test_disabled_strategy(self, executor, ledger, make_strategy):
        with pytest.raises(StrategyDisabled):
            await executor.execute(make_strategy(enabled=False))
        assert await ledger.list() == []


class TestFailures:
    """Test failure paths are recorded on the job."""

    @pytest.mark.asyncio
    async def test_missing_database(self, executor, ledger, recorder, make_strategy, temp_dir):
        strategy = make_strategy(database={"kind": "sqlite", "path": str(temp_dir / "absent.db")})

        with pytest.raises(DumpFailed):
            await executor.execute(strategy)

        [job] = await ledger.list()
        assert job.status == JobStatus.FAILED
        assert job.error_kind == "DumpFailed"
        failed = recorder.of_kind(EventKind.BACKUP_FAILED)
        assert failed[0].context["job_id"] == job.job_id

    @pytest.mark.asyncio
    async def test_pre_hook_failure(self, executor, ledger, make_strategy):
        with pytest.raises(HookFailed):
            await executor.execute(make_strategy(pre_hooks=["exit 3"]))
        [job] = await ledger.list()
        assert job.error_kind == "HookFailed"

    @pytest.mark.asyncio
    async def test_hooks_receive_job_environment(self, executor, make_strategy, temp_dir):
        marker = temp_dir / "hook.txt"
        job = await executor.execute(make_strategy(post_hooks=[f'echo "$BACKUP_STRATEGY $BACKUP_JOB_ID" > {marker}']))
        assert marker.read_text().split() == ["nightly", job.job_id]

    @pytest.mark.asyncio
    async def test_post_hook_failure_removes_stored_copies(self, executor, ledger, make_strategy, temp_dir):
        with pytest.raises(HookFailed):
            await executor.execute(make_strategy(post_hooks=["false"]))

        [job] = await ledger.list()
        assert job.status == JobStatus.FAILED
        assert job.locations == []
        assert list((temp_dir / "primary").rglob("*.gz")) == []

    @pytest.mark.asyncio
    async def test_timeout(self, ledger, storage, events, make_strategy, temp_dir):
        executor = BackupExecutor(
            ledger, storage, events, temp_dir / "work", executors={"sqlite": SlowSQLiteDumpExecutor(delay=2)}
        )

        with pytest.raises(BackupTimeout):
            await executor.execute(make_strategy(timeout_seconds=0.2))

        [job] = await ledger.list()
        assert job.status == JobStatus.FAILED
        assert job.error_kind == "BackupTimeout"

    @pytest.mark.asyncio
    async def test_timeout_kills_running_hook(self, executor, ledger, make_strategy, temp_dir):
        pid_file = temp_dir / "hook.pid"
        strategy = make_strategy(pre_hooks=[f"echo $$ > {pid_file}; exec sleep 30"], timeout_seconds=0.5)

        with pytest.raises(BackupTimeout):
            await executor.execute(strategy)

        pid = int(pid_file.read_text())
        assert not psutil.pid_exists(pid)
        [job] = await ledger.list()
        assert job.error_kind == "BackupTimeout"

    @pytest.mark.asyncio
    async def test_cancel_between_stages(self, ledger, storage, events, make_strategy, temp_dir):
        executor = BackupExecutor(
            ledger, storage, events, temp_dir / "work", executors={"sqlite": SlowSQLiteDumpExecutor(delay=0.3)}
        )
        task = asyncio.create_task(executor.execute(make_strategy()))
        await asyncio.sleep(0.05)

        [job_id] = executor.running_job_ids
        assert executor.cancel(job_id)
        with pytest.raises(BackupCancelled):
            await task

        job = await ledger.get(job_id)
        assert job.status == JobStatus.FAILED
        assert job.error_kind == "BackupCancelled"
        assert not executor.cancel(job_id)
