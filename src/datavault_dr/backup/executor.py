"""
Backup Executor

Produces one backup artifact for a strategy and records it in the ledger:
pre-hooks -> dump -> compress -> encrypt -> checksum -> store -> post-hooks.

Admission (concurrency check, job creation and the pending -> running
transition) happens under a per-strategy lock. The pipeline itself runs
under the strategy timeout, and cancellation is observed before each of
the dump, compress, encrypt and store stages.
"""
from __future__ import annotations

import asyncio
import os
import shutil
from collections import defaultdict
from pathlib import Path
from typing import TYPE_CHECKING

from datavault_dr.backup.codecs import CompressionCodec, EncryptionCodec
from datavault_dr.backup.events import EventChannel, EventKind
from datavault_dr.backup.executors import DumpLoadExecutor, DumpOptions, resolve_executor
from datavault_dr.backup.integrity import compute_checksum
from datavault_dr.backup.ledger import JobLedger
from datavault_dr.backup.metrics import BackupMetrics
from datavault_dr.backup.models import BackupJob, BackupStrategy, JobStatus, JobTrigger
from datavault_dr.backup.storage_backends import StorageAdapter
from datavault_dr.exceptions import (
    BackupCancelled,
    BackupTimeout,
    ConcurrencyLimitExceeded,
    DumpFailed,
    HookFailed,
    RetentionCleanupError,
    StrategyDisabled,
)
from datavault_dr.logging import get_logger, get_logger_with_context

if TYPE_CHECKING:
    from datavault_dr.backup.retention import RetentionManager

logger = get_logger(__name__)


class BackupExecutor:
    """Runs backup jobs for registered strategies."""

    def __init__(
        self,
        ledger: JobLedger,
        storage: StorageAdapter,
        events: EventChannel,
        work_dir: Path,
        executors: dict[str, DumpLoadExecutor] | None = None,
        retention: RetentionManager | None = None,
        metrics: BackupMetrics | None = None,
        checksum_algorithm: str = "sha256",
        compression_codec: CompressionCodec | None = None,
        encryption_codec: EncryptionCodec | None = None,
    ):
        self.ledger = ledger
        self.storage = storage
        self.events = events
        self.work_dir = Path(work_dir)
        self.executors = executors if executors is not None else {}
        self.retention = retention
        self.metrics = metrics or BackupMetrics()
        self.checksum_algorithm = checksum_algorithm
        self.compression = compression_codec or CompressionCodec()
        self.encryption = encryption_codec or EncryptionCodec()

        self._strategy_locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._cancel_events: dict[str, asyncio.Event] = {}
        self._background_tasks: set[asyncio.Task] = set()

    async def _admit(self, strategy: BackupStrategy, trigger: JobTrigger) -> BackupJob:
        async with self._strategy_locks[strategy.name]:
            active = await self.ledger.count_active(strategy.name)
            if active >= strategy.max_concurrent:
                raise ConcurrencyLimitExceeded(strategy.name, active, strategy.max_concurrent)

            job = BackupJob.create(strategy.name, trigger)
            job.checksum_algorithm = self.checksum_algorithm
            await self.ledger.create(job)
            job.transition(JobStatus.RUNNING)
            await self.ledger.update(job)
            return job

    def cancel(self, job_id: str) -> bool:
        """Ask a running job to stop at its next stage boundary."""
        event = self._cancel_events.get(job_id)
        if event is None:
            return False
        event.set()
        return True

    @property
    def running_job_ids(self) -> list[str]:
        return list(self._cancel_events)

    async def execute(
        self,
        strategy: BackupStrategy,
        trigger: JobTrigger = JobTrigger.MANUAL,
        cancel_event: asyncio.Event | None = None,
    ) -> BackupJob:
        """
        Execute one backup of the strategy.

        Args:
            strategy: Registered strategy to back up
            trigger: What caused this run
            cancel_event: Optional event that stops the job between stages

        Returns:
            The completed job

        Raises:
            StrategyDisabled: If the strategy is disabled (no job created)
            ConcurrencyLimitExceeded: If max_concurrent jobs are active (no job created)
            BackupJobError: Any pipeline failure; the job is recorded as failed
        """
        if not strategy.enabled:
            raise StrategyDisabled(strategy.name)

        job = await self._admit(strategy, trigger)
        log = get_logger_with_context(__name__, job_id=job.job_id, strategy=strategy.name)
        cancel_event = cancel_event or asyncio.Event()
        self._cancel_events[job.job_id] = cancel_event
        job_dir = self.work_dir / job.job_id

        log.info(f"Starting {strategy.kind.value} backup {job.job_id} of strategy '{strategy.name}'")
        await self.events.publish(
            EventKind.BACKUP_STARTED, job_id=job.job_id, strategy=strategy.name, trigger=trigger.value
        )

        try:
            await asyncio.wait_for(
                self._run_pipeline(strategy, job, job_dir, cancel_event),
                timeout=strategy.timeout_seconds,
            )
        except asyncio.TimeoutError:
            error = BackupTimeout(
                f"Backup {job.job_id} exceeded timeout of {strategy.timeout_seconds}s",
                details={"job_id": job.job_id, "timeout_seconds": strategy.timeout_seconds},
            )
            await self._fail(strategy, job, error)
            raise error from None
        except asyncio.CancelledError:
            await self._fail(strategy, job, BackupCancelled(f"Backup {job.job_id} was cancelled"))
            raise
        except Exception as e:
            await self._fail(strategy, job, e)
            raise
        finally:
            self._cancel_events.pop(job.job_id, None)
            await asyncio.to_thread(shutil.rmtree, job_dir, True)

        job.transition(JobStatus.COMPLETED)
        await self.ledger.update(job)
        self.metrics.record_backup(True, job.duration_seconds, job.size_bytes)

        log.info(
            f"Backup {job.job_id} completed: {job.size_bytes} bytes, "
            f"{len(job.locations)} location(s), checksum {job.checksum}"
        )
        await self.events.publish(
            EventKind.BACKUP_COMPLETED,
            job_id=job.job_id,
            strategy=strategy.name,
            size_bytes=job.size_bytes,
            checksum=job.checksum,
            locations=[loc.uri for loc in job.locations],
            duration_seconds=job.duration_seconds,
        )

        if self.retention is not None:
            self._spawn(self._prune_quietly(strategy))
        return job.copy()

    async def _run_pipeline(
        self,
        strategy: BackupStrategy,
        job: BackupJob,
        job_dir: Path,
        cancel_event: asyncio.Event,
    ) -> None:
        job_dir.mkdir(parents=True, exist_ok=True)
        await self._run_hooks(strategy.pre_hooks, "pre", strategy, job)

        self._checkpoint(cancel_event, job, "dump")
        dump_executor = resolve_executor(self.executors, strategy.database)
        try:
            artifact = await dump_executor.dump(
                strategy.database,
                DumpOptions(
                    work_dir=job_dir,
                    job_id=job.job_id,
                    kind=strategy.kind.value,
                    exclude_patterns=list(strategy.exclude_patterns),
                ),
            )
        except DumpFailed:
            raise
        except Exception as e:
            raise DumpFailed(f"Dump for strategy '{strategy.name}' failed: {e}") from e
        job.source_checksum = await compute_checksum(artifact, self.checksum_algorithm)

        if strategy.compression:
            self._checkpoint(cancel_event, job, "compress")
            artifact = await self.compression.encode(artifact, strategy.compression)
            job.compression = strategy.compression

        if strategy.encryption_enabled:
            self._checkpoint(cancel_event, job, "encrypt")
            artifact = await self.encryption.encode(artifact, strategy.encryption)
            job.encrypted = True

        job.checksum = await compute_checksum(artifact, self.checksum_algorithm)
        job.size_bytes = artifact.stat().st_size

        self._checkpoint(cancel_event, job, "store")
        job.locations = await self.storage.store(
            artifact,
            strategy.storage,
            key=f"{strategy.name}/{artifact.name}",
        )

        await self._run_hooks(strategy.post_hooks, "post", strategy, job)

    @staticmethod
    def _checkpoint(cancel_event: asyncio.Event, job: BackupJob, stage: str) -> None:
        if cancel_event.is_set():
            raise BackupCancelled(
                f"Backup {job.job_id} cancelled before {stage}",
                details={"job_id": job.job_id, "stage": stage},
            )

    async def _run_hooks(self, hooks: list[str], phase: str, strategy: BackupStrategy, job: BackupJob) -> None:
        env = {**os.environ, "BACKUP_JOB_ID": job.job_id, "BACKUP_STRATEGY": strategy.name}
        for command in hooks:
            process = await asyncio.create_subprocess_shell(
                command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
            )
            try:
                _, stderr = await process.communicate()
            except asyncio.CancelledError:
                # A hook never outlives its job
                process.kill()
                await process.wait()
                raise
            if process.returncode != 0:
                raise HookFailed(
                    f"{phase}-hook '{command}' exited with {process.returncode}: "
                    f"{stderr.decode(errors='replace').strip()}",
                    details={"phase": phase, "command": command},
                )
            logger.debug(f"{phase}-hook '{command}' finished for job {job.job_id}")

    async def _fail(self, strategy: BackupStrategy, job: BackupJob, error: BaseException) -> None:
        # Copies written before a late failure (post-hook) would otherwise be unreachable
        for location in job.locations:
            try:
                await self.storage.delete(location, strategy.storage)
            except Exception as e:
                logger.warning(f"Could not remove {location.uri} of failed job {job.job_id}: {e}")
        job.locations = []

        if not job.status.is_terminal:
            job.mark_failed(error)
            await self.ledger.update(job)
        self.metrics.record_backup(False, job.duration_seconds)

        logger.error(f"Backup {job.job_id} of strategy '{strategy.name}' failed: {error}")
        await self.events.publish(
            EventKind.BACKUP_FAILED,
            job_id=job.job_id,
            strategy=strategy.name,
            error=job.error,
            error_kind=job.error_kind,
        )

    async def _prune_quietly(self, strategy: BackupStrategy) -> None:
        try:
            await self.retention.prune(strategy)
        except Exception as e:
            error = RetentionCleanupError(f"Retention for strategy '{strategy.name}' failed: {e}")
            logger.error(str(error))

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        return task

    async def wait_for_background(self) -> None:
        """Wait for post-backup retention tasks to finish."""
        while self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)
