"""
Restore Pipeline

Inverse of the backup executor: resolve -> fetch -> verify -> decrypt ->
decompress -> load. Every step gates the next; nothing is loaded unless
the fetched artifact matches the checksum recorded at backup time.
"""
from __future__ import annotations

import asyncio
import shutil
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from datavault_dr.backup.codecs import CompressionCodec, EncryptionCodec
from datavault_dr.backup.events import EventChannel, EventKind
from datavault_dr.backup.executors import DumpLoadExecutor, LoadOptions, resolve_executor
from datavault_dr.backup.integrity import compute_checksum
from datavault_dr.backup.ledger import JobLedger
from datavault_dr.backup.metrics import BackupMetrics
from datavault_dr.backup.models import BackupJob, BackupStrategy, JobStatus, RestoreOptions
from datavault_dr.backup.storage_backends import StorageAdapter
from datavault_dr.exceptions import (
    BackupNotFound,
    EncryptionFailed,
    IntegrityCheckFailed,
    LoadFailed,
    StrategyNotFound,
)
from datavault_dr.logging import get_logger, get_logger_with_context

logger = get_logger(__name__)


@dataclass
class RestoreResult:
    backup_id: str
    strategy_name: str
    target: str | None
    checksum: str | None
    verified: bool
    duration_seconds: float
    tables: list[str] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            'backup_id': self.backup_id,
            'strategy': self.strategy_name,
            'target': self.target,
            'checksum': self.checksum,
            'verified': self.verified,
            'duration_seconds': round(self.duration_seconds, 3),
            'tables': self.tables,
        }


@dataclass
class VerificationResult:
    backup_id: str
    valid: bool
    expected_checksum: str | None
    actual_checksum: str | None
    source: str | None = None
    locations: dict[str, bool] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            'backup_id': self.backup_id,
            'valid': self.valid,
            'expected_checksum': self.expected_checksum,
            'actual_checksum': self.actual_checksum,
            'source': self.source,
            'locations': dict(self.locations),
        }


StrategyLookup = Callable[[str], BackupStrategy]


class RestorePipeline:
    """Restores databases from completed backup jobs."""

    def __init__(
        self,
        ledger: JobLedger,
        storage: StorageAdapter,
        events: EventChannel,
        strategies: StrategyLookup,
        work_dir: Path,
        executors: dict[str, DumpLoadExecutor] | None = None,
        metrics: BackupMetrics | None = None,
        compression_codec: CompressionCodec | None = None,
        encryption_codec: EncryptionCodec | None = None,
    ):
        self.ledger = ledger
        self.storage = storage
        self.events = events
        self.strategies = strategies
        self.work_dir = Path(work_dir)
        self.executors = executors if executors is not None else {}
        self.metrics = metrics or BackupMetrics()
        self.compression = compression_codec or CompressionCodec()
        self.encryption = encryption_codec or EncryptionCodec()

    async def _resolve(self, backup_id: str) -> tuple[BackupJob, BackupStrategy]:
        job = await self.ledger.get(backup_id)
        if job is None:
            raise BackupNotFound(backup_id)
        if job.status != JobStatus.COMPLETED:
            raise BackupNotFound(backup_id, reason=f"is {job.status.value}, only completed backups can be restored")
        if not job.locations:
            raise BackupNotFound(backup_id, reason="has no recorded storage locations")
        try:
            strategy = self.strategies(job.strategy_name)
        except StrategyNotFound as e:
            raise BackupNotFound(backup_id, reason=f"belongs to unknown strategy '{job.strategy_name}'") from e
        return job, strategy

    async def _verify(self, job: BackupJob, path: Path, expected: str | None) -> str:
        actual = await compute_checksum(path, job.checksum_algorithm)
        if expected is not None and actual.lower() != expected.lower():
            raise IntegrityCheckFailed(job.job_id, expected, actual)
        return actual

    async def restore(self, options: RestoreOptions) -> RestoreResult:
        """
        Restore a database from a completed backup.

        Raises:
            BackupNotFound: Unknown, unfinished or location-less backup id
            NoAccessibleBackupLocation: Every recorded location failed to fetch
            IntegrityCheckFailed: Fetched artifact does not match its checksum
            LoadFailed: The load executor failed
        """
        started = time.monotonic()
        work_dir = self.work_dir / f"restore_{options.backup_id}_{uuid.uuid4().hex[:6]}"
        log = get_logger_with_context(__name__, backup_id=options.backup_id)
        strategy_name: str | None = None

        try:
            job, strategy = await self._resolve(options.backup_id)
            strategy_name = strategy.name
            await self.events.publish(EventKind.RESTORE_STARTED, backup_id=job.job_id, strategy=strategy.name)

            work_dir.mkdir(parents=True, exist_ok=True)
            artifact = await self.storage.fetch(job.locations, work_dir, strategy.storage, backup_id=job.job_id)

            checksum = None
            if options.verify_integrity:
                checksum = await self._verify(job, artifact, job.checksum)
                log.info(f"Checksum verified for backup {job.job_id}")

            if job.encrypted:
                if strategy.encryption is None:
                    raise EncryptionFailed(
                        f"Backup {job.job_id} is encrypted but strategy '{strategy.name}' has no key configured"
                    )
                artifact = await self.encryption.decode(artifact, strategy.encryption)

            if job.compression:
                artifact = await self.compression.decode(artifact, job.compression)

            if options.verify_integrity and job.source_checksum:
                await self._verify(job, artifact, job.source_checksum)

            load_executor = resolve_executor(self.executors, strategy.database)
            try:
                await load_executor.load(
                    strategy.database,
                    artifact,
                    LoadOptions(
                        work_dir=work_dir,
                        target_location=options.target_location,
                        tables=options.tables,
                        point_in_time=options.point_in_time,
                    ),
                )
            except LoadFailed:
                raise
            except Exception as e:
                raise LoadFailed(f"Load of backup {job.job_id} failed: {e}") from e

        except Exception as e:
            duration = time.monotonic() - started
            self.metrics.record_restore(False, duration)
            log.error(f"Restore of backup {options.backup_id} failed: {e}")
            await self.events.publish(
                EventKind.RESTORE_FAILED,
                backup_id=options.backup_id,
                strategy=strategy_name,
                error=str(e),
                error_kind=getattr(e, "error_code", type(e).__name__),
            )
            raise
        finally:
            await asyncio.to_thread(shutil.rmtree, work_dir, True)

        duration = time.monotonic() - started
        self.metrics.record_restore(True, duration)
        result = RestoreResult(
            backup_id=job.job_id,
            strategy_name=strategy.name,
            target=options.target_location,
            checksum=checksum,
            verified=options.verify_integrity,
            duration_seconds=duration,
            tables=options.tables,
        )
        log.info(f"Restore of backup {job.job_id} completed in {duration:.2f}s")
        await self.events.publish(EventKind.RESTORE_COMPLETED, **result.to_dict())
        return result

    async def verify(self, backup_id: str) -> VerificationResult:
        """Fetch a backup and check it against its recorded checksum without loading it."""
        job, strategy = await self._resolve(backup_id)
        work_dir = self.work_dir / f"verify_{backup_id}_{uuid.uuid4().hex[:6]}"
        locations = await self.storage.check_locations(job.locations, strategy.storage)

        try:
            work_dir.mkdir(parents=True, exist_ok=True)
            artifact = await self.storage.fetch(job.locations, work_dir, strategy.storage, backup_id=job.job_id)
            actual = await compute_checksum(artifact, job.checksum_algorithm)
        finally:
            await asyncio.to_thread(shutil.rmtree, work_dir, True)

        valid = job.checksum is not None and actual.lower() == job.checksum.lower()
        if not valid:
            logger.error(f"Backup {backup_id} failed verification: expected {job.checksum}, got {actual}")
        return VerificationResult(
            backup_id=backup_id,
            valid=valid,
            expected_checksum=job.checksum,
            actual_checksum=actual,
            source=artifact.name,
            locations=locations,
        )
