"""
Job Ledger

Single source of truth for backup jobs. Every implementation hands out
copies, so callers never observe a job halfway through a transition, and
serializes mutations behind an asyncio lock.
"""
from __future__ import annotations

import asyncio
import json
import os
from abc import ABC, abstractmethod
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from sqlalchemy import Column, DateTime, MetaData, String, Table, Text, create_engine, delete, insert, select, update
from sqlalchemy.engine import Connection, Engine

from datavault_dr.backup.models import BackupJob, JobStatus
from datavault_dr.exceptions import DisasterRecoveryError
from datavault_dr.logging import get_logger

logger = get_logger(__name__)


class LedgerError(DisasterRecoveryError):
    """Raised for ledger consistency violations (duplicate or unknown job id)."""

    pass


class JobLedger(ABC):
    """Repository of backup jobs: create / get / update / list / delete."""

    def __init__(self):
        self._lock = asyncio.Lock()

    @abstractmethod
    async def create(self, job: BackupJob) -> BackupJob:
        pass

    @abstractmethod
    async def get(self, job_id: str) -> BackupJob | None:
        pass

    @abstractmethod
    async def update(self, job: BackupJob) -> BackupJob:
        pass

    @abstractmethod
    async def list(
        self,
        strategy_name: str | None = None,
        status: JobStatus | None = None,
    ) -> list[BackupJob]:
        """Jobs ordered oldest first, optionally filtered."""
        pass

    @abstractmethod
    async def delete(self, job_id: str) -> bool:
        pass

    async def count_active(self, strategy_name: str) -> int:
        jobs = await self.list(strategy_name=strategy_name)
        return sum(1 for job in jobs if job.status.is_active)


def _matches(job: BackupJob, strategy_name: str | None, status: JobStatus | None) -> bool:
    if strategy_name is not None and job.strategy_name != strategy_name:
        return False
    if status is not None and job.status != JobStatus(status):
        return False
    return True


class InMemoryJobLedger(JobLedger):
    """Process-local ledger, used in tests and for ephemeral runs."""

    def __init__(self):
        super().__init__()
        self._jobs: dict[str, BackupJob] = {}

    async def create(self, job: BackupJob) -> BackupJob:
        async with self._lock:
            if job.job_id in self._jobs:
                raise LedgerError(f"Job {job.job_id} already exists")
            self._jobs[job.job_id] = job.copy()
            return job.copy()

    async def get(self, job_id: str) -> BackupJob | None:
        async with self._lock:
            job = self._jobs.get(job_id)
            return job.copy() if job else None

    async def update(self, job: BackupJob) -> BackupJob:
        async with self._lock:
            if job.job_id not in self._jobs:
                raise LedgerError(f"Job {job.job_id} does not exist")
            self._jobs[job.job_id] = job.copy()
            return job.copy()

    async def list(self, strategy_name: str | None = None, status: JobStatus | None = None) -> list[BackupJob]:
        async with self._lock:
            jobs = [job.copy() for job in self._jobs.values() if _matches(job, strategy_name, status)]
        return sorted(jobs, key=lambda j: j.created_at)

    async def delete(self, job_id: str) -> bool:
        async with self._lock:
            return self._jobs.pop(job_id, None) is not None


class JsonFileJobLedger(InMemoryJobLedger):
    """
    Ledger persisted as a JSON document.

    The whole document is rewritten to a temporary file and atomically
    renamed over the previous one after every mutation.
    """

    def __init__(self, path: str | Path):
        super().__init__()
        self.path = Path(path)
        self._load()

    def _load(self) -> None:
        if not self.path.exists():
            return
        try:
            with open(self.path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise LedgerError(f"Could not load job ledger {self.path}: {e}") from e

        for record in data.get("jobs", []):
            job = BackupJob.from_dict(record)
            self._jobs[job.job_id] = job
        logger.info(f"Loaded {len(self._jobs)} job records from {self.path}")

    def _save_sync(self, payload: dict) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, self.path)

    async def _persist(self) -> None:
        payload = {"version": 1, "jobs": [job.to_dict() for job in self._jobs.values()]}
        await asyncio.to_thread(self._save_sync, payload)

    async def create(self, job: BackupJob) -> BackupJob:
        async with self._lock:
            if job.job_id in self._jobs:
                raise LedgerError(f"Job {job.job_id} already exists")
            self._jobs[job.job_id] = job.copy()
            try:
                await self._persist()
            except OSError:
                self._jobs.pop(job.job_id, None)
                raise
            return job.copy()

    async def update(self, job: BackupJob) -> BackupJob:
        async with self._lock:
            if job.job_id not in self._jobs:
                raise LedgerError(f"Job {job.job_id} does not exist")
            previous = self._jobs[job.job_id]
            self._jobs[job.job_id] = job.copy()
            try:
                await self._persist()
            except OSError:
                self._jobs[job.job_id] = previous
                raise
            return job.copy()

    async def delete(self, job_id: str) -> bool:
        async with self._lock:
            removed = self._jobs.pop(job_id, None)
            if removed is None:
                return False
            try:
                await self._persist()
            except OSError:
                self._jobs[job_id] = removed
                raise
            return True


metadata = MetaData()

backup_jobs = Table(
    "backup_jobs",
    metadata,
    Column("job_id", String(64), primary_key=True),
    Column("strategy_name", String(255), nullable=False, index=True),
    Column("status", String(16), nullable=False, index=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("payload", Text, nullable=False),
)


class SqlAlchemyJobLedger(JobLedger):
    """Ledger stored in any SQLAlchemy-supported database."""

    def __init__(self, url: str | None = None, engine: Engine | None = None):
        super().__init__()
        if engine is None and url is None:
            raise ValueError("SqlAlchemyJobLedger needs a database url or an engine")
        self.engine = engine or create_engine(url, future=True)
        metadata.create_all(self.engine)

    @contextmanager
    def _transaction(self) -> Iterator[Connection]:
        """Provide a transactional scope around a series of operations."""
        with self.engine.begin() as conn:
            yield conn

    @staticmethod
    def _row_values(job: BackupJob) -> dict:
        return {
            "job_id": job.job_id,
            "strategy_name": job.strategy_name,
            "status": job.status.value,
            "created_at": job.created_at,
            "payload": json.dumps(job.to_dict()),
        }

    def _create_sync(self, job: BackupJob) -> None:
        with self._transaction() as conn:
            exists = conn.execute(select(backup_jobs.c.job_id).where(backup_jobs.c.job_id == job.job_id)).first()
            if exists:
                raise LedgerError(f"Job {job.job_id} already exists")
            conn.execute(insert(backup_jobs).values(**self._row_values(job)))

    def _update_sync(self, job: BackupJob) -> None:
        with self._transaction() as conn:
            result = conn.execute(
                update(backup_jobs).where(backup_jobs.c.job_id == job.job_id).values(**self._row_values(job))
            )
            if result.rowcount == 0:
                raise LedgerError(f"Job {job.job_id} does not exist")

    def _get_sync(self, job_id: str) -> BackupJob | None:
        with self._transaction() as conn:
            row = conn.execute(select(backup_jobs.c.payload).where(backup_jobs.c.job_id == job_id)).first()
        return BackupJob.from_dict(json.loads(row.payload)) if row else None

    def _list_sync(self, strategy_name: str | None, status: JobStatus | None) -> list[BackupJob]:
        query = select(backup_jobs.c.payload).order_by(backup_jobs.c.created_at)
        if strategy_name is not None:
            query = query.where(backup_jobs.c.strategy_name == strategy_name)
        if status is not None:
            query = query.where(backup_jobs.c.status == JobStatus(status).value)
        with self._transaction() as conn:
            rows = conn.execute(query).all()
        return [BackupJob.from_dict(json.loads(row.payload)) for row in rows]

    def _delete_sync(self, job_id: str) -> bool:
        with self._transaction() as conn:
            result = conn.execute(delete(backup_jobs).where(backup_jobs.c.job_id == job_id))
        return result.rowcount > 0

    async def create(self, job: BackupJob) -> BackupJob:
        async with self._lock:
            await asyncio.to_thread(self._create_sync, job)
        return job.copy()

    async def get(self, job_id: str) -> BackupJob | None:
        return await asyncio.to_thread(self._get_sync, job_id)

    async def update(self, job: BackupJob) -> BackupJob:
        async with self._lock:
            await asyncio.to_thread(self._update_sync, job)
        return job.copy()

    async def list(self, strategy_name: str | None = None, status: JobStatus | None = None) -> list[BackupJob]:
        return await asyncio.to_thread(self._list_sync, strategy_name, status)

    async def delete(self, job_id: str) -> bool:
        async with self._lock:
            return await asyncio.to_thread(self._delete_sync, job_id)


def create_ledger(backend: str, path: str | Path | None = None, url: str | None = None) -> JobLedger:
    """Build a ledger from the configured backend name (memory, json or sql)."""
    if backend == "memory":
        return InMemoryJobLedger()
    if backend == "json":
        if path is None:
            raise ValueError("JSON ledger requires a path")
        return JsonFileJobLedger(path)
    if backend == "sql":
        if url is None:
            raise ValueError("SQL ledger requires a database url")
        return SqlAlchemyJobLedger(url=url)
    raise ValueError(f"Unknown ledger backend: {backend}")
