"""
Retention Manager

Grandfather-father-son pruning of a strategy's completed jobs.

Completed jobs are walked newest first. The daily tier keeps the most
recent job of each of the newest ``daily`` calendar days. Each coarser
tier (ISO week, month, year) only considers jobs older than the start of
the oldest period kept by the finer tiers, so it never picks a second job
from a day, week or month already covered. It keeps the most recent job of
each of its newest ``count`` periods. Everything else is deleted from storage and then from the
ledger. The selection does not depend on the current time, so pruning an
already-pruned strategy deletes nothing.
"""
from __future__ import annotations

from collections.abc import Callable, Hashable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from datavault_dr.backup.events import EventChannel, EventKind
from datavault_dr.backup.ledger import JobLedger
from datavault_dr.backup.metrics import BackupMetrics
from datavault_dr.backup.models import BackupJob, BackupStrategy, JobStatus, RetentionPolicy
from datavault_dr.backup.storage_backends import StorageAdapter
from datavault_dr.logging import get_logger

logger = get_logger(__name__)


def _utc(dt: datetime) -> datetime:
    return dt.astimezone(timezone.utc) if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def _day(dt: datetime) -> Hashable:
    return _utc(dt).date()


def _iso_week(dt: datetime) -> Hashable:
    year, week, _ = _utc(dt).isocalendar()
    return (year, week)


def _month(dt: datetime) -> Hashable:
    d = _utc(dt)
    return (d.year, d.month)


def _year(dt: datetime) -> Hashable:
    return _utc(dt).year


PERIODS: dict[str, Callable[[datetime], Hashable]] = {
    "daily": _day,
    "weekly": _iso_week,
    "monthly": _month,
    "yearly": _year,
}


def _day_start(dt: datetime) -> datetime:
    d = _utc(dt)
    return datetime(d.year, d.month, d.day, tzinfo=timezone.utc)


def _week_start(dt: datetime) -> datetime:
    return _day_start(dt) - timedelta(days=_utc(dt).weekday())


def _month_start(dt: datetime) -> datetime:
    d = _utc(dt)
    return datetime(d.year, d.month, 1, tzinfo=timezone.utc)


def _year_start(dt: datetime) -> datetime:
    return datetime(_utc(dt).year, 1, 1, tzinfo=timezone.utc)


PERIOD_STARTS: dict[str, Callable[[datetime], datetime]] = {
    "daily": _day_start,
    "weekly": _week_start,
    "monthly": _month_start,
    "yearly": _year_start,
}


@dataclass
class RetentionPlan:
    """Keep/delete split for one strategy, with the tier each kept job fills."""
    keep: list[BackupJob] = field(default_factory=list)
    delete: list[BackupJob] = field(default_factory=list)
    tiers: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            'keep': [job.job_id for job in self.keep],
            'delete': [job.job_id for job in self.delete],
            'tiers': dict(self.tiers),
        }


@dataclass
class RetentionResult:
    strategy_name: str
    deleted_count: int = 0
    kept_count: int = 0
    deleted_job_ids: list[str] = field(default_factory=list)
    failed_location_deletes: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            'strategy': self.strategy_name,
            'deleted_count': self.deleted_count,
            'kept_count': self.kept_count,
            'deleted_job_ids': list(self.deleted_job_ids),
            'failed_location_deletes': self.failed_location_deletes,
        }


def select_retained(jobs: list[BackupJob], policy: RetentionPolicy) -> RetentionPlan:
    """Split completed jobs into kept and deleted according to the policy."""
    ordered = sorted(
        (job for job in jobs if job.status == JobStatus.COMPLETED),
        key=lambda j: j.reference_time,
        reverse=True,
    )
    plan = RetentionPlan()
    kept_ids: set[str] = set()
    boundary: datetime | None = None

    for tier, count in policy.tiers():
        if count <= 0:
            continue
        period_of = PERIODS[tier]
        seen_periods: list[Hashable] = []
        oldest_kept: datetime | None = None
        for job in ordered:
            if job.job_id in kept_ids:
                continue
            if boundary is not None and _utc(job.reference_time) >= boundary:
                continue
            period = period_of(job.reference_time)
            if period in seen_periods:
                continue
            if len(seen_periods) >= count:
                break
            # Newest first, so the first job seen in a period is its most recent one
            seen_periods.append(period)
            kept_ids.add(job.job_id)
            plan.tiers[job.job_id] = tier
            oldest_kept = job.reference_time
        if oldest_kept is not None:
            boundary = PERIOD_STARTS[tier](oldest_kept)

    for job in ordered:
        (plan.keep if job.job_id in kept_ids else plan.delete).append(job)
    return plan


class RetentionManager:
    """Applies a strategy's retention policy to the ledger and storage."""

    def __init__(
        self,
        ledger: JobLedger,
        storage: StorageAdapter,
        events: EventChannel,
        metrics: BackupMetrics | None = None,
    ):
        self.ledger = ledger
        self.storage = storage
        self.events = events
        self.metrics = metrics

    async def plan(self, strategy: BackupStrategy) -> RetentionPlan:
        """Compute what prune() would keep and delete without deleting anything."""
        jobs = await self.ledger.list(strategy_name=strategy.name, status=JobStatus.COMPLETED)
        return select_retained(jobs, strategy.retention)

    async def prune(self, strategy: BackupStrategy) -> RetentionResult:
        """
        Delete jobs that fall outside the strategy's retention tiers.

        Storage deletion is best-effort: a failed location delete is logged
        and counted, and the ledger entry is removed regardless.
        """
        plan = await self.plan(strategy)
        result = RetentionResult(strategy_name=strategy.name, kept_count=len(plan.keep))

        for job in plan.delete:
            for location in job.locations:
                try:
                    await self.storage.delete(location, strategy.storage)
                except Exception as e:
                    result.failed_location_deletes += 1
                    logger.warning(f"Could not delete {location.uri} of job {job.job_id}: {e}")

            if await self.ledger.delete(job.job_id):
                result.deleted_count += 1
                result.deleted_job_ids.append(job.job_id)

        if self.metrics is not None:
            self.metrics.pruned_jobs += result.deleted_count

        if result.deleted_count or result.failed_location_deletes:
            logger.info(
                f"Retention for '{strategy.name}': deleted {result.deleted_count}, kept {result.kept_count}"
            )
        await self.events.publish(EventKind.RETENTION_SUMMARY, **result.to_dict())
        return result
