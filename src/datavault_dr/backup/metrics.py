"""
Backup and restore counters reported through the manager's status API.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from datavault_dr.backup.models import utc_now


@dataclass
class BackupMetrics:
    total_backups: int = 0
    successful_backups: int = 0
    failed_backups: int = 0
    total_restores: int = 0
    successful_restores: int = 0
    failed_restores: int = 0
    total_backup_seconds: float = 0.0
    total_restore_seconds: float = 0.0
    bytes_stored: int = 0
    pruned_jobs: int = 0
    last_backup_at: datetime | None = None
    last_restore_at: datetime | None = None
    started_at: datetime = field(default_factory=utc_now)

    def record_backup(self, success: bool, duration_seconds: float | None, size_bytes: int = 0) -> None:
        self.total_backups += 1
        if success:
            self.successful_backups += 1
            self.bytes_stored += size_bytes
            self.last_backup_at = utc_now()
        else:
            self.failed_backups += 1
        self.total_backup_seconds += duration_seconds or 0.0

    def record_restore(self, success: bool, duration_seconds: float) -> None:
        self.total_restores += 1
        if success:
            self.successful_restores += 1
            self.last_restore_at = utc_now()
        else:
            self.failed_restores += 1
        self.total_restore_seconds += duration_seconds

    @property
    def avg_backup_seconds(self) -> float:
        return self.total_backup_seconds / self.total_backups if self.total_backups else 0.0

    @property
    def avg_restore_seconds(self) -> float:
        return self.total_restore_seconds / self.total_restores if self.total_restores else 0.0

    @property
    def success_rate(self) -> float:
        """Percentage of successful backups (100 when none have run)."""
        if not self.total_backups:
            return 100.0
        return self.successful_backups / self.total_backups * 100

    def to_dict(self) -> dict[str, Any]:
        return {
            'total_backups': self.total_backups,
            'successful_backups': self.successful_backups,
            'failed_backups': self.failed_backups,
            'success_rate': round(self.success_rate, 2),
            'avg_backup_seconds': round(self.avg_backup_seconds, 3),
            'total_restores': self.total_restores,
            'successful_restores': self.successful_restores,
            'failed_restores': self.failed_restores,
            'avg_restore_seconds': round(self.avg_restore_seconds, 3),
            'bytes_stored': self.bytes_stored,
            'pruned_jobs': self.pruned_jobs,
            'last_backup_at': self.last_backup_at.isoformat() if self.last_backup_at else None,
            'last_restore_at': self.last_restore_at.isoformat() if self.last_restore_at else None,
        }
