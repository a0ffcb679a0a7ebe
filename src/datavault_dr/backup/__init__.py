"""
Backup and Disaster Recovery Core

Strategy-driven backups fanned out to redundant storage, tiered retention,
verified restore, health monitoring and ordered failover with rollback.
"""

from .events import AlertSeverity, BackupEvent, EventChannel, EventKind, RecordingAlertSink
from .executor import BackupExecutor
from .executors import DirectoryDumpExecutor, DumpLoadExecutor, PostgresDumpExecutor, SQLiteDumpExecutor
from .failover import FailoverOrchestrator, FailoverRun, StepHandler
from .health import BaseHealthCheck, HealthMonitor, HealthStatus
from .ledger import InMemoryJobLedger, JobLedger, JsonFileJobLedger, SqlAlchemyJobLedger, create_ledger
from .manager import BackupDRManager, get_backup_dr_manager
from .models import (
    BackupJob,
    BackupStrategy,
    DisasterRecoveryConfig,
    FailoverPlan,
    FailoverStep,
    JobStatus,
    RestoreOptions,
    RetentionPolicy,
    StorageConfig,
    StrategyKind,
)
from .restore import RestorePipeline, RestoreResult
from .retention import RetentionManager, select_retained
from .scheduler import BackupScheduler
from .storage_backends import StorageAdapter, StorageDriver, create_storage_driver

__all__ = [
    # Manager
    "BackupDRManager",
    "get_backup_dr_manager",

    # Models
    "BackupJob",
    "BackupStrategy",
    "DisasterRecoveryConfig",
    "FailoverPlan",
    "FailoverStep",
    "JobStatus",
    "RestoreOptions",
    "RetentionPolicy",
    "StorageConfig",
    "StrategyKind",

    # Pipeline
    "BackupExecutor",
    "RestorePipeline",
    "RestoreResult",
    "RetentionManager",
    "select_retained",
    "BackupScheduler",

    # Storage and dumps
    "StorageAdapter",
    "StorageDriver",
    "create_storage_driver",
    "DumpLoadExecutor",
    "SQLiteDumpExecutor",
    "PostgresDumpExecutor",
    "DirectoryDumpExecutor",

    # Ledger
    "JobLedger",
    "InMemoryJobLedger",
    "JsonFileJobLedger",
    "SqlAlchemyJobLedger",
    "create_ledger",

    # Health, failover and events
    "BaseHealthCheck",
    "HealthMonitor",
    "HealthStatus",
    "FailoverOrchestrator",
    "FailoverRun",
    "StepHandler",
    "AlertSeverity",
    "BackupEvent",
    "EventChannel",
    "EventKind",
    "RecordingAlertSink",
]
