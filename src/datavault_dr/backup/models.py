"""
Backup and Disaster-Recovery Domain Model

Strategies, jobs, retention policies, storage destinations, DR targets and
failover plans. Every type serializes through to_dict()/from_dict() so it
can live in a YAML/JSON configuration file or the persisted job ledger.
"""
from __future__ import annotations

import copy
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from datavault_dr.exceptions import InvalidJobTransition


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_dt(value: Any) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


class StrategyKind(str, Enum):
    """Kinds of backup strategy."""
    FULL = "full"
    INCREMENTAL = "incremental"
    DIFFERENTIAL = "differential"
    MANUAL = "manual"


class JobStatus(str, Enum):
    """Backup job lifecycle: pending -> running -> completed | failed."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)

    @property
    def is_active(self) -> bool:
        return self in (JobStatus.PENDING, JobStatus.RUNNING)


_ALLOWED_TRANSITIONS: dict[JobStatus, set[JobStatus]] = {
    # A pending job can fail before it starts (cancelled, orphaned by a restart).
    JobStatus.PENDING: {JobStatus.RUNNING, JobStatus.FAILED},
    JobStatus.RUNNING: {JobStatus.COMPLETED, JobStatus.FAILED},
    JobStatus.COMPLETED: set(),
    JobStatus.FAILED: set(),
}


class JobTrigger(str, Enum):
    """What caused a job to run."""
    SCHEDULED = "scheduled"
    MANUAL = "manual"
    API = "api"


class StorageKind(str, Enum):
    """Supported storage destination kinds."""
    LOCAL = "local"
    S3 = "s3"
    GCS = "gcs"
    AZURE = "azure"
    FTP = "ftp"
    RSYNC = "rsync"


class CompressionAlgorithm(str, Enum):
    GZIP = "gzip"
    BZIP2 = "bz2"
    XZ = "xz"


class EncryptionAlgorithm(str, Enum):
    AES_256_GCM = "aes-256-gcm"
    AES_256_CBC = "aes-256-cbc"


class FailoverAction(str, Enum):
    """Remediation action kinds a failover step can dispatch to."""
    DNS_SWITCH = "dns_switch"
    DATABASE_FAILOVER = "database_failover"
    SERVICE_RESTART = "service_restart"
    NOTIFICATION = "notification"
    CUSTOM = "custom"


class HealthState(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"


@dataclass
class RetentionPolicy:
    """Tiered retention counts. All zeros means delete immediately after upload."""
    daily: int = 7
    weekly: int = 4
    monthly: int = 12
    yearly: int | None = None

    def __post_init__(self) -> None:
        for tier, count in self.tiers():
            if count < 0:
                raise ValueError(f"Retention count for '{tier}' must be non-negative, got {count}")

    def tiers(self) -> list[tuple[str, int]]:
        """Tier names and counts, finest period first."""
        return [
            ("daily", self.daily),
            ("weekly", self.weekly),
            ("monthly", self.monthly),
            ("yearly", self.yearly or 0),
        ]

    @property
    def max_kept(self) -> int:
        return sum(count for _, count in self.tiers())

    @property
    def is_delete_immediately(self) -> bool:
        return self.max_kept == 0

    def to_dict(self) -> dict[str, Any]:
        return {
            'daily': self.daily,
            'weekly': self.weekly,
            'monthly': self.monthly,
            'yearly': self.yearly,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RetentionPolicy:
        return cls(
            daily=int(data.get('daily', 0)),
            weekly=int(data.get('weekly', 0)),
            monthly=int(data.get('monthly', 0)),
            yearly=int(data['yearly']) if data.get('yearly') is not None else None,
        )


@dataclass
class EncryptionConfig:
    """Encryption settings. Key material comes from a key file or a passphrase."""
    algorithm: EncryptionAlgorithm = EncryptionAlgorithm.AES_256_GCM
    key_file: str | None = None
    passphrase: str | None = None
    enabled: bool = True

    def __post_init__(self) -> None:
        self.algorithm = EncryptionAlgorithm(self.algorithm)
        if self.enabled and not (self.key_file or self.passphrase):
            raise ValueError("Encryption requires either key_file or passphrase")

    def to_dict(self) -> dict[str, Any]:
        # Passphrases are never written back out
        return {
            'algorithm': self.algorithm.value,
            'key_file': self.key_file,
            'enabled': self.enabled,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EncryptionConfig:
        return cls(
            algorithm=EncryptionAlgorithm(data.get('algorithm', EncryptionAlgorithm.AES_256_GCM.value)),
            key_file=data.get('key_file'),
            passphrase=data.get('passphrase'),
            enabled=bool(data.get('enabled', True)),
        )


@dataclass
class StorageConfig:
    """One storage destination of a strategy."""
    name: str
    kind: StorageKind
    config: dict[str, Any] = field(default_factory=dict)
    priority: int = 1
    enabled: bool = True

    def __post_init__(self) -> None:
        self.kind = StorageKind(self.kind)

    def to_dict(self) -> dict[str, Any]:
        return {
            'name': self.name,
            'kind': self.kind.value,
            'config': dict(self.config),
            'priority': self.priority,
            'enabled': self.enabled,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StorageConfig:
        kind = StorageKind(data['kind'])
        return cls(
            name=data.get('name') or kind.value,
            kind=kind,
            config=dict(data.get('config', {})),
            priority=int(data.get('priority', 1)),
            enabled=bool(data.get('enabled', True)),
        )


@dataclass
class StorageLocation:
    """Where one copy of an artifact was written."""
    destination: str
    kind: StorageKind
    uri: str

    def __post_init__(self) -> None:
        self.kind = StorageKind(self.kind)

    def to_dict(self) -> dict[str, Any]:
        return {'destination': self.destination, 'kind': self.kind.value, 'uri': self.uri}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StorageLocation:
        return cls(destination=data['destination'], kind=StorageKind(data['kind']), uri=data['uri'])


@dataclass
class BackupStrategy:
    """A named, scheduled backup configuration."""
    name: str
    kind: StrategyKind = StrategyKind.FULL
    schedule: str = ""
    retention: RetentionPolicy = field(default_factory=RetentionPolicy)
    compression: CompressionAlgorithm | None = CompressionAlgorithm.GZIP
    encryption: EncryptionConfig | None = None
    priority: int = 1
    max_concurrent: int = 1
    timeout_seconds: float = 3600.0
    storage: list[StorageConfig] = field(default_factory=list)
    pre_hooks: list[str] = field(default_factory=list)
    post_hooks: list[str] = field(default_factory=list)
    exclude_patterns: list[str] = field(default_factory=list)
    database: dict[str, Any] = field(default_factory=dict)
    enabled: bool = True

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("Strategy name must not be empty")
        self.kind = StrategyKind(self.kind)
        if self.compression is not None:
            self.compression = CompressionAlgorithm(self.compression)
        if self.max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")
        names = [s.name for s in self.storage]
        if len(names) != len(set(names)):
            raise ValueError(f"Storage destination names must be unique in strategy '{self.name}'")

    @property
    def is_scheduled(self) -> bool:
        return bool(self.schedule.strip()) and self.kind != StrategyKind.MANUAL

    @property
    def encryption_enabled(self) -> bool:
        return self.encryption is not None and self.encryption.enabled

    def enabled_destinations(self) -> list[StorageConfig]:
        """Enabled destinations in ascending priority order."""
        return sorted((s for s in self.storage if s.enabled), key=lambda s: s.priority)

    def copy(self) -> BackupStrategy:
        return copy.deepcopy(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            'name': self.name,
            'kind': self.kind.value,
            'schedule': self.schedule,
            'retention': self.retention.to_dict(),
            'compression': self.compression.value if self.compression else None,
            'encryption': self.encryption.to_dict() if self.encryption else None,
            'priority': self.priority,
            'max_concurrent': self.max_concurrent,
            'timeout_seconds': self.timeout_seconds,
            'storage': [s.to_dict() for s in self.storage],
            'pre_hooks': list(self.pre_hooks),
            'post_hooks': list(self.post_hooks),
            'exclude_patterns': list(self.exclude_patterns),
            'database': dict(self.database),
            'enabled': self.enabled,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BackupStrategy:
        compression = data.get('compression', CompressionAlgorithm.GZIP.value)
        # Plain booleans are accepted as shorthand for gzip / no compression
        if compression is True:
            compression = CompressionAlgorithm.GZIP.value
        elif compression is False:
            compression = None

        encryption = data.get('encryption')
        return cls(
            name=data['name'],
            kind=StrategyKind(data.get('kind', StrategyKind.FULL.value)),
            schedule=data.get('schedule', '') or '',
            retention=RetentionPolicy.from_dict(data.get('retention', {})),
            compression=CompressionAlgorithm(compression) if compression else None,
            encryption=EncryptionConfig.from_dict(encryption) if encryption else None,
            priority=int(data.get('priority', 1)),
            max_concurrent=int(data.get('max_concurrent', 1)),
            timeout_seconds=float(data.get('timeout_seconds', 3600)),
            storage=[StorageConfig.from_dict(s) for s in data.get('storage', [])],
            pre_hooks=list(data.get('pre_hooks', [])),
            post_hooks=list(data.get('post_hooks', [])),
            exclude_patterns=list(data.get('exclude_patterns', [])),
            database=dict(data.get('database', {})),
            enabled=bool(data.get('enabled', True)),
        )


def generate_job_id(now: datetime | None = None) -> str:
    now = now or utc_now()
    return f"backup_{now.strftime('%Y%m%dT%H%M%S')}_{uuid.uuid4().hex[:8]}"


@dataclass
class BackupJob:
    """One execution of a strategy and the artifact it produced."""
    job_id: str
    strategy_name: str
    status: JobStatus = JobStatus.PENDING
    trigger: JobTrigger = JobTrigger.MANUAL
    created_at: datetime = field(default_factory=utc_now)
    started_at: datetime | None = None
    finished_at: datetime | None = None
    size_bytes: int = 0
    checksum: str | None = None
    source_checksum: str | None = None
    checksum_algorithm: str = "sha256"
    compression: CompressionAlgorithm | None = None
    encrypted: bool = False
    locations: list[StorageLocation] = field(default_factory=list)
    error: str | None = None
    error_kind: str | None = None

    def __post_init__(self) -> None:
        self.status = JobStatus(self.status)
        self.trigger = JobTrigger(self.trigger)
        if self.compression is not None:
            self.compression = CompressionAlgorithm(self.compression)

    @classmethod
    def create(cls, strategy_name: str, trigger: JobTrigger = JobTrigger.MANUAL) -> BackupJob:
        now = utc_now()
        return cls(job_id=generate_job_id(now), strategy_name=strategy_name, trigger=trigger, created_at=now)

    def transition(self, new_status: JobStatus) -> None:
        """Move to a new status, enforcing the job lifecycle."""
        new_status = JobStatus(new_status)
        if new_status not in _ALLOWED_TRANSITIONS[self.status]:
            raise InvalidJobTransition(
                f"Job {self.job_id} cannot move from {self.status.value} to {new_status.value}",
                details={'job_id': self.job_id, 'from': self.status.value, 'to': new_status.value},
            )
        self.status = new_status
        if new_status == JobStatus.RUNNING:
            self.started_at = utc_now()
        elif new_status.is_terminal:
            self.finished_at = utc_now()

    def mark_failed(self, error: BaseException) -> None:
        self.error = str(error)
        self.error_kind = getattr(error, 'error_code', type(error).__name__)
        self.transition(JobStatus.FAILED)

    @property
    def reference_time(self) -> datetime:
        """Timestamp used for retention ordering."""
        return self.started_at or self.created_at

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at and self.finished_at:
            return (self.finished_at - self.started_at).total_seconds()
        return None

    def copy(self) -> BackupJob:
        return copy.deepcopy(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            'job_id': self.job_id,
            'strategy_name': self.strategy_name,
            'status': self.status.value,
            'trigger': self.trigger.value,
            'created_at': _iso(self.created_at),
            'started_at': _iso(self.started_at),
            'finished_at': _iso(self.finished_at),
            'size_bytes': self.size_bytes,
            'checksum': self.checksum,
            'source_checksum': self.source_checksum,
            'checksum_algorithm': self.checksum_algorithm,
            'compression': self.compression.value if self.compression else None,
            'encrypted': self.encrypted,
            'locations': [loc.to_dict() for loc in self.locations],
            'error': self.error,
            'error_kind': self.error_kind,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BackupJob:
        return cls(
            job_id=data['job_id'],
            strategy_name=data['strategy_name'],
            status=JobStatus(data.get('status', JobStatus.PENDING.value)),
            trigger=JobTrigger(data.get('trigger', JobTrigger.MANUAL.value)),
            created_at=_parse_dt(data.get('created_at')) or utc_now(),
            started_at=_parse_dt(data.get('started_at')),
            finished_at=_parse_dt(data.get('finished_at')),
            size_bytes=int(data.get('size_bytes', 0)),
            checksum=data.get('checksum'),
            source_checksum=data.get('source_checksum'),
            checksum_algorithm=data.get('checksum_algorithm', 'sha256'),
            compression=CompressionAlgorithm(data['compression']) if data.get('compression') else None,
            encrypted=bool(data.get('encrypted', False)),
            locations=[StorageLocation.from_dict(loc) for loc in data.get('locations', [])],
            error=data.get('error'),
            error_kind=data.get('error_kind'),
        )


@dataclass
class RestoreOptions:
    """Parameters of one restore call."""
    backup_id: str
    point_in_time: datetime | None = None
    target_location: str | None = None
    tables: list[str] | None = None
    verify_integrity: bool = True


@dataclass
class DisasterRecoveryConfig:
    """RPO/RTO targets, regions and health-monitoring knobs."""
    rpo_minutes: int = 60
    rto_minutes: int = 240
    primary_region: str = "primary"
    failover_regions: list[str] = field(default_factory=list)
    health_check_interval: float = 60.0
    failure_threshold: int = 3
    auto_failover: bool = False
    notification_channels: list[str] = field(default_factory=list)
    escalation: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")
        if self.health_check_interval <= 0:
            raise ValueError("health_check_interval must be positive")

    def to_dict(self) -> dict[str, Any]:
        return {
            'rpo_minutes': self.rpo_minutes,
            'rto_minutes': self.rto_minutes,
            'primary_region': self.primary_region,
            'failover_regions': list(self.failover_regions),
            'health_check_interval': self.health_check_interval,
            'failure_threshold': self.failure_threshold,
            'auto_failover': self.auto_failover,
            'notification_channels': list(self.notification_channels),
            'escalation': dict(self.escalation),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DisasterRecoveryConfig:
        return cls(
            rpo_minutes=int(data.get('rpo_minutes', 60)),
            rto_minutes=int(data.get('rto_minutes', 240)),
            primary_region=data.get('primary_region', 'primary'),
            failover_regions=list(data.get('failover_regions', [])),
            health_check_interval=float(data.get('health_check_interval', 60)),
            failure_threshold=int(data.get('failure_threshold', 3)),
            auto_failover=bool(data.get('auto_failover', False)),
            notification_channels=list(data.get('notification_channels', [])),
            escalation=dict(data.get('escalation', {})),
        )


@dataclass
class FailoverStep:
    """One remediation step of a failover plan."""
    step_id: str
    action: FailoverAction
    description: str = ""
    config: dict[str, Any] = field(default_factory=dict)
    timeout_seconds: float = 60.0
    retries: int = 0

    def __post_init__(self) -> None:
        self.action = FailoverAction(self.action)
        if self.retries < 0:
            raise ValueError("retries must be non-negative")
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")

    def to_dict(self) -> dict[str, Any]:
        return {
            'step_id': self.step_id,
            'action': self.action.value,
            'description': self.description,
            'config': dict(self.config),
            'timeout_seconds': self.timeout_seconds,
            'retries': self.retries,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FailoverStep:
        return cls(
            step_id=data['step_id'],
            action=FailoverAction(data['action']),
            description=data.get('description', ''),
            config=dict(data.get('config', {})),
            timeout_seconds=float(data.get('timeout_seconds', 60)),
            retries=int(data.get('retries', 0)),
        )


@dataclass
class FailoverPlan:
    """Ordered remediation procedure plus its compensating rollback steps."""
    plan_id: str
    name: str
    trigger_conditions: list[str] = field(default_factory=list)
    steps: list[FailoverStep] = field(default_factory=list)
    rollback_steps: list[FailoverStep] = field(default_factory=list)
    test_schedule: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            'plan_id': self.plan_id,
            'name': self.name,
            'trigger_conditions': list(self.trigger_conditions),
            'steps': [s.to_dict() for s in self.steps],
            'rollback_steps': [s.to_dict() for s in self.rollback_steps],
            'test_schedule': self.test_schedule,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FailoverPlan:
        return cls(
            plan_id=data['plan_id'],
            name=data.get('name', data['plan_id']),
            trigger_conditions=list(data.get('trigger_conditions', [])),
            steps=[FailoverStep.from_dict(s) for s in data.get('steps', [])],
            rollback_steps=[FailoverStep.from_dict(s) for s in data.get('rollback_steps', [])],
            test_schedule=data.get('test_schedule'),
        )

    def matches(self, service: str) -> bool:
        """Whether a degraded service should trigger this plan."""
        return not self.trigger_conditions or "*" in self.trigger_conditions or service in self.trigger_conditions


@dataclass
class HealthCheckState:
    """Rolling health of one monitored service."""
    service: str
    status: HealthState = HealthState.HEALTHY
    consecutive_failures: int = 0
    last_checked_at: datetime | None = None
    last_error: str | None = None
    last_response_time_ms: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            'service': self.service,
            'status': self.status.value,
            'consecutive_failures': self.consecutive_failures,
            'last_checked_at': _iso(self.last_checked_at),
            'last_error': self.last_error,
            'last_response_time_ms': self.last_response_time_ms,
        }


def default_strategies(backup_root: str = "/tmp/backups") -> list[BackupStrategy]:
    """Built-in strategies: weekly full, daily incremental and on-demand manual."""
    retention = RetentionPolicy(daily=7, weekly=4, monthly=12)
    local = [StorageConfig(name="local", kind=StorageKind.LOCAL, config={"path": backup_root}, priority=1)]
    excludes = ["*.log", "*.tmp"]

    return [
        BackupStrategy(
            name="full",
            kind=StrategyKind.FULL,
            schedule="0 2 * * 0",
            retention=copy.deepcopy(retention),
            priority=1,
            max_concurrent=1,
            timeout_seconds=3600,
            storage=copy.deepcopy(local),
            exclude_patterns=list(excludes),
        ),
        BackupStrategy(
            name="incremental",
            kind=StrategyKind.INCREMENTAL,
            schedule="0 2 * * 1-6",
            retention=copy.deepcopy(retention),
            priority=2,
            max_concurrent=2,
            timeout_seconds=1800,
            storage=copy.deepcopy(local),
            exclude_patterns=list(excludes),
        ),
        BackupStrategy(
            name="manual",
            kind=StrategyKind.MANUAL,
            schedule="",
            retention=copy.deepcopy(retention),
            priority=3,
            max_concurrent=1,
            timeout_seconds=3600,
            storage=copy.deepcopy(local),
            exclude_patterns=list(excludes),
        ),
    ]
