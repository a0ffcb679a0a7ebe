"""
Exception hierarchy for backup and disaster-recovery operations.
Every error carries a machine-readable code and optional details so that
job records and alerts can surface the specific failure kind.
"""

from typing import Any


class DisasterRecoveryError(Exception):
    """Base exception class for all backup and DR errors."""

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        """
        Initialize base exception.

        Args:
            message: Error message
            error_code: Optional error code for categorization
            details: Optional additional error details
        """
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for status reporting."""
        return {
            "error": self.error_code,
            "message": self.message,
            "details": self.details,
        }


class ConfigurationError(DisasterRecoveryError):
    """Raised when configuration is invalid or missing."""

    pass


class StrategyNotFound(DisasterRecoveryError):
    """Raised when a strategy name is not registered."""

    def __init__(self, strategy_name: str) -> None:
        super().__init__(
            f"Backup strategy '{strategy_name}' is not registered",
            details={"strategy": strategy_name},
        )
        self.strategy_name = strategy_name


class StrategyDisabled(DisasterRecoveryError):
    """Raised when a disabled strategy is asked to run."""

    def __init__(self, strategy_name: str) -> None:
        super().__init__(
            f"Backup strategy '{strategy_name}' is disabled",
            details={"strategy": strategy_name},
        )
        self.strategy_name = strategy_name


class InvalidSchedule(ConfigurationError):
    """Raised when a cron expression cannot be parsed."""

    pass


class InvalidJobTransition(DisasterRecoveryError):
    """Raised when a job is moved to a status its lifecycle does not allow."""

    pass


class ConcurrencyLimitExceeded(DisasterRecoveryError):
    """Raised when a strategy already has max_concurrent jobs in flight. No job is created."""

    def __init__(self, strategy_name: str, active: int, limit: int) -> None:
        super().__init__(
            f"Strategy '{strategy_name}' has {active} active job(s), limit is {limit}",
            details={"strategy": strategy_name, "active": active, "limit": limit},
        )
        self.strategy_name = strategy_name


class BackupJobError(DisasterRecoveryError):
    """Base exception for failures that transition a backup job to failed."""

    pass


class DumpFailed(BackupJobError):
    """Raised when the dump executor cannot produce an artifact."""

    pass


class CompressionFailed(BackupJobError):
    """Raised when compressing or decompressing an artifact fails."""

    pass


class EncryptionFailed(BackupJobError):
    """Raised when encrypting or decrypting an artifact fails."""

    pass


class HookFailed(BackupJobError):
    """Raised when a pre or post hook command exits non-zero."""

    pass


class BackupTimeout(BackupJobError):
    """Raised when a backup exceeds its strategy timeout."""

    pass


class BackupCancelled(BackupJobError):
    """Raised when cancellation is observed between pipeline stages."""

    pass


class StorageError(DisasterRecoveryError):
    """Raised by a storage driver when a put/get/delete fails."""

    pass


class AllDestinationsFailed(BackupJobError):
    """Raised when no enabled destination accepted the artifact."""

    def __init__(self, errors: dict[str, str]) -> None:
        summary = "; ".join(f"{name}: {err}" for name, err in errors.items())
        super().__init__(
            f"All storage destinations failed ({summary})",
            details={"errors": errors},
        )
        self.errors = errors


class RestoreError(DisasterRecoveryError):
    """Base exception for restore failures."""

    pass


class LoadFailed(RestoreError):
    """Raised when the load executor cannot apply an artifact."""

    pass


class BackupNotFound(RestoreError):
    """Raised when a backup id is unknown or not restorable."""

    def __init__(self, backup_id: str, reason: str = "not found") -> None:
        super().__init__(
            f"Backup '{backup_id}' {reason}",
            details={"backup_id": backup_id},
        )
        self.backup_id = backup_id


class NoAccessibleBackupLocation(RestoreError):
    """Raised when every recorded location failed to fetch."""

    def __init__(self, backup_id: str, errors: dict[str, str]) -> None:
        super().__init__(
            f"No accessible location for backup '{backup_id}'",
            details={"backup_id": backup_id, "errors": errors},
        )
        self.errors = errors


class IntegrityCheckFailed(RestoreError):
    """Raised when a fetched artifact does not match its recorded checksum."""

    def __init__(self, backup_id: str, expected: str, actual: str) -> None:
        super().__init__(
            f"Checksum mismatch for backup '{backup_id}'",
            details={"backup_id": backup_id, "expected": expected, "actual": actual},
        )
        self.expected = expected
        self.actual = actual


class RetentionCleanupError(DisasterRecoveryError):
    """Raised when pruning fails. Logged only, never fails a backup."""

    pass


class FailoverError(DisasterRecoveryError):
    """Base exception for failover orchestration."""

    pass


class FailoverPlanNotFound(FailoverError):
    """Raised when a plan id is not registered."""

    pass


class FailoverStepFailed(FailoverError):
    """Raised after a step exhausted its retries and rollback has run."""

    def __init__(self, plan_id: str, step_id: str, reason: str, run: Any = None) -> None:
        super().__init__(
            f"Failover plan '{plan_id}' failed at step '{step_id}': {reason}",
            details={"plan_id": plan_id, "step_id": step_id},
        )
        self.plan_id = plan_id
        self.step_id = step_id
        self.run = run


class HealthCheckTimeout(DisasterRecoveryError):
    """Raised when a health check exceeds its timeout. Counts as a failure."""

    pass
