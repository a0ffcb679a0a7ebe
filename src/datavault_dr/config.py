"""
Configuration management for the backup and disaster-recovery core.
Process-level settings come from the environment (prefix DR_) or a .env
file; strategies, DR targets and failover plans come from a YAML or JSON
document loaded at startup.
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from datavault_dr.exceptions import ConfigurationError


class DisasterRecoverySettings(BaseSettings):
    """Process-level settings for the backup/DR core."""

    # Logging
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="text")
    log_file_path: Path | None = Field(default=None)

    # Working storage
    work_dir: Path = Field(default_factory=lambda: Path.cwd() / "data" / "backup_work")
    ledger_backend: str = Field(default="json")
    ledger_path: Path = Field(default_factory=lambda: Path.cwd() / "data" / "backup_ledger.json")
    ledger_url: str | None = Field(default=None)

    # Background loops
    retention_sweep_interval: int = Field(default=3600, ge=1)
    health_check_timeout: float = Field(default=10.0, gt=0)

    # Integrity
    checksum_algorithm: str = Field(default="sha256")

    # Built-in weekly full, daily incremental and manual strategies
    register_default_strategies: bool = Field(default=False)
    default_backup_root: Path = Field(default_factory=lambda: Path.cwd() / "data" / "backups")

    # Optional structured configuration file
    config_file: Path | None = Field(default=None)

    model_config = SettingsConfigDict(
        env_prefix="DR_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in allowed:
            raise ValueError(f"log_level must be one of {sorted(allowed)}")
        return v.upper()

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        """Validate log format."""
        if v.lower() not in {"json", "text"}:
            raise ValueError("log_format must be 'json' or 'text'")
        return v.lower()

    @field_validator("ledger_backend")
    @classmethod
    def validate_ledger_backend(cls, v: str) -> str:
        """Validate ledger backend name."""
        if v.lower() not in {"memory", "json", "sql"}:
            raise ValueError("ledger_backend must be 'memory', 'json' or 'sql'")
        return v.lower()

    def ensure_directories(self) -> None:
        """Create working directories that must exist before any job runs."""
        self.work_dir.mkdir(parents=True, exist_ok=True)
        self.ledger_path.parent.mkdir(parents=True, exist_ok=True)


@lru_cache
def get_settings() -> DisasterRecoverySettings:
    """Get cached settings instance."""
    return DisasterRecoverySettings()


@dataclass
class RecoveryConfiguration:
    """Structured configuration document: strategies, DR targets and plans."""
    strategies: list[Any] = field(default_factory=list)
    disaster_recovery: Any = None
    failover_plans: list[Any] = field(default_factory=list)


def _read_document(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise ConfigurationError(f"Configuration file not found: {path}")

    text = path.read_text(encoding="utf-8")
    try:
        if path.suffix.lower() == ".json":
            data = json.loads(text)
        else:
            data = yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Cannot parse {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"Top level of {path} must be a mapping")
    return data


def parse_configuration(data: dict[str, Any]) -> RecoveryConfiguration:
    """Build domain objects from an already-parsed configuration mapping."""
    # Deferred: the backup package imports modules that read settings from here.
    from datavault_dr.backup.models import (
        BackupStrategy,
        DisasterRecoveryConfig,
        FailoverPlan,
    )

    try:
        strategies = [BackupStrategy.from_dict(item) for item in data.get("strategies", [])]
        dr_data = data.get("disaster_recovery")
        dr_config = DisasterRecoveryConfig.from_dict(dr_data) if dr_data else DisasterRecoveryConfig()
        plans = [FailoverPlan.from_dict(item) for item in data.get("failover_plans", [])]
    except (KeyError, TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid configuration: {e}") from e

    names = [s.name for s in strategies]
    duplicates = {n for n in names if names.count(n) > 1}
    if duplicates:
        raise ConfigurationError(
            f"Duplicate strategy names: {sorted(duplicates)}",
            details={"duplicates": sorted(duplicates)},
        )

    return RecoveryConfiguration(
        strategies=strategies,
        disaster_recovery=dr_config,
        failover_plans=plans,
    )


def load_configuration(path: str | Path) -> RecoveryConfiguration:
    """
    Load strategies, DR config and failover plans from a YAML or JSON file.

    Args:
        path: Path to a .yaml/.yml or .json document

    Returns:
        Parsed configuration

    Raises:
        ConfigurationError: If the file is missing, unparsable or invalid
    """
    return parse_configuration(_read_document(Path(path)))
