"""
Unit Tests for Configuration Loading
Tests settings validation and the YAML/JSON configuration document.
"""
import json

import pytest
from pydantic import ValidationError

from datavault_dr.config import DisasterRecoverySettings, load_configuration, parse_configuration
from datavault_dr.exceptions import ConfigurationError

CONFIG_YAML = """
disaster_recovery:
  rpo_minutes: 30
  failure_threshold: 2
  auto_failover: true

strategies:
  - name: orders-full
    kind: full
    schedule: "0 2 * * 0"
    retention: {daily: 7, weekly: 4, monthly: 12}
    storage:
      - {name: local, kind: local, config: {path: /srv/backups}}
    database: {kind: sqlite, path: /srv/orders.db}
  - name: orders-manual
    kind: manual
    compression: false

failover_plans:
  - plan_id: orders-db
    name: Promote orders replica
    trigger_conditions: [orders-db]
    steps:
      - {step_id: promote, action: database_failover, config: {command: "true"}}
    rollback_steps:
      - {step_id: notify, action: notification}
"""


class TestSettings:
    """Test environment-driven settings."""

    def test_log_level_normalized(self):
        assert DisasterRecoverySettings(log_level="debug").log_level == "DEBUG"

    def test_invalid_values_rejected(self):
        with pytest.raises(ValidationError):
            DisasterRecoverySettings(log_level="verbose")
        with pytest.raises(ValidationError):
            DisasterRecoverySettings(ledger_backend="redis")

    def test_env_prefix(self, monkeypatch):
        monkeypatch.setenv("DR_LEDGER_BACKEND", "memory")
        monkeypatch.setenv("DR_RETENTION_SWEEP_INTERVAL", "120")
        settings = DisasterRecoverySettings()
        assert settings.ledger_backend == "memory"
        assert settings.retention_sweep_interval == 120

    def test_ensure_directories(self, temp_dir):
        settings = DisasterRecoverySettings(work_dir=temp_dir / "w", ledger_path=temp_dir / "l" / "ledger.json")
        settings.ensure_directories()
        assert (temp_dir / "w").is_dir()
        assert (temp_dir / "l").is_dir()


class TestConfigurationDocument:
    """Test loading strategies, DR targets and failover plans."""

    def test_load_yaml(self, temp_dir):
        path = temp_dir / "dr.yaml"
        path.write_text(CONFIG_YAML)

        config = load_configuration(path)

        assert [s.name for s in config.strategies] == ["orders-full", "orders-manual"]
        assert config.strategies[1].compression is None
        assert config.disaster_recovery.rpo_minutes == 30
        assert config.disaster_recovery.auto_failover
        assert config.failover_plans[0].steps[0].config["command"] == "true"

    def test_load_json(self, temp_dir):
        path = temp_dir / "dr.json"
        path.write_text(json.dumps({"strategies": [{"name": "only"}]}))
        config = load_configuration(path)
        assert config.strategies[0].name == "only"
        assert config.failover_plans == []

    def test_missing_file(self, temp_dir):
        with pytest.raises(ConfigurationError):
            load_configuration(temp_dir / "absent.yaml")

    def test_unparseable_file(self, temp_dir):
        path = temp_dir / "broken.yaml"
        path.write_text("strategies: [unclosed")
        with pytest.raises(ConfigurationError):
            load_configuration(path)

    def test_duplicate_strategy_names(self):
        with pytest.raises(ConfigurationError) as exc_info:
            parse_configuration({"strategies": [{"name": "a"}, {"name": "a"}]})
        assert exc_info.value.details["duplicates"] == ["a"]

    def test_invalid_strategy_values(self):
        with pytest.raises(ConfigurationError):
            parse_configuration({"strategies": [{"name": "a", "max_concurrent": 0}]})
