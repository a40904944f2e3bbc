"""Tests for Conductor config loading."""

from pathlib import Path

import pytest
import yaml
from pydantic import ValidationError

from conductor.config import (
    DEFAULT_DESTRUCTIVE_OPERATIONS,
    ConductorConfig,
    default_config_yaml,
    load_config,
)


@pytest.fixture
def conductor_dir(tmp_path: Path) -> Path:
    """Create a minimal .conductor/ directory for testing."""
    cd = tmp_path / ".conductor"
    cd.mkdir()
    config = {
        "orchestrator": {"max_retries": 1, "max_parallel_agents": 5},
        "checkpoint": {"max_checkpoints": 10, "destructive_operations": ["deploy"]},
        "storage": {"db_path": "data/test.db"},
        "remote": {"agents": {"tester": "http://localhost:9000/tester"}},
    }
    (cd / "config.yaml").write_text(yaml.safe_dump(config))
    return cd


class TestLoadConfig:
    def test_loads_sections(self, conductor_dir):
        config = load_config(conductor_dir)
        assert config.orchestrator.max_retries == 1
        assert config.orchestrator.max_parallel_agents == 5
        assert config.checkpoint.max_checkpoints == 10
        assert config.checkpoint.destructive_operations == ["deploy"]
        assert config.storage.db_path == "data/test.db"
        assert config.remote.agents == {"tester": "http://localhost:9000/tester"}

    def test_defaults_fill_missing_values(self, conductor_dir):
        config = load_config(conductor_dir)
        assert config.orchestrator.agent_timeout_seconds == 600
        assert config.checkpoint.enabled is True
        assert config.checkpoint.retention_days == 30

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "nope")

    def test_empty_file_gives_defaults(self, tmp_path):
        cd = tmp_path / ".conductor"
        cd.mkdir()
        (cd / "config.yaml").write_text("")
        config = load_config(cd)
        assert config == ConductorConfig()

    def test_invalid_values_rejected(self, tmp_path):
        cd = tmp_path / ".conductor"
        cd.mkdir()
        (cd / "config.yaml").write_text(yaml.safe_dump({"orchestrator": {"max_parallel_agents": 0}}))
        with pytest.raises(ValidationError):
            load_config(cd)

    def test_agent_urls_must_be_http(self):
        with pytest.raises(ValidationError, match="http"):
            ConductorConfig.model_validate({"remote": {"agents": {"x": "ftp://host"}}})


class TestEnvOverrides:
    def test_db_path(self, conductor_dir, monkeypatch):
        monkeypatch.setenv("CONDUCTOR_DB_PATH", "/tmp/other.db")
        assert load_config(conductor_dir).storage.db_path == "/tmp/other.db"

    def test_max_parallel_agents(self, conductor_dir, monkeypatch):
        monkeypatch.setenv("CONDUCTOR_MAX_PARALLEL_AGENTS", "2")
        assert load_config(conductor_dir).orchestrator.max_parallel_agents == 2

    def test_checkpoints_disabled(self, conductor_dir, monkeypatch):
        monkeypatch.setenv("CONDUCTOR_CHECKPOINTS_ENABLED", "false")
        assert load_config(conductor_dir).checkpoint.enabled is False


class TestDefaultConfigYaml:
    def test_round_trips(self):
        raw = yaml.safe_load(default_config_yaml())
        config = ConductorConfig.model_validate(raw)
        assert config.checkpoint.destructive_operations == DEFAULT_DESTRUCTIVE_OPERATIONS
        assert config == ConductorConfig()
