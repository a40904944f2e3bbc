"""Configuration loading for Conductor.

Reads .conductor/config.yaml. Pydantic models validate the schema; a handful of
environment variables override deployment-specific values.

Key exports:
    ConductorConfig — root config model (orchestrator, checkpoint, storage, remote)
    load_config — load and validate .conductor/config.yaml
    default_config_yaml — the YAML written by ``conductor init``
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

DEFAULT_DESTRUCTIVE_OPERATIONS = [
    "git_push",
    "git_force_push",
    "file_delete",
    "database_migrate",
    "deploy",
    "publish",
]


# ── Config Models ────────────────────────────────────────────────────────────


class OrchestratorConfig(BaseModel):
    """Limits applied by the decision loop and the dispatch executor."""

    max_retries: int = Field(default=3, ge=0, le=10)
    max_parallel_agents: int = Field(default=3, ge=1, le=15)
    agent_timeout_seconds: float = Field(default=600.0, gt=0)
    max_approval_iterations: int = Field(default=3, ge=1)
    max_decisions: int = Field(default=50, ge=1)  # think cycles per workflow

    # Bounds for the context summary handed to the decision oracle
    max_output_summary_chars: int = 500
    max_error_chars: int = 300
    max_context_chars: int = Field(default=12_000, ge=2_000)


class CheckpointConfig(BaseModel):
    enabled: bool = True
    max_checkpoints: int = Field(default=50, ge=1)  # per thread
    retention_days: int = Field(default=30, ge=1)
    max_checkpoint_size: int = 100 * 1024 * 1024  # bytes of serialized sections
    compress: bool = False  # zlib-compress stored sections
    auto_checkpoint_interval_seconds: int = 300  # 0 disables time_interval checkpoints
    coalesce_window_seconds: float = 0.0  # state_transition checkpoints inside the window are skipped

    on_state_transition: bool = True
    on_agent_complete: bool = True
    on_user_approval: bool = True
    on_error: bool = True

    # Agent ids whose dispatch is preceded by a before_destructive checkpoint
    destructive_operations: list[str] = Field(
        default_factory=lambda: list(DEFAULT_DESTRUCTIVE_OPERATIONS)
    )


class StorageConfig(BaseModel):
    db_path: str = ".conductor-data/conductor.db"


class RemoteConfig(BaseModel):
    """HTTP endpoints for agents, the decision oracle and the task classifier.

    Agents, oracle and classifier are external collaborators. When a URL is
    configured here the server wires an HTTP client to it; otherwise callers
    must inject implementations into ``create_app``.
    """

    agents: dict[str, str] = Field(default_factory=dict)  # agent_id → URL
    oracle_url: str | None = None
    classifier_url: str | None = None
    timeout_seconds: float = 120.0

    @field_validator("agents")
    @classmethod
    def _validate_agent_urls(cls, v: dict[str, str]) -> dict[str, str]:
        for agent_id, url in v.items():
            if not url.startswith(("http://", "https://")):
                raise ValueError(f"Agent {agent_id!r} URL must be http(s), got: {url!r}")
        return v


class ConductorConfig(BaseModel):
    """Root configuration from .conductor/config.yaml."""

    orchestrator: OrchestratorConfig = Field(default_factory=OrchestratorConfig)
    checkpoint: CheckpointConfig = Field(default_factory=CheckpointConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    remote: RemoteConfig = Field(default_factory=RemoteConfig)


# ── Loader ───────────────────────────────────────────────────────────────────


def load_config(conductor_dir: Path) -> ConductorConfig:
    """Load Conductor configuration from a .conductor/ directory.

    Args:
        conductor_dir: Path to the .conductor/ directory.

    Returns:
        Validated ConductorConfig.

    Raises:
        FileNotFoundError: If config.yaml doesn't exist.
        pydantic.ValidationError: If config validation fails.
    """
    config_path = conductor_dir / "config.yaml"
    if not config_path.exists():
        raise FileNotFoundError(f"Conductor config not found: {config_path}")

    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}

    config = ConductorConfig(**raw)

    # Environment variable overrides for deployment
    db_path = os.environ.get("CONDUCTOR_DB_PATH")
    if db_path:
        config.storage.db_path = db_path

    max_parallel = os.environ.get("CONDUCTOR_MAX_PARALLEL_AGENTS")
    if max_parallel:
        config.orchestrator = config.orchestrator.model_copy(
            update={"max_parallel_agents": int(max_parallel)}
        )

    checkpoints_enabled = os.environ.get("CONDUCTOR_CHECKPOINTS_ENABLED")
    if checkpoints_enabled is not None:
        config.checkpoint.enabled = checkpoints_enabled.lower() in ("1", "true", "yes")

    logger.info(
        "Loaded Conductor config: db=%s max_parallel=%d checkpoints=%s",
        config.storage.db_path,
        config.orchestrator.max_parallel_agents,
        "on" if config.checkpoint.enabled else "off",
    )
    return config


def default_config_yaml() -> str:
    """Render the default configuration as YAML."""
    return yaml.safe_dump(ConductorConfig().model_dump(mode="json"), sort_keys=False)
