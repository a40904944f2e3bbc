"""Shared fixtures: a SQLite connection on tmp_path and a small-limit config."""

from __future__ import annotations

import aiosqlite
import pytest
import pytest_asyncio

from conductor.config import CheckpointConfig, ConductorConfig, OrchestratorConfig


@pytest_asyncio.fixture
async def db(tmp_path):
    db_path = tmp_path / "test_conductor.db"
    async with aiosqlite.connect(str(db_path)) as conn:
        conn.row_factory = aiosqlite.Row
        yield conn


@pytest.fixture
def config() -> ConductorConfig:
    return ConductorConfig(
        orchestrator=OrchestratorConfig(
            max_retries=2, max_parallel_agents=3, agent_timeout_seconds=5
        ),
        checkpoint=CheckpointConfig(auto_checkpoint_interval_seconds=0),
    )
