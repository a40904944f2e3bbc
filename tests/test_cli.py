"""Tests for the offline CLI commands."""

from __future__ import annotations

import asyncio
import json
import sys

import aiosqlite
import pytest
import yaml

from conductor.__main__ import main
from conductor.config import load_config
from conductor.orchestrator.agents import AgentRegistry
from conductor.service import WorkflowService

from fakes import EchoAgent, ScriptedOracle, StaticClassifier, decision


def run_cli(monkeypatch, *argv) -> int:
    monkeypatch.setattr(sys, "argv", ["conductor", *argv])
    with pytest.raises(SystemExit) as exc_info:
        main()
    return exc_info.value.code


def seed(repo_root) -> tuple[str, str]:
    """Run one workflow to suspension and return (thread_id, latest checkpoint id)."""

    async def go():
        config = load_config(repo_root / ".conductor")
        db_path = repo_root / config.storage.db_path
        db_path.parent.mkdir(parents=True, exist_ok=True)
        async with aiosqlite.connect(str(db_path)) as db:
            db.row_factory = aiosqlite.Row
            service = WorkflowService(
                db,
                config,
                agents=AgentRegistry({"architect": EchoAgent("architect")}),
                oracle=ScriptedOracle(
                    decision("approval", approvalConfig={"description": "Review"})
                ),
                classifier=StaticClassifier(),
            )
            await service.initialize()
            thread_id = await service.start("x", project_id="web")
            latest = await service.checkpoints.latest(thread_id)
            await service.close()
            return thread_id, latest.id

    return asyncio.run(go())


@pytest.fixture
def repo(tmp_path, monkeypatch):
    monkeypatch.delenv("CONDUCTOR_DB_PATH", raising=False)
    monkeypatch.setattr(sys, "argv", ["conductor", "--repo-root", str(tmp_path), "init"])
    main()
    return tmp_path


class TestInit:
    def test_writes_default_config(self, repo):
        raw = yaml.safe_load((repo / ".conductor" / "config.yaml").read_text())
        assert raw["checkpoint"]["max_checkpoints"] == 50
        assert load_config(repo / ".conductor").orchestrator.max_retries == 3

    def test_refuses_to_overwrite(self, repo, monkeypatch, capsys):
        assert run_cli(monkeypatch, "--repo-root", str(repo), "init") == 1
        assert "already exists" in capsys.readouterr().err

    def test_missing_conductor_dir(self, tmp_path, monkeypatch, capsys):
        assert run_cli(monkeypatch, "--repo-root", str(tmp_path), "status", "wf_x") == 1
        assert "conductor init" in capsys.readouterr().err


class TestOfflineCommands:
    def test_missing_database(self, repo, monkeypatch, capsys):
        assert run_cli(monkeypatch, "--repo-root", str(repo), "checkpoints", "list") == 1
        assert "database not found" in capsys.readouterr().err

    def test_list_and_verify(self, repo, monkeypatch, capsys):
        thread_id, cp_id = seed(repo)

        assert run_cli(monkeypatch, "--repo-root", str(repo), "checkpoints", "list", "--thread", thread_id) == 0
        assert cp_id in capsys.readouterr().out

        assert run_cli(monkeypatch, "--repo-root", str(repo), "checkpoints", "verify", cp_id) == 0
        assert json.loads(capsys.readouterr().out)["valid"] is True

    def test_recover_dry_run(self, repo, monkeypatch, capsys):
        _, cp_id = seed(repo)
        assert run_cli(monkeypatch, "--repo-root", str(repo), "recover", cp_id, "--dry-run") == 0
        result = json.loads(capsys.readouterr().out)
        assert result["success"] is True
        assert "restored_state" not in result

    def test_recover_unknown_checkpoint(self, repo, monkeypatch, capsys):
        seed(repo)
        assert run_cli(monkeypatch, "--repo-root", str(repo), "recover", "cp_missing") == 2
        assert json.loads(capsys.readouterr().out)["phase"] == "load"

    def test_status_of_unknown_thread(self, repo, monkeypatch, capsys):
        seed(repo)
        assert run_cli(monkeypatch, "--repo-root", str(repo), "status", "wf_missing") == 1
        assert "Error:" in capsys.readouterr().err
