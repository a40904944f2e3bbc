"""Checkpoint manager — builds, hashes, verifies and persists checkpoints.

Key exports:
    CheckpointManager — create_checkpoint(), verify(), verify_checkpoint(),
        latest(), list(), archive(), cleanup()
    AgentStateProvider, FileSystemProvider — read-only provider protocols
    GitFileSystemProvider — filesystem snapshot from ``git status``
    compute_recovery_info, build_context_snapshot
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Protocol

from conductor.checkpoint.errors import (
    CheckpointDisabledError,
    CheckpointNotFoundError,
    CheckpointSizeError,
)
from conductor.checkpoint.models import (
    SECTIONS,
    AgentSnapshot,
    AgentSnapshotStatus,
    ArtifactRef,
    Checkpoint,
    CheckpointChecksums,
    CheckpointFilter,
    CheckpointStatus,
    CheckpointTrigger,
    ContextSnapshot,
    DecisionRecord,
    FileSystemSnapshot,
    GitStatus,
    IntegrityReport,
    RecoveryInfo,
    SweepResult,
    WorkflowSnapshot,
)
from conductor.checkpoint.redaction import (
    canonical_json,
    overall_hash,
    redact,
    redact_text,
    section_hash,
    sha256_hex,
)
from conductor.checkpoint.store import CheckpointStore
from conductor.config import CheckpointConfig
from conductor.models import WorkflowState, WorkflowStatus
from conductor.orchestrator.agents import AgentTracker

logger = logging.getLogger("conductor.checkpoint.manager")


# ── Provider Protocols ───────────────────────────────────────────────────────


class AgentStateProvider(Protocol):
    def agent_states(self, state: WorkflowState) -> list[AgentSnapshot]:
        ...


class FileSystemProvider(Protocol):
    async def snapshot(self) -> FileSystemSnapshot:
        ...


class GitFileSystemProvider:
    """Reads branch, HEAD and working-tree changes from a git checkout."""

    def __init__(self, repo_root: Path, *, git_exe: str = "git", timeout: float = 30.0):
        self.repo_root = repo_root
        self.git_exe = git_exe
        self.timeout = timeout

    async def _git(self, *args: str) -> str | None:
        try:
            proc = await asyncio.create_subprocess_exec(
                self.git_exe,
                *args,
                cwd=str(self.repo_root),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except (OSError, asyncio.TimeoutError):
            logger.exception("git %s failed in %s", " ".join(args), self.repo_root)
            return None
        if proc.returncode != 0:
            logger.warning("git %s failed: %s", " ".join(args), stderr.decode(errors="replace"))
            return None
        return stdout.decode(errors="replace")

    async def snapshot(self) -> FileSystemSnapshot:
        branch = await self._git("rev-parse", "--abbrev-ref", "HEAD")
        commit = await self._git("rev-parse", "HEAD")
        porcelain = await self._git("status", "--porcelain")
        if porcelain is None:
            return FileSystemSnapshot()
        return parse_porcelain(
            porcelain,
            branch=branch.strip() if branch else None,
            commit_hash=commit.strip() if commit else None,
        )


def parse_porcelain(
    output: str, *, branch: str | None = None, commit_hash: str | None = None
) -> FileSystemSnapshot:
    """Turn ``git status --porcelain`` output into a FileSystemSnapshot."""
    snap = FileSystemSnapshot()
    git = GitStatus(branch=branch, commit_hash=commit_hash)
    for line in output.splitlines():
        if len(line) < 4:
            continue
        index, worktree, path = line[0], line[1], line[3:]
        if " -> " in path:  # rename
            path = path.split(" -> ", 1)[1]
        if index == "?" and worktree == "?":
            snap.created_files.append(path)
            git.unstaged_files.append(path)
            continue
        if index not in (" ", "?"):
            git.staged_files.append(path)
        if worktree not in (" ", "?"):
            git.unstaged_files.append(path)
        if "D" in (index, worktree):
            snap.deleted_files.append(path)
        elif "A" in (index, worktree):
            snap.created_files.append(path)
        else:
            snap.modified_files.append(path)
    git.is_dirty = bool(git.staged_files or git.unstaged_files)
    snap.git_status = git
    return snap


# ── Section Builders ─────────────────────────────────────────────────────────


def build_context_snapshot(state: WorkflowState) -> ContextSnapshot:
    artifacts: dict[str, ArtifactRef] = {}
    for out in state.agent_outputs:
        for artifact in out.artifacts:
            artifacts[artifact.path] = ArtifactRef(
                path=artifact.path,
                type=artifact.type,
                checksum=sha256_hex(
                    artifact.content if artifact.content is not None else artifact.path
                ),
            )
    decisions = [
        DecisionRecord(
            step=step.step,
            action=step.decision.action.value if step.decision else None,
            reasoning=step.reasoning,
            error=step.error,
        )
        for step in state.thinking_history
    ]
    return ContextSnapshot(
        project_id=state.project_id,
        session_id=state.thread_id,
        task_description=state.prompt,
        work_breakdown=list(state.agent_queue),
        artifacts=list(artifacts.values()),
        lessons=list(state.user_feedback),
        decisions=decisions,
    )


def compute_recovery_info(state: WorkflowState, agents: list[AgentSnapshot]) -> RecoveryInfo:
    """Decide whether a snapshot can be resumed and what stands in the way."""
    info = RecoveryInfo(resume_from_state=state.status)
    for agent in agents:
        if agent.status == AgentSnapshotStatus.RUNNING:
            info.blockers.append(f"Agent {agent.agent_id} was running")
            if info.resume_from_agent is None:
                info.resume_from_agent = agent.agent_id
        elif agent.status == AgentSnapshotStatus.FAILED and agent.attempts > state.max_retries:
            info.blockers.append(f"Agent {agent.agent_id} failed and exceeded retry limit")
            info.can_resume = False
    if state.status in (WorkflowStatus.FAILED, WorkflowStatus.ABORTED):
        info.blockers.append(f"Workflow is in terminal state {state.status.value}")
        info.can_resume = False
    return info


def compute_checksums(sections: dict[str, Any]) -> CheckpointChecksums:
    hashes = {name: section_hash(sections[name]) for name in SECTIONS}
    return CheckpointChecksums(**hashes, overall=overall_hash([hashes[n] for n in SECTIONS]))


# ── Manager ──────────────────────────────────────────────────────────────────


class CheckpointManager:
    """Builds checkpoints from live state and writes them through the store.

    Usage:
        manager = CheckpointManager(store, config.checkpoint, agent_states=tracker)
        cp = await manager.create_checkpoint(state, CheckpointTrigger.MANUAL, "before deploy")
        report = await manager.verify(cp.id)
    """

    def __init__(
        self,
        store: CheckpointStore,
        config: CheckpointConfig,
        *,
        agent_states: AgentStateProvider | None = None,
        file_system: FileSystemProvider | None = None,
    ):
        self.store = store
        self.config = config
        self._agent_states = agent_states or AgentTracker()
        self._file_system = file_system

    async def create_checkpoint(
        self,
        state: WorkflowState,
        trigger: CheckpointTrigger,
        reason: str = "",
        *,
        next_node: str | None = None,
    ) -> Checkpoint:
        """Snapshot ``state`` and persist it.

        Raises:
            CheckpointDisabledError: checkpointing is turned off.
            CheckpointSizeError: the serialized snapshot exceeds the size limit.
        """
        if not self.config.enabled:
            raise CheckpointDisabledError()

        agents = self._agent_states.agent_states(state)
        file_system = (
            await self._file_system.snapshot() if self._file_system else FileSystemSnapshot()
        )
        previous = state.status_history[-2] if len(state.status_history) > 1 else None
        workflow = WorkflowSnapshot(
            current_state=state.status,
            previous_state=previous,
            state_history=list(state.status_history),
            next_node=next_node,
            state=state,
        )
        sections = {
            "workflow": workflow.model_dump(mode="json"),
            "agents": {"agents": [a.model_dump(mode="json") for a in agents]},
            "context": build_context_snapshot(state).model_dump(mode="json"),
            "file_system": file_system.model_dump(mode="json"),
        }
        sections = {name: redact(value) for name, value in sections.items()}

        size = sum(len(canonical_json(v).encode("utf-8")) for v in sections.values())
        if size > self.config.max_checkpoint_size:
            raise CheckpointSizeError("size", self.config.max_checkpoint_size, size)

        checkpoint = Checkpoint(
            id=f"cp_{uuid.uuid4().hex}",
            thread_id=state.thread_id,
            created_at=datetime.now(timezone.utc),
            trigger=trigger,
            trigger_reason=redact_text(reason),
            status=CheckpointStatus.CREATING,
            checksums=compute_checksums(sections),
            recovery=compute_recovery_info(state, agents),
            size_bytes=size,
            **sections,
        )
        checkpoint.status = CheckpointStatus.VALID
        await self.store.put(checkpoint)
        logger.info(
            "Checkpoint %s created for thread %s (trigger=%s status=%s)",
            checkpoint.id,
            state.thread_id,
            trigger.value,
            state.status.value,
        )
        await self.cleanup(state.thread_id)
        return checkpoint

    # ── Verification ─────────────────────────────────────────────────────────

    def verify_checkpoint(self, checkpoint: Checkpoint) -> IntegrityReport:
        """Recompute checksums of an in-memory checkpoint."""
        if checkpoint.checksums is None:
            return IntegrityReport(
                checkpoint_id=checkpoint.id,
                valid=False,
                status=CheckpointStatus.CORRUPTED,
                corrupted_sections=["checksums"],
            )
        return _compare(
            checkpoint.id,
            checkpoint.status,
            {name: checkpoint.section(name) for name in SECTIONS},
            checkpoint.checksums,
            {},
        )

    async def verify(self, checkpoint_id: str) -> IntegrityReport:
        """Verify a stored checkpoint section by section.

        A mismatch marks the stored checkpoint ``corrupted`` and the report
        names every section that failed.
        """
        texts, checksums_json = await self.store.get_raw_sections(checkpoint_id)
        status = await self.store.get_status(checkpoint_id)

        sections: dict[str, Any] = {}
        details: dict[str, str] = {}
        for name, text in texts.items():
            if text is None:
                details[name] = "undecodable"
                continue
            try:
                sections[name] = json.loads(text)
            except (json.JSONDecodeError, TypeError) as exc:
                details[name] = f"unparsable: {exc}"

        try:
            checksums = CheckpointChecksums.model_validate_json(checksums_json)
        except ValueError as exc:
            report = IntegrityReport(
                checkpoint_id=checkpoint_id,
                valid=False,
                status=CheckpointStatus.CORRUPTED,
                corrupted_sections=["checksums"],
                details={"checksums": str(exc)},
            )
        else:
            report = _compare(checkpoint_id, status, sections, checksums, details)

        if not report.valid:
            logger.error(
                "Checkpoint %s failed integrity check: %s",
                checkpoint_id,
                ", ".join(report.corrupted_sections),
            )
            await self.store.update_status(checkpoint_id, CheckpointStatus.CORRUPTED)
        return report

    # ── Queries / Lifecycle ──────────────────────────────────────────────────

    async def get(self, checkpoint_id: str) -> Checkpoint:
        checkpoint = await self.store.get(checkpoint_id)
        if checkpoint is None:
            raise CheckpointNotFoundError(checkpoint_id)
        return checkpoint

    async def latest(self, thread_id: str) -> Checkpoint | None:
        return await self.store.latest(thread_id)

    async def list(self, filter: CheckpointFilter | None = None) -> list[Checkpoint]:
        return await self.store.list(filter)

    async def archive(self, checkpoint_id: str) -> None:
        await self.store.update_status(checkpoint_id, CheckpointStatus.ARCHIVED)

    async def cleanup(self, thread_id: str) -> SweepResult:
        return await self.store.sweep(
            thread_id,
            max_count=self.config.max_checkpoints,
            max_age=timedelta(days=self.config.retention_days),
        )


def _compare(
    checkpoint_id: str,
    status: CheckpointStatus | None,
    sections: dict[str, Any],
    checksums: CheckpointChecksums,
    details: dict[str, str],
) -> IntegrityReport:
    corrupted = [name for name in SECTIONS if name in details]
    for name in SECTIONS:
        if name not in sections:
            continue
        actual = section_hash(sections[name])
        expected = checksums.section(name)
        if actual != expected:
            corrupted.append(name)
            details[name] = f"checksum mismatch: expected {expected[:12]}, got {actual[:12]}"
    if overall_hash([checksums.section(n) for n in SECTIONS]) != checksums.overall:
        corrupted.append("checksums")
        details["checksums"] = "overall hash does not match section hashes"

    corrupted.sort(key=lambda n: SECTIONS.index(n) if n in SECTIONS else len(SECTIONS))
    valid = not corrupted
    return IntegrityReport(
        checkpoint_id=checkpoint_id,
        valid=valid,
        status=CheckpointStatus.CORRUPTED if not valid else (status or CheckpointStatus.VALID),
        corrupted_sections=corrupted,
        details=details,
    )
