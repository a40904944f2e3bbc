"""Checkpoint Pydantic models — snapshots, checksums, recovery info and results.

Key exports:
    Checkpoint, CheckpointTrigger, CheckpointStatus, CheckpointChecksums, SECTIONS
    Snapshots: WorkflowSnapshot, AgentSnapshot, AgentSnapshotStatus, ContextSnapshot,
        ArtifactRef, DecisionRecord, FileSystemSnapshot, GitStatus
    Recovery: RecoveryInfo, RecoveryOptions, RecoveryResult, RecoveryStatus, RecoveryPoint
    Store: CheckpointFilter, CheckpointStats, SweepResult, IntegrityReport
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from conductor.models import WorkflowState, WorkflowStatus

# Fixed section order; the overall hash is taken over the section hashes in this order.
SECTIONS = ("workflow", "agents", "context", "file_system")


# ── Enums ────────────────────────────────────────────────────────────────────


class CheckpointTrigger(str, Enum):
    STATE_TRANSITION = "state_transition"
    AGENT_COMPLETE = "agent_complete"
    USER_APPROVAL = "user_approval"
    ERROR_OCCURRED = "error_occurred"
    MANUAL = "manual"
    TIME_INTERVAL = "time_interval"
    BEFORE_DESTRUCTIVE = "before_destructive"


class CheckpointStatus(str, Enum):
    CREATING = "creating"
    VALID = "valid"
    CORRUPTED = "corrupted"
    EXPIRED = "expired"
    ARCHIVED = "archived"


class AgentSnapshotStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


# ── Snapshots ────────────────────────────────────────────────────────────────


class WorkflowSnapshot(BaseModel):
    current_state: WorkflowStatus
    previous_state: WorkflowStatus | None = None
    state_history: list[WorkflowStatus] = Field(default_factory=list)
    next_node: str | None = None
    state: WorkflowState


class AgentSnapshot(BaseModel):
    agent_id: str
    execution_id: str | None = None
    status: AgentSnapshotStatus
    started_at: datetime | None = None
    completed_at: datetime | None = None
    input: Any = None
    output: Any = None
    error: str | None = None
    attempts: int = 0
    token_usage: int = 0


class ArtifactRef(BaseModel):
    path: str
    type: str = "file"
    checksum: str


class DecisionRecord(BaseModel):
    step: int
    action: str | None
    reasoning: str = ""
    error: str | None = None


class ContextSnapshot(BaseModel):
    project_id: str
    session_id: str
    task_description: str
    work_breakdown: list[str] = Field(default_factory=list)
    artifacts: list[ArtifactRef] = Field(default_factory=list)
    lessons: list[str] = Field(default_factory=list)
    decisions: list[DecisionRecord] = Field(default_factory=list)


class GitStatus(BaseModel):
    branch: str | None = None
    commit_hash: str | None = None
    is_dirty: bool = False
    staged_files: list[str] = Field(default_factory=list)
    unstaged_files: list[str] = Field(default_factory=list)


class FileSystemSnapshot(BaseModel):
    modified_files: list[str] = Field(default_factory=list)
    created_files: list[str] = Field(default_factory=list)
    deleted_files: list[str] = Field(default_factory=list)
    git_status: GitStatus | None = None


# ── Checkpoint ───────────────────────────────────────────────────────────────


class CheckpointChecksums(BaseModel):
    workflow: str
    agents: str
    context: str
    file_system: str
    overall: str

    def section(self, name: str) -> str:
        return getattr(self, name)


class RecoveryInfo(BaseModel):
    can_resume: bool = True
    resume_from_agent: str | None = None
    resume_from_state: WorkflowStatus | None = None
    blockers: list[str] = Field(default_factory=list)


class Checkpoint(BaseModel):
    """A hashed point-in-time snapshot of one workflow thread.

    Sections are kept as the plain JSON-ready dicts that were hashed, so a
    checkpoint read back from the store hashes to the same values. Use the
    ``*_snapshot()`` accessors for typed views.
    """

    id: str
    thread_id: str
    created_at: datetime
    trigger: CheckpointTrigger
    trigger_reason: str = ""
    status: CheckpointStatus = CheckpointStatus.CREATING

    workflow: dict[str, Any]
    agents: dict[str, Any]
    context: dict[str, Any]
    file_system: dict[str, Any]

    checksums: CheckpointChecksums | None = None
    recovery: RecoveryInfo = Field(default_factory=RecoveryInfo)
    size_bytes: int = 0

    def section(self, name: str) -> dict[str, Any]:
        return getattr(self, name)

    def workflow_snapshot(self) -> WorkflowSnapshot:
        return WorkflowSnapshot.model_validate(self.workflow)

    def agent_snapshots(self) -> list[AgentSnapshot]:
        return [AgentSnapshot.model_validate(a) for a in self.agents.get("agents", [])]

    def context_snapshot(self) -> ContextSnapshot:
        return ContextSnapshot.model_validate(self.context)

    def file_system_snapshot(self) -> FileSystemSnapshot:
        return FileSystemSnapshot.model_validate(self.file_system)


# ── Store Queries ────────────────────────────────────────────────────────────


class CheckpointFilter(BaseModel):
    thread_id: str | None = None
    statuses: list[CheckpointStatus] = Field(default_factory=list)
    triggers: list[CheckpointTrigger] = Field(default_factory=list)
    since: datetime | None = None
    until: datetime | None = None
    limit: int | None = None


class CheckpointStats(BaseModel):
    total: int = 0
    by_status: dict[str, int] = Field(default_factory=dict)
    total_size_bytes: int = 0
    oldest: datetime | None = None
    newest: datetime | None = None


class SweepResult(BaseModel):
    expired: list[str] = Field(default_factory=list)
    deleted: list[str] = Field(default_factory=list)


class IntegrityReport(BaseModel):
    checkpoint_id: str
    valid: bool
    status: CheckpointStatus
    corrupted_sections: list[str] = Field(default_factory=list)
    details: dict[str, str] = Field(default_factory=dict)


# ── Recovery ─────────────────────────────────────────────────────────────────


class RecoveryOptions(BaseModel):
    skip_failed_agent: bool = False
    reset_to_state: WorkflowStatus | None = None
    replay_mode: bool = False
    dry_run: bool = False


class RecoveryResult(BaseModel):
    success: bool
    checkpoint_id: str
    thread_id: str | None = None
    phase: str | None = None  # failing phase when success is False
    error: str | None = None
    corrupted_sections: list[str] = Field(default_factory=list)
    blockers: list[str] = Field(default_factory=list)
    restored_state: WorkflowState | None = None
    agent_states: list[AgentSnapshot] = Field(default_factory=list)
    next_node: str | None = None
    skipped_agent: str | None = None
    warnings: list[str] = Field(default_factory=list)
    dry_run: bool = False


class RecoveryPoint(BaseModel):
    checkpoint_id: str
    created_at: datetime
    trigger: CheckpointTrigger
    status: CheckpointStatus
    can_resume: bool
    resume_from_state: WorkflowStatus | None = None
    blockers: list[str] = Field(default_factory=list)


class RecoveryStatus(BaseModel):
    thread_id: str
    workflow_status: WorkflowStatus | None = None
    latest_checkpoint_id: str | None = None
    can_resume: bool = False
    blockers: list[str] = Field(default_factory=list)
    suggestions: list[str] = Field(default_factory=list)
    available_checkpoints: int = 0
