"""Orchestration Pydantic models — workflow state, decisions and agent I/O.

Key exports:
    State: WorkflowState, WorkflowStatus, ALLOWED_TRANSITIONS, TERMINAL_STATUSES
    Analysis: TaskAnalysis, TaskType, Complexity
    Decisions: Decision, Action, AgentDispatch, Priority, ApprovalConfig, ApprovalType,
        ThinkingStep, ThinkingTrigger
    Execution: AgentTask, AgentResult, AgentOutput, ParallelResult, Artifact
    Approval: ApprovalRequest, ApprovalResponse
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


class _WireModel(BaseModel):
    """Accepts both snake_case and camelCase keys (oracle and agent output)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ── Workflow Status ──────────────────────────────────────────────────────────


class WorkflowStatus(str, Enum):
    PENDING = "pending"
    ANALYZING = "analyzing"
    ORCHESTRATING = "orchestrating"
    AGENT_WORKING = "agent_working"
    AWAITING_APPROVAL = "awaiting_approval"
    COMPLETING = "completing"
    COMPLETED = "completed"
    FAILED = "failed"
    ABORTED = "aborted"


TERMINAL_STATUSES = frozenset(
    {WorkflowStatus.COMPLETED, WorkflowStatus.FAILED, WorkflowStatus.ABORTED}
)

_ANY_EXIT = {WorkflowStatus.FAILED, WorkflowStatus.ABORTED}

ALLOWED_TRANSITIONS: dict[WorkflowStatus, frozenset[WorkflowStatus]] = {
    WorkflowStatus.PENDING: frozenset({WorkflowStatus.ANALYZING, *_ANY_EXIT}),
    WorkflowStatus.ANALYZING: frozenset({WorkflowStatus.ORCHESTRATING, *_ANY_EXIT}),
    WorkflowStatus.ORCHESTRATING: frozenset(
        {
            WorkflowStatus.AGENT_WORKING,
            WorkflowStatus.AWAITING_APPROVAL,
            WorkflowStatus.COMPLETING,
            *_ANY_EXIT,
        }
    ),
    WorkflowStatus.AGENT_WORKING: frozenset({WorkflowStatus.ORCHESTRATING, *_ANY_EXIT}),
    WorkflowStatus.AWAITING_APPROVAL: frozenset({WorkflowStatus.ORCHESTRATING, *_ANY_EXIT}),
    WorkflowStatus.COMPLETING: frozenset({WorkflowStatus.COMPLETED, *_ANY_EXIT}),
    WorkflowStatus.COMPLETED: frozenset(),
    WorkflowStatus.FAILED: frozenset(),
    WorkflowStatus.ABORTED: frozenset(),
}

# Progress rank used when an operator forces a workflow back to an earlier status.
STATUS_RANK: dict[WorkflowStatus, int] = {
    WorkflowStatus.PENDING: 0,
    WorkflowStatus.ANALYZING: 1,
    WorkflowStatus.ORCHESTRATING: 2,
    WorkflowStatus.AGENT_WORKING: 3,
    WorkflowStatus.AWAITING_APPROVAL: 3,
    WorkflowStatus.COMPLETING: 4,
    WorkflowStatus.COMPLETED: 5,
    WorkflowStatus.FAILED: 5,
    WorkflowStatus.ABORTED: 5,
}


def is_allowed_transition(current: WorkflowStatus, new: WorkflowStatus) -> bool:
    return current == new or new in ALLOWED_TRANSITIONS[current]


def unit_key(agent_id: str, execution_id: str | None) -> str:
    """Key for one unit of work: ``agent_id`` or ``agent_id_executionId``."""
    if execution_id:
        return f"{agent_id}_{execution_id}"
    return agent_id


# ── Task Analysis ────────────────────────────────────────────────────────────


class TaskType(str, Enum):
    FEATURE = "feature"
    BUGFIX = "bugfix"
    REFACTOR = "refactor"
    DOCS = "docs"
    CONFIG = "config"
    TEST = "test"


class Complexity(str, Enum):
    TRIVIAL = "trivial"
    SIMPLE = "simple"
    MODERATE = "moderate"
    COMPLEX = "complex"


class TaskAnalysis(_WireModel):
    """Result of the initial task classification. Set once per workflow."""

    task_type: TaskType
    complexity: Complexity
    requires_ui: bool = False
    requires_backend: bool = False
    requires_architecture: bool = False
    requires_approval: bool = False
    suggested_agents: list[str] = Field(default_factory=list)


# ── Agent Execution ──────────────────────────────────────────────────────────


class Artifact(_WireModel):
    path: str
    type: str = "file"
    content: str | None = None


class ParallelResult(_WireModel):
    """Outcome of one unit of work, in the shape every executor produces."""

    agent_id: str
    execution_id: str | None = None
    success: bool
    output: Any = None
    artifacts: list[Artifact] = Field(default_factory=list)
    error: str | None = None
    duration_ms: int = 0


class AgentOutput(ParallelResult):
    """An entry in ``WorkflowState.agent_outputs``."""

    attempt: int = 1
    batch_id: str | None = None  # set for outputs of one parallel fan-out
    token_usage: int = 0


class AgentResult(_WireModel):
    """What an Agent returns from ``execute``."""

    success: bool
    result: Any = None
    artifacts: list[Artifact] = Field(default_factory=list)
    error: str | None = None
    token_usage: int = 0


# ── Decisions ────────────────────────────────────────────────────────────────


class Action(str, Enum):
    DISPATCH = "dispatch"
    PARALLEL_DISPATCH = "parallel_dispatch"
    APPROVAL = "approval"
    COMPLETE = "complete"
    FAIL = "fail"


class Priority(str, Enum):
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"


class AgentDispatch(_WireModel):
    agent_id: str = Field(min_length=1)
    execution_id: str | None = None
    context_refs: list[str] = Field(default_factory=list)
    priority: Priority = Priority.NORMAL

    @property
    def unit_id(self) -> str:
        return unit_key(self.agent_id, self.execution_id)


class ApprovalType(str, Enum):
    STYLE_SELECTION = "style_selection"
    DESIGN_REVIEW = "design_review"
    CONFIRMATION = "confirmation"
    FEEDBACK = "feedback"


class ApprovalConfig(_WireModel):
    type: ApprovalType = ApprovalType.CONFIRMATION
    description: str = Field(min_length=1)
    options: list[str] = Field(default_factory=list)
    allow_reject_all: bool = True
    iteration_count: int = 0
    max_iterations: int | None = None


class Decision(_WireModel):
    """Output of the decision step. A tagged union keyed on ``action``.

    ``dispatch``/``parallel_dispatch`` require at least one target and
    ``approval`` requires an approval config. Anything else fails validation.
    """

    model_config = ConfigDict(frozen=True)

    reasoning: str = ""
    action: Action
    targets: list[AgentDispatch] = Field(default_factory=list)
    approval_config: ApprovalConfig | None = None
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)

    @model_validator(mode="after")
    def validate_action_fields(self) -> Decision:
        match self.action:
            case Action.DISPATCH | Action.PARALLEL_DISPATCH:
                if not self.targets:
                    msg = f"Decision action '{self.action.value}' requires at least one target"
                    raise ValueError(msg)
            case Action.APPROVAL:
                if self.approval_config is None:
                    msg = "Decision action 'approval' requires approval_config"
                    raise ValueError(msg)
        return self


class ThinkingTrigger(str, Enum):
    INITIAL = "initial"
    AGENT_COMPLETED = "agent_completed"
    PARALLEL_COMPLETED = "parallel_completed"
    APPROVAL_RECEIVED = "approval_received"
    ERROR_OCCURRED = "error_occurred"


class ThinkingStep(_WireModel):
    """One entry of ``WorkflowState.thinking_history``.

    ``decision`` is None when the oracle's output could not be parsed; the
    error is recorded alongside so the history stays complete.
    """

    step: int
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    trigger: ThinkingTrigger
    trigger_agent_id: str | None = None
    state_summary: str = ""
    reasoning: str = ""
    decision: Decision | None = None
    error: str | None = None


# ── Approval ─────────────────────────────────────────────────────────────────


class ApprovalRequest(_WireModel):
    type: ApprovalType = ApprovalType.CONFIRMATION
    description: str
    artifacts: list[Artifact] = Field(default_factory=list)
    options: list[str] = Field(default_factory=list)
    allow_reject_all: bool = True
    iteration: int = 0
    max_iterations: int = 3
    requested_at: datetime | None = None


class ApprovalResponse(_WireModel):
    """A human decision supplied through ``resume``. Unknown keys are rejected."""

    model_config = ConfigDict(extra="forbid")

    approved: bool
    selected_option: str | None = None
    feedback: str | None = None


class UserMessage(_WireModel):
    content: str = Field(min_length=1)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


# ── Agent Task ───────────────────────────────────────────────────────────────


class AgentTask(_WireModel):
    """What an Agent receives from ``execute``."""

    tenant_id: str
    project_id: str
    task_id: str
    prompt: str
    analysis: TaskAnalysis | None = None
    previous_outputs: list[AgentOutput] = Field(default_factory=list)
    settings: dict[str, Any] = Field(default_factory=dict)
    execution_id: str | None = None
    feedback: str | None = None


# ── Workflow State ───────────────────────────────────────────────────────────


class WorkflowState(_WireModel):
    """The single aggregate owned by the orchestrator graph for one thread.

    Nodes never mutate it; they return partial updates that the graph applies.
    ``agent_outputs``, ``thinking_history``, ``completed_agents``,
    ``status_history``, ``user_feedback`` and ``warnings`` only ever grow.
    """

    # Identity (immutable)
    tenant_id: str = "default"
    project_id: str
    task_id: str
    thread_id: str
    prompt: str

    status: WorkflowStatus = WorkflowStatus.PENDING
    status_history: list[WorkflowStatus] = Field(
        default_factory=lambda: [WorkflowStatus.PENDING]
    )
    analysis: TaskAnalysis | None = None

    # Sequential bookkeeping
    agent_queue: list[str] = Field(default_factory=list)
    current_agent: AgentDispatch | None = None
    completed_agents: list[str] = Field(default_factory=list)
    skipped_agents: list[str] = Field(default_factory=list)

    # Histories
    agent_outputs: list[AgentOutput] = Field(default_factory=list)
    thinking_history: list[ThinkingStep] = Field(default_factory=list)
    orchestrator_decision: Decision | None = None

    # In-flight parallel fan-out
    pending_agents: list[AgentDispatch] = Field(default_factory=list)
    parallel_results: list[ParallelResult] = Field(default_factory=list)
    is_parallel_execution: bool = False

    # Approval
    approval_request: ApprovalRequest | None = None
    approval_response: ApprovalResponse | None = None
    approval_iterations: int = 0
    user_feedback: list[str] = Field(default_factory=list)

    # External messages
    user_messages: list[UserMessage] = Field(default_factory=list)
    last_processed_message_index: int = 0

    # Retry / error tracking
    retry_count: int = 0
    max_retries: int = 3
    last_failed_agent: str | None = None
    error: str | None = None
    warnings: list[str] = Field(default_factory=list)

    settings: dict[str, Any] = Field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES
