"""Orchestrator graph — the state machine tying the nodes into one decision loop.

    analyze → think → (dispatch → execute_agent | parallel_dispatch |
                       awaiting_approval | complete | fail) → think …

Every branch returns to ``think``, so each transition is justified by a
recorded decision and is a checkpoint-eligible boundary. Nodes return partial
updates; the graph applies them (appending to the history fields, replacing
everything else), validates the status edge, routes, and reports the
transition to an optional callback that persists it.

Key exports:
    OrchestratorGraph — step(), run(), resume_approval()
    apply_update — reducer for node updates
    resume_node_for — where a persisted state continues
    Node names and the END / INTERRUPT markers
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any, Protocol

from conductor.config import OrchestratorConfig
from conductor.models import (
    Action,
    ApprovalResponse,
    WorkflowState,
    WorkflowStatus,
    is_allowed_transition,
)
from conductor.orchestrator.agents import AgentRegistry, AgentTracker
from conductor.orchestrator.analyze import TaskAnalyzer, TaskClassifier
from conductor.orchestrator.approval import ApprovalGate
from conductor.orchestrator.dispatch import BeforeDestructiveCallback, DispatchExecutor
from conductor.orchestrator.errors import InvalidTransitionError, OrchestrationError
from conductor.orchestrator.think import DecisionOracle, DecisionStep

logger = logging.getLogger("conductor.orchestrator.graph")

# ── Node Names ───────────────────────────────────────────────────────────────

ANALYZE = "analyze"
THINK = "think"
DISPATCH = "dispatch"
EXECUTE_AGENT = "execute_agent"
PARALLEL_DISPATCH = "parallel_dispatch"
AWAITING_APPROVAL = "awaiting_approval"
COMPLETE = "complete"
FAIL = "fail"

END = "__end__"
INTERRUPT = "__interrupt__"  # suspended at the approval gate

NODES = (ANALYZE, THINK, DISPATCH, EXECUTE_AGENT, PARALLEL_DISPATCH, AWAITING_APPROVAL, COMPLETE, FAIL)

# Status a node puts the workflow in before it runs.
_ENTRY_STATUS: dict[str, WorkflowStatus] = {
    ANALYZE: WorkflowStatus.ANALYZING,
    THINK: WorkflowStatus.ORCHESTRATING,
    DISPATCH: WorkflowStatus.AGENT_WORKING,
    EXECUTE_AGENT: WorkflowStatus.AGENT_WORKING,
    PARALLEL_DISPATCH: WorkflowStatus.AGENT_WORKING,
    AWAITING_APPROVAL: WorkflowStatus.AWAITING_APPROVAL,
    COMPLETE: WorkflowStatus.COMPLETING,
}

APPEND_FIELDS = frozenset(
    {"agent_outputs", "thinking_history", "completed_agents", "user_feedback", "warnings"}
)


# ── Reducer ──────────────────────────────────────────────────────────────────


def apply_update(state: WorkflowState, update: dict[str, Any]) -> WorkflowState:
    """Apply a node's partial update.

    Raises:
        InvalidTransitionError: the update moves ``status`` along an edge the
            state machine does not have.
        OrchestrationError: the update would leave both a current agent and
            pending parallel agents set.
    """
    changes: dict[str, Any] = {}
    for key, value in update.items():
        if key not in WorkflowState.model_fields:
            raise OrchestrationError(f"Unknown workflow state field in update: {key}")
        if key in APPEND_FIELDS:
            changes[key] = [*getattr(state, key), *value]
        else:
            changes[key] = value

    new_status = changes.get("status")
    if new_status is not None and new_status != state.status:
        if not is_allowed_transition(state.status, new_status):
            raise InvalidTransitionError(state.status.value, WorkflowStatus(new_status).value)
        changes["status_history"] = [*state.status_history, new_status]

    new_state = state.model_copy(update=changes)
    if new_state.current_agent is not None and new_state.pending_agents:
        raise OrchestrationError("A workflow cannot have a current agent and pending parallel agents")
    return new_state


def resume_node_for(state: WorkflowState) -> str:
    """The node a persisted state continues from."""
    match state.status:
        case WorkflowStatus.PENDING | WorkflowStatus.ANALYZING:
            return ANALYZE
        case WorkflowStatus.ORCHESTRATING | WorkflowStatus.AGENT_WORKING:
            return THINK
        case WorkflowStatus.AWAITING_APPROVAL:
            if state.approval_request is not None and state.approval_response is None:
                return INTERRUPT
            return THINK
        case WorkflowStatus.COMPLETING:
            return COMPLETE
    return END


# ── Graph ────────────────────────────────────────────────────────────────────


class TransitionCallback(Protocol):
    """Called after every node with the state before and after it ran."""

    async def __call__(
        self, before: WorkflowState, after: WorkflowState, node: str, next_node: str
    ) -> None:
        ...


class OrchestratorGraph:
    """The decision-loop state machine for one coordinator.

    Dependencies are passed in explicitly; nothing is looked up globally.

    Usage:
        graph = OrchestratorGraph(
            agents=registry, oracle=oracle, classifier=classifier,
            config=config.orchestrator, on_transition=service.on_transition,
        )
        state, next_node = await graph.run(state)
        if next_node == INTERRUPT:
            state = graph.resume_approval(state, {"approved": True})
            state, next_node = await graph.run(state, THINK)
    """

    def __init__(
        self,
        *,
        agents: AgentRegistry,
        oracle: DecisionOracle,
        classifier: TaskClassifier,
        config: OrchestratorConfig,
        tracker: AgentTracker | None = None,
        destructive_operations: list[str] | None = None,
        before_destructive: BeforeDestructiveCallback | None = None,
        on_transition: TransitionCallback | None = None,
    ):
        self.config = config
        self.agents = agents
        self.analyzer = TaskAnalyzer(classifier)
        self.thinker = DecisionStep(oracle, config, available_agents=agents.ids)
        self.executor = DispatchExecutor(
            agents,
            config,
            tracker=tracker,
            destructive_operations=destructive_operations,
            before_destructive=before_destructive,
        )
        self.gate = ApprovalGate(config)
        self.on_transition = on_transition

        self._nodes: dict[str, Callable[[WorkflowState], Any]] = {
            ANALYZE: self.analyzer,
            THINK: self.thinker,
            DISPATCH: self.executor.dispatch_node,
            EXECUTE_AGENT: self.executor.execute_node,
            PARALLEL_DISPATCH: self.executor.parallel_node,
            AWAITING_APPROVAL: self.gate.node,
            COMPLETE: self._complete_node,
            FAIL: self._fail_node,
        }
        self._routers: dict[str, Callable[[WorkflowState], str]] = {
            ANALYZE: self._route_after_analyze,
            THINK: self._route_after_think,
            DISPATCH: self._route_after_dispatch,
            EXECUTE_AGENT: self._route_after_execute,
            PARALLEL_DISPATCH: lambda _state: THINK,
            AWAITING_APPROVAL: self._route_after_approval,
            COMPLETE: lambda _state: END,
            FAIL: lambda _state: END,
        }

    # ── Execution ────────────────────────────────────────────────────────────

    async def step(self, state: WorkflowState, node: str) -> tuple[WorkflowState, str]:
        """Run exactly one node and return the new state and the next node."""
        if node not in self._nodes:
            raise OrchestrationError(f"Unknown node: {node}")

        before = state
        try:
            entry = _ENTRY_STATUS.get(node)
            if entry is not None and entry != state.status:
                state = apply_update(state, {"status": entry})
            update = await self._nodes[node](state)
            after = apply_update(state, update)
            next_node = self._routers[node](after)
        except Exception as exc:
            if node == FAIL:
                raise
            logger.exception("Node %s failed for thread %s", node, before.thread_id)
            after = apply_update(
                before,
                {
                    "error": f"{node} failed: {exc}",
                    "current_agent": None,
                    "pending_agents": [],
                    "is_parallel_execution": False,
                },
            )
            next_node = FAIL

        logger.info(
            "Thread %s: %s -> %s (status %s -> %s)",
            after.thread_id,
            node,
            next_node,
            before.status.value,
            after.status.value,
        )
        if self.on_transition is not None:
            await self.on_transition(before, after, node, next_node)
        return after, next_node

    async def run(
        self,
        state: WorkflowState,
        node: str = ANALYZE,
        *,
        max_steps: int | None = None,
        should_stop: Callable[[], bool] | None = None,
    ) -> tuple[WorkflowState, str]:
        """Run nodes until the workflow ends, suspends, or ``max_steps`` is reached."""
        steps = 0
        while node not in (END, INTERRUPT):
            if should_stop is not None and should_stop():
                break
            state, node = await self.step(state, node)
            steps += 1
            if max_steps is not None and steps >= max_steps:
                break
        return state, node

    def resume_approval(
        self, state: WorkflowState, response: ApprovalResponse | dict[str, Any]
    ) -> WorkflowState:
        """Merge a human response into a suspended state. Next node is ``think``."""
        return apply_update(state, self.gate.resume(state, response))

    # ── Terminal Nodes ───────────────────────────────────────────────────────

    async def _complete_node(self, state: WorkflowState) -> dict[str, Any]:
        logger.info(
            "Thread %s completed with %d outputs", state.thread_id, len(state.agent_outputs)
        )
        return {"status": WorkflowStatus.COMPLETED, "current_agent": None, "error": None}

    async def _fail_node(self, state: WorkflowState) -> dict[str, Any]:
        logger.error("Thread %s failed: %s", state.thread_id, state.error)
        return {
            "status": WorkflowStatus.FAILED,
            "current_agent": None,
            "pending_agents": [],
            "is_parallel_execution": False,
            "error": state.error or "Workflow failed",
        }

    # ── Routing ──────────────────────────────────────────────────────────────

    @staticmethod
    def _route_after_analyze(state: WorkflowState) -> str:
        return THINK if state.analysis is not None else FAIL

    @staticmethod
    def _route_after_think(state: WorkflowState) -> str:
        decision = state.orchestrator_decision
        if decision is None:
            return FAIL
        match decision.action:
            case Action.DISPATCH:
                return DISPATCH
            case Action.PARALLEL_DISPATCH:
                return PARALLEL_DISPATCH
            case Action.APPROVAL:
                return AWAITING_APPROVAL
            case Action.COMPLETE:
                return COMPLETE
        return FAIL

    @staticmethod
    def _route_after_dispatch(state: WorkflowState) -> str:
        return EXECUTE_AGENT if state.current_agent is not None else THINK

    @staticmethod
    def _route_after_execute(state: WorkflowState) -> str:
        last = state.agent_outputs[-1] if state.agent_outputs else None
        if last is not None and not last.success and last.attempt > state.max_retries:
            return FAIL
        return THINK

    @staticmethod
    def _route_after_approval(state: WorkflowState) -> str:
        return INTERRUPT if state.approval_response is None else THINK

