"""Agent interface, the injected agent registry, and per-thread run tracking.

Key exports:
    Agent — Protocol every unit-of-work executor implements
    AgentRegistry — explicit agent_id → Agent mapping owned by one coordinator
    AgentTracker — records which units are running per thread and derives the
        agent snapshots that go into checkpoints
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol

from conductor.checkpoint.models import AgentSnapshot, AgentSnapshotStatus
from conductor.models import AgentDispatch, AgentResult, AgentTask, WorkflowState, unit_key

logger = logging.getLogger("conductor.orchestrator.agents")


class Agent(Protocol):
    """An external unit-of-work executor.

    Must be callable concurrently and must not share mutable state across calls.
    """

    async def execute(self, task: AgentTask) -> AgentResult:
        ...


class AgentRegistry:
    """Agents available to one coordinator, keyed by agent id."""

    def __init__(self, agents: dict[str, Agent] | None = None):
        self._agents: dict[str, Agent] = dict(agents or {})

    def register(self, agent_id: str, agent: Agent) -> None:
        if agent_id in self._agents:
            logger.warning("Replacing registered agent %s", agent_id)
        self._agents[agent_id] = agent

    def get(self, agent_id: str) -> Agent | None:
        return self._agents.get(agent_id)

    def ids(self) -> list[str]:
        return sorted(self._agents)

    def __contains__(self, agent_id: object) -> bool:
        return agent_id in self._agents

    def __len__(self) -> int:
        return len(self._agents)


# ── Run Tracking ─────────────────────────────────────────────────────────────


@dataclass
class AgentRun:
    agent_id: str
    execution_id: str | None
    started_at: datetime
    input: dict[str, Any] = field(default_factory=dict)


class AgentTracker:
    """In-memory record of units currently executing, keyed by thread.

    Serves as the agent-state provider for checkpoints: completed and failed
    units come from the workflow's outputs, running ones from this tracker.
    """

    def __init__(self) -> None:
        self._running: dict[str, dict[str, AgentRun]] = {}

    def started(self, thread_id: str, dispatch: AgentDispatch, task: AgentTask) -> None:
        self._running.setdefault(thread_id, {})[dispatch.unit_id] = AgentRun(
            agent_id=dispatch.agent_id,
            execution_id=dispatch.execution_id,
            started_at=datetime.now(timezone.utc),
            input={"prompt": task.prompt, "feedback": task.feedback},
        )

    def finished(self, thread_id: str, dispatch: AgentDispatch) -> None:
        runs = self._running.get(thread_id)
        if runs is None:
            return
        runs.pop(dispatch.unit_id, None)
        if not runs:
            del self._running[thread_id]

    def running(self, thread_id: str) -> list[AgentRun]:
        return list(self._running.get(thread_id, {}).values())

    def agent_states(self, state: WorkflowState) -> list[AgentSnapshot]:
        return derive_agent_snapshots(state, self.running(state.thread_id))


def derive_agent_snapshots(
    state: WorkflowState, running: Iterable[AgentRun] = ()
) -> list[AgentSnapshot]:
    """Build one snapshot per unit of work seen by the workflow, in first-seen order."""
    snapshots: dict[str, AgentSnapshot] = {}

    for out in state.agent_outputs:
        key = unit_key(out.agent_id, out.execution_id)
        previous = snapshots.get(key)
        snapshots[key] = AgentSnapshot(
            agent_id=out.agent_id,
            execution_id=out.execution_id,
            status=AgentSnapshotStatus.COMPLETED if out.success else AgentSnapshotStatus.FAILED,
            output=out.output,
            error=out.error,
            attempts=out.attempt,
            token_usage=(previous.token_usage if previous else 0) + out.token_usage,
        )

    for key in state.skipped_agents:
        if key in snapshots:
            snapshots[key] = snapshots[key].model_copy(
                update={"status": AgentSnapshotStatus.SKIPPED}
            )

    queued = list(state.pending_agents)
    if state.current_agent is not None:
        queued.append(state.current_agent)
    for dispatch in queued:
        previous = snapshots.get(dispatch.unit_id)
        if previous is None or previous.status == AgentSnapshotStatus.FAILED:
            snapshots[dispatch.unit_id] = AgentSnapshot(
                agent_id=dispatch.agent_id,
                execution_id=dispatch.execution_id,
                status=AgentSnapshotStatus.PENDING,
                attempts=previous.attempts if previous else 0,
                error=previous.error if previous else None,
            )

    for run in running:
        key = unit_key(run.agent_id, run.execution_id)
        previous = snapshots.get(key)
        snapshots[key] = AgentSnapshot(
            agent_id=run.agent_id,
            execution_id=run.execution_id,
            status=AgentSnapshotStatus.RUNNING,
            started_at=run.started_at,
            input=run.input,
            attempts=previous.attempts if previous else 0,
        )

    return list(snapshots.values())
