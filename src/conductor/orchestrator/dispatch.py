"""Dispatch executor — the ``dispatch``, ``execute_agent`` and ``parallel_dispatch`` nodes.

Single dispatch runs one unit of work and applies the retry counter. Parallel
dispatch caps the batch at the configured maximum, runs every unit
concurrently, waits for all of them to settle, and folds the results into
``agent_outputs`` as one batch in dispatch order. A failing or timed-out unit
becomes a failed result; it never cancels its siblings.

Key exports:
    DispatchExecutor — node callables plus run_unit()
    BeforeDestructiveCallback — Protocol for the checkpoint taken before
        dispatching a destructive agent
    build_task — AgentTask construction with context_refs narrowing
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from typing import Any, Protocol

from pydantic import ValidationError

from conductor.config import OrchestratorConfig
from conductor.models import (
    AgentDispatch,
    AgentOutput,
    AgentResult,
    AgentTask,
    ParallelResult,
    WorkflowState,
    unit_key,
)
from conductor.orchestrator.agents import Agent, AgentRegistry, AgentTracker
from conductor.orchestrator.errors import DispatchError

logger = logging.getLogger("conductor.orchestrator.dispatch")


class BeforeDestructiveCallback(Protocol):
    """Called before destructive units run. Raising aborts the dispatch."""

    async def __call__(self, state: WorkflowState, dispatches: list[AgentDispatch]) -> None:
        ...


def build_task(state: WorkflowState, dispatch: AgentDispatch) -> AgentTask:
    """Build the task for one unit of work.

    ``context_refs`` narrow the previous outputs handed to the agent: an
    output is included when a ref names its agent id or its unit id. No refs
    means every previous output.
    """
    outputs = state.agent_outputs
    if dispatch.context_refs:
        refs = set(dispatch.context_refs)
        outputs = [
            out
            for out in outputs
            if refs & {out.agent_id, out.execution_id, unit_key(out.agent_id, out.execution_id)}
        ]
    return AgentTask(
        tenant_id=state.tenant_id,
        project_id=state.project_id,
        task_id=state.task_id,
        prompt=state.prompt,
        analysis=state.analysis,
        previous_outputs=list(outputs),
        settings=dict(state.settings),
        execution_id=dispatch.execution_id,
        feedback=state.user_feedback[-1] if state.user_feedback else None,
    )


class DispatchExecutor:
    def __init__(
        self,
        agents: AgentRegistry,
        config: OrchestratorConfig,
        *,
        tracker: AgentTracker | None = None,
        destructive_operations: list[str] | None = None,
        before_destructive: BeforeDestructiveCallback | None = None,
    ):
        self._agents = agents
        self._config = config
        self._tracker = tracker
        self._destructive = set(destructive_operations or [])
        self._before_destructive = before_destructive

    # ── Nodes ────────────────────────────────────────────────────────────────

    async def dispatch_node(self, state: WorkflowState) -> dict[str, Any]:
        """Prepare a single dispatch. A new distinct agent starts a fresh retry count."""
        dispatch = state.current_agent
        if dispatch is None:
            logger.warning("Thread %s: dispatch with no target, returning to think", state.thread_id)
            return {}
        if dispatch.agent_id != state.last_failed_agent:
            return {"retry_count": 0, "last_failed_agent": None}
        return {}

    async def execute_node(self, state: WorkflowState) -> dict[str, Any]:
        dispatch = state.current_agent
        if dispatch is None:
            return {}
        await self._guard_destructive(state, [dispatch])

        attempt = state.retry_count + 1
        output = await self.run_unit(state, dispatch, attempt=attempt)
        if output.success:
            return {
                "agent_outputs": [output],
                "completed_agents": [dispatch.agent_id],
                "current_agent": None,
                "retry_count": 0,
                "last_failed_agent": None,
                "error": None,
            }

        retry_count = state.retry_count
        if retry_count < state.max_retries:
            retry_count += 1
            logger.warning(
                "Thread %s: %s failed (attempt %d, retry %d/%d): %s",
                state.thread_id,
                dispatch.agent_id,
                attempt,
                retry_count,
                state.max_retries,
                output.error,
            )
        else:
            logger.error(
                "Thread %s: %s failed after %d attempts, retries exhausted",
                state.thread_id,
                dispatch.agent_id,
                attempt,
            )
        return {
            "agent_outputs": [output],
            "current_agent": None,
            "retry_count": retry_count,
            "last_failed_agent": dispatch.agent_id,
            "error": f"Agent {dispatch.agent_id} failed: {output.error or 'unknown error'}",
        }

    async def parallel_node(self, state: WorkflowState) -> dict[str, Any]:
        pending = list(state.pending_agents)
        limit = self._config.max_parallel_agents
        warnings: list[str] = []
        if len(pending) > limit:
            msg = (
                f"Parallel dispatch requested {len(pending)} agents, exceeding the maximum "
                f"of {limit}; running the first {limit} "
                f"and dropping {', '.join(d.unit_id for d in pending[limit:])}"
            )
            logger.warning("Thread %s: %s", state.thread_id, msg)
            warnings.append(msg)
            pending = pending[:limit]

        await self._guard_destructive(state, pending)

        batch_id = uuid.uuid4().hex[:12]
        logger.info(
            "Thread %s: parallel batch %s running %d agents (max %d)",
            state.thread_id,
            batch_id,
            len(pending),
            limit,
        )
        settled = await asyncio.gather(
            *(self.run_unit(state, d, batch_id=batch_id) for d in pending),
            return_exceptions=True,
        )

        outputs: list[AgentOutput] = []
        for dispatch, outcome in zip(pending, settled):
            if isinstance(outcome, BaseException):
                outcome = AgentOutput(
                    agent_id=dispatch.agent_id,
                    execution_id=dispatch.execution_id,
                    success=False,
                    error=f"{type(outcome).__name__}: {outcome}",
                    batch_id=batch_id,
                )
            outputs.append(outcome)

        results = [ParallelResult.model_validate(o.model_dump()) for o in outputs]
        succeeded = [o for o in outputs if o.success]
        logger.info(
            "Thread %s: parallel batch %s settled, %d succeeded, %d failed",
            state.thread_id,
            batch_id,
            len(succeeded),
            len(outputs) - len(succeeded),
        )
        return {
            "agent_outputs": outputs,
            "parallel_results": results,
            "completed_agents": [unit_key(o.agent_id, o.execution_id) for o in succeeded],
            "pending_agents": [],
            "is_parallel_execution": False,
            "warnings": warnings,
            "retry_count": 0,
            "last_failed_agent": None,
            "error": None,
        }

    # ── Unit Execution ───────────────────────────────────────────────────────

    async def run_unit(
        self,
        state: WorkflowState,
        dispatch: AgentDispatch,
        *,
        attempt: int = 1,
        batch_id: str | None = None,
    ) -> AgentOutput:
        """Run one unit of work. Never raises for agent failures."""
        task = build_task(state, dispatch)
        agent = self._agents.get(dispatch.agent_id)
        started = time.monotonic()
        if self._tracker:
            self._tracker.started(state.thread_id, dispatch, task)
        try:
            if agent is None:
                result = AgentResult(success=False, error=f"Unknown agent: {dispatch.agent_id}")
            else:
                result = await self._execute(agent, task, dispatch)
        finally:
            if self._tracker:
                self._tracker.finished(state.thread_id, dispatch)

        return AgentOutput(
            agent_id=dispatch.agent_id,
            execution_id=dispatch.execution_id,
            success=result.success,
            output=result.result,
            artifacts=result.artifacts,
            error=result.error if not result.success else None,
            duration_ms=int((time.monotonic() - started) * 1000),
            attempt=attempt,
            batch_id=batch_id,
            token_usage=result.token_usage,
        )

    async def _execute(self, agent: Agent, task: AgentTask, dispatch: AgentDispatch) -> AgentResult:
        timeout = self._config.agent_timeout_seconds
        try:
            raw = await asyncio.wait_for(agent.execute(task), timeout=timeout)
            if isinstance(raw, AgentResult):
                return raw
            return AgentResult.model_validate(raw)
        except asyncio.TimeoutError:
            logger.warning("Agent %s timed out after %.1fs", dispatch.unit_id, timeout)
            return AgentResult(success=False, error=f"Timed out after {timeout:g}s")
        except ValidationError as exc:
            return AgentResult(success=False, error=f"Agent returned an invalid result: {exc}")
        except Exception as exc:
            logger.exception("Agent %s raised", dispatch.unit_id)
            return AgentResult(success=False, error=f"{type(exc).__name__}: {exc}")

    async def _guard_destructive(
        self, state: WorkflowState, dispatches: list[AgentDispatch]
    ) -> None:
        flagged = [d for d in dispatches if d.agent_id in self._destructive]
        if not flagged or self._before_destructive is None:
            return
        try:
            await self._before_destructive(state, flagged)
        except Exception as exc:
            units = ", ".join(d.unit_id for d in flagged)
            raise DispatchError(
                f"Checkpoint before destructive dispatch of {units} failed: {exc}"
            ) from exc
