"""Workflow service — the control surface over graph, registries and checkpoints.

Owns one coordinator: the agent registry, the orchestrator graph, the workflow
registry, the checkpoint store/manager/trigger policy and the recovery manager.
All of them share a single aiosqlite connection opened by the caller.

Workflows advance one node at a time under a per-thread lock. The lock is
released between nodes, so messages, aborts and manual checkpoints interleave
with a running workflow at node boundaries.

Key exports:
    WorkflowService — start, resume, status, post_message, abort, step,
        create_checkpoint, recover, run_interval_checkpoints
    WorkflowView — the status view returned to callers
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import defaultdict
from typing import Any

import aiosqlite
from pydantic import BaseModel, Field

from conductor.checkpoint.manager import CheckpointManager, FileSystemProvider
from conductor.checkpoint.models import (
    Checkpoint,
    CheckpointTrigger,
    RecoveryOptions,
    RecoveryResult,
)
from conductor.checkpoint.recovery import RecoveryManager
from conductor.checkpoint.redaction import redact_text
from conductor.checkpoint.store import CheckpointStore
from conductor.checkpoint.triggers import CheckpointTriggerPolicy
from conductor.config import ConductorConfig
from conductor.models import (
    AgentDispatch,
    ApprovalRequest,
    ApprovalResponse,
    UserMessage,
    WorkflowState,
    WorkflowStatus,
)
from conductor.orchestrator.agents import AgentRegistry, AgentTracker
from conductor.orchestrator.analyze import TaskClassifier
from conductor.orchestrator.errors import (
    ApprovalError,
    InvalidTransitionError,
    OrchestratorUnavailableError,
    WorkflowNotFoundError,
)
from conductor.orchestrator.graph import (
    ANALYZE,
    END,
    EXECUTE_AGENT,
    INTERRUPT,
    PARALLEL_DISPATCH,
    THINK,
    OrchestratorGraph,
    apply_update,
)
from conductor.orchestrator.registry import WorkflowRegistry, WorkflowThread
from conductor.orchestrator.think import DecisionOracle

logger = logging.getLogger("conductor.service")


class WorkflowView(BaseModel):
    """What callers see of a workflow. Errors are redacted."""

    thread_id: str
    status: WorkflowStatus
    next_node: str
    error: str | None = None
    last_checkpoint_id: str | None = None
    approval_request: ApprovalRequest | None = None
    completed_agents: list[str] = Field(default_factory=list)
    skipped_agents: list[str] = Field(default_factory=list)
    agent_outputs: int = 0
    decisions: int = 0
    warnings: list[str] = Field(default_factory=list)
    replay_mode: bool = False


class WorkflowService:
    """Coordinator-level entry point used by the HTTP server and the CLI.

    Usage:
        service = WorkflowService(db, config, agents=registry, oracle=oracle,
                                  classifier=classifier)
        await service.initialize()
        thread_id = await service.start("Add a login page", project_id="web")
        view = await service.status(thread_id)
    """

    def __init__(
        self,
        db: aiosqlite.Connection,
        config: ConductorConfig,
        *,
        agents: AgentRegistry | None = None,
        oracle: DecisionOracle | None = None,
        classifier: TaskClassifier | None = None,
        file_system: FileSystemProvider | None = None,
    ):
        self.config = config
        self.workflows = WorkflowRegistry(db)
        self.store = CheckpointStore(
            db,
            max_size=config.checkpoint.max_checkpoint_size,
            compress=config.checkpoint.compress,
        )
        self.tracker = AgentTracker()
        self.checkpoints = CheckpointManager(
            self.store, config.checkpoint, agent_states=self.tracker, file_system=file_system
        )
        self.triggers = CheckpointTriggerPolicy(self.checkpoints, config.checkpoint)
        self.recovery = RecoveryManager(self.store, self.checkpoints, self.workflows)
        self.agents = agents or AgentRegistry()

        self.graph: OrchestratorGraph | None = None
        if oracle is not None and classifier is not None:
            self.graph = OrchestratorGraph(
                agents=self.agents,
                oracle=oracle,
                classifier=classifier,
                config=config.orchestrator,
                tracker=self.tracker,
                destructive_operations=config.checkpoint.destructive_operations,
                before_destructive=self._before_destructive,
                on_transition=self._on_transition,
            )

        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._tasks: set[asyncio.Task] = set()

    async def initialize(self) -> None:
        await self.workflows.initialize()
        await self.store.initialize()

    @property
    def can_orchestrate(self) -> bool:
        return self.graph is not None

    # ── Control Surface ──────────────────────────────────────────────────────

    async def start(
        self,
        prompt: str,
        project_id: str,
        *,
        task_id: str | None = None,
        tenant_id: str = "default",
        settings: dict[str, Any] | None = None,
        wait: bool = True,
    ) -> str:
        """Create a workflow thread and run it until it ends or suspends.

        With ``wait=False`` the run continues in the background.
        """
        self._require_graph()
        thread_id = f"wf_{uuid.uuid4().hex[:12]}"
        state = WorkflowState(
            tenant_id=tenant_id,
            project_id=project_id,
            task_id=task_id or uuid.uuid4().hex[:8],
            thread_id=thread_id,
            prompt=prompt,
            max_retries=self.config.orchestrator.max_retries,
            settings=settings or {},
        )
        await self.workflows.create(state, ANALYZE)
        logger.info("Started workflow %s for project %s", thread_id, project_id)
        await self._advance(thread_id, wait)
        return thread_id

    async def resume(
        self,
        thread_id: str,
        response: ApprovalResponse | dict[str, Any],
        *,
        wait: bool = True,
    ) -> WorkflowView:
        """Hand a human approval response to a suspended workflow.

        Raises:
            ApprovalError: the workflow is not suspended at the gate or the
                response is malformed. Nothing is persisted in that case.
        """
        graph = self._require_graph()
        async with self._locks[thread_id]:
            thread = await self._load(thread_id)
            if thread.next_node != INTERRUPT:
                raise ApprovalError(
                    f"Workflow {thread_id} is not awaiting approval (next={thread.next_node})"
                )
            state = graph.resume_approval(thread.state, response)
            await self.workflows.save(state, THINK)
            approved = state.approval_response is not None and state.approval_response.approved
            await self._fire(
                state,
                CheckpointTrigger.USER_APPROVAL,
                "approved" if approved else "rejected",
                next_node=THINK,
            )
        await self._advance(thread_id, wait)
        return await self.status(thread_id)

    async def status(self, thread_id: str) -> WorkflowView:
        thread = await self._load(thread_id)
        state = thread.state
        latest = await self.store.latest(thread_id)
        return WorkflowView(
            thread_id=thread_id,
            status=state.status,
            next_node=thread.next_node,
            error=redact_text(state.error) if state.error else None,
            last_checkpoint_id=latest.id if latest else None,
            approval_request=state.approval_request if thread.next_node == INTERRUPT else None,
            completed_agents=list(state.completed_agents),
            skipped_agents=list(state.skipped_agents),
            agent_outputs=len(state.agent_outputs),
            decisions=len(state.thinking_history),
            warnings=[redact_text(w) for w in state.warnings],
            replay_mode=thread.replay_mode,
        )

    async def get_state(self, thread_id: str) -> WorkflowState:
        return (await self._load(thread_id)).state

    async def post_message(self, thread_id: str, content: str) -> WorkflowView:
        """Queue a user message for the next decision step."""
        async with self._locks[thread_id]:
            thread = await self._load(thread_id)
            if thread.state.is_terminal:
                raise InvalidTransitionError(thread.state.status.value, "message")
            messages = [*thread.state.user_messages, UserMessage(content=content)]
            state = thread.state.model_copy(update={"user_messages": messages})
            await self.workflows.save(state, thread.next_node)
        logger.info("Queued message for %s (%d total)", thread_id, len(messages))
        return await self.status(thread_id)

    async def abort(self, thread_id: str, reason: str = "Aborted by operator") -> WorkflowView:
        """Move a non-terminal workflow to ``aborted`` at the next node boundary."""
        async with self._locks[thread_id]:
            thread = await self._load(thread_id)
            if thread.state.is_terminal:
                raise InvalidTransitionError(
                    thread.state.status.value, WorkflowStatus.ABORTED.value
                )
            state = apply_update(
                thread.state,
                {
                    "status": WorkflowStatus.ABORTED,
                    "error": reason,
                    "current_agent": None,
                    "pending_agents": [],
                    "is_parallel_execution": False,
                },
            )
            await self.workflows.save(state, END)
            await self._fire(
                state, CheckpointTrigger.STATE_TRANSITION, f"aborted: {reason}", next_node=END
            )
        logger.warning("Workflow %s aborted: %s", thread_id, reason)
        return await self.status(thread_id)

    async def step(self, thread_id: str) -> WorkflowView:
        """Run exactly one node. The only way a replay-mode thread advances."""
        await self._drive(thread_id, max_steps=1)
        return await self.status(thread_id)

    async def create_checkpoint(self, thread_id: str, reason: str = "") -> Checkpoint:
        """Take a manual checkpoint.

        Raises:
            CheckpointDisabledError: checkpointing is disabled.
        """
        async with self._locks[thread_id]:
            thread = await self._load(thread_id)
            checkpoint = await self._fire(
                thread.state, CheckpointTrigger.MANUAL, reason, next_node=thread.next_node
            )
        return checkpoint

    async def recover(
        self,
        checkpoint_id: str,
        options: RecoveryOptions | None = None,
        *,
        wait: bool = True,
    ) -> RecoveryResult:
        """Restore a thread from a checkpoint and continue running it.

        Dry runs and replay-mode recoveries do not run anything.
        """
        options = options or RecoveryOptions()
        thread_id = await self.store.thread_id_for(checkpoint_id)
        if thread_id is None:
            return await self.recovery.recover(checkpoint_id, options)

        async with self._locks[thread_id]:
            result = await self.recovery.recover(checkpoint_id, options)
        if result.success and not options.dry_run and not options.replay_mode and self.graph:
            await self._advance(thread_id, wait)
        return result

    async def resume_active(self) -> int:
        """Continue threads a previous process left mid-run. Returns how many."""
        if self.graph is None:
            return 0
        resumed = 0
        for thread in await self.workflows.list_active():
            if thread.next_node in (END, INTERRUPT) or thread.replay_mode:
                continue
            logger.info("Resuming thread %s at %s", thread.thread_id, thread.next_node)
            self._spawn(thread.thread_id)
            resumed += 1
        return resumed

    # ── Time-Interval Checkpoints ────────────────────────────────────────────

    async def checkpoint_active_threads(self) -> int:
        created = 0
        for thread in await self.workflows.list_active():
            checkpoint = await self._fire(
                thread.state,
                CheckpointTrigger.TIME_INTERVAL,
                "periodic checkpoint",
                next_node=thread.next_node,
            )
            if checkpoint is not None:
                created += 1
        return created

    async def run_interval_checkpoints(self) -> None:
        interval = self.config.checkpoint.auto_checkpoint_interval_seconds
        if interval <= 0:
            return
        logger.info("Interval checkpoints every %ds", interval)
        while True:
            await asyncio.sleep(interval)
            try:
                created = await self.checkpoint_active_threads()
                if created:
                    logger.info("Interval checkpoint: %d threads", created)
            except Exception:
                logger.exception("Interval checkpoint pass failed")

    def start_background_tasks(self) -> None:
        if self.config.checkpoint.enabled and self.config.checkpoint.auto_checkpoint_interval_seconds > 0:
            self._track(asyncio.create_task(self.run_interval_checkpoints()))

    async def close(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

    # ── Driving ──────────────────────────────────────────────────────────────

    async def _advance(self, thread_id: str, wait: bool) -> None:
        if wait:
            await self._drive(thread_id)
        else:
            self._spawn(thread_id)

    async def _drive(self, thread_id: str, *, max_steps: int | None = None) -> None:
        graph = self._require_graph()
        steps = 0
        while max_steps is None or steps < max_steps:
            async with self._locks[thread_id]:
                thread = await self._load(thread_id)
                if thread.next_node in (END, INTERRUPT) or thread.state.is_terminal:
                    return
                if thread.replay_mode and max_steps is None:
                    return
                await graph.step(thread.state, thread.next_node)
            steps += 1

    def _spawn(self, thread_id: str) -> None:
        self._track(asyncio.create_task(self._drive(thread_id)))

    def _track(self, task: asyncio.Task) -> None:
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Background workflow task failed", exc_info=task.exception())

    # ── Graph Callbacks ──────────────────────────────────────────────────────

    async def _on_transition(
        self, before: WorkflowState, after: WorkflowState, node: str, next_node: str
    ) -> None:
        await self.workflows.save(after, next_node)

        if after.error and after.error != before.error:
            trigger, reason = CheckpointTrigger.ERROR_OCCURRED, after.error
        elif node in (EXECUTE_AGENT, PARALLEL_DISPATCH) and len(after.agent_outputs) > len(
            before.agent_outputs
        ):
            units = ", ".join(o.agent_id for o in after.agent_outputs[len(before.agent_outputs) :])
            trigger, reason = CheckpointTrigger.AGENT_COMPLETE, f"{node}: {units}"
        else:
            trigger, reason = CheckpointTrigger.STATE_TRANSITION, f"{node} -> {next_node}"
        await self._fire(after, trigger, reason, next_node=next_node)

    async def _before_destructive(
        self, state: WorkflowState, dispatches: list[AgentDispatch]
    ) -> None:
        units = ", ".join(d.unit_id for d in dispatches)
        next_node = PARALLEL_DISPATCH if state.pending_agents else EXECUTE_AGENT
        await self._fire(
            state,
            CheckpointTrigger.BEFORE_DESTRUCTIVE,
            f"before dispatching {units}",
            next_node=next_node,
        )

    async def _fire(
        self,
        state: WorkflowState,
        trigger: CheckpointTrigger,
        reason: str,
        *,
        next_node: str,
    ) -> Checkpoint | None:
        checkpoint = await self.triggers.fire(state, trigger, reason, next_node=next_node)
        if checkpoint is not None:
            await self.workflows.set_last_checkpoint(state.thread_id, checkpoint.id)
        return checkpoint

    # ── Helpers ──────────────────────────────────────────────────────────────

    async def _load(self, thread_id: str) -> WorkflowThread:
        thread = await self.workflows.get(thread_id)
        if thread is None:
            raise WorkflowNotFoundError(thread_id)
        return thread

    def _require_graph(self) -> OrchestratorGraph:
        if self.graph is None:
            raise OrchestratorUnavailableError(
                "No decision oracle or task classifier configured; workflows cannot run"
            )
        return self.graph
