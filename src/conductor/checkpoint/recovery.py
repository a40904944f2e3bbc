"""Recovery manager — reconstructs a resumable workflow from a checkpoint.

Flow of ``recover``:
  1. load       — the checkpoint must exist
  2. integrity  — every section hash and the overall hash are recomputed; a
                  mismatch marks the checkpoint corrupted and fails recovery,
                  naming the section. Tampered data is never accepted.
  3. validate   — expired/archived checkpoints and impossible resets are refused
  4. blockers   — recovery info is recomputed from the verified sections;
                  a failed unit may be skipped, a terminal status overridden
  5. reconstruct — running units go back to pending, in-flight dispatches
                  are cleared, so the decision step picks up from a clean slate
  6. persist    — the restored state is written to the workflow registry
                  (skipped for dry runs)

Reconstruction uses only checkpoint data, so two dry runs of the same
checkpoint return equal results.
"""

from __future__ import annotations

import logging

import aiosqlite
from pydantic import ValidationError

from conductor.checkpoint.errors import (
    CheckpointError,
    CheckpointIntegrityError,
    CheckpointNotFoundError,
    RecoveryBlockedError,
    RecoveryError,
)
from conductor.checkpoint.manager import CheckpointManager, compute_recovery_info
from conductor.checkpoint.models import (
    AgentSnapshot,
    AgentSnapshotStatus,
    Checkpoint,
    CheckpointFilter,
    CheckpointStatus,
    RecoveryOptions,
    RecoveryPoint,
    RecoveryResult,
    RecoveryStatus,
)
from conductor.checkpoint.store import CheckpointStore
from conductor.models import STATUS_RANK, WorkflowState, WorkflowStatus, unit_key
from conductor.orchestrator.graph import resume_node_for
from conductor.orchestrator.registry import WorkflowRegistry

logger = logging.getLogger("conductor.checkpoint.recovery")

DRY_RUN_WARNING = "Dry run - no changes made"

# Statuses an operator may force a restored workflow back to.
RESETTABLE_STATUSES = frozenset(
    {
        WorkflowStatus.PENDING,
        WorkflowStatus.ANALYZING,
        WorkflowStatus.ORCHESTRATING,
        WorkflowStatus.AWAITING_APPROVAL,
    }
)

_UNUSABLE = {
    CheckpointStatus.EXPIRED: "expired",
    CheckpointStatus.ARCHIVED: "archived",
    CheckpointStatus.CREATING: "incomplete",
}


class RecoveryManager:
    """Validates checkpoints and restores workflow threads from them.

    Usage:
        recovery = RecoveryManager(store, manager, workflows)
        result = await recovery.recover(cp_id, RecoveryOptions(dry_run=True))
        if result.success:
            print(result.next_node, result.warnings)
    """

    def __init__(
        self,
        store: CheckpointStore,
        manager: CheckpointManager,
        workflows: WorkflowRegistry | None = None,
    ):
        self.store = store
        self.manager = manager
        self.workflows = workflows

    # ── Recover ──────────────────────────────────────────────────────────────

    async def recover(
        self, checkpoint_id: str, options: RecoveryOptions | None = None
    ) -> RecoveryResult:
        """Recover from one checkpoint. Failures are returned, not raised."""
        options = options or RecoveryOptions()
        result = RecoveryResult(success=False, checkpoint_id=checkpoint_id, dry_run=options.dry_run)
        phase = "load"
        try:
            status = await self.store.get_status(checkpoint_id)
            if status is None:
                raise CheckpointNotFoundError(checkpoint_id)

            phase = "integrity"
            report = await self.manager.verify(checkpoint_id)
            if not report.valid or status == CheckpointStatus.CORRUPTED:
                raise CheckpointIntegrityError(checkpoint_id, report.corrupted_sections or ["unknown"])

            phase = "validate"
            if status in _UNUSABLE:
                raise RecoveryError(
                    phase,
                    f"checkpoint is {_UNUSABLE[status]} and cannot be recovered",
                    checkpoint_id=checkpoint_id,
                )
            checkpoint = await self.manager.get(checkpoint_id)
            result.thread_id = checkpoint.thread_id
            try:
                state = checkpoint.workflow_snapshot().state
                agents = checkpoint.agent_snapshots()
            except ValidationError as exc:
                raise RecoveryError(
                    phase, f"snapshot does not describe a workflow: {exc.error_count()} errors",
                    checkpoint_id=checkpoint_id,
                ) from exc
            if options.reset_to_state is not None:
                _check_reset(checkpoint_id, state, options.reset_to_state)

            phase = "blockers"
            skipped = _resolve_blockers(checkpoint, state, agents, options)

            phase = "reconstruct"
            state, agents, warnings = _reconstruct(state, agents, skipped, options)
            next_node = resume_node_for(state)

            phase = "persist"
            if options.dry_run:
                warnings.append(DRY_RUN_WARNING)
            elif self.workflows is not None:
                try:
                    await self.workflows.restore(
                        state,
                        next_node,
                        checkpoint_id=checkpoint_id,
                        replay_mode=options.replay_mode,
                    )
                except aiosqlite.Error as exc:
                    raise RecoveryError(phase, str(exc), checkpoint_id=checkpoint_id) from exc

        except CheckpointError as exc:
            result.phase = phase
            result.error = str(exc)
            if isinstance(exc, CheckpointIntegrityError):
                result.corrupted_sections = list(exc.sections)
            if isinstance(exc, RecoveryBlockedError):
                result.blockers = list(exc.blockers)
            logger.warning("Recovery from %s failed during %s: %s", checkpoint_id, phase, exc)
            return result

        result.success = True
        result.restored_state = state
        result.agent_states = agents
        result.next_node = next_node
        result.skipped_agent = skipped
        result.warnings = warnings
        logger.info(
            "Recovered thread %s from %s (status=%s next=%s dry_run=%s)",
            state.thread_id,
            checkpoint_id,
            state.status.value,
            next_node,
            options.dry_run,
        )
        return result

    # ── Status / Discovery ───────────────────────────────────────────────────

    async def list_recovery_points(self, thread_id: str) -> list[RecoveryPoint]:
        """Valid checkpoints of a thread, newest first."""
        checkpoints = await self.store.list(
            CheckpointFilter(thread_id=thread_id, statuses=[CheckpointStatus.VALID])
        )
        return [
            RecoveryPoint(
                checkpoint_id=cp.id,
                created_at=cp.created_at,
                trigger=cp.trigger,
                status=cp.status,
                can_resume=cp.recovery.can_resume,
                resume_from_state=cp.recovery.resume_from_state,
                blockers=list(cp.recovery.blockers),
            )
            for cp in checkpoints
        ]

    async def get_recovery_status(self, thread_id: str) -> RecoveryStatus:
        thread = await self.workflows.get(thread_id) if self.workflows else None
        points = await self.list_recovery_points(thread_id)
        status = RecoveryStatus(
            thread_id=thread_id,
            workflow_status=thread.state.status if thread else None,
            available_checkpoints=len(points),
        )
        if not points:
            status.suggestions.append("No valid checkpoint is available; start the workflow again")
            return status

        latest = points[0]
        status.latest_checkpoint_id = latest.checkpoint_id
        status.blockers = list(latest.blockers)
        status.can_resume = latest.can_resume

        if any("exceeded retry limit" in b for b in latest.blockers):
            status.suggestions.append("Recover with skip_failed_agent to skip the failed agent")
        if any(b.endswith("was running") for b in latest.blockers):
            status.suggestions.append("Agents that were running will be dispatched again")
        if any(b.startswith("Workflow is in terminal state") for b in latest.blockers):
            status.suggestions.append("Use reset_to_state to force an earlier workflow status")
        if status.can_resume:
            status.suggestions.append(f"Recover from checkpoint {latest.checkpoint_id}")
        elif len(points) > 1:
            status.suggestions.append("An earlier checkpoint may still be resumable")
        return status

    async def attempt_auto_recovery(self, thread_id: str) -> RecoveryResult | None:
        """Recover from the newest resumable checkpoint, falling back to older ones.

        Returns None when the thread is terminal or has nothing to recover from.
        """
        if self.workflows is not None:
            thread = await self.workflows.get(thread_id)
            if thread is not None and thread.state.is_terminal:
                logger.info(
                    "Thread %s is %s; skipping auto-recovery",
                    thread_id,
                    thread.state.status.value,
                )
                return None

        last_failure: RecoveryResult | None = None
        for point in await self.list_recovery_points(thread_id):
            if not point.can_resume:
                continue
            result = await self.recover(point.checkpoint_id)
            if result.success:
                return result
            last_failure = result
        if last_failure is None:
            logger.info("Thread %s has no resumable checkpoint", thread_id)
        return last_failure


# ── Phases ───────────────────────────────────────────────────────────────────


def _check_reset(checkpoint_id: str, state: WorkflowState, target: WorkflowStatus) -> None:
    if target not in RESETTABLE_STATUSES:
        raise RecoveryError(
            "validate", f"cannot reset a workflow to {target.value}", checkpoint_id=checkpoint_id
        )
    if STATUS_RANK[target] >= STATUS_RANK[state.status]:
        raise RecoveryError(
            "validate",
            f"reset_to_state {target.value} does not precede recorded status {state.status.value}",
            checkpoint_id=checkpoint_id,
        )
    if target == WorkflowStatus.AWAITING_APPROVAL and state.approval_request is None:
        raise RecoveryError(
            "validate",
            "cannot reset to awaiting_approval without a recorded approval request",
            checkpoint_id=checkpoint_id,
        )


def _failed_units(state: WorkflowState, agents: list[AgentSnapshot]) -> list[AgentSnapshot]:
    return [
        a
        for a in agents
        if a.status == AgentSnapshotStatus.FAILED and a.attempts > state.max_retries
    ]


def _resolve_blockers(
    checkpoint: Checkpoint,
    state: WorkflowState,
    agents: list[AgentSnapshot],
    options: RecoveryOptions,
) -> str | None:
    """Return the unit key to skip, or raise RecoveryBlockedError for what remains."""
    info = compute_recovery_info(state, agents)
    if info.can_resume:
        return None

    skipped: str | None = None
    failed = _failed_units(state, agents)
    if options.skip_failed_agent and failed:
        preferred = [a for a in failed if a.agent_id == state.last_failed_agent]
        target = (preferred or failed)[-1]
        skipped = unit_key(target.agent_id, target.execution_id)
        failed = [a for a in failed if a is not target]

    remaining = [f"Agent {a.agent_id} failed and exceeded retry limit" for a in failed]
    if state.status == WorkflowStatus.ABORTED and options.reset_to_state is None:
        remaining.append(f"Workflow is in terminal state {state.status.value}")
    if (
        state.status == WorkflowStatus.FAILED
        and options.reset_to_state is None
        and skipped is None
    ):
        remaining.append(f"Workflow is in terminal state {state.status.value}")

    if remaining:
        raise RecoveryBlockedError(checkpoint.id, remaining)
    return skipped


def _reconstruct(
    state: WorkflowState,
    agents: list[AgentSnapshot],
    skipped: str | None,
    options: RecoveryOptions,
) -> tuple[WorkflowState, list[AgentSnapshot], list[str]]:
    warnings: list[str] = []
    changes: dict = {}
    status = state.status

    restored_agents: list[AgentSnapshot] = []
    for agent in agents:
        key = unit_key(agent.agent_id, agent.execution_id)
        if agent.status == AgentSnapshotStatus.RUNNING:
            warnings.append(f"Agent {key} was running and is restored as pending")
            agent = agent.model_copy(update={"status": AgentSnapshotStatus.PENDING})
        elif key == skipped:
            agent = agent.model_copy(update={"status": AgentSnapshotStatus.SKIPPED})
        restored_agents.append(agent)

    if skipped is not None:
        warnings.append(f"Skipping failed agent {skipped}")
        if skipped not in state.skipped_agents:
            changes["skipped_agents"] = [*state.skipped_agents, skipped]
        changes.update(retry_count=0, last_failed_agent=None, error=None)
        if status == WorkflowStatus.FAILED:
            status = WorkflowStatus.ORCHESTRATING

    in_flight = [
        d.unit_id for d in ([state.current_agent] if state.current_agent else [])
    ] + [d.unit_id for d in state.pending_agents]
    if in_flight or status == WorkflowStatus.AGENT_WORKING:
        if in_flight:
            warnings.append(
                f"In-flight dispatch of {', '.join(in_flight)} cleared; "
                "the decision step will choose again"
            )
        changes.update(
            current_agent=None,
            pending_agents=[],
            parallel_results=[],
            is_parallel_execution=False,
        )
        if status == WorkflowStatus.AGENT_WORKING:
            status = WorkflowStatus.ORCHESTRATING

    if options.reset_to_state is not None:
        warnings.append(
            f"Status reset from {state.status.value} to {options.reset_to_state.value}"
        )
        status = options.reset_to_state
        if status != WorkflowStatus.AWAITING_APPROVAL:
            changes["approval_request"] = None
        changes["approval_response"] = None
        changes["error"] = None

    if status != state.status:
        changes["status"] = status
        changes["status_history"] = [*state.status_history, status]
    if state.status == WorkflowStatus.COMPLETED:
        warnings.append("Workflow already completed; nothing left to run")

    return state.model_copy(update=changes), restored_agents, warnings
