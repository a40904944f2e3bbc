"""Approval gate — the ``awaiting_approval`` node and its resume path.

The gate is the only suspension point of the state machine. Entering it builds
an ApprovalRequest and the graph stops; the thread is persisted with the
interrupt marker. ``resume`` validates the human response and produces the
update that hands control back to ``think``. A malformed response raises
ApprovalError and leaves the workflow suspended.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from pydantic import ValidationError

from conductor.config import OrchestratorConfig
from conductor.models import (
    ApprovalConfig,
    ApprovalRequest,
    ApprovalResponse,
    Artifact,
    WorkflowState,
    WorkflowStatus,
)
from conductor.orchestrator.errors import ApprovalError

logger = logging.getLogger("conductor.orchestrator.approval")


def _latest_artifacts(state: WorkflowState) -> list[Artifact]:
    """Artifacts of the most recent unit of work, or of the whole last batch."""
    if not state.agent_outputs:
        return []
    last = state.agent_outputs[-1]
    if last.batch_id is None:
        return list(last.artifacts)
    return [
        artifact
        for out in state.agent_outputs
        if out.batch_id == last.batch_id
        for artifact in out.artifacts
    ]


class ApprovalGate:
    def __init__(self, config: OrchestratorConfig):
        self._config = config

    async def node(self, state: WorkflowState) -> dict[str, Any]:
        decision = state.orchestrator_decision
        approval = (
            decision.approval_config
            if decision is not None and decision.approval_config is not None
            else ApprovalConfig(description="Review the work so far")
        )
        request = ApprovalRequest(
            type=approval.type,
            description=approval.description,
            artifacts=_latest_artifacts(state),
            options=list(approval.options),
            allow_reject_all=approval.allow_reject_all,
            iteration=state.approval_iterations,
            max_iterations=approval.max_iterations or self._config.max_approval_iterations,
            requested_at=datetime.now(timezone.utc),
        )
        logger.info(
            "Thread %s suspended for %s approval: %s",
            state.thread_id,
            request.type.value,
            request.description,
        )
        return {
            "approval_request": request,
            "approval_response": None,
            "current_agent": None,
            "pending_agents": [],
        }

    def resume(
        self, state: WorkflowState, response: ApprovalResponse | dict[str, Any]
    ) -> dict[str, Any]:
        """Validate a human response and return the update that resumes the workflow.

        Raises:
            ApprovalError: the workflow is not suspended, or the response is
                malformed or inconsistent with the request.
        """
        request = state.approval_request
        if state.status != WorkflowStatus.AWAITING_APPROVAL or request is None:
            raise ApprovalError(
                f"Workflow {state.thread_id} is not awaiting approval (status={state.status.value})"
            )

        if not isinstance(response, ApprovalResponse):
            try:
                response = ApprovalResponse.model_validate(response)
            except ValidationError as exc:
                raise ApprovalError(f"Malformed approval response: {exc.error_count()} errors") from exc

        if response.selected_option is not None and request.options:
            if response.selected_option not in request.options:
                raise ApprovalError(
                    f"Unknown option {response.selected_option!r}; expected one of {request.options}"
                )
        if response.approved and request.options and response.selected_option is None:
            raise ApprovalError("Approval must select one of the offered options")
        if not response.approved and not request.allow_reject_all:
            raise ApprovalError("This approval does not allow rejecting every option")

        update: dict[str, Any] = {
            "approval_response": response,
            "approval_request": None,
            "status": WorkflowStatus.ORCHESTRATING,
        }
        if response.approved:
            update["approval_iterations"] = 0
        else:
            update["approval_iterations"] = state.approval_iterations + 1
        if response.feedback:
            update["user_feedback"] = [response.feedback]

        logger.info(
            "Thread %s approval %s (iterations=%d)",
            state.thread_id,
            "granted" if response.approved else "rejected",
            update["approval_iterations"],
        )
        return update
