"""Decision step — the ``think`` node.

Builds a bounded-size summary of the workflow so far, asks the decision oracle
what to do next, and validates the answer into a Decision. Anything that does
not validate is a decision error: the node records it and returns a null
decision, which routes the graph to ``fail``. No retries happen here.

Key exports:
    DecisionStep — the node callable
    DecisionOracle — Protocol for the external decision maker
    build_context — the bounded context summary
    parse_decision — raw oracle text → Decision
"""

from __future__ import annotations

import json
import logging
import re
import uuid
from collections.abc import Callable
from typing import Any, Protocol

from pydantic import ValidationError

from conductor.config import OrchestratorConfig
from conductor.models import (
    Action,
    AgentOutput,
    ApprovalConfig,
    ApprovalType,
    Decision,
    ThinkingStep,
    ThinkingTrigger,
    WorkflowState,
)
from conductor.orchestrator.errors import DecisionError

logger = logging.getLogger("conductor.orchestrator.think")

_JSON_BLOCK = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL)

_RESPONSE_FORMAT = """\
## Response Format
Reply with a single JSON object:
{"reasoning": "...", "action": "dispatch|parallel_dispatch|approval|complete|fail",
 "targets": [{"agentId": "...", "executionId": "...", "contextRefs": ["..."], "priority": "normal"}],
 "approvalConfig": {"type": "confirmation", "description": "...", "options": []},
 "confidence": 0.0-1.0}
"targets" is required for dispatch and parallel_dispatch; "approvalConfig" is required for approval."""


class DecisionOracle(Protocol):
    """External decision maker. Receives the context summary, returns raw text."""

    async def __call__(self, prompt_context: str) -> str:
        ...


# ── Parsing ──────────────────────────────────────────────────────────────────


def parse_decision(raw: str) -> Decision:
    """Extract and validate a Decision from oracle output.

    Accepts a fenced ```json block or the outermost ``{...}`` in the text.

    Raises:
        DecisionError: no JSON object, invalid JSON, or a decision that fails
            validation (unknown action, missing targets/approval config).
    """
    if not isinstance(raw, str) or not raw.strip():
        raise DecisionError("Decision oracle returned empty output")

    match = _JSON_BLOCK.search(raw)
    text = match.group(1) if match else raw
    start, end = text.find("{"), text.rfind("}")
    if start == -1 or end <= start:
        raise DecisionError("Decision output contains no JSON object")
    try:
        data = json.loads(text[start : end + 1])
    except json.JSONDecodeError as exc:
        raise DecisionError(f"Decision output is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise DecisionError("Decision output must be a JSON object")

    try:
        return Decision.model_validate(data)
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'decision'}: {err['msg']}"
            for err in exc.errors()
        )
        raise DecisionError(f"Invalid decision: {problems}") from exc


# ── Context Summary ──────────────────────────────────────────────────────────


def _truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[: max(limit - 3, 0)] + "..."


def _summarize_output(out: AgentOutput, config: OrchestratorConfig) -> str:
    label = out.agent_id if not out.execution_id else f"{out.agent_id} ({out.execution_id})"
    line = f"- [{'OK' if out.success else 'FAILED'}] {label}, attempt {out.attempt}"
    if out.artifacts:
        line += f"\n  artifacts: {', '.join(a.path for a in out.artifacts)}"
    if out.output is not None:
        rendered = out.output if isinstance(out.output, str) else json.dumps(out.output, default=str)
        line += f"\n  output: {_truncate(rendered, config.max_output_summary_chars)}"
    if out.error:
        line += f"\n  error: {_truncate(out.error, config.max_error_chars)}"
    return line


def _fit_newest(entries: list[str], limit: int, sep: int = 1) -> tuple[list[str], int]:
    """Keep entries from the newest backwards while they fit in ``limit`` chars.

    The newest entry is always kept. Returns the kept entries in original
    order and the number omitted.
    """
    kept: list[str] = []
    used = 0
    for entry in reversed(entries):
        if kept and used + len(entry) + sep > limit:
            break
        kept.append(entry)
        used += len(entry) + sep
    kept.reverse()
    return kept, len(entries) - len(kept)


def _bullets(entries: list[str], config: OrchestratorConfig, limit: int, noun: str) -> str:
    kept, omitted = _fit_newest([f"- {_truncate(e, config.max_error_chars)}" for e in entries], limit)
    body = "\n".join(kept)
    if omitted:
        body = f"({omitted} earlier {noun} omitted)\n{body}"
    return body


def _names(names: list[str], limit: int) -> str:
    kept, omitted = _fit_newest([_truncate(n, 100) for n in names], limit, sep=2)
    text = ", ".join(kept)
    if omitted:
        text = f"({omitted} earlier omitted) {text}"
    return text


def _outputs_section(outputs: list[AgentOutput], config: OrchestratorConfig, limit: int) -> str:
    """Newest outputs first until the limit is reached, then a count of the rest."""
    if not outputs:
        return "## Agent Outputs\nNone yet."
    kept, omitted = _fit_newest([_summarize_output(out, config) for out in outputs], limit)
    body = "\n".join(kept)
    if omitted:
        body = f"({omitted} earlier outputs omitted)\n{body}"
    return f"## Agent Outputs ({len(outputs)} total)\n{body}"


def build_context(
    state: WorkflowState,
    config: OrchestratorConfig,
    available_agents: list[str] | None = None,
) -> str:
    """Bounded textual summary of everything the decision step needs.

    Each list-valued section keeps its newest entries within a share of
    ``max_context_chars``; the result never exceeds ``max_context_chars``.
    """
    share = config.max_context_chars // 16
    head: list[str] = [f"## Task\n{_truncate(state.prompt, config.max_context_chars // 4)}"]

    new_messages = state.user_messages[state.last_processed_message_index :]
    if new_messages:
        head.append(
            "## New User Messages\n"
            + _bullets([m.content for m in new_messages], config, share * 2, "messages")
        )

    if state.analysis is not None:
        head.append(f"## Task Analysis\n{_truncate(state.analysis.model_dump_json(), share)}")
    if state.agent_queue:
        head.append(f"## Suggested Agent Order\n{_truncate(' -> '.join(state.agent_queue), share)}")
    if available_agents:
        head.append(f"## Available Agents\n{_names(available_agents, share)}")

    head.append(
        "## Completed Agents\n"
        + (_names(state.completed_agents, share) if state.completed_agents else "None yet.")
    )
    if state.skipped_agents:
        head.append(f"## Skipped Agents\n{_names(state.skipped_agents, share)}")

    tail: list[str] = []
    if state.parallel_results:
        ok = [r for r in state.parallel_results if r.success]
        failed = [r for r in state.parallel_results if not r.success]
        summary = f"## Last Parallel Batch\n{len(ok)} succeeded, {len(failed)} failed"
        if failed:
            summary += "\nFailed: " + _names(
                [
                    r.agent_id if not r.execution_id else f"{r.agent_id} ({r.execution_id})"
                    for r in failed
                ],
                share,
            )
        tail.append(summary)

    if state.approval_response is not None:
        resp = state.approval_response
        if resp.approved:
            text = "APPROVED"
            if resp.selected_option:
                text += f" (selected option: {_truncate(resp.selected_option, 100)})"
        else:
            text = "REJECTED"
        if resp.feedback:
            text += f"\nFeedback: {_truncate(resp.feedback, config.max_error_chars * 2)}"
        tail.append(f"## Approval Response\n{text}")

    if state.approval_iterations:
        limit = config.max_approval_iterations
        text = f"## Revision Iterations\n{state.approval_iterations} of {limit} rejections used."
        if state.user_feedback:
            text += "\nFeedback history:\n" + _bullets(
                state.user_feedback, config, share * 2, "feedback entries"
            )
        if state.approval_iterations >= limit:
            text += (
                "\nRejection limit reached. Do not dispatch further revisions; request "
                "specific guidance from the user with an approval of type 'feedback'."
            )
        tail.append(text)

    if state.error:
        text = f"## Current Error\n{_truncate(state.error, config.max_error_chars)}"
        if state.last_failed_agent:
            text += (
                f"\nRetries used for {state.last_failed_agent}: "
                f"{state.retry_count} of {state.max_retries}"
            )
        tail.append(text)

    if state.warnings:
        tail.append("## Warnings\n" + _bullets(state.warnings[-5:], config, share, "warnings"))

    fixed = "\n\n".join([*head, *tail, _RESPONSE_FORMAT])
    # Room for the section header, the omitted-count line and separators
    limit = max(config.max_context_chars - len(fixed) - 100, config.max_output_summary_chars)
    outputs = _outputs_section(state.agent_outputs, config, limit)
    body = "\n\n".join([*head, outputs, *tail])

    room = config.max_context_chars - len(_RESPONSE_FORMAT) - 2
    return f"{_truncate(body, room)}\n\n{_RESPONSE_FORMAT}"


# ── Decision Step Node ───────────────────────────────────────────────────────


def determine_trigger(state: WorkflowState) -> tuple[ThinkingTrigger, str | None]:
    if not state.thinking_history:
        return ThinkingTrigger.INITIAL, None
    if state.approval_response is not None:
        return ThinkingTrigger.APPROVAL_RECEIVED, None
    if state.error:
        return ThinkingTrigger.ERROR_OCCURRED, state.last_failed_agent
    if state.parallel_results:
        return ThinkingTrigger.PARALLEL_COMPLETED, None
    if state.agent_outputs:
        return ThinkingTrigger.AGENT_COMPLETED, state.agent_outputs[-1].agent_id
    return ThinkingTrigger.INITIAL, None


class DecisionStep:
    """The ``think`` node: one oracle call, one recorded ThinkingStep."""

    def __init__(
        self,
        oracle: DecisionOracle,
        config: OrchestratorConfig,
        *,
        available_agents: Callable[[], list[str]] | None = None,
    ):
        self._oracle = oracle
        self._config = config
        self._available_agents = available_agents

    async def __call__(self, state: WorkflowState) -> dict[str, Any]:
        step_no = len(state.thinking_history) + 1
        trigger, trigger_agent = determine_trigger(state)
        summary = (
            f"status={state.status.value} outputs={len(state.agent_outputs)} "
            f"completed={len(state.completed_agents)} rejections={state.approval_iterations}"
        )
        base: dict[str, Any] = {
            "current_agent": None,
            "pending_agents": [],
            "is_parallel_execution": False,
            "parallel_results": [],
            "approval_response": None,
            "last_processed_message_index": len(state.user_messages),
        }

        try:
            if len(state.thinking_history) >= self._config.max_decisions:
                raise DecisionError(
                    f"Decision limit of {self._config.max_decisions} reached without completing"
                )
            agents = self._available_agents() if self._available_agents else None
            raw = await self._oracle(build_context(state, self._config, agents))
            decision = parse_decision(raw)
        except DecisionError as exc:
            return self._decision_error(state, base, step_no, trigger, trigger_agent, summary, str(exc))
        except Exception as exc:
            logger.exception("Decision oracle raised for thread %s", state.thread_id)
            return self._decision_error(
                state, base, step_no, trigger, trigger_agent, summary, f"Decision oracle failed: {exc}"
            )

        decision = self._enforce_iteration_limit(state, decision)
        decision = _assign_execution_ids(decision)

        logger.info(
            "Thread %s decision #%d: %s (%s) confidence=%.2f",
            state.thread_id,
            step_no,
            decision.action.value,
            ", ".join(t.unit_id for t in decision.targets) or "-",
            decision.confidence,
        )
        step = ThinkingStep(
            step=step_no,
            trigger=trigger,
            trigger_agent_id=trigger_agent,
            state_summary=summary,
            reasoning=decision.reasoning,
            decision=decision,
        )
        update = {
            **base,
            "thinking_history": [step],
            "orchestrator_decision": decision,
            "error": None,
        }
        match decision.action:
            case Action.DISPATCH:
                update["current_agent"] = decision.targets[0]
                if len(decision.targets) > 1:
                    dropped = [t.agent_id for t in decision.targets[1:]]
                    msg = (
                        f"Single dispatch runs only {decision.targets[0].agent_id}; "
                        f"ignored {len(dropped)} extra targets: {', '.join(dropped)}"
                    )
                    logger.warning("Thread %s: %s", state.thread_id, msg)
                    update["warnings"] = [msg]
            case Action.PARALLEL_DISPATCH:
                update["pending_agents"] = list(decision.targets)
                update["is_parallel_execution"] = True
            case Action.FAIL:
                update["error"] = decision.reasoning or "Decision step chose to fail the workflow"
        return update

    def _decision_error(
        self,
        state: WorkflowState,
        base: dict[str, Any],
        step_no: int,
        trigger: ThinkingTrigger,
        trigger_agent: str | None,
        summary: str,
        message: str,
    ) -> dict[str, Any]:
        logger.error("Decision error for thread %s: %s", state.thread_id, message)
        step = ThinkingStep(
            step=step_no,
            trigger=trigger,
            trigger_agent_id=trigger_agent,
            state_summary=summary,
            error=message,
        )
        return {
            **base,
            "thinking_history": [step],
            "orchestrator_decision": None,
            "error": message,
        }

    def _enforce_iteration_limit(self, state: WorkflowState, decision: Decision) -> Decision:
        """Once rejections hit the limit, revisions wait for specific guidance."""
        limit = self._config.max_approval_iterations
        if state.approval_iterations < limit:
            return decision
        if decision.action not in (Action.DISPATCH, Action.PARALLEL_DISPATCH):
            return decision
        logger.warning(
            "Thread %s hit %d rejections; asking for guidance instead of dispatching",
            state.thread_id,
            state.approval_iterations,
        )
        return Decision(
            reasoning=(
                f"Work was rejected {state.approval_iterations} times. More specific "
                f"guidance is required before another revision. {decision.reasoning}"
            ).strip(),
            action=Action.APPROVAL,
            approval_config=ApprovalConfig(
                type=ApprovalType.FEEDBACK,
                description=(
                    "The last revisions were rejected. Describe specifically what must "
                    "change before work continues."
                ),
                iteration_count=state.approval_iterations,
                max_iterations=limit,
            ),
            confidence=decision.confidence,
        )


def _assign_execution_ids(decision: Decision) -> Decision:
    """Parallel units need distinct execution ids to be told apart."""
    if decision.action != Action.PARALLEL_DISPATCH:
        return decision
    if all(t.execution_id for t in decision.targets):
        return decision
    targets = [
        t if t.execution_id else t.model_copy(update={"execution_id": uuid.uuid4().hex[:8]})
        for t in decision.targets
    ]
    return decision.model_copy(update={"targets": targets})
