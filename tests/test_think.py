"""Tests for the decision step — parsing, context summary and the think node."""

from __future__ import annotations

import json

import pytest

from conductor.config import OrchestratorConfig
from conductor.models import (
    Action,
    AgentOutput,
    ApprovalResponse,
    ApprovalType,
    ParallelResult,
    ThinkingStep,
    ThinkingTrigger,
    UserMessage,
)
from conductor.orchestrator.errors import DecisionError
from conductor.orchestrator.think import (
    DecisionStep,
    build_context,
    determine_trigger,
    parse_decision,
)

from fakes import ScriptedOracle, decision, make_state


def make_output(agent_id: str = "architect", **overrides) -> AgentOutput:
    defaults: dict = dict(agent_id=agent_id, success=True, output=f"{agent_id} result")
    defaults.update(overrides)
    return AgentOutput(**defaults)


class TestParseDecision:
    def test_plain_json(self):
        d = parse_decision(decision("dispatch", "architect"))
        assert d.action == Action.DISPATCH
        assert d.targets[0].agent_id == "architect"

    def test_fenced_json_with_prose(self):
        raw = "Thinking...\n```json\n" + decision("complete") + "\n```\nDone."
        assert parse_decision(raw).action == Action.COMPLETE

    def test_braces_inside_prose(self):
        raw = "I will do this: " + decision("fail", reasoning="cannot proceed") + " ok"
        d = parse_decision(raw)
        assert d.action == Action.FAIL
        assert d.reasoning == "cannot proceed"

    def test_snake_case_keys(self):
        raw = json.dumps({"action": "dispatch", "targets": [{"agent_id": "tester", "context_refs": ["architect"]}]})
        d = parse_decision(raw)
        assert d.targets[0].context_refs == ["architect"]

    @pytest.mark.parametrize(
        "raw",
        [
            "",
            "no json here",
            "{not valid json}",
            '{"action": "dispatch"}',
            '{"action": "approval"}',
            '{"action": "teleport"}',
            "[1, 2, 3]",
        ],
    )
    def test_invalid_outputs_raise(self, raw):
        with pytest.raises(DecisionError):
            parse_decision(raw)


class TestBuildContext:
    def test_includes_core_sections(self):
        state = make_state(agent_queue=["architect", "tester"], completed_agents=["architect"])
        text = build_context(state, OrchestratorConfig(), ["architect", "tester"])
        assert "## Task\nAdd a settings page" in text
        assert "## Suggested Agent Order\narchitect -> tester" in text
        assert "## Available Agents\narchitect, tester" in text
        assert "## Completed Agents\narchitect" in text
        assert "## Response Format" in text

    def test_only_unprocessed_messages(self):
        state = make_state(
            user_messages=[UserMessage(content="old note"), UserMessage(content="use dark theme")],
            last_processed_message_index=1,
        )
        text = build_context(state, OrchestratorConfig())
        assert "use dark theme" in text
        assert "old note" not in text

    def test_parallel_batch_summary(self):
        state = make_state(
            parallel_results=[
                ParallelResult(agent_id="a", execution_id="1", success=True),
                ParallelResult(agent_id="b", execution_id="2", success=False, error="x"),
            ]
        )
        text = build_context(state, OrchestratorConfig())
        assert "1 succeeded, 1 failed" in text
        assert "Failed: b (2)" in text

    def test_approval_response_rejected_with_feedback(self):
        state = make_state(
            approval_response=ApprovalResponse(approved=False, feedback="make it blue"),
            approval_iterations=1,
            user_feedback=["make it blue"],
        )
        text = build_context(state, OrchestratorConfig())
        assert "## Approval Response\nREJECTED\nFeedback: make it blue" in text
        assert "1 of 3 rejections used" in text

    def test_rejection_limit_directive(self):
        state = make_state(approval_iterations=3)
        text = build_context(state, OrchestratorConfig(max_approval_iterations=3))
        assert "Rejection limit reached" in text

    def test_long_errors_are_truncated(self):
        state = make_state(error="x" * 1000)
        config = OrchestratorConfig(max_error_chars=50)
        text = build_context(state, config)
        section = text.split("## Current Error\n")[1].split("\n")[0]
        assert len(section) == 50
        assert section.endswith("...")

    def test_outputs_bounded_newest_first(self):
        outputs = [make_output(f"agent{i}", output="y" * 400) for i in range(40)]
        state = make_state(agent_outputs=outputs)
        config = OrchestratorConfig(max_context_chars=3000)
        text = build_context(state, config)
        assert "agent39" in text
        assert "agent0," not in text
        assert "earlier outputs omitted" in text
        assert len(text) <= 3000

    def test_messages_and_feedback_bounded(self):
        state = make_state(
            user_messages=[UserMessage(content=f"note {i} " + "m" * 300) for i in range(200)],
            user_feedback=[f"revision {i} " + "f" * 300 for i in range(100)],
            completed_agents=[f"agent_{i}" for i in range(500)],
            approval_iterations=1,
        )
        config = OrchestratorConfig()
        text = build_context(state, config)
        assert len(text) <= config.max_context_chars
        assert "note 199" in text
        assert "earlier messages omitted" in text
        assert "revision 99" in text
        assert "earlier feedback entries omitted" in text
        assert "agent_499" in text
        assert text.endswith(
            '"approvalConfig" is required for approval.'
        )


class TestDetermineTrigger:
    def test_initial(self):
        assert determine_trigger(make_state())[0] == ThinkingTrigger.INITIAL

    def test_error_names_failed_agent(self):
        state = make_state(
            thinking_history=[ThinkingStep(step=1, trigger=ThinkingTrigger.INITIAL)],
            error="Agent tester failed: boom",
            last_failed_agent="tester",
        )
        assert determine_trigger(state) == (ThinkingTrigger.ERROR_OCCURRED, "tester")


@pytest.mark.asyncio
class TestDecisionStep:
    async def test_dispatch_sets_current_agent(self):
        step = DecisionStep(ScriptedOracle(decision("dispatch", "architect")), OrchestratorConfig())
        update = await step(make_state())
        assert update["current_agent"].agent_id == "architect"
        assert update["pending_agents"] == []
        assert update["orchestrator_decision"].action == Action.DISPATCH
        assert update["thinking_history"][0].step == 1
        assert update["error"] is None

    async def test_dispatch_with_extra_targets_warns(self):
        oracle = ScriptedOracle(decision("dispatch", "architect", "tester", "reviewer"))
        update = await DecisionStep(oracle, OrchestratorConfig())(make_state())
        assert update["current_agent"].agent_id == "architect"
        assert update["warnings"] == [
            "Single dispatch runs only architect; ignored 2 extra targets: tester, reviewer"
        ]

    async def test_parallel_assigns_distinct_execution_ids(self):
        oracle = ScriptedOracle(decision("parallel_dispatch", "tester", "tester", "reviewer"))
        update = await DecisionStep(oracle, OrchestratorConfig())(make_state())
        ids = [d.execution_id for d in update["pending_agents"]]
        assert all(ids)
        assert len(set(ids)) == 3
        assert update["is_parallel_execution"] is True
        assert update["current_agent"] is None

    async def test_malformed_output_is_decision_error(self):
        update = await DecisionStep(ScriptedOracle("garbage"), OrchestratorConfig())(make_state())
        assert update["orchestrator_decision"] is None
        assert "no JSON object" in update["error"]
        assert update["thinking_history"][0].error == update["error"]

    async def test_oracle_exception_is_decision_error(self):
        oracle = ScriptedOracle(RuntimeError("oracle down"))
        update = await DecisionStep(oracle, OrchestratorConfig())(make_state())
        assert update["orchestrator_decision"] is None
        assert "oracle down" in update["error"]

    async def test_fail_action_records_reasoning_as_error(self):
        oracle = ScriptedOracle(decision("fail", reasoning="requirements contradict"))
        update = await DecisionStep(oracle, OrchestratorConfig())(make_state())
        assert update["error"] == "requirements contradict"

    async def test_consumes_messages(self):
        state = make_state(user_messages=[UserMessage(content="hi")])
        update = await DecisionStep(ScriptedOracle(), OrchestratorConfig())(state)
        assert update["last_processed_message_index"] == 1

    async def test_rejection_limit_forces_feedback_approval(self):
        state = make_state(approval_iterations=2)
        oracle = ScriptedOracle(decision("dispatch", "frontend_developer"))
        update = await DecisionStep(oracle, OrchestratorConfig(max_approval_iterations=2))(state)
        d = update["orchestrator_decision"]
        assert d.action == Action.APPROVAL
        assert d.approval_config.type == ApprovalType.FEEDBACK
        assert update["current_agent"] is None

    async def test_decision_limit(self):
        history = [ThinkingStep(step=i, trigger=ThinkingTrigger.INITIAL) for i in range(1, 3)]
        oracle = ScriptedOracle()
        update = await DecisionStep(oracle, OrchestratorConfig(max_decisions=2))(
            make_state(thinking_history=history)
        )
        assert update["orchestrator_decision"] is None
        assert "Decision limit" in update["error"]
        assert oracle.contexts == []

    async def test_clears_consumed_batch_and_approval(self):
        state = make_state(
            parallel_results=[ParallelResult(agent_id="a", success=True)],
            approval_response=ApprovalResponse(approved=True),
        )
        update = await DecisionStep(ScriptedOracle(), OrchestratorConfig())(state)
        assert update["parallel_results"] == []
        assert update["approval_response"] is None
