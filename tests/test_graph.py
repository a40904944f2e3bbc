"""Tests for the orchestrator graph — end-to-end decision loops with fake collaborators."""

from __future__ import annotations

import pytest

from conductor.config import OrchestratorConfig
from conductor.models import (
    AgentDispatch,
    AgentOutput,
    ApprovalRequest,
    ApprovalResponse,
    WorkflowStatus,
    is_allowed_transition,
)
from conductor.orchestrator.agents import AgentRegistry
from conductor.orchestrator.errors import InvalidTransitionError, OrchestrationError
from conductor.orchestrator.graph import (
    ANALYZE,
    COMPLETE,
    END,
    INTERRUPT,
    THINK,
    OrchestratorGraph,
    apply_update,
    resume_node_for,
)

from fakes import EchoAgent, FailingAgent, ScriptedOracle, StaticClassifier, decision, make_state


class Recorder:
    """Transition callback that keeps every (before, after, node, next) tuple."""

    def __init__(self):
        self.transitions: list = []

    async def __call__(self, before, after, node, next_node):
        self.transitions.append((before, after, node, next_node))


def make_graph(agents: dict, oracle, *, classifier=None, recorder=None, **kwargs) -> OrchestratorGraph:
    return OrchestratorGraph(
        agents=AgentRegistry(agents),
        oracle=oracle,
        classifier=classifier or StaticClassifier(),
        config=kwargs.pop("config", OrchestratorConfig(max_retries=2)),
        on_transition=recorder,
        **kwargs,
    )


def assert_valid_history(history: list[WorkflowStatus]) -> None:
    for current, new in zip(history, history[1:]):
        assert is_allowed_transition(current, new), f"{current} -> {new}"


# ── Reducer ──────────────────────────────────────────────────────────────────


class TestApplyUpdate:
    def test_history_fields_append(self):
        state = make_state(warnings=["first"], completed_agents=["architect"])
        new = apply_update(state, {"warnings": ["second"], "completed_agents": ["tester"]})
        assert new.warnings == ["first", "second"]
        assert new.completed_agents == ["architect", "tester"]
        assert state.warnings == ["first"]

    def test_other_fields_replace(self):
        state = make_state(retry_count=2)
        assert apply_update(state, {"retry_count": 0}).retry_count == 0

    def test_status_change_recorded(self):
        new = apply_update(make_state(), {"status": WorkflowStatus.ANALYZING})
        assert new.status_history == [WorkflowStatus.PENDING, WorkflowStatus.ANALYZING]

    def test_invalid_transition_raises(self):
        with pytest.raises(InvalidTransitionError):
            apply_update(make_state(), {"status": WorkflowStatus.COMPLETED})

    def test_unknown_field_raises(self):
        with pytest.raises(OrchestrationError, match="Unknown workflow state field"):
            apply_update(make_state(), {"mood": "happy"})

    def test_current_and_pending_exclusive(self):
        state = make_state(pending_agents=[AgentDispatch(agent_id="a", execution_id="1")])
        with pytest.raises(OrchestrationError, match="current agent and pending"):
            apply_update(state, {"current_agent": AgentDispatch(agent_id="b")})


class TestResumeNodeFor:
    @pytest.mark.parametrize(
        "status, expected",
        [
            (WorkflowStatus.PENDING, ANALYZE),
            (WorkflowStatus.ANALYZING, ANALYZE),
            (WorkflowStatus.ORCHESTRATING, THINK),
            (WorkflowStatus.AGENT_WORKING, THINK),
            (WorkflowStatus.COMPLETING, COMPLETE),
            (WorkflowStatus.COMPLETED, END),
            (WorkflowStatus.FAILED, END),
        ],
    )
    def test_by_status(self, status, expected):
        assert resume_node_for(make_state(status=status)) == expected

    def test_suspended_approval(self):
        state = make_state(
            status=WorkflowStatus.AWAITING_APPROVAL,
            approval_request=ApprovalRequest(description="Review"),
        )
        assert resume_node_for(state) == INTERRUPT

    def test_answered_approval(self):
        state = make_state(
            status=WorkflowStatus.AWAITING_APPROVAL,
            approval_request=ApprovalRequest(description="Review"),
            approval_response=ApprovalResponse(approved=True),
        )
        assert resume_node_for(state) == THINK


# ── Decision Loop ────────────────────────────────────────────────────────────


@pytest.mark.asyncio
class TestHappyPath:
    async def test_sequential_dispatch_to_completion(self):
        architect, tester = EchoAgent("architect"), EchoAgent("tester")
        oracle = ScriptedOracle(
            decision("dispatch", "architect"),
            decision("dispatch", "tester"),
            decision("complete"),
        )
        recorder = Recorder()
        graph = make_graph({"architect": architect, "tester": tester}, oracle, recorder=recorder)

        state, node = await graph.run(make_state(max_retries=2))

        assert node == END
        assert state.status == WorkflowStatus.COMPLETED
        assert state.completed_agents == ["architect", "tester"]
        assert [o.agent_id for o in state.agent_outputs] == ["architect", "tester"]
        assert len(state.thinking_history) == 3
        assert state.status_history == [
            WorkflowStatus.PENDING,
            WorkflowStatus.ANALYZING,
            WorkflowStatus.ORCHESTRATING,
            WorkflowStatus.AGENT_WORKING,
            WorkflowStatus.ORCHESTRATING,
            WorkflowStatus.AGENT_WORKING,
            WorkflowStatus.ORCHESTRATING,
            WorkflowStatus.COMPLETING,
            WorkflowStatus.COMPLETED,
        ]
        assert state.error is None
        # The tester saw the architect's output
        assert [o.agent_id for o in tester.tasks[0].previous_outputs] == ["architect"]

    async def test_every_transition_reported(self):
        oracle = ScriptedOracle(decision("dispatch", "architect"))
        recorder = Recorder()
        graph = make_graph({"architect": EchoAgent("architect")}, oracle, recorder=recorder)
        await graph.run(make_state())
        nodes = [t[2] for t in recorder.transitions]
        assert nodes == ["analyze", "think", "dispatch", "execute_agent", "think", "complete"]
        for before, after, _node, _next in recorder.transitions:
            assert not (after.current_agent is not None and after.pending_agents)
            assert len(after.agent_outputs) >= len(before.agent_outputs)
            assert len(after.thinking_history) >= len(before.thinking_history)

    async def test_max_steps(self):
        graph = make_graph({}, ScriptedOracle())
        state, node = await graph.run(make_state(), max_steps=1)
        assert node == THINK
        assert state.status == WorkflowStatus.ANALYZING
        assert state.analysis is not None

    async def test_should_stop(self):
        graph = make_graph({}, ScriptedOracle())
        state, node = await graph.run(make_state(), should_stop=lambda: True)
        assert node == ANALYZE
        assert state.status == WorkflowStatus.PENDING


@pytest.mark.asyncio
class TestApprovalLoop:
    async def test_reject_revise_approve(self):
        designer = EchoAgent("ui_designer")
        approval = {"approvalConfig": {"type": "design_review", "description": "Review the design"}}
        oracle = ScriptedOracle(
            decision("dispatch", "ui_designer"),
            decision("approval", **approval),
            decision("dispatch", "ui_designer"),
            decision("approval", **approval),
            decision("complete"),
        )
        graph = make_graph({"ui_designer": designer}, oracle)

        state, node = await graph.run(make_state())
        assert node == INTERRUPT
        assert state.status == WorkflowStatus.AWAITING_APPROVAL
        assert state.approval_request.type.value == "design_review"
        assert [a.path for a in state.approval_request.artifacts] == ["ui_designer.txt"]

        state = graph.resume_approval(state, {"approved": False, "feedback": "more contrast"})
        assert state.approval_iterations == 1
        assert state.user_feedback == ["more contrast"]
        state, node = await graph.run(state, THINK)
        assert node == INTERRUPT
        assert "Feedback: more contrast" in oracle.contexts[2]
        assert designer.tasks[1].feedback == "more contrast"

        state = graph.resume_approval(state, ApprovalResponse(approved=True))
        assert state.approval_iterations == 0
        state, node = await graph.run(state, THINK)

        assert node == END
        assert state.status == WorkflowStatus.COMPLETED
        assert len(state.agent_outputs) == 2
        assert_valid_history(state.status_history)

    async def test_malformed_response_keeps_suspension(self):
        oracle = ScriptedOracle(
            decision("approval", approvalConfig={"description": "Pick", "options": ["A", "B"]})
        )
        graph = make_graph({}, oracle)
        state, node = await graph.run(make_state())
        assert node == INTERRUPT
        with pytest.raises(OrchestrationError):
            graph.resume_approval(state, {"approved": True, "selectedOption": "C"})
        with pytest.raises(OrchestrationError):
            graph.resume_approval(state, {"approved": True, "selectedOption": "A", "bogus": 1})
        assert state.status == WorkflowStatus.AWAITING_APPROVAL


@pytest.mark.asyncio
class TestParallel:
    async def test_partial_failure_returns_to_think(self):
        agents = {"a": EchoAgent("a"), "b": FailingAgent("bad"), "c": EchoAgent("c")}
        oracle = ScriptedOracle(decision("parallel_dispatch", "a", "b", "c"), decision("complete"))
        graph = make_graph(agents, oracle)

        state, node = await graph.run(make_state())

        assert node == END
        assert state.status == WorkflowStatus.COMPLETED
        assert [o.success for o in state.agent_outputs] == [True, False, True]
        assert len(state.completed_agents) == 2
        assert "2 succeeded, 1 failed" in oracle.contexts[1]
        assert state.pending_agents == []
        assert state.parallel_results == []


@pytest.mark.asyncio
class TestFailures:
    async def test_retries_are_bounded(self):
        agent = FailingAgent()
        oracle = ScriptedOracle(*[decision("dispatch", "tester")] * 5)
        graph = make_graph({"tester": agent}, oracle)

        state, node = await graph.run(make_state(max_retries=2))

        assert node == END
        assert state.status == WorkflowStatus.FAILED
        assert agent.calls == 3
        assert state.retry_count == 2
        assert state.error == "Agent tester failed: boom"
        assert [o.attempt for o in state.agent_outputs] == [1, 2, 3]

    async def test_retry_then_recover(self):
        agent = FailingAgent(failures=1)
        oracle = ScriptedOracle(decision("dispatch", "tester"), decision("dispatch", "tester"))
        graph = make_graph({"tester": agent}, oracle)
        state, _ = await graph.run(make_state(max_retries=2))
        assert state.status == WorkflowStatus.COMPLETED
        assert state.retry_count == 0
        assert state.completed_agents == ["tester"]

    async def test_decision_error_fails_workflow(self):
        graph = make_graph({}, ScriptedOracle("I am not sure what to do"))
        state, node = await graph.run(make_state())
        assert node == END
        assert state.status == WorkflowStatus.FAILED
        assert "no JSON object" in state.error
        assert state.thinking_history[-1].decision is None

    async def test_fail_decision(self):
        graph = make_graph({}, ScriptedOracle(decision("fail", reasoning="contradictory task")))
        state, _ = await graph.run(make_state())
        assert state.status == WorkflowStatus.FAILED
        assert state.error == "contradictory task"

    async def test_analysis_error_fails_workflow(self):
        graph = make_graph({}, ScriptedOracle(), classifier=StaticClassifier("not json at all"))
        state, _ = await graph.run(make_state())
        assert state.status == WorkflowStatus.FAILED
        assert state.analysis is None
        assert_valid_history(state.status_history)

    async def test_node_exception_routes_to_fail(self):
        async def broken_checkpoint(state, dispatches):
            raise RuntimeError("store offline")

        graph = make_graph(
            {"deploy": EchoAgent("deploy")},
            ScriptedOracle(decision("dispatch", "deploy")),
            destructive_operations=["deploy"],
            before_destructive=broken_checkpoint,
        )
        state, node = await graph.run(make_state())
        assert node == END
        assert state.status == WorkflowStatus.FAILED
        assert "store offline" in state.error
        assert state.current_agent is None
        assert state.agent_outputs == []

    async def test_unknown_agent_is_retried_then_fails(self):
        oracle = ScriptedOracle(*[decision("dispatch", "ghost")] * 3)
        graph = make_graph({}, oracle)
        state, _ = await graph.run(make_state(max_retries=2))
        assert state.status == WorkflowStatus.FAILED
        assert all(o.error == "Unknown agent: ghost" for o in state.agent_outputs)

    async def test_histories_only_grow(self):
        recorder = Recorder()
        graph = make_graph(
            {"tester": FailingAgent(failures=1)},
            ScriptedOracle(decision("dispatch", "tester"), decision("dispatch", "tester")),
            recorder=recorder,
        )
        state, _ = await graph.run(make_state(agent_outputs=[AgentOutput(agent_id="x", success=True)]))
        for before, after, *_ in recorder.transitions:
            assert after.agent_outputs[: len(before.agent_outputs)] == before.agent_outputs
            assert after.status_history[: len(before.status_history)] == before.status_history
        assert_valid_history(state.status_history)
