"""Tests for the dispatch executor — single dispatch, retries and parallel fan-out."""

from __future__ import annotations

import asyncio

import pytest

from conductor.config import OrchestratorConfig
from conductor.models import AgentDispatch, AgentOutput, UserMessage
from conductor.orchestrator.agents import AgentRegistry, AgentTracker
from conductor.orchestrator.dispatch import DispatchExecutor, build_task
from conductor.orchestrator.errors import DispatchError

from fakes import EchoAgent, FailingAgent, make_state


def make_executor(agents: dict, **config) -> DispatchExecutor:
    return DispatchExecutor(AgentRegistry(agents), OrchestratorConfig(**config))


class TestBuildTask:
    def test_all_outputs_without_refs(self):
        outputs = [AgentOutput(agent_id="a", success=True), AgentOutput(agent_id="b", success=True)]
        state = make_state(agent_outputs=outputs, user_feedback=["first", "latest"])
        task = build_task(state, AgentDispatch(agent_id="c"))
        assert [o.agent_id for o in task.previous_outputs] == ["a", "b"]
        assert task.feedback == "latest"
        assert task.prompt == state.prompt

    def test_context_refs_narrow_outputs(self):
        outputs = [
            AgentOutput(agent_id="architect", success=True),
            AgentOutput(agent_id="tester", execution_id="x1", success=True),
            AgentOutput(agent_id="tester", execution_id="x2", success=True),
        ]
        state = make_state(agent_outputs=outputs)
        task = build_task(state, AgentDispatch(agent_id="reviewer", context_refs=["architect", "tester_x2"]))
        assert [(o.agent_id, o.execution_id) for o in task.previous_outputs] == [
            ("architect", None),
            ("tester", "x2"),
        ]


@pytest.mark.asyncio
class TestExecuteNode:
    async def test_success_records_output(self):
        agent = EchoAgent("architect")
        executor = make_executor({"architect": agent})
        state = make_state(current_agent=AgentDispatch(agent_id="architect"), retry_count=1)
        update = await executor.execute_node(state)
        out = update["agent_outputs"][0]
        assert out.success and out.output == "architect done"
        assert out.attempt == 2
        assert update["completed_agents"] == ["architect"]
        assert update["retry_count"] == 0
        assert update["current_agent"] is None
        assert len(agent.tasks) == 1

    async def test_failure_increments_retry(self):
        executor = make_executor({"tester": FailingAgent("flaky")})
        state = make_state(current_agent=AgentDispatch(agent_id="tester"), max_retries=2)
        update = await executor.execute_node(state)
        assert update["agent_outputs"][0].success is False
        assert update["retry_count"] == 1
        assert update["last_failed_agent"] == "tester"
        assert update["error"] == "Agent tester failed: flaky"
        assert "completed_agents" not in update

    async def test_retry_count_never_exceeds_max(self):
        executor = make_executor({"tester": FailingAgent()})
        state = make_state(
            current_agent=AgentDispatch(agent_id="tester"),
            max_retries=2,
            retry_count=2,
            last_failed_agent="tester",
        )
        update = await executor.execute_node(state)
        assert update["retry_count"] == 2
        assert update["agent_outputs"][0].attempt == 3

    async def test_raising_agent_becomes_failed_output(self):
        executor = make_executor({"tester": FailingAgent("kaboom", raises=True)})
        update = await executor.execute_node(make_state(current_agent=AgentDispatch(agent_id="tester")))
        assert "RuntimeError: kaboom" in update["agent_outputs"][0].error

    async def test_unknown_agent_is_failed_output(self):
        executor = make_executor({})
        update = await executor.execute_node(make_state(current_agent=AgentDispatch(agent_id="ghost")))
        assert update["agent_outputs"][0].error == "Unknown agent: ghost"

    async def test_timeout(self):
        executor = make_executor({"slow": EchoAgent("slow", delay=1.0)}, agent_timeout_seconds=0.05)
        update = await executor.execute_node(make_state(current_agent=AgentDispatch(agent_id="slow")))
        assert update["agent_outputs"][0].error.startswith("Timed out after")

    async def test_dispatch_node_resets_retry_for_new_agent(self):
        executor = make_executor({})
        state = make_state(
            current_agent=AgentDispatch(agent_id="reviewer"), retry_count=2, last_failed_agent="tester"
        )
        assert await executor.dispatch_node(state) == {"retry_count": 0, "last_failed_agent": None}

    async def test_dispatch_node_keeps_retry_for_same_agent(self):
        executor = make_executor({})
        state = make_state(
            current_agent=AgentDispatch(agent_id="tester"), retry_count=2, last_failed_agent="tester"
        )
        assert await executor.dispatch_node(state) == {}


@pytest.mark.asyncio
class TestParallelNode:
    async def test_partial_failure_keeps_order(self):
        executor = make_executor(
            {"a": EchoAgent("a", delay=0.03), "b": FailingAgent("bad"), "c": EchoAgent("c")}
        )
        pending = [
            AgentDispatch(agent_id="a", execution_id="1"),
            AgentDispatch(agent_id="b", execution_id="2"),
            AgentDispatch(agent_id="c", execution_id="3"),
        ]
        update = await executor.parallel_node(make_state(pending_agents=pending, is_parallel_execution=True))
        outputs = update["agent_outputs"]
        assert [o.agent_id for o in outputs] == ["a", "b", "c"]
        assert [o.success for o in outputs] == [True, False, True]
        assert len({o.batch_id for o in outputs}) == 1
        assert update["completed_agents"] == ["a_1", "c_3"]
        assert update["pending_agents"] == []
        assert update["is_parallel_execution"] is False
        assert [r.agent_id for r in update["parallel_results"]] == ["a", "b", "c"]
        assert update["error"] is None

    async def test_batch_capped_with_warning(self):
        agents = {name: EchoAgent(name) for name in "abcde"}
        executor = make_executor(agents, max_parallel_agents=2)
        pending = [AgentDispatch(agent_id=n, execution_id=n) for n in "abcde"]
        update = await executor.parallel_node(make_state(pending_agents=pending))
        assert [o.agent_id for o in update["agent_outputs"]] == ["a", "b"]
        assert "exceeding the maximum of 2" in update["warnings"][0]
        assert "c_c, d_d, e_e" in update["warnings"][0]
        assert agents["c"].tasks == []

    async def test_runs_concurrently(self):
        agents = {n: EchoAgent(n, delay=0.2) for n in "abc"}
        executor = make_executor(agents)
        pending = [AgentDispatch(agent_id=n, execution_id=n) for n in "abc"]
        loop = asyncio.get_running_loop()
        started = loop.time()
        await executor.parallel_node(make_state(pending_agents=pending))
        assert loop.time() - started < 0.5

    async def test_tracker_running_during_execution(self):
        tracker = AgentTracker()
        seen: list[int] = []

        class Watcher:
            async def execute(self, task):
                seen.append(len(tracker.running("wf-1")))
                return {"success": True}

        executor = DispatchExecutor(
            AgentRegistry({"p": Watcher()}), OrchestratorConfig(), tracker=tracker
        )
        await executor.execute_node(make_state(current_agent=AgentDispatch(agent_id="p")))
        assert seen == [1]
        assert tracker.running("wf-1") == []


@pytest.mark.asyncio
class TestDestructiveGuard:
    async def test_callback_runs_for_flagged_agents(self):
        calls = []

        async def before(state, dispatches):
            calls.append([d.agent_id for d in dispatches])

        executor = DispatchExecutor(
            AgentRegistry({"deploy": EchoAgent("deploy"), "tester": EchoAgent("tester")}),
            OrchestratorConfig(),
            destructive_operations=["deploy"],
            before_destructive=before,
        )
        pending = [AgentDispatch(agent_id="deploy", execution_id="1"), AgentDispatch(agent_id="tester", execution_id="2")]
        await executor.parallel_node(make_state(pending_agents=pending))
        await executor.execute_node(make_state(current_agent=AgentDispatch(agent_id="tester")))
        assert calls == [["deploy"]]

    async def test_callback_failure_aborts_dispatch(self):
        agent = EchoAgent("deploy")

        async def before(state, dispatches):
            raise RuntimeError("disk full")

        executor = DispatchExecutor(
            AgentRegistry({"deploy": agent}),
            OrchestratorConfig(),
            destructive_operations=["deploy"],
            before_destructive=before,
        )
        with pytest.raises(DispatchError, match="disk full"):
            await executor.execute_node(make_state(current_agent=AgentDispatch(agent_id="deploy")))
        assert agent.tasks == []

    async def test_messages_do_not_leak_into_task(self):
        agent = EchoAgent("a")
        executor = make_executor({"a": agent})
        state = make_state(current_agent=AgentDispatch(agent_id="a"), user_messages=[UserMessage(content="x")])
        await executor.execute_node(state)
        assert agent.tasks[0].feedback is None
