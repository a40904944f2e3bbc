"""Tests for the HTTP adapters using httpx.MockTransport."""

from __future__ import annotations

import json

import httpx
import pytest

from conductor.config import OrchestratorConfig, RemoteConfig
from conductor.models import AgentDispatch, AgentTask
from conductor.orchestrator.dispatch import DispatchExecutor
from conductor.orchestrator.remote import RemoteEndpoints

from fakes import make_state


def make_endpoints(handler, **config) -> RemoteEndpoints:
    defaults: dict = dict(
        agents={"tester": "http://agents.local/tester"},
        oracle_url="http://oracle.local/decide",
        classifier_url="http://oracle.local/classify",
    )
    defaults.update(config)
    return RemoteEndpoints(RemoteConfig(**defaults), transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
class TestRemoteAgent:
    async def test_posts_camel_case_task(self):
        seen: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(json.loads(request.content))
            assert request.headers["user-agent"].startswith("Conductor/")
            return httpx.Response(200, json={"success": True, "result": "ok", "tokenUsage": 7})

        endpoints = make_endpoints(handler)
        await endpoints.start()
        agent = endpoints.agent_registry().get("tester")
        result = await agent.execute(
            AgentTask(tenant_id="t", project_id="proj", task_id="task-1", prompt="do it", execution_id="e1")
        )
        await endpoints.close()

        assert result.success and result.result == "ok"
        assert result.token_usage == 7
        assert seen[0]["projectId"] == "proj"
        assert seen[0]["executionId"] == "e1"

    async def test_http_error_becomes_failed_output(self):
        endpoints = make_endpoints(lambda request: httpx.Response(502, text="bad gateway"))
        await endpoints.start()
        executor = DispatchExecutor(endpoints.agent_registry(), OrchestratorConfig())
        output = await executor.run_unit(make_state(), AgentDispatch(agent_id="tester"))
        await endpoints.close()
        assert output.success is False
        assert "HTTPStatusError" in output.error


@pytest.mark.asyncio
class TestRemoteOracle:
    async def test_json_output_field(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert json.loads(request.content) == {"context": "ctx"}
            return httpx.Response(200, json={"output": '{"action": "complete"}'})

        endpoints = make_endpoints(handler)
        await endpoints.start()
        assert await endpoints.oracle()("ctx") == '{"action": "complete"}'
        await endpoints.close()

    async def test_plain_text(self):
        endpoints = make_endpoints(lambda request: httpx.Response(200, text="raw decision"))
        await endpoints.start()
        assert await endpoints.oracle()("ctx") == "raw decision"
        await endpoints.close()

    async def test_classifier_returns_mapping(self):
        endpoints = make_endpoints(
            lambda request: httpx.Response(200, json={"taskType": "bugfix", "complexity": "simple"})
        )
        await endpoints.start()
        assert await endpoints.classifier()("fix it") == {"taskType": "bugfix", "complexity": "simple"}
        await endpoints.close()


class TestRemoteEndpoints:
    def test_unconfigured(self):
        endpoints = RemoteEndpoints(RemoteConfig())
        assert endpoints.oracle() is None
        assert endpoints.classifier() is None

    def test_client_requires_start(self):
        endpoints = make_endpoints(lambda request: httpx.Response(200))
        with pytest.raises(RuntimeError, match="not started"):
            endpoints.agent_registry()
