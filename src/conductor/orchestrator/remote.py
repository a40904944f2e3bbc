"""HTTP adapters for the external collaborators: agents, oracle and classifier.

Each adapter POSTs JSON to a configured URL over one shared httpx.AsyncClient.

    agent       POST <url>  body: AgentTask (camelCase)      → AgentResult JSON
    oracle      POST <url>  body: {"context": "..."}         → {"output": "..."} or raw text
    classifier  POST <url>  body: {"prompt": "..."}          → TaskAnalysis JSON

HTTP and transport errors propagate; the dispatch executor turns them into
failed results and the decision step into decision errors.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from conductor import __version__
from conductor.config import RemoteConfig
from conductor.models import AgentResult, AgentTask
from conductor.orchestrator.agents import AgentRegistry

logger = logging.getLogger("conductor.orchestrator.remote")


class RemoteAgent:
    """An Agent served over HTTP."""

    def __init__(self, client: httpx.AsyncClient, url: str):
        self._client = client
        self.url = url

    async def execute(self, task: AgentTask) -> AgentResult:
        resp = await self._client.post(
            self.url, json=task.model_dump(mode="json", by_alias=True)
        )
        resp.raise_for_status()
        return AgentResult.model_validate(resp.json())


class RemoteDecisionOracle:
    def __init__(self, client: httpx.AsyncClient, url: str):
        self._client = client
        self.url = url

    async def __call__(self, prompt_context: str) -> str:
        resp = await self._client.post(self.url, json={"context": prompt_context})
        resp.raise_for_status()
        if resp.headers.get("content-type", "").startswith("application/json"):
            data = resp.json()
            if isinstance(data, dict) and isinstance(data.get("output"), str):
                return data["output"]
            return resp.text
        return resp.text


class RemoteClassifier:
    def __init__(self, client: httpx.AsyncClient, url: str):
        self._client = client
        self.url = url

    async def __call__(self, prompt: str) -> str | dict[str, Any]:
        resp = await self._client.post(self.url, json={"prompt": prompt})
        resp.raise_for_status()
        try:
            data = resp.json()
        except ValueError:
            return resp.text
        return data if isinstance(data, dict) else resp.text


class RemoteEndpoints:
    """Owns the HTTP client and builds adapters from the ``remote`` config section.

    Usage:
        endpoints = RemoteEndpoints(config.remote)
        await endpoints.start()
        agents = endpoints.agent_registry()
        ...
        await endpoints.close()
    """

    def __init__(self, config: RemoteConfig, *, transport: httpx.AsyncBaseTransport | None = None):
        self.config = config
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def start(self) -> None:
        self._client = httpx.AsyncClient(
            headers={"User-Agent": f"Conductor/{__version__}"},
            timeout=self.config.timeout_seconds,
            transport=self._transport,
        )
        logger.info(
            "Remote endpoints started (%d agents, oracle=%s, classifier=%s)",
            len(self.config.agents),
            "yes" if self.config.oracle_url else "no",
            "yes" if self.config.classifier_url else "no",
        )

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("Remote endpoints not started")
        return self._client

    def agent_registry(self) -> AgentRegistry:
        return AgentRegistry(
            {agent_id: RemoteAgent(self.client, url) for agent_id, url in self.config.agents.items()}
        )

    def oracle(self) -> RemoteDecisionOracle | None:
        if not self.config.oracle_url:
            return None
        return RemoteDecisionOracle(self.client, self.config.oracle_url)

    def classifier(self) -> RemoteClassifier | None:
        if not self.config.classifier_url:
            return None
        return RemoteClassifier(self.client, self.config.classifier_url)
