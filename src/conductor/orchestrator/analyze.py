"""Task analysis — the ``analyze`` node.

Runs the external task classifier once per workflow, validates its output into
a TaskAnalysis, and derives the suggested agent queue shown to the decision step.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Protocol

from pydantic import ValidationError

from conductor.models import Complexity, TaskAnalysis, TaskType, WorkflowState
from conductor.orchestrator.errors import AnalysisError

logger = logging.getLogger("conductor.orchestrator.analyze")

_JSON_BLOCK = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL)


class TaskClassifier(Protocol):
    """Classifies a task prompt. Returns raw text containing JSON, or a mapping."""

    async def __call__(self, prompt: str) -> str | dict[str, Any]:
        ...


def parse_analysis(raw: str | dict[str, Any]) -> TaskAnalysis:
    """Validate classifier output.

    Raises:
        AnalysisError: output is not JSON or does not describe a TaskAnalysis.
    """
    if isinstance(raw, str):
        match = _JSON_BLOCK.search(raw)
        text = match.group(1) if match else raw
        start, end = text.find("{"), text.rfind("}")
        if start == -1 or end <= start:
            raise AnalysisError("Task analysis output contains no JSON object")
        try:
            raw = json.loads(text[start : end + 1])
        except json.JSONDecodeError as exc:
            raise AnalysisError(f"Task analysis output is not valid JSON: {exc}") from exc
    if not isinstance(raw, dict):
        raise AnalysisError("Task analysis must be a JSON object")
    try:
        return TaskAnalysis.model_validate(raw)
    except ValidationError as exc:
        raise AnalysisError(f"Invalid task analysis: {exc.error_count()} validation errors") from exc


def build_agent_queue(analysis: TaskAnalysis) -> list[str]:
    """Default order of agents for a classified task."""
    if analysis.task_type == TaskType.BUGFIX:
        return ["bug_fixer", "tester", "reviewer"]

    queue: list[str] = []
    if analysis.complexity in (Complexity.MODERATE, Complexity.COMPLEX):
        queue.append("project_manager")
    if analysis.requires_architecture:
        queue.append("architect")
    if analysis.requires_ui:
        queue.append("ui_designer")
        queue.append("frontend_developer")
    if analysis.requires_backend:
        queue.append("backend_developer")
    queue.extend(["tester", "reviewer"])
    return queue


class TaskAnalyzer:
    def __init__(self, classifier: TaskClassifier):
        self._classifier = classifier

    async def __call__(self, state: WorkflowState) -> dict[str, Any]:
        if state.analysis is not None:
            return {}
        try:
            raw = await self._classifier(state.prompt)
            analysis = parse_analysis(raw)
        except AnalysisError as exc:
            logger.error("Analysis failed for thread %s: %s", state.thread_id, exc)
            return {"error": str(exc)}
        except Exception as exc:
            logger.exception("Task classifier raised for thread %s", state.thread_id)
            return {"error": f"Task classifier failed: {exc}"}

        queue = build_agent_queue(analysis)
        logger.info(
            "Thread %s analyzed: type=%s complexity=%s queue=%s",
            state.thread_id,
            analysis.task_type.value,
            analysis.complexity.value,
            queue,
        )
        return {"analysis": analysis, "agent_queue": queue, "error": None}
