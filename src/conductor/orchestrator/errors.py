"""Orchestration error taxonomy.

Node-local failures are recorded into ``WorkflowState.error`` and routed by the
graph; these exceptions surface at the control-surface boundary or carry a
failure from a node up to the graph.
"""

from __future__ import annotations


class OrchestrationError(Exception):
    """Base class for orchestration failures."""


class AnalysisError(OrchestrationError):
    """The task classification was malformed or unparsable."""


class DecisionError(OrchestrationError):
    """The decision oracle produced no valid action."""


class DispatchError(OrchestrationError):
    """A unit of work could not be dispatched at all."""


class ApprovalError(OrchestrationError):
    """An approval response was malformed. The gate stays suspended."""


class InvalidTransitionError(OrchestrationError):
    def __init__(self, current: str, new: str):
        self.current = current
        self.new = new
        super().__init__(f"Invalid workflow transition: {current} -> {new}")


class WorkflowNotFoundError(OrchestrationError):
    def __init__(self, thread_id: str):
        self.thread_id = thread_id
        super().__init__(f"Workflow not found: {thread_id}")


class OrchestratorUnavailableError(OrchestrationError):
    """No agents, oracle or classifier were configured for this process."""
