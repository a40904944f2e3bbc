"""Orchestration state machine — analyze, think, dispatch, approve, repeat.

Key exports:
    OrchestratorGraph — the decision loop
    AgentRegistry, Agent — injected unit-of-work executors
    WorkflowRegistry — SQLite persistence of workflow threads
    OrchestrationError and subclasses — error taxonomy
"""

from conductor.orchestrator.agents import Agent, AgentRegistry, AgentTracker
from conductor.orchestrator.errors import (
    AnalysisError,
    ApprovalError,
    DecisionError,
    DispatchError,
    InvalidTransitionError,
    OrchestrationError,
    OrchestratorUnavailableError,
    WorkflowNotFoundError,
)
from conductor.orchestrator.graph import END, INTERRUPT, OrchestratorGraph
from conductor.orchestrator.registry import WorkflowRegistry, WorkflowThread

__all__ = [
    "END",
    "INTERRUPT",
    "Agent",
    "AgentRegistry",
    "AgentTracker",
    "AnalysisError",
    "ApprovalError",
    "DecisionError",
    "DispatchError",
    "InvalidTransitionError",
    "OrchestrationError",
    "OrchestratorGraph",
    "OrchestratorUnavailableError",
    "WorkflowNotFoundError",
    "WorkflowRegistry",
    "WorkflowThread",
]
