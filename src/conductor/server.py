"""Conductor Server — FastAPI application exposing the workflow control surface.

Startup:
1. Load .conductor/ config (unless a config object is passed in)
2. Open the SQLite database and initialize the registries
3. Wire agents, oracle and classifier (injected, or HTTP endpoints from config)
4. Continue threads a previous process left mid-run
5. Start the interval checkpoint loop

Shutdown cancels background runs, closes HTTP clients and the database.
Without an oracle and classifier the server still serves status, checkpoint
and recovery endpoints; starting or resuming a workflow returns 503.
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

import aiosqlite
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from conductor import __version__
from conductor.checkpoint.errors import (
    CheckpointCorruptionError,
    CheckpointDisabledError,
    CheckpointError,
    CheckpointIntegrityError,
    CheckpointNotFoundError,
    CheckpointSizeError,
)
from conductor.checkpoint.manager import FileSystemProvider
from conductor.checkpoint.models import (
    Checkpoint,
    CheckpointFilter,
    CheckpointStatus,
    CheckpointTrigger,
    RecoveryOptions,
)
from conductor.config import ConductorConfig, load_config
from conductor.orchestrator.agents import AgentRegistry
from conductor.orchestrator.analyze import TaskClassifier
from conductor.orchestrator.errors import (
    ApprovalError,
    InvalidTransitionError,
    OrchestrationError,
    OrchestratorUnavailableError,
    WorkflowNotFoundError,
)
from conductor.orchestrator.remote import RemoteEndpoints
from conductor.orchestrator.think import DecisionOracle
from conductor.service import WorkflowService

logger = logging.getLogger("conductor.server")


# ── Request Bodies ───────────────────────────────────────────────────────────


class StartWorkflowRequest(BaseModel):
    prompt: str = Field(min_length=1)
    project_id: str = Field(min_length=1)
    task_id: str | None = None
    tenant_id: str = "default"
    settings: dict[str, Any] = Field(default_factory=dict)
    wait: bool = True


class MessageRequest(BaseModel):
    content: str = Field(min_length=1)


class AbortRequest(BaseModel):
    reason: str = "Aborted by operator"


class CheckpointRequest(BaseModel):
    reason: str = ""


class RecoverRequest(RecoveryOptions):
    wait: bool = True


# ── Error Mapping ────────────────────────────────────────────────────────────


def _status_for(exc: Exception) -> int:
    match exc:
        case WorkflowNotFoundError() | CheckpointNotFoundError():
            return 404
        case ApprovalError():
            return 422
        case InvalidTransitionError() | CheckpointCorruptionError() | CheckpointIntegrityError():
            return 409
        case OrchestratorUnavailableError() | CheckpointDisabledError():
            return 503
        case CheckpointSizeError():
            return 413
    return 500


def _register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(OrchestrationError)
    async def orchestration_error(request: Request, exc: OrchestrationError):
        return JSONResponse(
            status_code=_status_for(exc),
            content={"detail": str(exc), "code": type(exc).__name__},
        )

    @app.exception_handler(CheckpointError)
    async def checkpoint_error(request: Request, exc: CheckpointError):
        return JSONResponse(
            status_code=_status_for(exc),
            content={"detail": str(exc), "code": exc.code, "checkpoint_id": exc.checkpoint_id},
        )


# ── App Factory ──────────────────────────────────────────────────────────────


def create_app(
    config: ConductorConfig | None = None,
    *,
    conductor_dir: Path | None = None,
    agents: AgentRegistry | None = None,
    oracle: DecisionOracle | None = None,
    classifier: TaskClassifier | None = None,
    file_system: FileSystemProvider | None = None,
) -> FastAPI:
    """Create the FastAPI application.

    Collaborators passed in take precedence over the ``remote`` config section.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        nonlocal config
        if config is None:
            config_dir = conductor_dir or Path(
                os.environ.get("CONDUCTOR_CONFIG_DIR", ".conductor")
            )
            config = load_config(config_dir)

        db_path = Path(config.storage.db_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        db = await aiosqlite.connect(str(db_path))
        db.row_factory = aiosqlite.Row

        endpoints = RemoteEndpoints(config.remote)
        await endpoints.start()
        registry = agents if agents is not None else endpoints.agent_registry()

        service = WorkflowService(
            db,
            config,
            agents=registry,
            oracle=oracle or endpoints.oracle(),
            classifier=classifier or endpoints.classifier(),
            file_system=file_system,
        )
        await service.initialize()
        if not service.can_orchestrate:
            logger.warning("No decision oracle/classifier configured; only read and recovery endpoints work")
        resumed = await service.resume_active()
        if resumed:
            logger.info("Resumed %d workflow(s) from a previous run", resumed)
        service.start_background_tasks()

        app.state.service = service
        logger.info("Conductor server started (db=%s, %d agents)", db_path, len(registry))
        try:
            yield
        finally:
            await service.close()
            await endpoints.close()
            await db.close()
            logger.info("Conductor server stopped")

    app = FastAPI(
        title="Conductor",
        version=__version__,
        description="Checkpointed multi-agent workflow orchestrator",
        lifespan=lifespan,
    )
    _register_error_handlers(app)

    def service_of(request: Request) -> WorkflowService:
        return request.app.state.service

    # ── Workflows ────────────────────────────────────────────────────────────

    @app.post("/workflows", status_code=201)
    async def start_workflow(body: StartWorkflowRequest, request: Request):
        service = service_of(request)
        thread_id = await service.start(
            body.prompt,
            body.project_id,
            task_id=body.task_id,
            tenant_id=body.tenant_id,
            settings=body.settings,
            wait=body.wait,
        )
        view = await service.status(thread_id)
        return view.model_dump(mode="json")

    @app.get("/workflows/{thread_id}")
    async def get_workflow(thread_id: str, request: Request):
        view = await service_of(request).status(thread_id)
        return view.model_dump(mode="json")

    @app.post("/workflows/{thread_id}/resume")
    async def resume_workflow(thread_id: str, body: dict[str, Any], request: Request, wait: bool = True):
        view = await service_of(request).resume(thread_id, body, wait=wait)
        return view.model_dump(mode="json")

    @app.post("/workflows/{thread_id}/messages")
    async def post_message(thread_id: str, body: MessageRequest, request: Request):
        view = await service_of(request).post_message(thread_id, body.content)
        return view.model_dump(mode="json")

    @app.post("/workflows/{thread_id}/abort")
    async def abort_workflow(thread_id: str, request: Request, body: AbortRequest | None = None):
        reason = body.reason if body else AbortRequest().reason
        view = await service_of(request).abort(thread_id, reason)
        return view.model_dump(mode="json")

    @app.post("/workflows/{thread_id}/step")
    async def step_workflow(thread_id: str, request: Request):
        view = await service_of(request).step(thread_id)
        return view.model_dump(mode="json")

    @app.post("/workflows/{thread_id}/checkpoints", status_code=201)
    async def checkpoint_workflow(
        thread_id: str, request: Request, body: CheckpointRequest | None = None
    ):
        checkpoint = await service_of(request).create_checkpoint(
            thread_id, body.reason if body else ""
        )
        return _checkpoint_summary(checkpoint)

    @app.get("/workflows/{thread_id}/recovery")
    async def recovery_status(thread_id: str, request: Request):
        status = await service_of(request).recovery.get_recovery_status(thread_id)
        return status.model_dump(mode="json")

    # ── Checkpoints ──────────────────────────────────────────────────────────

    @app.get("/checkpoints")
    async def list_checkpoints(
        request: Request,
        thread_id: str | None = None,
        status: CheckpointStatus | None = None,
        trigger: CheckpointTrigger | None = None,
        limit: int = 50,
    ):
        found = await service_of(request).checkpoints.list(
            CheckpointFilter(
                thread_id=thread_id,
                statuses=[status] if status else [],
                triggers=[trigger] if trigger else [],
                limit=limit,
            )
        )
        return {"checkpoints": [_checkpoint_summary(cp) for cp in found]}

    @app.get("/checkpoints/{checkpoint_id}")
    async def get_checkpoint(checkpoint_id: str, request: Request):
        checkpoint = await service_of(request).checkpoints.get(checkpoint_id)
        return checkpoint.model_dump(mode="json")

    @app.post("/checkpoints/{checkpoint_id}/verify")
    async def verify_checkpoint(checkpoint_id: str, request: Request):
        report = await service_of(request).checkpoints.verify(checkpoint_id)
        return report.model_dump(mode="json")

    @app.post("/checkpoints/{checkpoint_id}/recover")
    async def recover_checkpoint(
        checkpoint_id: str, request: Request, body: RecoverRequest | None = None
    ):
        body = body or RecoverRequest()
        options = RecoveryOptions(**body.model_dump(exclude={"wait"}))
        result = await service_of(request).recover(checkpoint_id, options, wait=body.wait)
        if not result.success and result.phase == "load":
            raise HTTPException(status_code=404, detail=result.error)
        return result.model_dump(mode="json")

    @app.get("/health")
    async def health(request: Request):
        service = service_of(request)
        active = await service.workflows.list_active()
        stats = await service.store.stats()
        return {
            "status": "ok",
            "version": __version__,
            "orchestrator": "ready" if service.can_orchestrate else "unavailable",
            "agents": service.agents.ids(),
            "active_workflows": len(active),
            "checkpoints": stats.model_dump(mode="json"),
        }

    return app


def _checkpoint_summary(checkpoint: Checkpoint) -> dict[str, Any]:
    return {
        "id": checkpoint.id,
        "thread_id": checkpoint.thread_id,
        "created_at": checkpoint.created_at.isoformat(),
        "trigger": checkpoint.trigger.value,
        "trigger_reason": checkpoint.trigger_reason,
        "status": checkpoint.status.value,
        "size_bytes": checkpoint.size_bytes,
        "can_resume": checkpoint.recovery.can_resume,
        "blockers": list(checkpoint.recovery.blockers),
    }
