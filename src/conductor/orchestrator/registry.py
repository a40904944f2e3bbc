"""Workflow registry — SQLite persistence of one WorkflowState per thread.

Key exports:
    WorkflowRegistry — create/get/save/list for workflow_threads
    WorkflowThread — a persisted thread: state, next node, replay flag

The stored ``next_node`` is what makes suspension durable: a thread waiting
for approval is stored with the interrupt marker and resumes from the registry
after a restart, never from in-memory continuations.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

import aiosqlite
from pydantic import BaseModel

from conductor.models import TERMINAL_STATUSES, WorkflowState, WorkflowStatus

logger = logging.getLogger("conductor.orchestrator.registry")


class WorkflowThread(BaseModel):
    thread_id: str
    state: WorkflowState
    next_node: str
    last_checkpoint_id: str | None = None
    replay_mode: bool = False
    created_at: datetime | None = None
    updated_at: datetime | None = None


class WorkflowRegistry:
    """SQLite-backed persistence for workflow threads.

    Takes an already-open aiosqlite connection. Call `initialize()` to create tables.
    """

    def __init__(self, db: aiosqlite.Connection):
        self._db = db

    async def initialize(self) -> None:
        await self._db.executescript(_SCHEMA_SQL)
        await self._db.commit()
        logger.info("Workflow registry tables initialized")

    async def create(self, state: WorkflowState, next_node: str) -> WorkflowThread:
        now = datetime.now(timezone.utc)
        await self._db.execute(
            """
            INSERT INTO workflow_threads (
                thread_id, tenant_id, project_id, task_id, status, next_node,
                state, replay_mode, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, 0, ?, ?)
            """,
            (
                state.thread_id,
                state.tenant_id,
                state.project_id,
                state.task_id,
                state.status.value,
                next_node,
                state.model_dump_json(),
                _dt_to_str(now),
                _dt_to_str(now),
            ),
        )
        await self._db.commit()
        return WorkflowThread(
            thread_id=state.thread_id,
            state=state,
            next_node=next_node,
            created_at=now,
            updated_at=now,
        )

    async def get(self, thread_id: str) -> WorkflowThread | None:
        cursor = await self._db.execute(
            "SELECT * FROM workflow_threads WHERE thread_id = ?", (thread_id,)
        )
        row = await cursor.fetchone()
        return _row_to_thread(row) if row else None

    async def save(self, state: WorkflowState, next_node: str) -> None:
        """Persist the state and next node after a transition."""
        await self._db.execute(
            """
            UPDATE workflow_threads
            SET status = ?, next_node = ?, state = ?, updated_at = ?
            WHERE thread_id = ?
            """,
            (
                state.status.value,
                next_node,
                state.model_dump_json(),
                _dt_to_str(datetime.now(timezone.utc)),
                state.thread_id,
            ),
        )
        await self._db.commit()

    async def restore(
        self,
        state: WorkflowState,
        next_node: str,
        *,
        checkpoint_id: str,
        replay_mode: bool = False,
    ) -> None:
        """Upsert a thread reconstructed from a checkpoint."""
        now = _dt_to_str(datetime.now(timezone.utc))
        await self._db.execute(
            """
            INSERT INTO workflow_threads (
                thread_id, tenant_id, project_id, task_id, status, next_node,
                state, last_checkpoint_id, replay_mode, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(thread_id) DO UPDATE SET
                status = excluded.status,
                next_node = excluded.next_node,
                state = excluded.state,
                last_checkpoint_id = excluded.last_checkpoint_id,
                replay_mode = excluded.replay_mode,
                updated_at = excluded.updated_at
            """,
            (
                state.thread_id,
                state.tenant_id,
                state.project_id,
                state.task_id,
                state.status.value,
                next_node,
                state.model_dump_json(),
                checkpoint_id,
                int(replay_mode),
                now,
                now,
            ),
        )
        await self._db.commit()
        logger.info(
            "Thread %s restored from checkpoint %s (status=%s next=%s replay=%s)",
            state.thread_id,
            checkpoint_id,
            state.status.value,
            next_node,
            replay_mode,
        )

    async def set_last_checkpoint(self, thread_id: str, checkpoint_id: str) -> None:
        await self._db.execute(
            "UPDATE workflow_threads SET last_checkpoint_id = ? WHERE thread_id = ?",
            (checkpoint_id, thread_id),
        )
        await self._db.commit()

    async def set_replay_mode(self, thread_id: str, replay_mode: bool) -> None:
        await self._db.execute(
            "UPDATE workflow_threads SET replay_mode = ? WHERE thread_id = ?",
            (int(replay_mode), thread_id),
        )
        await self._db.commit()

    async def list_threads(
        self, *, statuses: list[WorkflowStatus] | None = None
    ) -> list[WorkflowThread]:
        sql = "SELECT * FROM workflow_threads"
        params: tuple = ()
        if statuses:
            sql += f" WHERE status IN ({', '.join('?' for _ in statuses)})"
            params = tuple(s.value for s in statuses)
        sql += " ORDER BY created_at"
        cursor = await self._db.execute(sql, params)
        rows = await cursor.fetchall()
        return [_row_to_thread(r) for r in rows]

    async def list_active(self) -> list[WorkflowThread]:
        active = [s for s in WorkflowStatus if s not in TERMINAL_STATUSES]
        return await self.list_threads(statuses=active)


# ── SQL Schema ───────────────────────────────────────────────────────────────

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS workflow_threads (
    thread_id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    project_id TEXT NOT NULL,
    task_id TEXT NOT NULL,

    status TEXT NOT NULL DEFAULT 'pending',
    next_node TEXT NOT NULL,
    state TEXT NOT NULL,

    last_checkpoint_id TEXT,
    replay_mode INTEGER DEFAULT 0,

    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
    updated_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_workflow_threads_status
    ON workflow_threads(status);
CREATE INDEX IF NOT EXISTS idx_workflow_threads_project
    ON workflow_threads(tenant_id, project_id);
"""


# ── Row-to-Model Converters ─────────────────────────────────────────────────


def _dt_to_str(dt: datetime | None) -> str | None:
    if dt is None:
        return None
    return dt.isoformat()


def _str_to_dt(s: str | None) -> datetime | None:
    if not s:
        return None
    try:
        return datetime.fromisoformat(s)
    except (ValueError, TypeError):
        return None


def _row_to_thread(row: aiosqlite.Row) -> WorkflowThread:
    return WorkflowThread(
        thread_id=row["thread_id"],
        state=WorkflowState.model_validate_json(row["state"]),
        next_node=row["next_node"],
        last_checkpoint_id=row["last_checkpoint_id"],
        replay_mode=bool(row["replay_mode"]),
        created_at=_str_to_dt(row["created_at"]),
        updated_at=_str_to_dt(row["updated_at"]),
    )
