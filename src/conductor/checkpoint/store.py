"""Checkpoint store — SQLite persistence for checkpoint snapshots.

Key exports:
    CheckpointStore — put/get/list/delete/stats plus status updates, lookup by
        overall hash and retention sweeps.

One row per (thread_id, checkpoint id). Each snapshot section is stored as its
canonical JSON text in its own column so a single tampered section can be
detected and named. Rows are indexed by overall hash and by
(thread_id, created_at) for retention range queries.

With ``compress=True`` new sections are written as zlib-compressed blobs.
Reads accept either form per column and refuse to inflate a section past
``max_size``.
"""

from __future__ import annotations

import asyncio
import json
import logging
import weakref
import zlib
from datetime import datetime, timedelta, timezone

import aiosqlite

from conductor.checkpoint.errors import (
    CheckpointCorruptionError,
    CheckpointNotFoundError,
    CheckpointSizeError,
    CheckpointStoreError,
)
from conductor.checkpoint.models import (
    SECTIONS,
    Checkpoint,
    CheckpointChecksums,
    CheckpointFilter,
    CheckpointStats,
    CheckpointStatus,
    CheckpointTrigger,
    RecoveryInfo,
    SweepResult,
)
from conductor.checkpoint.redaction import canonical_json

logger = logging.getLogger("conductor.checkpoint.store")

# Status changes a stored checkpoint may undergo after it was written.
_STATUS_CHANGES: dict[CheckpointStatus, frozenset[CheckpointStatus]] = {
    CheckpointStatus.CREATING: frozenset(
        {CheckpointStatus.VALID, CheckpointStatus.CORRUPTED}
    ),
    CheckpointStatus.VALID: frozenset(
        {CheckpointStatus.CORRUPTED, CheckpointStatus.EXPIRED, CheckpointStatus.ARCHIVED}
    ),
    CheckpointStatus.ARCHIVED: frozenset(
        {CheckpointStatus.CORRUPTED, CheckpointStatus.EXPIRED}
    ),
    CheckpointStatus.EXPIRED: frozenset({CheckpointStatus.CORRUPTED}),
    CheckpointStatus.CORRUPTED: frozenset(),
}


class CheckpointStore:
    """SQLite-backed checkpoint persistence.

    Takes an already-open aiosqlite connection. Call `initialize()` to create
    tables. Reads are safe across workflow threads; writes are serialized per
    checkpoint id.
    """

    def __init__(
        self,
        db: aiosqlite.Connection,
        *,
        max_size: int = 100 * 1024 * 1024,
        compress: bool = False,
    ):
        self._db = db
        self.max_size = max_size
        self.compress = compress
        # Entries live only while a write on that id holds the lock
        self._write_locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def _lock_for(self, checkpoint_id: str) -> asyncio.Lock:
        lock = self._write_locks.get(checkpoint_id)
        if lock is None:
            lock = asyncio.Lock()
            self._write_locks[checkpoint_id] = lock
        return lock

    async def initialize(self) -> None:
        await self._db.executescript(_SCHEMA_SQL)
        await self._db.commit()
        logger.info("Checkpoint store tables initialized")

    # ── Write ────────────────────────────────────────────────────────────────

    async def put(self, checkpoint: Checkpoint) -> None:
        """Persist a checkpoint (idempotent upsert keyed by id).

        Raises:
            CheckpointSizeError: serialized sections exceed ``max_size``. Nothing
                is written.
            CheckpointStoreError: the id already holds a valid checkpoint with
                different content, or checksums are missing.
        """
        if checkpoint.checksums is None:
            raise CheckpointStoreError(
                "put", "checkpoint has no checksums", checkpoint_id=checkpoint.id
            )

        texts = {name: canonical_json(checkpoint.section(name)) for name in SECTIONS}
        size = sum(len(t.encode("utf-8")) for t in texts.values())
        if size > self.max_size:
            raise CheckpointSizeError("size", self.max_size, size, checkpoint_id=checkpoint.id)

        stored: dict[str, str | bytes] = {
            name: zlib.compress(text.encode("utf-8")) if self.compress else text
            for name, text in texts.items()
        }

        async with self._lock_for(checkpoint.id):
            cursor = await self._db.execute(
                "SELECT status, overall_hash FROM checkpoints WHERE id = ?",
                (checkpoint.id,),
            )
            existing = await cursor.fetchone()
            if existing is not None:
                if existing["overall_hash"] == checkpoint.checksums.overall:
                    logger.debug("Checkpoint %s already stored, skipping put", checkpoint.id)
                    return
                if existing["status"] != CheckpointStatus.CREATING.value:
                    raise CheckpointStoreError(
                        "put",
                        "stored checkpoint is immutable and content differs",
                        checkpoint_id=checkpoint.id,
                    )

            await self._db.execute(
                """
                INSERT INTO checkpoints (
                    id, thread_id, created_at, trigger, trigger_reason, status,
                    overall_hash, checksums, recovery, size_bytes,
                    workflow, agents, context, file_system
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    status = excluded.status,
                    overall_hash = excluded.overall_hash,
                    checksums = excluded.checksums,
                    recovery = excluded.recovery,
                    size_bytes = excluded.size_bytes,
                    workflow = excluded.workflow,
                    agents = excluded.agents,
                    context = excluded.context,
                    file_system = excluded.file_system
                """,
                (
                    checkpoint.id,
                    checkpoint.thread_id,
                    _dt_to_str(checkpoint.created_at),
                    checkpoint.trigger.value,
                    checkpoint.trigger_reason,
                    checkpoint.status.value,
                    checkpoint.checksums.overall,
                    checkpoint.checksums.model_dump_json(),
                    checkpoint.recovery.model_dump_json(),
                    size,
                    stored["workflow"],
                    stored["agents"],
                    stored["context"],
                    stored["file_system"],
                ),
            )
            await self._db.commit()
        logger.info(
            "Stored checkpoint %s (thread=%s trigger=%s size=%d)",
            checkpoint.id,
            checkpoint.thread_id,
            checkpoint.trigger.value,
            size,
        )

    async def update_status(self, checkpoint_id: str, status: CheckpointStatus) -> None:
        cursor = await self._db.execute(
            "SELECT status FROM checkpoints WHERE id = ?", (checkpoint_id,)
        )
        row = await cursor.fetchone()
        if row is None:
            raise CheckpointNotFoundError(checkpoint_id)
        current = CheckpointStatus(row["status"])
        if current == status:
            return
        if status not in _STATUS_CHANGES[current]:
            raise CheckpointStoreError(
                "update_status",
                f"cannot change status {current.value} -> {status.value}",
                checkpoint_id=checkpoint_id,
            )
        await self._db.execute(
            "UPDATE checkpoints SET status = ? WHERE id = ?", (status.value, checkpoint_id)
        )
        await self._db.commit()
        logger.info("Checkpoint %s status %s -> %s", checkpoint_id, current.value, status.value)

    async def delete(self, checkpoint_id: str) -> bool:
        async with self._lock_for(checkpoint_id):
            cursor = await self._db.execute(
                "DELETE FROM checkpoints WHERE id = ?", (checkpoint_id,)
            )
            await self._db.commit()
        return cursor.rowcount > 0

    # ── Read ─────────────────────────────────────────────────────────────────

    async def get(self, checkpoint_id: str) -> Checkpoint | None:
        """Load a checkpoint.

        Raises:
            CheckpointCorruptionError: a section's stored text is not valid JSON.
            CheckpointSizeError: a compressed section inflates past ``max_size``.
        """
        cursor = await self._db.execute(
            "SELECT * FROM checkpoints WHERE id = ?", (checkpoint_id,)
        )
        row = await cursor.fetchone()
        return _row_to_checkpoint(row, self.max_size) if row else None

    async def get_by_hash(self, overall_hash: str) -> Checkpoint | None:
        cursor = await self._db.execute(
            "SELECT * FROM checkpoints WHERE overall_hash = ? ORDER BY created_at DESC LIMIT 1",
            (overall_hash,),
        )
        row = await cursor.fetchone()
        return _row_to_checkpoint(row, self.max_size) if row else None

    async def get_raw_sections(self, checkpoint_id: str) -> tuple[dict[str, str | None], str]:
        """Return the stored section texts and checksums JSON for verification.

        A section that cannot be inflated or decoded is returned as None.
        """
        cursor = await self._db.execute(
            "SELECT workflow, agents, context, file_system, checksums "
            "FROM checkpoints WHERE id = ?",
            (checkpoint_id,),
        )
        row = await cursor.fetchone()
        if row is None:
            raise CheckpointNotFoundError(checkpoint_id)
        texts: dict[str, str | None] = {}
        for name in SECTIONS:
            try:
                texts[name] = _section_text(checkpoint_id, name, row[name], self.max_size)
            except CheckpointCorruptionError:
                logger.warning("Checkpoint %s section %s cannot be decoded", checkpoint_id, name)
                texts[name] = None
        return texts, row["checksums"]

    async def get_status(self, checkpoint_id: str) -> CheckpointStatus | None:
        cursor = await self._db.execute(
            "SELECT status FROM checkpoints WHERE id = ?", (checkpoint_id,)
        )
        row = await cursor.fetchone()
        return CheckpointStatus(row["status"]) if row else None

    async def thread_id_for(self, checkpoint_id: str) -> str | None:
        cursor = await self._db.execute(
            "SELECT thread_id FROM checkpoints WHERE id = ?", (checkpoint_id,)
        )
        row = await cursor.fetchone()
        return row["thread_id"] if row else None

    async def list(self, filter: CheckpointFilter | None = None) -> list[Checkpoint]:
        """List checkpoints newest first, optionally filtered."""
        sql, params = _filter_sql("SELECT * FROM checkpoints", filter)
        cursor = await self._db.execute(sql, params)
        rows = await cursor.fetchall()
        return [_row_to_checkpoint(r, self.max_size) for r in rows]

    async def latest(
        self, thread_id: str, status: CheckpointStatus = CheckpointStatus.VALID
    ) -> Checkpoint | None:
        found = await self.list(
            CheckpointFilter(thread_id=thread_id, statuses=[status], limit=1)
        )
        return found[0] if found else None

    async def stats(self, thread_id: str | None = None) -> CheckpointStats:
        where, params = ("WHERE thread_id = ?", (thread_id,)) if thread_id else ("", ())
        cursor = await self._db.execute(
            f"SELECT status, COUNT(*) AS n, SUM(size_bytes) AS size, "
            f"MIN(created_at) AS oldest, MAX(created_at) AS newest "
            f"FROM checkpoints {where} GROUP BY status",
            params,
        )
        rows = await cursor.fetchall()
        stats = CheckpointStats()
        oldest: list[str] = []
        newest: list[str] = []
        for row in rows:
            stats.by_status[row["status"]] = row["n"]
            stats.total += row["n"]
            stats.total_size_bytes += row["size"] or 0
            oldest.append(row["oldest"])
            newest.append(row["newest"])
        if rows:
            stats.oldest = _str_to_dt(min(oldest))
            stats.newest = _str_to_dt(max(newest))
        return stats

    # ── Retention ────────────────────────────────────────────────────────────

    async def sweep(
        self,
        thread_id: str,
        *,
        max_count: int,
        max_age: timedelta,
        now: datetime | None = None,
    ) -> SweepResult:
        """Apply retention to one thread's checkpoints.

        Valid checkpoints older than ``max_age`` are marked expired; then the
        oldest checkpoints are deleted until at most ``max_count`` remain. The
        most recent valid checkpoint is never expired or deleted.
        """
        now = now or datetime.now(timezone.utc)
        cutoff = _dt_to_str(now - max_age)
        result = SweepResult()

        latest = await self.latest(thread_id)
        protected = latest.id if latest else None

        cursor = await self._db.execute(
            "SELECT id FROM checkpoints WHERE thread_id = ? AND status = ? AND created_at < ? "
            "ORDER BY created_at",
            (thread_id, CheckpointStatus.VALID.value, cutoff),
        )
        for row in await cursor.fetchall():
            if row["id"] == protected:
                continue
            await self._db.execute(
                "UPDATE checkpoints SET status = ? WHERE id = ?",
                (CheckpointStatus.EXPIRED.value, row["id"]),
            )
            result.expired.append(row["id"])

        cursor = await self._db.execute(
            "SELECT id FROM checkpoints WHERE thread_id = ? ORDER BY created_at",
            (thread_id,),
        )
        ids = [row["id"] for row in await cursor.fetchall()]
        excess = len(ids) - max_count
        for checkpoint_id in ids:
            if excess <= 0:
                break
            if checkpoint_id == protected:
                continue
            await self._db.execute("DELETE FROM checkpoints WHERE id = ?", (checkpoint_id,))
            result.deleted.append(checkpoint_id)
            excess -= 1

        await self._db.commit()
        if result.expired or result.deleted:
            logger.info(
                "Retention sweep for thread %s: expired=%d deleted=%d",
                thread_id,
                len(result.expired),
                len(result.deleted),
            )
        return result


# ── SQL Schema ───────────────────────────────────────────────────────────────

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS checkpoints (
    id TEXT PRIMARY KEY,
    thread_id TEXT NOT NULL,
    created_at TEXT NOT NULL,

    trigger TEXT NOT NULL,
    trigger_reason TEXT DEFAULT '',
    status TEXT NOT NULL DEFAULT 'creating',

    overall_hash TEXT NOT NULL,
    checksums TEXT NOT NULL,
    recovery TEXT NOT NULL DEFAULT '{}',
    size_bytes INTEGER DEFAULT 0,

    workflow TEXT NOT NULL,
    agents TEXT NOT NULL,
    context TEXT NOT NULL,
    file_system TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_checkpoints_thread_created
    ON checkpoints(thread_id, created_at);
CREATE INDEX IF NOT EXISTS idx_checkpoints_hash
    ON checkpoints(overall_hash);
CREATE INDEX IF NOT EXISTS idx_checkpoints_status
    ON checkpoints(status);
"""


# ── Helpers ──────────────────────────────────────────────────────────────────


def _filter_sql(base: str, filter: CheckpointFilter | None) -> tuple[str, tuple]:
    clauses: list[str] = []
    params: list = []
    if filter is not None:
        if filter.thread_id:
            clauses.append("thread_id = ?")
            params.append(filter.thread_id)
        if filter.statuses:
            clauses.append(f"status IN ({', '.join('?' for _ in filter.statuses)})")
            params.extend(s.value for s in filter.statuses)
        if filter.triggers:
            clauses.append(f"trigger IN ({', '.join('?' for _ in filter.triggers)})")
            params.extend(t.value for t in filter.triggers)
        if filter.since:
            clauses.append("created_at >= ?")
            params.append(_dt_to_str(filter.since))
        if filter.until:
            clauses.append("created_at <= ?")
            params.append(_dt_to_str(filter.until))
    sql = base
    if clauses:
        sql += " WHERE " + " AND ".join(clauses)
    sql += " ORDER BY created_at DESC, rowid DESC"
    if filter is not None and filter.limit:
        sql += " LIMIT ?"
        params.append(filter.limit)
    return sql, tuple(params)


def _dt_to_str(dt: datetime | None) -> str | None:
    """Convert datetime to a UTC ISO string so lexical order matches time order."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat()


def _str_to_dt(s: str | None) -> datetime | None:
    if not s:
        return None
    try:
        return datetime.fromisoformat(s)
    except (ValueError, TypeError):
        return None


def _section_text(checkpoint_id: str, name: str, value: str | bytes, max_size: int) -> str:
    """Stored section as JSON text. Compressed sections are inflated up to ``max_size``.

    Raises:
        CheckpointCorruptionError: the blob is not a complete zlib stream of UTF-8.
        CheckpointSizeError: the inflated section would exceed ``max_size``.
    """
    if not isinstance(value, bytes):
        return value
    inflater = zlib.decompressobj()
    try:
        raw = inflater.decompress(value, max_size + 1)
    except zlib.error as exc:
        raise CheckpointCorruptionError(checkpoint_id, name, str(exc)) from exc
    if len(raw) > max_size:
        raise CheckpointSizeError(
            "decompressed size", max_size, len(raw), checkpoint_id=checkpoint_id
        )
    if not inflater.eof:
        raise CheckpointCorruptionError(checkpoint_id, name, "truncated zlib stream")
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise CheckpointCorruptionError(checkpoint_id, name, str(exc)) from exc


def _row_to_checkpoint(row: aiosqlite.Row, max_size: int) -> Checkpoint:
    sections = {}
    for name in SECTIONS:
        text = _section_text(row["id"], name, row[name], max_size)
        try:
            sections[name] = json.loads(text)
        except (json.JSONDecodeError, TypeError) as exc:
            raise CheckpointCorruptionError(row["id"], name, str(exc)) from exc

    return Checkpoint(
        id=row["id"],
        thread_id=row["thread_id"],
        created_at=_str_to_dt(row["created_at"]),
        trigger=CheckpointTrigger(row["trigger"]),
        trigger_reason=row["trigger_reason"] or "",
        status=CheckpointStatus(row["status"]),
        checksums=CheckpointChecksums.model_validate_json(row["checksums"]),
        recovery=RecoveryInfo.model_validate_json(row["recovery"] or "{}"),
        size_bytes=row["size_bytes"] or 0,
        **sections,
    )
