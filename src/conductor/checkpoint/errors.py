"""Checkpoint and recovery error taxonomy.

Every error carries a machine-readable ``code`` so the HTTP layer and the CLI
can report failures without parsing messages.
"""

from __future__ import annotations


class CheckpointError(Exception):
    code = "CHECKPOINT_ERROR"

    def __init__(self, message: str, *, checkpoint_id: str | None = None):
        self.checkpoint_id = checkpoint_id
        super().__init__(message)


class CheckpointNotFoundError(CheckpointError):
    code = "CHECKPOINT_NOT_FOUND"

    def __init__(self, checkpoint_id: str):
        super().__init__(f"Checkpoint not found: {checkpoint_id}", checkpoint_id=checkpoint_id)


class CheckpointIntegrityError(CheckpointError):
    """Recomputed checksums do not match the stored ones."""

    code = "CHECKPOINT_INTEGRITY"

    def __init__(self, checkpoint_id: str, sections: list[str]):
        self.sections = sections
        super().__init__(
            f"Checkpoint {checkpoint_id} failed integrity check: {', '.join(sections)}",
            checkpoint_id=checkpoint_id,
        )


class CheckpointCorruptionError(CheckpointError):
    """A stored section could not be parsed at all."""

    code = "CHECKPOINT_CORRUPTED"

    def __init__(self, checkpoint_id: str, section: str, detail: str = ""):
        self.section = section
        msg = f"Checkpoint {checkpoint_id} section '{section}' is corrupted"
        if detail:
            msg = f"{msg}: {detail}"
        super().__init__(msg, checkpoint_id=checkpoint_id)


class CheckpointStoreError(CheckpointError):
    code = "CHECKPOINT_STORE"

    def __init__(self, operation: str, message: str, *, checkpoint_id: str | None = None):
        self.operation = operation
        super().__init__(f"Checkpoint store {operation} failed: {message}", checkpoint_id=checkpoint_id)


class CheckpointSizeError(CheckpointError):
    code = "CHECKPOINT_SIZE"

    def __init__(self, limit_type: str, limit: int, actual: int, *, checkpoint_id: str | None = None):
        self.limit_type = limit_type
        self.limit = limit
        self.actual = actual
        super().__init__(
            f"Checkpoint {limit_type} {actual} bytes exceeds limit of {limit} bytes",
            checkpoint_id=checkpoint_id,
        )


class CheckpointDisabledError(CheckpointError):
    code = "CHECKPOINT_DISABLED"

    def __init__(self) -> None:
        super().__init__("Checkpointing is disabled in configuration")


class RecoveryError(CheckpointError):
    code = "RECOVERY_FAILED"

    def __init__(self, phase: str, message: str, *, checkpoint_id: str | None = None):
        self.phase = phase
        super().__init__(f"Recovery failed during {phase}: {message}", checkpoint_id=checkpoint_id)


class RecoveryBlockedError(RecoveryError):
    code = "RECOVERY_BLOCKED"

    def __init__(self, checkpoint_id: str, blockers: list[str]):
        self.blockers = blockers
        super().__init__(
            "blockers",
            "; ".join(blockers) or "checkpoint is not resumable",
            checkpoint_id=checkpoint_id,
        )
