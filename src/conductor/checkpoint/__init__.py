"""Checkpointing and recovery for orchestrated workflows.

Snapshots are hashed section by section, persisted in SQLite and verified
before any recovery uses them.

Key exports:
    Checkpoint, CheckpointTrigger, CheckpointStatus — snapshot models
    RecoveryOptions, RecoveryResult — recovery request/outcome
    CheckpointError and subclasses — error taxonomy

Components live in their modules: ``store.CheckpointStore``,
``manager.CheckpointManager``, ``triggers.CheckpointTriggerPolicy`` and
``recovery.RecoveryManager``.
"""

from conductor.checkpoint.errors import (
    CheckpointCorruptionError,
    CheckpointDisabledError,
    CheckpointError,
    CheckpointIntegrityError,
    CheckpointNotFoundError,
    CheckpointSizeError,
    CheckpointStoreError,
    RecoveryBlockedError,
    RecoveryError,
)
from conductor.checkpoint.models import (
    SECTIONS,
    Checkpoint,
    CheckpointStatus,
    CheckpointTrigger,
    IntegrityReport,
    RecoveryOptions,
    RecoveryResult,
    RecoveryStatus,
)

__all__ = [
    "SECTIONS",
    "Checkpoint",
    "CheckpointCorruptionError",
    "CheckpointDisabledError",
    "CheckpointError",
    "CheckpointIntegrityError",
    "CheckpointNotFoundError",
    "CheckpointSizeError",
    "CheckpointStatus",
    "CheckpointStoreError",
    "CheckpointTrigger",
    "IntegrityReport",
    "RecoveryBlockedError",
    "RecoveryError",
    "RecoveryOptions",
    "RecoveryResult",
    "RecoveryStatus",
]
