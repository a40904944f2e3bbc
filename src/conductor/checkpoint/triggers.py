"""Checkpoint trigger policy — decides which trigger points produce a checkpoint.

Automatic triggers follow the per-trigger config flags, and state_transition
checkpoints may be coalesced inside a time window. Failures of automatic
checkpoints are logged and swallowed so they never stop a workflow.
``manual`` and ``before_destructive`` checkpoints are never coalesced and
their failures propagate to the caller.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

from conductor.checkpoint.errors import CheckpointDisabledError
from conductor.checkpoint.manager import CheckpointManager
from conductor.checkpoint.models import Checkpoint, CheckpointTrigger
from conductor.config import CheckpointConfig
from conductor.models import WorkflowState

logger = logging.getLogger("conductor.checkpoint.triggers")

NEVER_DROPPED = frozenset({CheckpointTrigger.MANUAL, CheckpointTrigger.BEFORE_DESTRUCTIVE})


class CheckpointTriggerPolicy:
    def __init__(
        self,
        manager: CheckpointManager,
        config: CheckpointConfig,
        *,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.manager = manager
        self.config = config
        self._clock = clock
        self._last_taken: dict[str, float] = {}

    def should_checkpoint(self, trigger: CheckpointTrigger, thread_id: str) -> bool:
        if not self.config.enabled:
            return False
        match trigger:
            case CheckpointTrigger.MANUAL | CheckpointTrigger.BEFORE_DESTRUCTIVE:
                return True
            case CheckpointTrigger.STATE_TRANSITION:
                if not self.config.on_state_transition:
                    return False
                window = self.config.coalesce_window_seconds
                last = self._last_taken.get(thread_id)
                return not (window > 0 and last is not None and self._clock() - last < window)
            case CheckpointTrigger.AGENT_COMPLETE:
                return self.config.on_agent_complete
            case CheckpointTrigger.USER_APPROVAL:
                return self.config.on_user_approval
            case CheckpointTrigger.ERROR_OCCURRED:
                return self.config.on_error
            case CheckpointTrigger.TIME_INTERVAL:
                return self.config.auto_checkpoint_interval_seconds > 0
        return False

    async def fire(
        self,
        state: WorkflowState,
        trigger: CheckpointTrigger,
        reason: str = "",
        *,
        next_node: str | None = None,
    ) -> Checkpoint | None:
        """Take a checkpoint for ``trigger`` if the policy allows it.

        Returns the checkpoint, or None when the trigger was skipped or an
        automatic checkpoint failed.

        Raises:
            CheckpointDisabledError: a manual checkpoint was requested while
                checkpointing is disabled.
            CheckpointError: a ``manual`` or ``before_destructive`` checkpoint failed.
        """
        if trigger in NEVER_DROPPED:
            if not self.config.enabled:
                if trigger == CheckpointTrigger.MANUAL:
                    raise CheckpointDisabledError()
                logger.warning(
                    "Checkpointing disabled; no %s checkpoint for thread %s",
                    trigger.value,
                    state.thread_id,
                )
                return None
            checkpoint = await self.manager.create_checkpoint(
                state, trigger, reason, next_node=next_node
            )
            self._last_taken[state.thread_id] = self._clock()
            return checkpoint

        if not self.should_checkpoint(trigger, state.thread_id):
            logger.debug("Skipping %s checkpoint for thread %s", trigger.value, state.thread_id)
            return None

        try:
            checkpoint = await self.manager.create_checkpoint(
                state, trigger, reason, next_node=next_node
            )
        except Exception:
            logger.exception(
                "Automatic %s checkpoint failed for thread %s", trigger.value, state.thread_id
            )
            return None
        self._last_taken[state.thread_id] = self._clock()
        return checkpoint
