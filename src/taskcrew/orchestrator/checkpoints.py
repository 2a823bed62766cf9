"""Checkpoint store facade with per-task write serialization."""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from taskcrew.config import CheckpointSettings
from taskcrew.orchestrator.errors import NoCheckpoint
from taskcrew.orchestrator.models import CheckpointView
from taskcrew.orchestrator.repository import OrchestratorRepository
from taskcrew.storage.common import utc_now

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CheckpointCleanupResult:
    """Counters for one retention pass."""

    cutoff: datetime
    removed_terminal: int
    removed_invalidated: int

    @property
    def removed(self) -> int:
        return self.removed_terminal + self.removed_invalidated


class CheckpointStore:
    """Append-only checkpoints; one writer per task at a time."""

    def __init__(
        self,
        repository: OrchestratorRepository,
        settings: CheckpointSettings | None = None,
    ) -> None:
        self.repository = repository
        self.settings = settings or CheckpointSettings()
        self._locks: defaultdict[str, threading.Lock] = defaultdict(threading.Lock)
        self._locks_guard = threading.Lock()

    def save(
        self,
        task_id: str,
        step: int,
        snapshot: dict[str, Any],
        cost: float,
    ) -> str:
        """Persist the checkpoint for a completed step and return its id.

        The task must be `in_progress` and `step` must be exactly one past the
        last valid checkpoint.
        """

        with self._task_lock(task_id):
            saved = self.repository.save_checkpoint(
                task_id=task_id,
                step_number=step,
                snapshot=snapshot,
                cumulative_cost=cost,
                keep_last=self.settings.keep_last,
            )
        return saved.checkpoint_id

    def latest(self, task_id: str) -> CheckpointView | None:
        return self.repository.latest_checkpoint(task_id=task_id)

    def resume(self, task_id: str) -> CheckpointView:
        checkpoint = self.latest(task_id)
        if checkpoint is None:
            raise NoCheckpoint(task_id)
        return checkpoint

    def rewind(self, task_id: str, step: int) -> int:
        """Invalidate checkpoints after `step`; returns how many were invalidated."""

        with self._task_lock(task_id):
            return self.repository.rewind_checkpoints(task_id=task_id, step_number=step)

    def list(self, task_id: str, *, include_invalidated: bool = False) -> list[CheckpointView]:
        return self.repository.list_checkpoints(
            task_id=task_id,
            include_invalidated=include_invalidated,
        )

    def cleanup(self, now: datetime | None = None) -> CheckpointCleanupResult:
        cutoff = (now or utc_now()) - timedelta(hours=self.settings.terminal_retention_hours)
        removed_terminal, removed_invalidated = self.repository.cleanup_checkpoints(
            older_than=cutoff,
        )
        if removed_terminal or removed_invalidated:
            logger.info(
                "Checkpoint cleanup removed %d terminal and %d invalidated checkpoints",
                removed_terminal,
                removed_invalidated,
            )
        return CheckpointCleanupResult(
            cutoff=cutoff,
            removed_terminal=removed_terminal,
            removed_invalidated=removed_invalidated,
        )

    def _task_lock(self, task_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks[task_id]
