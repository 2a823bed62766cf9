"""Exceptions and error values raised across the orchestrator."""

from __future__ import annotations

from dataclasses import dataclass, field


class OrchestrationError(RuntimeError):
    """Base class for orchestration failures."""


class InvalidTransition(OrchestrationError):
    """Task/team status change rejected by the state table or a concurrent writer."""

    def __init__(self, entity_id: str, status_from: str | None, status_to: str, reason: str = ""):
        message = f"Invalid transition for {entity_id}: {status_from or '-'} -> {status_to}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)
        self.entity_id = entity_id
        self.status_from = status_from
        self.status_to = status_to


class NoEligibleAgent(OrchestrationError):
    """No active worker holds the required skills."""

    def __init__(self, task_id: str, required: dict[str, float]) -> None:
        skills = ", ".join(f"{name}>={level:.2f}" for name, level in sorted(required.items()))
        super().__init__(f"No eligible agent for task {task_id} (requires {skills or '-'})")
        self.task_id = task_id
        self.required = required


class NoCheckpoint(OrchestrationError):
    """Resume requested for a task without valid checkpoints."""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"No checkpoint for task {task_id}")
        self.task_id = task_id


class CheckpointSequenceError(OrchestrationError):
    """Checkpoint step is not the next step of the task's sequence."""

    def __init__(self, task_id: str, expected_step: int, got_step: int) -> None:
        super().__init__(
            f"Checkpoint step out of sequence for task {task_id}: "
            f"expected {expected_step}, got {got_step}",
        )
        self.task_id = task_id
        self.expected_step = expected_step
        self.got_step = got_step


class BudgetExceeded(OrchestrationError):
    """Dispatch would push the team's cost past its ceiling."""

    def __init__(
        self,
        team_id: str,
        *,
        budget_limit: float,
        committed: float,
        requested: float,
    ) -> None:
        super().__init__(
            f"Budget exceeded for team {team_id}: committed={committed:.4f} "
            f"requested={requested:.4f} limit={budget_limit:.4f}",
        )
        self.team_id = team_id
        self.budget_limit = budget_limit
        self.committed = committed
        self.requested = requested


class CircuitOpenError(OrchestrationError):
    """Invocation refused because the tool's breaker is open."""

    def __init__(self, tool_id: str) -> None:
        super().__init__(f"Circuit open for tool {tool_id}")
        self.tool_id = tool_id


@dataclass(frozen=True, slots=True)
class ExecutionError:
    """Provider-independent error returned by the tool executor."""

    code: str
    detail: str = ""
    tool_id: str | None = None
    transient: bool = False
    timed_out: bool = False
    signals: dict[str, float] = field(default_factory=dict)

    def summary(self) -> str:
        detail = self.detail.strip().splitlines()[0] if self.detail.strip() else ""
        return f"{self.code}: {detail}" if detail else self.code
