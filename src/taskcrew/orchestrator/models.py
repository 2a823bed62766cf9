"""Domain models for teams, agents, tasks, and the execution ledger."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from taskcrew.orchestrator.skills import Capability, Skill, Specialization


class TeamStatus(str, Enum):
    """Team lifecycle states."""

    FORMING = "forming"
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    ABORTED = "aborted"


class AgentRole(str, Enum):
    MANAGER = "manager"
    WORKER = "worker"


class TaskStatus(str, Enum):
    """Durable task lifecycle states."""

    PENDING = "pending"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    REVIEW = "review"
    IN_REVISION = "in_revision"
    APPROVED = "approved"
    ABORTED = "aborted"


TERMINAL_TASK_STATUSES = frozenset({TaskStatus.APPROVED, TaskStatus.ABORTED})
TERMINAL_TEAM_STATUSES = frozenset({TeamStatus.COMPLETED, TeamStatus.ABORTED})

TASK_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.ASSIGNED, TaskStatus.ABORTED}),
    TaskStatus.ASSIGNED: frozenset({TaskStatus.IN_PROGRESS, TaskStatus.ABORTED}),
    TaskStatus.IN_PROGRESS: frozenset({TaskStatus.REVIEW, TaskStatus.ABORTED}),
    TaskStatus.REVIEW: frozenset(
        {TaskStatus.APPROVED, TaskStatus.IN_REVISION, TaskStatus.ABORTED},
    ),
    TaskStatus.IN_REVISION: frozenset({TaskStatus.IN_PROGRESS, TaskStatus.ABORTED}),
    TaskStatus.APPROVED: frozenset(),
    TaskStatus.ABORTED: frozenset(),
}

TEAM_TRANSITIONS: dict[TeamStatus, frozenset[TeamStatus]] = {
    TeamStatus.FORMING: frozenset({TeamStatus.ACTIVE, TeamStatus.ABORTED}),
    TeamStatus.ACTIVE: frozenset(
        {TeamStatus.PAUSED, TeamStatus.COMPLETED, TeamStatus.ABORTED},
    ),
    TeamStatus.PAUSED: frozenset({TeamStatus.ACTIVE, TeamStatus.ABORTED}),
    TeamStatus.COMPLETED: frozenset(),
    TeamStatus.ABORTED: frozenset(),
}


def can_transition(status_from: TaskStatus, status_to: TaskStatus) -> bool:
    """Check a task transition against the fixed state table."""

    return status_to in TASK_TRANSITIONS[status_from]


def is_valid_status_path(path: list[TaskStatus]) -> bool:
    """True when consecutive statuses form a walk through the state table from pending."""

    if not path:
        return True
    if path[0] != TaskStatus.PENDING:
        return False
    return all(can_transition(prev, nxt) for prev, nxt in zip(path, path[1:], strict=False))


class BreakerState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class FailureCategory(str, Enum):
    """Exactly one category is assigned to each failed execution."""

    AMBIGUITY = "ambiguity"
    CAPABILITY_GAP = "capability_gap"
    COORDINATION_FAILURE = "coordination_failure"
    TOOL_FAILURE = "tool_failure"
    CONTEXT_LIMITATION = "context_limitation"
    BOUNDARY_VIOLATION = "boundary_violation"
    LOGICAL_IMPOSSIBILITY = "logical_impossibility"
    RESOURCE_EXHAUSTION = "resource_exhaustion"
    TEMPORARY_OUTAGE = "temporary_outage"


class RecoveryAction(str, Enum):
    REQUEST_CLARIFICATION = "request_clarification"
    REASSIGN = "reassign"
    DECOMPOSE = "decompose"
    REPLACE_TOOL_INTEGRATION = "replace_tool_integration"
    REDUCE_SCOPE = "reduce_scope"
    ABORT = "abort"
    REQUEST_BUDGET = "request_budget"
    RETRY_WITH_BACKOFF = "retry_with_backoff"


class EscalationPriority(str, Enum):
    NO_ESCALATION = "no_escalation"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]

    def at_least(self, other: EscalationPriority) -> EscalationPriority:
        return self if self.rank >= other.rank else other


_PRIORITY_RANK = {
    EscalationPriority.NO_ESCALATION: 0,
    EscalationPriority.LOW: 1,
    EscalationPriority.MEDIUM: 2,
    EscalationPriority.HIGH: 3,
    EscalationPriority.CRITICAL: 4,
}


class InterventionType(str, Enum):
    CLARIFICATION = "clarification"
    SKILL_GAP_RESOLUTION = "skill_gap_resolution"
    TOOL_INTEGRATION_FIX = "tool_integration_fix"
    POLICY_DECISION = "policy_decision"


class ReviewDecision(str, Enum):
    APPROVED = "approved"
    REVISION_REQUESTED = "revision_requested"
    REJECTED = "rejected"


class RevisionTrend(str, Enum):
    IMPROVING = "improving"
    STABLE = "stable"
    DIMINISHING = "diminishing"
    COLLAPSED = "collapsed"


class RevisionAdvice(str, Enum):
    """Analyzer recommendation, ordered from most to least favorable."""

    CONTINUE_REVISIONS = "continue_revisions"
    CONSIDER_ABORTING = "consider_aborting"
    STRONGLY_ABORT = "strongly_abort"
    ABANDON = "abandon"


class EscalationStatus(str, Enum):
    OPEN = "open"
    RESOLVED = "resolved"


class EscalationResolution(str, Enum):
    APPROVE = "approve"
    CLARIFY = "clarify"
    REASSIGN = "reassign"


@dataclass(slots=True)
class PlannedStep:
    """One tool-backed step of a task plan."""

    description: str
    capabilities: tuple[Capability, ...]
    keywords: tuple[str, ...] = ()

    def to_payload(self) -> dict[str, Any]:
        return {
            "description": self.description,
            "capabilities": [capability.value for capability in self.capabilities],
            "keywords": list(self.keywords),
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> PlannedStep:
        return cls(
            description=str(payload.get("description", "")),
            capabilities=tuple(Capability(value) for value in payload.get("capabilities", [])),
            keywords=tuple(str(value) for value in payload.get("keywords", [])),
        )


@dataclass(slots=True)
class TeamCreate:
    """Input payload for team formation."""

    goal: str
    budget_limit: float | None = None
    team_id: str | None = None


@dataclass(slots=True)
class AgentCreate:
    """Input payload for creating one agent."""

    role: AgentRole
    skills: dict[Skill, float]
    permitted_tools: tuple[str, ...] = ()
    specialization: Specialization | None = None
    max_concurrent_tasks: int = 3
    agent_id: str | None = None


@dataclass(slots=True)
class TaskCreate:
    """Input payload for creating one task tree node."""

    title: str
    description: str
    acceptance_criteria: tuple[str, ...] = ()
    required_skills: dict[Skill, float] = field(default_factory=dict)
    required_capabilities: tuple[Capability, ...] = ()
    keywords: tuple[str, ...] = ()
    steps: tuple[PlannedStep, ...] = ()
    max_revisions: int = 3
    acceptance_threshold: float = 0.8
    children: list[TaskCreate] = field(default_factory=list)
    task_id: str | None = None


@dataclass(slots=True)
class TeamView:
    team_id: str
    goal: str
    status: TeamStatus
    budget_limit: float | None
    manager_agent_id: str | None
    abort_reason: str | None
    created_at: datetime
    updated_at: datetime
    started_at: datetime | None
    finished_at: datetime | None
    archived_at: datetime | None


@dataclass(slots=True)
class AgentView:
    agent_id: str
    team_id: str
    role: AgentRole
    specialization: Specialization | None
    skills: dict[Skill, float]
    permitted_tools: tuple[str, ...]
    max_concurrent_tasks: int
    current_workload: int
    active: bool
    tasks_attempted: int
    tasks_succeeded: int
    created_at: datetime
    updated_at: datetime
    # skill -> (attempted, succeeded) over tasks that required it
    skill_outcomes: dict[Skill, tuple[int, int]] = field(default_factory=dict)

    def success_rate(self, default: float, skill: Skill | None = None) -> float:
        """Rate on tasks needing `skill`, else the overall rate, else `default`."""

        attempted, succeeded = (0, 0) if skill is None else self.skill_outcomes.get(skill, (0, 0))
        if attempted > 0:
            return succeeded / attempted
        if self.tasks_attempted <= 0:
            return default
        return self.tasks_succeeded / self.tasks_attempted

    @property
    def has_capacity(self) -> bool:
        return self.active and self.current_workload < self.max_concurrent_tasks


@dataclass(slots=True)
class TaskView:
    task_id: str
    team_id: str
    parent_task_id: str | None
    title: str
    description: str
    acceptance_criteria: tuple[str, ...]
    required_skills: dict[Skill, float]
    required_capabilities: tuple[Capability, ...]
    keywords: tuple[str, ...]
    steps: tuple[PlannedStep, ...]
    assigned_agent_id: str | None
    status: TaskStatus
    revision_count: int
    max_revisions: int
    acceptance_threshold: float
    quality_score: float | None
    current_step: int
    output: dict[str, Any] | None
    abort_reason: str | None
    created_at: datetime
    updated_at: datetime
    started_at: datetime | None
    finished_at: datetime | None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_TASK_STATUSES


@dataclass(slots=True)
class RevisionRecord:
    """One completed revision: quality before/after and what it cost."""

    task_id: str
    revision_no: int
    quality_before: float
    quality_after: float
    cost: float
    created_at: datetime | None = None


@dataclass(slots=True)
class ToolExecutionWrite:
    """Input to append one tool invocation and its cost entry."""

    team_id: str
    task_id: str
    tool_id: str
    agent_id: str | None
    tool_input: dict[str, Any]
    output: Any = None
    error_code: str | None = None
    error_detail: str | None = None
    succeeded: bool = True
    cache_hit: bool = False
    timed_out: bool = False
    cost_units: float = 0.0
    latency_ms: int = 0
    cost_source: str = "provider"


@dataclass(slots=True)
class ToolExecutionRecordView:
    record_id: str
    team_id: str
    task_id: str
    tool_id: str
    agent_id: str | None
    tool_input: dict[str, Any]
    output: Any
    error_code: str | None
    error_detail: str | None
    succeeded: bool
    cache_hit: bool
    timed_out: bool
    cost_units: float
    latency_ms: int
    created_at: datetime


@dataclass(slots=True)
class CostEntryView:
    entry_id: int
    team_id: str
    task_id: str | None
    record_id: str
    tool_id: str
    amount: float
    source: str
    created_at: datetime


@dataclass(slots=True)
class ToolStats:
    """Historical invocation stats for tie-breaking tool selection."""

    tool_id: str
    calls: int = 0
    failures: int = 0
    total_cost: float = 0.0
    max_cost: float = 0.0

    @property
    def error_rate(self) -> float:
        return self.failures / self.calls if self.calls else 0.0

    @property
    def average_cost(self) -> float:
        return self.total_cost / self.calls if self.calls else 0.0


@dataclass(slots=True)
class CheckpointView:
    checkpoint_id: str
    task_id: str
    step_number: int
    snapshot: dict[str, Any]
    cumulative_cost: float
    created_at: datetime
    invalidated_at: datetime | None


@dataclass(frozen=True, slots=True)
class FailureAnalysis:
    """Classification of one failed execution. Immutable once produced."""

    category: FailureCategory
    root_cause: str
    confidence: float
    recommended_action: RecoveryAction
    escalation_priority: EscalationPriority
    intervention: InterventionType
    matched_rule: str
    evidence: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class EscalationRequest:
    """Handoff payload for a human decision-maker."""

    team_id: str
    task_id: str
    category: FailureCategory
    priority: EscalationPriority
    recommended_action: RecoveryAction
    intervention: InterventionType
    evidence: dict[str, Any] = field(default_factory=dict)
    analysis_id: str | None = None


@dataclass(slots=True)
class EscalationView:
    escalation_id: str
    team_id: str
    task_id: str
    analysis_id: str | None
    category: FailureCategory
    priority: EscalationPriority
    intervention: InterventionType | None
    recommended_action: RecoveryAction
    evidence: dict[str, Any]
    status: EscalationStatus
    resolution: EscalationResolution | None
    resolution_note: str | None
    created_at: datetime
    resolved_at: datetime | None


@dataclass(slots=True)
class TaskDetails:
    """Task with its audit trail, checkpoints, and failures."""

    task: TaskView
    events: list[AuditEventView]
    checkpoints: list[CheckpointView]
    failures: list[FailureAnalysisView]
    revisions: list[RevisionRecord]
    cost: float


@dataclass(slots=True)
class FailureAnalysisView:
    analysis_id: str
    task_id: str
    analysis: FailureAnalysis
    created_at: datetime


@dataclass(slots=True)
class AuditEventView:
    event_id: int
    team_id: str
    task_id: str | None
    entity_type: str
    entity_id: str
    event_type: str
    status_from: str | None
    status_to: str | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class CostAggregateView:
    """Grouped cost ledger summary row."""

    group_key: str
    entries: int
    cache_hits: int
    failures: int
    total_cost: float
