"""SQLModel ORM tables for orchestration storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text, UniqueConstraint, text
from sqlmodel import Field, SQLModel


class Team(SQLModel, table=True):
    __tablename__ = "teams"  # type: ignore[bad-override]

    team_id: str = Field(primary_key=True)
    goal: str = Field(sa_column=Column(Text, nullable=False))
    status: str = Field(index=True)
    budget_limit: float | None = None
    manager_agent_id: str | None = Field(default=None, index=True)
    abort_reason: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    archived_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class Agent(SQLModel, table=True):
    __tablename__ = "agents"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_agents_team_role", "team_id", "role"),)

    agent_id: str = Field(primary_key=True)
    team_id: str = Field(
        sa_column=Column(
            ForeignKey("teams.team_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    role: str = Field(index=True)
    specialization: str | None = None
    skills_json: str = Field(sa_column=Column(Text, nullable=False))
    permitted_tools_json: str = Field(sa_column=Column(Text, nullable=False))
    max_concurrent_tasks: int = Field(default=3)
    current_workload: int = Field(default=0)
    active: bool = Field(default=True, index=True)
    tasks_attempted: int = Field(default=0)
    tasks_succeeded: int = Field(default=0)
    skill_outcomes_json: str = Field(
        default="{}",
        sa_column=Column(Text, nullable=False, server_default="{}"),
    )
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Task(SQLModel, table=True):
    __tablename__ = "tasks"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_tasks_team_status", "team_id", "status"),)

    task_id: str = Field(primary_key=True)
    team_id: str = Field(
        sa_column=Column(
            ForeignKey("teams.team_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    parent_task_id: str | None = Field(
        default=None,
        sa_column=Column(ForeignKey("tasks.task_id"), nullable=True, index=True),
    )
    title: str
    description: str = Field(sa_column=Column(Text, nullable=False))
    acceptance_criteria_json: str = Field(sa_column=Column(Text, nullable=False))
    required_skills_json: str = Field(sa_column=Column(Text, nullable=False))
    required_capabilities_json: str = Field(sa_column=Column(Text, nullable=False))
    keywords_json: str = Field(sa_column=Column(Text, nullable=False))
    steps_json: str = Field(sa_column=Column(Text, nullable=False))
    assigned_agent_id: str | None = Field(default=None, index=True)
    status: str = Field(index=True)
    revision_count: int = Field(default=0)
    max_revisions: int = Field(default=3)
    acceptance_threshold: float = Field(default=0.8)
    quality_score: float | None = None
    current_step: int = Field(default=0)
    output_json: str | None = Field(default=None, sa_column=Column(Text))
    abort_reason: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class TaskRevision(SQLModel, table=True):
    __tablename__ = "task_revisions"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("task_id", "revision_no", name="uq_task_revisions_task_revision"),
    )

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    revision_no: int
    quality_before: float
    quality_after: float
    cost: float
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ToolExecutionRecord(SQLModel, table=True):
    __tablename__ = "tool_execution_records"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_tool_execution_records_tool_time", "tool_id", "created_at"),)

    record_id: str = Field(primary_key=True)
    team_id: str = Field(
        sa_column=Column(
            ForeignKey("teams.team_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    tool_id: str = Field(index=True)
    agent_id: str | None = Field(default=None, index=True)
    input_json: str = Field(sa_column=Column(Text, nullable=False))
    output_json: str | None = Field(default=None, sa_column=Column(Text))
    error_code: str | None = Field(default=None, index=True)
    error_detail: str | None = Field(default=None, sa_column=Column(Text))
    succeeded: bool
    cache_hit: bool = Field(default=False)
    timed_out: bool = Field(default=False)
    cost_units: float = Field(default=0.0)
    latency_ms: int = Field(default=0)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class CostEntry(SQLModel, table=True):
    __tablename__ = "cost_entries"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("record_id", name="uq_cost_entries_record"),
        Index("idx_cost_entries_team_time", "team_id", "created_at"),
    )

    entry_id: int | None = Field(default=None, primary_key=True)
    team_id: str = Field(
        sa_column=Column(
            ForeignKey("teams.team_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    task_id: str | None = Field(default=None, index=True)
    record_id: str = Field(
        sa_column=Column(
            ForeignKey("tool_execution_records.record_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    tool_id: str = Field(index=True)
    amount: float
    source: str
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Checkpoint(SQLModel, table=True):
    __tablename__ = "checkpoints"  # type: ignore[bad-override]
    __table_args__ = (
        Index(
            "uq_checkpoints_task_step_valid",
            "task_id",
            "step_number",
            unique=True,
            sqlite_where=text("invalidated_at IS NULL"),
        ),
        Index("idx_checkpoints_task_created", "task_id", "created_at"),
    )

    checkpoint_id: str = Field(primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    step_number: int
    snapshot_json: str = Field(sa_column=Column(Text, nullable=False))
    cumulative_cost: float = Field(default=0.0)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    invalidated_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )


class FailureAnalysisRow(SQLModel, table=True):
    __tablename__ = "failure_analyses"  # type: ignore[bad-override]

    analysis_id: str = Field(primary_key=True)
    team_id: str = Field(
        sa_column=Column(
            ForeignKey("teams.team_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    category: str = Field(index=True)
    root_cause: str = Field(sa_column=Column(Text, nullable=False))
    confidence: float
    recommended_action: str
    escalation_priority: str
    intervention: str | None = None
    matched_rule: str
    evidence_json: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Escalation(SQLModel, table=True):
    __tablename__ = "escalations"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_escalations_team_status", "team_id", "status"),)

    escalation_id: str = Field(primary_key=True)
    team_id: str = Field(
        sa_column=Column(
            ForeignKey("teams.team_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    analysis_id: str | None = None
    category: str
    priority: str
    intervention: str | None = None
    recommended_action: str
    evidence_json: str = Field(sa_column=Column(Text, nullable=False))
    status: str = Field(index=True)
    resolution: str | None = None
    resolution_note: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    resolved_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class AuditEventRow(SQLModel, table=True):
    __tablename__ = "audit_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_audit_events_team_time", "team_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    team_id: str = Field(index=True)
    task_id: str | None = Field(default=None, index=True)
    entity_type: str = Field(index=True)
    entity_id: str
    event_type: str = Field(index=True)
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
