"""Persistent store for teams, tasks, checkpoints, and the execution ledger."""

from __future__ import annotations

import json
from collections.abc import Iterable
from datetime import datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import case, func
from sqlalchemy import delete as sa_delete
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from alembic import command
from alembic.config import Config
from taskcrew.orchestrator.errors import CheckpointSequenceError, InvalidTransition, NoCheckpoint
from taskcrew.orchestrator.events import AuditEvent, EventBus, freeze_details
from taskcrew.orchestrator.models import (
    TEAM_TRANSITIONS,
    TERMINAL_TASK_STATUSES,
    TERMINAL_TEAM_STATUSES,
    AgentCreate,
    AgentRole,
    AgentView,
    AuditEventView,
    CheckpointView,
    CostAggregateView,
    EscalationPriority,
    EscalationRequest,
    EscalationResolution,
    EscalationStatus,
    EscalationView,
    FailureAnalysis,
    FailureAnalysisView,
    FailureCategory,
    InterventionType,
    PlannedStep,
    RecoveryAction,
    RevisionRecord,
    TaskCreate,
    TaskDetails,
    TaskStatus,
    TaskView,
    TeamCreate,
    TeamStatus,
    TeamView,
    ToolExecutionRecordView,
    ToolExecutionWrite,
    ToolStats,
    can_transition,
)
from taskcrew.orchestrator.skills import (
    Capability,
    Skill,
    Specialization,
    dump_skill_outcomes,
    dump_skills,
    parse_skill_outcomes,
    parse_skills,
)
from taskcrew.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from taskcrew.storage.sqlmodel_models import (
    Agent,
    AuditEventRow,
    Checkpoint,
    CostEntry,
    Escalation,
    FailureAnalysisRow,
    Task,
    TaskRevision,
    Team,
    ToolExecutionRecord,
)

_AUDIT_ROWS_KEY = "taskcrew_audit_rows"
_PROJECT_ROOT = Path(__file__).resolve().parents[3]


class OrchestratorRepository:
    """Persistence facade backed by SQLModel + SQLite."""

    def __init__(
        self,
        db_path: Path,
        *,
        sqlite_busy_timeout_ms: int = 5_000,
        event_bus: EventBus | None = None,
    ) -> None:
        self.db_path = db_path
        self.event_bus = event_bus
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run Alembic migrations up to head."""

        config = Config(str(_PROJECT_ROOT / "alembic.ini"))
        config.set_main_option("script_location", str(_PROJECT_ROOT / "alembic"))
        config.set_main_option("sqlalchemy.url", f"sqlite:///{self.db_path}")
        command.upgrade(config, "head")

    # Teams -----------------------------------------------------------------

    def create_team(
        self,
        payload: TeamCreate,
        *,
        agents: list[AgentCreate],
        tasks: list[TaskCreate],
    ) -> TeamView:
        """Create a forming team with its roster and task tree in one transaction."""

        if payload.budget_limit is not None and payload.budget_limit <= 0:
            raise ValueError("Team budget limit must be positive.")
        now = utc_now()
        team_id = payload.team_id or str(uuid4())
        with Session(self.engine) as session:
            team = Team(
                team_id=team_id,
                goal=payload.goal,
                status=TeamStatus.FORMING.value,
                budget_limit=payload.budget_limit,
                created_at=now,
                updated_at=now,
            )
            session.add(team)
            session.flush()
            self._add_event(
                session=session,
                team_id=team_id,
                task_id=None,
                entity_type="team",
                entity_id=team_id,
                event_type="team_formed",
                status_to=TeamStatus.FORMING.value,
                details={"budget_limit": payload.budget_limit, "goal": payload.goal[:200]},
            )

            for agent_payload in agents:
                agent_row = self._add_agent_row(session=session, team_id=team_id, payload=agent_payload)
                if agent_payload.role == AgentRole.MANAGER and team.manager_agent_id is None:
                    team.manager_agent_id = agent_row.agent_id
            session.add(team)
            session.flush()

            for task_payload in tasks:
                self._add_task_tree(
                    session=session,
                    team_id=team_id,
                    parent_task_id=None,
                    payload=task_payload,
                )
            self._commit(session)

        created = self.get_team(team_id)
        if created is None:
            raise RuntimeError(f"Team not found after creation: {team_id}")
        return created

    def get_team(self, team_id: str) -> TeamView | None:
        with Session(self.engine) as session:
            row = session.exec(select(Team).where(Team.team_id == team_id)).one_or_none()
            return _to_team_view(row) if row is not None else None

    def list_teams(self, *, status: TeamStatus | None = None, limit: int = 50) -> list[TeamView]:
        with Session(self.engine) as session:
            statement = select(Team).order_by(col(Team.created_at).desc()).limit(limit)
            if status is not None:
                statement = statement.where(Team.status == status.value)
            rows = session.exec(statement).all()
        return [_to_team_view(row) for row in rows]

    def transition_team(
        self,
        *,
        team_id: str,
        status_to: TeamStatus,
        reason: str | None = None,
    ) -> TeamView:
        """Move a team along its lifecycle; terminal states archive the team."""

        now = utc_now()
        with Session(self.engine) as session:
            row = session.exec(select(Team).where(Team.team_id == team_id)).one_or_none()
            if row is None:
                raise RuntimeError(f"Team not found: {team_id}")
            previous = TeamStatus(row.status)
            if status_to not in TEAM_TRANSITIONS[previous]:
                raise InvalidTransition(team_id, previous.value, status_to.value)

            values: dict[str, Any] = {
                "status": status_to.value,
                "updated_at": to_db_datetime(now),
            }
            if status_to == TeamStatus.ACTIVE and row.started_at is None:
                values["started_at"] = to_db_datetime(now)
            if status_to in TERMINAL_TEAM_STATUSES:
                values["finished_at"] = to_db_datetime(now)
                values["archived_at"] = to_db_datetime(now)
                values["abort_reason"] = reason
            result = session.exec(
                sa_update(Team)
                .where(
                    col(Team.team_id) == team_id,
                    col(Team.status) == previous.value,
                )
                .values(**values),
            )
            if result.rowcount != 1:
                self._rollback(session)
                raise InvalidTransition(
                    team_id,
                    previous.value,
                    status_to.value,
                    "team state changed concurrently",
                )
            self._add_event(
                session=session,
                team_id=team_id,
                task_id=None,
                entity_type="team",
                entity_id=team_id,
                event_type="team_status_changed",
                status_from=previous.value,
                status_to=status_to.value,
                details={"reason": reason} if reason else None,
            )
            self._commit(session)

        updated = self.get_team(team_id)
        if updated is None:
            raise RuntimeError(f"Team not found: {team_id}")
        return updated

    def update_team_budget(self, *, team_id: str, budget_limit: float | None) -> TeamView:
        if budget_limit is not None and budget_limit <= 0:
            raise ValueError("Team budget limit must be positive.")
        now = utc_now()
        with Session(self.engine) as session:
            row = session.exec(select(Team).where(Team.team_id == team_id)).one_or_none()
            if row is None:
                raise RuntimeError(f"Team not found: {team_id}")
            previous_limit = row.budget_limit
            row.budget_limit = budget_limit
            row.updated_at = to_db_datetime(now)
            session.add(row)
            self._add_event(
                session=session,
                team_id=team_id,
                task_id=None,
                entity_type="team",
                entity_id=team_id,
                event_type="budget_changed",
                details={"from": previous_limit, "to": budget_limit},
            )
            self._commit(session)
            return _to_team_view(row)

    # Agents ----------------------------------------------------------------

    def add_agent(self, *, team_id: str, payload: AgentCreate) -> AgentView:
        with Session(self.engine) as session:
            row = self._add_agent_row(session=session, team_id=team_id, payload=payload)
            self._commit(session)
            session.refresh(row)
            return _to_agent_view(row)

    def get_agent(self, agent_id: str) -> AgentView | None:
        with Session(self.engine) as session:
            row = session.exec(select(Agent).where(Agent.agent_id == agent_id)).one_or_none()
            return _to_agent_view(row) if row is not None else None

    def list_agents(
        self,
        *,
        team_id: str,
        role: AgentRole | None = None,
        active_only: bool = True,
    ) -> list[AgentView]:
        with Session(self.engine) as session:
            statement = (
                select(Agent)
                .where(Agent.team_id == team_id)
                .order_by(col(Agent.created_at).asc(), col(Agent.agent_id).asc())
            )
            if role is not None:
                statement = statement.where(Agent.role == role.value)
            if active_only:
                statement = statement.where(col(Agent.active).is_(True))
            rows = session.exec(statement).all()
        return [_to_agent_view(row) for row in rows]

    def acquire_agent_slot(self, *, agent_id: str) -> bool:
        """Atomically take one capacity slot; False when the agent is full or inactive."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Agent)
                .where(
                    col(Agent.agent_id) == agent_id,
                    col(Agent.active).is_(True),
                    col(Agent.current_workload) < col(Agent.max_concurrent_tasks),
                )
                .values(
                    current_workload=col(Agent.current_workload) + 1,
                    updated_at=to_db_datetime(utc_now()),
                ),
            )
            if result.rowcount != 1:
                self._rollback(session)
                return False
            self._commit(session)
            return True

    def release_agent_slot(self, *, agent_id: str) -> None:
        with Session(self.engine) as session:
            session.exec(
                sa_update(Agent)
                .where(
                    col(Agent.agent_id) == agent_id,
                    col(Agent.current_workload) > 0,
                )
                .values(
                    current_workload=col(Agent.current_workload) - 1,
                    updated_at=to_db_datetime(utc_now()),
                ),
            )
            self._commit(session)

    def update_agent_skills(self, *, agent_id: str, skills: dict) -> None:
        with Session(self.engine) as session:
            row = self._get_agent_row(session=session, agent_id=agent_id)
            row.skills_json = _dump_json(dump_skills(skills))
            row.updated_at = to_db_datetime(utc_now())
            session.add(row)
            self._commit(session)

    def record_agent_outcome(
        self,
        *,
        agent_id: str,
        success: bool,
        skills: Iterable[Skill] = (),
    ) -> None:
        """Count one finished task overall and under each skill it required."""

        with Session(self.engine) as session:
            row = self._get_agent_row(session=session, agent_id=agent_id)
            outcomes = parse_skill_outcomes(_load_json_dict(row.skill_outcomes_json))
            for skill in set(skills):
                attempted, succeeded = outcomes.get(skill, (0, 0))
                outcomes[skill] = (attempted + 1, succeeded + (1 if success else 0))
            row.tasks_attempted += 1
            row.tasks_succeeded += 1 if success else 0
            row.skill_outcomes_json = _dump_json(dump_skill_outcomes(outcomes))
            row.updated_at = to_db_datetime(utc_now())
            session.add(row)
            self._commit(session)

    def deactivate_agent(self, *, agent_id: str) -> None:
        with Session(self.engine) as session:
            row = self._get_agent_row(session=session, agent_id=agent_id)
            row.active = False
            row.updated_at = to_db_datetime(utc_now())
            session.add(row)
            self._add_event(
                session=session,
                team_id=row.team_id,
                task_id=None,
                entity_type="agent",
                entity_id=agent_id,
                event_type="agent_deactivated",
            )
            self._commit(session)

    # Tasks -----------------------------------------------------------------

    def get_task(self, task_id: str) -> TaskView | None:
        with Session(self.engine) as session:
            row = session.exec(select(Task).where(Task.task_id == task_id)).one_or_none()
            return _to_task_view(row) if row is not None else None

    def list_tasks(
        self,
        *,
        team_id: str | None = None,
        status: TaskStatus | None = None,
        limit: int | None = 50,
    ) -> list[TaskView]:
        """List tasks in creation order, optionally filtered by team and status."""

        with Session(self.engine) as session:
            statement = select(Task).order_by(col(Task.created_at).asc(), col(Task.task_id).asc())
            if team_id is not None:
                statement = statement.where(Task.team_id == team_id)
            if status is not None:
                statement = statement.where(Task.status == status.value)
            if limit is not None:
                statement = statement.limit(limit)
            rows = session.exec(statement).all()
        return [_to_task_view(row) for row in rows]

    def list_children(self, *, task_id: str) -> list[TaskView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(Task)
                .where(Task.parent_task_id == task_id)
                .order_by(col(Task.created_at).asc(), col(Task.task_id).asc()),
            ).all()
        return [_to_task_view(row) for row in rows]

    def transition_task(  # noqa: PLR0913
        self,
        *,
        task_id: str,
        status_to: TaskStatus,
        expected_from: TaskStatus | None = None,
        agent_id: str | None = None,
        quality_score: float | None = None,
        output: dict[str, Any] | None = None,
        abort_reason: str | None = None,
        increment_revision: bool = False,
        details: dict[str, object] | None = None,
    ) -> TaskView:
        """Compare-and-swap a task status after checking the transition table."""

        now = utc_now()
        with Session(self.engine) as session:
            row = self._get_task_row(session=session, task_id=task_id)
            previous = TaskStatus(row.status)
            if expected_from is not None and previous != expected_from:
                self._rollback(session)
                raise InvalidTransition(
                    task_id,
                    previous.value,
                    status_to.value,
                    f"expected {expected_from.value}",
                )
            if not can_transition(previous, status_to):
                self._rollback(session)
                raise InvalidTransition(task_id, previous.value, status_to.value)

            values: dict[str, Any] = {
                "status": status_to.value,
                "updated_at": to_db_datetime(now),
            }
            if status_to == TaskStatus.IN_PROGRESS and row.started_at is None:
                values["started_at"] = to_db_datetime(now)
            if status_to in TERMINAL_TASK_STATUSES:
                values["finished_at"] = to_db_datetime(now)
            if agent_id is not None:
                values["assigned_agent_id"] = agent_id
            if quality_score is not None:
                values["quality_score"] = quality_score
            if output is not None:
                values["output_json"] = _dump_json(output)
            if abort_reason is not None:
                values["abort_reason"] = abort_reason
            if increment_revision:
                values["revision_count"] = row.revision_count + 1

            result = session.exec(
                sa_update(Task)
                .where(
                    col(Task.task_id) == task_id,
                    col(Task.status) == previous.value,
                )
                .values(**values),
            )
            if result.rowcount != 1:
                self._rollback(session)
                raise InvalidTransition(
                    task_id,
                    previous.value,
                    status_to.value,
                    "task state changed concurrently",
                )
            event_details: dict[str, object] = dict(details or {})
            if agent_id is not None:
                event_details["agent_id"] = agent_id
            if quality_score is not None:
                event_details["quality_score"] = quality_score
            if abort_reason is not None:
                event_details["abort_reason"] = abort_reason
            if increment_revision:
                event_details["revision_count"] = row.revision_count + 1
            self._add_event(
                session=session,
                team_id=row.team_id,
                task_id=task_id,
                entity_type="task",
                entity_id=task_id,
                event_type="task_status_changed",
                status_from=previous.value,
                status_to=status_to.value,
                details=event_details,
            )
            self._commit(session)

        updated = self.get_task(task_id)
        if updated is None:
            raise RuntimeError(f"Task not found: {task_id}")
        return updated

    def reassign_task(self, *, task_id: str, agent_id: str, reason: str) -> TaskView:
        """Change the assigned agent without touching the status."""

        with Session(self.engine) as session:
            row = self._get_task_row(session=session, task_id=task_id)
            if TaskStatus(row.status) in TERMINAL_TASK_STATUSES:
                self._rollback(session)
                raise InvalidTransition(task_id, row.status, row.status, "task is terminal")
            previous_agent = row.assigned_agent_id
            row.assigned_agent_id = agent_id
            row.updated_at = to_db_datetime(utc_now())
            session.add(row)
            self._add_event(
                session=session,
                team_id=row.team_id,
                task_id=task_id,
                entity_type="task",
                entity_id=task_id,
                event_type="task_reassigned",
                details={"from": previous_agent, "to": agent_id, "reason": reason},
            )
            self._commit(session)
            return _to_task_view(row)

    def add_subtasks(self, *, parent_task_id: str, tasks: list[TaskCreate]) -> list[TaskView]:
        with Session(self.engine) as session:
            parent = self._get_task_row(session=session, task_id=parent_task_id)
            rows = [
                self._add_task_tree(
                    session=session,
                    team_id=parent.team_id,
                    parent_task_id=parent_task_id,
                    payload=payload,
                )
                for payload in tasks
            ]
            self._add_event(
                session=session,
                team_id=parent.team_id,
                task_id=parent_task_id,
                entity_type="task",
                entity_id=parent_task_id,
                event_type="task_decomposed",
                details={"children": [row.task_id for row in rows]},
            )
            self._commit(session)
            task_ids = [row.task_id for row in rows]
        return [task for task in (self.get_task(task_id) for task_id in task_ids) if task]

    def append_task_clarification(self, *, task_id: str, note: str) -> TaskView:
        with Session(self.engine) as session:
            row = self._get_task_row(session=session, task_id=task_id)
            criteria = _load_json_list(row.acceptance_criteria_json)
            row.description = f"{row.description}\n\nClarification: {note.strip()}"
            row.acceptance_criteria_json = _dump_json(criteria)
            row.updated_at = to_db_datetime(utc_now())
            session.add(row)
            self._add_event(
                session=session,
                team_id=row.team_id,
                task_id=task_id,
                entity_type="task",
                entity_id=task_id,
                event_type="task_clarified",
                details={"note": note.strip()[:500]},
            )
            self._commit(session)
            return _to_task_view(row)

    def record_revision(self, revision: RevisionRecord) -> None:
        with Session(self.engine) as session:
            row = self._get_task_row(session=session, task_id=revision.task_id)
            session.add(
                TaskRevision(
                    task_id=revision.task_id,
                    revision_no=revision.revision_no,
                    quality_before=revision.quality_before,
                    quality_after=revision.quality_after,
                    cost=revision.cost,
                    created_at=utc_now(),
                ),
            )
            self._add_event(
                session=session,
                team_id=row.team_id,
                task_id=revision.task_id,
                entity_type="revision",
                entity_id=f"{revision.task_id}#{revision.revision_no}",
                event_type="revision_recorded",
                details={
                    "revision_no": revision.revision_no,
                    "quality_before": revision.quality_before,
                    "quality_after": revision.quality_after,
                    "cost": revision.cost,
                },
            )
            self._commit(session)

    def list_revisions(self, *, task_id: str) -> list[RevisionRecord]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskRevision)
                .where(TaskRevision.task_id == task_id)
                .order_by(col(TaskRevision.revision_no).asc()),
            ).all()
        return [
            RevisionRecord(
                task_id=row.task_id,
                revision_no=row.revision_no,
                quality_before=row.quality_before,
                quality_after=row.quality_after,
                cost=row.cost,
                created_at=to_utc_aware_datetime(row.created_at),
            )
            for row in rows
        ]

    def get_task_details(self, *, task_id: str) -> TaskDetails | None:
        task = self.get_task(task_id)
        if task is None:
            return None
        return TaskDetails(
            task=task,
            events=self.list_audit_events(task_id=task_id),
            checkpoints=self.list_checkpoints(task_id=task_id, include_invalidated=True),
            failures=self.list_failure_analyses(task_id=task_id),
            revisions=self.list_revisions(task_id=task_id),
            cost=self.task_cost(task_id=task_id),
        )

    # Tool execution ledger -------------------------------------------------

    def record_tool_execution(self, payload: ToolExecutionWrite) -> ToolExecutionRecordView:
        """Append one invocation record and exactly one cost entry in one transaction."""

        now = utc_now()
        record_id = str(uuid4())
        amount = 0.0 if payload.cache_hit else max(0.0, payload.cost_units)
        with Session(self.engine) as session:
            row = ToolExecutionRecord(
                record_id=record_id,
                team_id=payload.team_id,
                task_id=payload.task_id,
                tool_id=payload.tool_id,
                agent_id=payload.agent_id,
                input_json=_dump_json(payload.tool_input),
                output_json=_dump_json(payload.output) if payload.output is not None else None,
                error_code=payload.error_code,
                error_detail=payload.error_detail,
                succeeded=payload.succeeded,
                cache_hit=payload.cache_hit,
                timed_out=payload.timed_out,
                cost_units=amount,
                latency_ms=max(0, payload.latency_ms),
                created_at=now,
            )
            session.add(row)
            session.flush()
            source = "cache" if payload.cache_hit else payload.cost_source
            session.add(
                CostEntry(
                    team_id=payload.team_id,
                    task_id=payload.task_id,
                    record_id=record_id,
                    tool_id=payload.tool_id,
                    amount=amount,
                    source=source,
                    created_at=now,
                ),
            )
            self._add_event(
                session=session,
                team_id=payload.team_id,
                task_id=payload.task_id,
                entity_type="tool_execution",
                entity_id=record_id,
                event_type="tool_invoked",
                details={
                    "tool_id": payload.tool_id,
                    "succeeded": payload.succeeded,
                    "cache_hit": payload.cache_hit,
                    "timed_out": payload.timed_out,
                    "error_code": payload.error_code,
                    "latency_ms": payload.latency_ms,
                },
            )
            self._add_event(
                session=session,
                team_id=payload.team_id,
                task_id=payload.task_id,
                entity_type="cost_entry",
                entity_id=record_id,
                event_type="cost_recorded",
                details={"amount": amount, "source": source, "tool_id": payload.tool_id},
            )
            self._commit(session)
            return _to_record_view(row)

    def list_tool_executions(
        self,
        *,
        task_id: str | None = None,
        team_id: str | None = None,
        limit: int = 200,
    ) -> list[ToolExecutionRecordView]:
        with Session(self.engine) as session:
            statement = (
                select(ToolExecutionRecord)
                .order_by(col(ToolExecutionRecord.created_at).asc())
                .limit(limit)
            )
            if task_id is not None:
                statement = statement.where(ToolExecutionRecord.task_id == task_id)
            if team_id is not None:
                statement = statement.where(ToolExecutionRecord.team_id == team_id)
            rows = session.exec(statement).all()
        return [_to_record_view(row) for row in rows]

    def task_cost(self, *, task_id: str) -> float:
        with Session(self.engine) as session:
            total = session.exec(
                select(func.coalesce(func.sum(CostEntry.amount), 0.0)).where(
                    CostEntry.task_id == task_id,
                ),
            ).one()
        return float(total or 0.0)

    def team_spent(self, *, team_id: str) -> float:
        with Session(self.engine) as session:
            total = session.exec(
                select(func.coalesce(func.sum(CostEntry.amount), 0.0)).where(
                    CostEntry.team_id == team_id,
                ),
            ).one()
        return float(total or 0.0)

    def tool_stats(self, tool_ids: Iterable[str] | None = None) -> dict[str, ToolStats]:
        """Aggregate non-cached invocations per tool for selection tie-breaks."""

        with Session(self.engine) as session:
            statement = (
                select(
                    ToolExecutionRecord.tool_id,
                    func.count(),
                    func.sum(case((col(ToolExecutionRecord.succeeded).is_(False), 1), else_=0)),
                    func.coalesce(func.sum(ToolExecutionRecord.cost_units), 0.0),
                    func.coalesce(func.max(ToolExecutionRecord.cost_units), 0.0),
                )
                .where(col(ToolExecutionRecord.cache_hit).is_(False))
                .group_by(ToolExecutionRecord.tool_id)
            )
            if tool_ids is not None:
                statement = statement.where(col(ToolExecutionRecord.tool_id).in_(list(tool_ids)))
            rows = session.exec(statement).all()
        return {
            str(tool_id): ToolStats(
                tool_id=str(tool_id),
                calls=int(calls or 0),
                failures=int(failures or 0),
                total_cost=float(total_cost or 0.0),
                max_cost=float(max_cost or 0.0),
            )
            for tool_id, calls, failures, total_cost, max_cost in rows
        }

    def cost_report(
        self,
        *,
        team_id: str | None = None,
        group_by: str = "tool",
    ) -> list[CostAggregateView]:
        """Group the cost ledger by tool, task, or team."""

        group_columns = {
            "tool": CostEntry.tool_id,
            "task": CostEntry.task_id,
            "team": CostEntry.team_id,
        }
        if group_by not in group_columns:
            raise ValueError(f"Unsupported cost grouping: {group_by}")
        group_column = group_columns[group_by]
        with Session(self.engine) as session:
            statement = (
                select(
                    group_column,
                    func.count(),
                    func.sum(case((col(ToolExecutionRecord.cache_hit).is_(True), 1), else_=0)),
                    func.sum(case((col(ToolExecutionRecord.succeeded).is_(False), 1), else_=0)),
                    func.coalesce(func.sum(CostEntry.amount), 0.0),
                )
                .join(
                    ToolExecutionRecord,
                    col(ToolExecutionRecord.record_id) == col(CostEntry.record_id),
                )
                .group_by(group_column)
                .order_by(func.sum(CostEntry.amount).desc())
            )
            if team_id is not None:
                statement = statement.where(CostEntry.team_id == team_id)
            rows = session.exec(statement).all()
        return [
            CostAggregateView(
                group_key=str(key) if key is not None else "-",
                entries=int(entries or 0),
                cache_hits=int(cache_hits or 0),
                failures=int(failures or 0),
                total_cost=float(total or 0.0),
            )
            for key, entries, cache_hits, failures, total in rows
        ]

    # Checkpoints -----------------------------------------------------------

    def save_checkpoint(  # noqa: PLR0913
        self,
        *,
        task_id: str,
        step_number: int,
        snapshot: dict[str, Any],
        cumulative_cost: float,
        keep_last: int,
    ) -> CheckpointView:
        """Append the next checkpoint and advance task progress in one transaction."""

        now = utc_now()
        with Session(self.engine) as session:
            task = self._get_task_row(session=session, task_id=task_id)
            if task.status != TaskStatus.IN_PROGRESS.value:
                self._rollback(session)
                raise InvalidTransition(
                    task_id,
                    task.status,
                    TaskStatus.IN_PROGRESS.value,
                    "checkpoints require an in_progress task",
                )
            expected_step = task.current_step + 1
            if step_number != expected_step:
                self._rollback(session)
                raise CheckpointSequenceError(task_id, expected_step, step_number)

            result = session.exec(
                sa_update(Task)
                .where(
                    col(Task.task_id) == task_id,
                    col(Task.status) == TaskStatus.IN_PROGRESS.value,
                    col(Task.current_step) == task.current_step,
                )
                .values(current_step=step_number, updated_at=to_db_datetime(now)),
            )
            if result.rowcount != 1:
                self._rollback(session)
                raise CheckpointSequenceError(task_id, expected_step, step_number)

            row = Checkpoint(
                checkpoint_id=str(uuid4()),
                task_id=task_id,
                step_number=step_number,
                snapshot_json=_dump_json(snapshot),
                cumulative_cost=cumulative_cost,
                created_at=now,
            )
            session.add(row)
            session.flush()

            stale_ids = session.exec(
                select(Checkpoint.checkpoint_id)
                .where(
                    Checkpoint.task_id == task_id,
                    col(Checkpoint.invalidated_at).is_(None),
                )
                .order_by(col(Checkpoint.step_number).desc())
                .offset(keep_last),
            ).all()
            if stale_ids:
                session.exec(
                    sa_delete(Checkpoint).where(col(Checkpoint.checkpoint_id).in_(list(stale_ids))),
                )
            self._add_event(
                session=session,
                team_id=task.team_id,
                task_id=task_id,
                entity_type="checkpoint",
                entity_id=row.checkpoint_id,
                event_type="checkpoint_saved",
                details={
                    "step_number": step_number,
                    "cumulative_cost": cumulative_cost,
                    "pruned": len(stale_ids),
                },
            )
            self._commit(session)
            return _to_checkpoint_view(row)

    def latest_checkpoint(self, *, task_id: str) -> CheckpointView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(Checkpoint)
                .where(
                    Checkpoint.task_id == task_id,
                    col(Checkpoint.invalidated_at).is_(None),
                )
                .order_by(col(Checkpoint.step_number).desc())
                .limit(1),
            ).one_or_none()
            return _to_checkpoint_view(row) if row is not None else None

    def list_checkpoints(
        self,
        *,
        task_id: str,
        include_invalidated: bool = False,
    ) -> list[CheckpointView]:
        with Session(self.engine) as session:
            statement = (
                select(Checkpoint)
                .where(Checkpoint.task_id == task_id)
                .order_by(col(Checkpoint.step_number).asc(), col(Checkpoint.created_at).asc())
            )
            if not include_invalidated:
                statement = statement.where(col(Checkpoint.invalidated_at).is_(None))
            rows = session.exec(statement).all()
        return [_to_checkpoint_view(row) for row in rows]

    def rewind_checkpoints(self, *, task_id: str, step_number: int) -> int:
        """Invalidate checkpoints after `step_number` and move task progress back to it."""

        now = utc_now()
        with Session(self.engine) as session:
            task = self._get_task_row(session=session, task_id=task_id)
            target = session.exec(
                select(Checkpoint).where(
                    Checkpoint.task_id == task_id,
                    Checkpoint.step_number == step_number,
                    col(Checkpoint.invalidated_at).is_(None),
                ),
            ).one_or_none()
            if target is None:
                self._rollback(session)
                raise NoCheckpoint(task_id)

            result = session.exec(
                sa_update(Checkpoint)
                .where(
                    col(Checkpoint.task_id) == task_id,
                    col(Checkpoint.step_number) > step_number,
                    col(Checkpoint.invalidated_at).is_(None),
                )
                .values(invalidated_at=to_db_datetime(now)),
            )
            invalidated = int(result.rowcount or 0)
            session.exec(
                sa_update(Task)
                .where(
                    col(Task.task_id) == task_id,
                    col(Task.current_step) == task.current_step,
                )
                .values(current_step=step_number, updated_at=to_db_datetime(now)),
            )
            self._add_event(
                session=session,
                team_id=task.team_id,
                task_id=task_id,
                entity_type="checkpoint",
                entity_id=target.checkpoint_id,
                event_type="checkpoints_rewound",
                details={"step_number": step_number, "invalidated": invalidated},
            )
            self._commit(session)
            return invalidated

    def cleanup_checkpoints(self, *, older_than: datetime) -> tuple[int, int]:
        """Delete checkpoints of tasks terminal since before `older_than`.

        Invalidated checkpoints of live tasks older than the cutoff are removed
        as well. Valid checkpoints of non-terminal tasks are never touched here.
        Returns `(removed_terminal, removed_invalidated)`.
        """

        cutoff = to_db_datetime(older_than)
        terminal_values = [status.value for status in TERMINAL_TASK_STATUSES]
        with Session(self.engine) as session:
            terminal_tasks = session.exec(
                select(Task.task_id, Task.team_id).where(
                    col(Task.status).in_(terminal_values),
                    col(Task.finished_at).is_not(None),
                    col(Task.finished_at) <= cutoff,
                ),
            ).all()
            removed_terminal = 0
            for task_id, team_id in terminal_tasks:
                result = session.exec(
                    sa_delete(Checkpoint).where(col(Checkpoint.task_id) == task_id),
                )
                deleted = int(result.rowcount or 0)
                if deleted:
                    removed_terminal += deleted
                    self._add_event(
                        session=session,
                        team_id=team_id,
                        task_id=task_id,
                        entity_type="checkpoint",
                        entity_id=task_id,
                        event_type="checkpoints_cleaned",
                        details={"removed": deleted, "reason": "terminal_retention"},
                    )

            live_task_ids = select(Task.task_id).where(col(Task.status).not_in(terminal_values))
            result = session.exec(
                sa_delete(Checkpoint).where(
                    col(Checkpoint.task_id).in_(live_task_ids),
                    col(Checkpoint.invalidated_at).is_not(None),
                    col(Checkpoint.invalidated_at) <= cutoff,
                ),
            )
            removed_invalidated = int(result.rowcount or 0)
            self._commit(session)
        return removed_terminal, removed_invalidated

    # Failures & escalations ------------------------------------------------

    def record_failure_analysis(
        self,
        *,
        team_id: str,
        task_id: str,
        analysis: FailureAnalysis,
    ) -> str:
        analysis_id = str(uuid4())
        with Session(self.engine) as session:
            session.add(
                FailureAnalysisRow(
                    analysis_id=analysis_id,
                    team_id=team_id,
                    task_id=task_id,
                    category=analysis.category.value,
                    root_cause=analysis.root_cause,
                    confidence=analysis.confidence,
                    recommended_action=analysis.recommended_action.value,
                    escalation_priority=analysis.escalation_priority.value,
                    intervention=analysis.intervention.value,
                    matched_rule=analysis.matched_rule,
                    evidence_json=_dump_json(analysis.evidence),
                    created_at=utc_now(),
                ),
            )
            self._add_event(
                session=session,
                team_id=team_id,
                task_id=task_id,
                entity_type="failure_analysis",
                entity_id=analysis_id,
                event_type="failure_classified",
                details={
                    "category": analysis.category.value,
                    "action": analysis.recommended_action.value,
                    "priority": analysis.escalation_priority.value,
                    "matched_rule": analysis.matched_rule,
                },
            )
            self._commit(session)
        return analysis_id

    def list_failure_analyses(self, *, task_id: str) -> list[FailureAnalysisView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(FailureAnalysisRow)
                .where(FailureAnalysisRow.task_id == task_id)
                .order_by(col(FailureAnalysisRow.created_at).asc()),
            ).all()
        return [_to_failure_view(row) for row in rows]

    def open_escalation(self, request: EscalationRequest) -> EscalationView:
        escalation_id = str(uuid4())
        with Session(self.engine) as session:
            row = Escalation(
                escalation_id=escalation_id,
                team_id=request.team_id,
                task_id=request.task_id,
                analysis_id=request.analysis_id,
                category=request.category.value,
                priority=request.priority.value,
                intervention=request.intervention.value,
                recommended_action=request.recommended_action.value,
                evidence_json=_dump_json(request.evidence),
                status=EscalationStatus.OPEN.value,
                created_at=utc_now(),
            )
            session.add(row)
            self._add_event(
                session=session,
                team_id=request.team_id,
                task_id=request.task_id,
                entity_type="escalation",
                entity_id=escalation_id,
                event_type="escalation_opened",
                details={
                    "category": request.category.value,
                    "priority": request.priority.value,
                    "intervention": request.intervention.value,
                },
            )
            self._commit(session)
            session.refresh(row)
            return _to_escalation_view(row)

    def resolve_escalation(
        self,
        *,
        escalation_id: str,
        resolution: EscalationResolution,
        note: str | None = None,
    ) -> EscalationView:
        now = utc_now()
        with Session(self.engine) as session:
            row = session.exec(
                select(Escalation).where(Escalation.escalation_id == escalation_id),
            ).one_or_none()
            if row is None:
                raise RuntimeError(f"Escalation not found: {escalation_id}")
            if row.status != EscalationStatus.OPEN.value:
                raise RuntimeError(f"Escalation already resolved: {escalation_id}")
            result = session.exec(
                sa_update(Escalation)
                .where(
                    col(Escalation.escalation_id) == escalation_id,
                    col(Escalation.status) == EscalationStatus.OPEN.value,
                )
                .values(
                    status=EscalationStatus.RESOLVED.value,
                    resolution=resolution.value,
                    resolution_note=note,
                    resolved_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                self._rollback(session)
                raise RuntimeError(
                    "Escalation changed concurrently while resolving; "
                    f"please retry command (escalation_id={escalation_id}).",
                )
            self._add_event(
                session=session,
                team_id=row.team_id,
                task_id=row.task_id,
                entity_type="escalation",
                entity_id=escalation_id,
                event_type="escalation_resolved",
                details={"resolution": resolution.value, "note": note},
            )
            self._commit(session)
        resolved = self.get_escalation(escalation_id)
        if resolved is None:
            raise RuntimeError(f"Escalation not found: {escalation_id}")
        return resolved

    def get_escalation(self, escalation_id: str) -> EscalationView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(Escalation).where(Escalation.escalation_id == escalation_id),
            ).one_or_none()
            return _to_escalation_view(row) if row is not None else None

    def list_escalations(
        self,
        *,
        team_id: str | None = None,
        task_id: str | None = None,
        status: EscalationStatus | None = None,
        limit: int = 100,
    ) -> list[EscalationView]:
        with Session(self.engine) as session:
            statement = (
                select(Escalation).order_by(col(Escalation.created_at).asc()).limit(limit)
            )
            if team_id is not None:
                statement = statement.where(Escalation.team_id == team_id)
            if task_id is not None:
                statement = statement.where(Escalation.task_id == task_id)
            if status is not None:
                statement = statement.where(Escalation.status == status.value)
            rows = session.exec(statement).all()
        return [_to_escalation_view(row) for row in rows]

    def open_escalation_task_ids(self, *, team_id: str) -> set[str]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(Escalation.task_id).where(
                    Escalation.team_id == team_id,
                    Escalation.status == EscalationStatus.OPEN.value,
                ),
            ).all()
        return {str(task_id) for task_id in rows}

    # Audit -----------------------------------------------------------------

    def list_audit_events(
        self,
        *,
        team_id: str | None = None,
        task_id: str | None = None,
        limit: int | None = None,
    ) -> list[AuditEventView]:
        with Session(self.engine) as session:
            statement = select(AuditEventRow).order_by(col(AuditEventRow.id).asc())
            if team_id is not None:
                statement = statement.where(AuditEventRow.team_id == team_id)
            if task_id is not None:
                statement = statement.where(AuditEventRow.task_id == task_id)
            if limit is not None:
                statement = statement.limit(limit)
            rows = session.exec(statement).all()
        return [_to_audit_event_view(row) for row in rows]

    def last_event_at(self, *, task_id: str) -> datetime | None:
        with Session(self.engine) as session:
            value = session.exec(
                select(func.max(AuditEventRow.created_at)).where(
                    AuditEventRow.task_id == task_id,
                ),
            ).one()
        return to_utc_aware_datetime(value) if value is not None else None

    # Internals -------------------------------------------------------------

    def _add_agent_row(self, *, session: Session, team_id: str, payload: AgentCreate) -> Agent:
        now = utc_now()
        row = Agent(
            agent_id=payload.agent_id or str(uuid4()),
            team_id=team_id,
            role=payload.role.value,
            specialization=payload.specialization.value if payload.specialization else None,
            skills_json=_dump_json(dump_skills(payload.skills)),
            permitted_tools_json=_dump_json(list(payload.permitted_tools)),
            skill_outcomes_json="{}",
            max_concurrent_tasks=payload.max_concurrent_tasks,
            current_workload=0,
            active=True,
            created_at=now,
            updated_at=now,
        )
        session.add(row)
        session.flush()
        self._add_event(
            session=session,
            team_id=team_id,
            task_id=None,
            entity_type="agent",
            entity_id=row.agent_id,
            event_type="agent_created",
            details={"role": row.role, "specialization": row.specialization},
        )
        return row

    def _add_task_tree(
        self,
        *,
        session: Session,
        team_id: str,
        parent_task_id: str | None,
        payload: TaskCreate,
    ) -> Task:
        now = utc_now()
        row = Task(
            task_id=payload.task_id or str(uuid4()),
            team_id=team_id,
            parent_task_id=parent_task_id,
            title=payload.title,
            description=payload.description,
            acceptance_criteria_json=_dump_json(list(payload.acceptance_criteria)),
            required_skills_json=_dump_json(dump_skills(payload.required_skills)),
            required_capabilities_json=_dump_json(
                [capability.value for capability in payload.required_capabilities],
            ),
            keywords_json=_dump_json(list(payload.keywords)),
            steps_json=_dump_json([step.to_payload() for step in payload.steps]),
            status=TaskStatus.PENDING.value,
            revision_count=0,
            max_revisions=payload.max_revisions,
            acceptance_threshold=payload.acceptance_threshold,
            current_step=0,
            created_at=now,
            updated_at=now,
        )
        session.add(row)
        session.flush()
        self._add_event(
            session=session,
            team_id=team_id,
            task_id=row.task_id,
            entity_type="task",
            entity_id=row.task_id,
            event_type="task_created",
            status_to=TaskStatus.PENDING.value,
            details={"parent_task_id": parent_task_id, "title": payload.title},
        )
        for child in payload.children:
            self._add_task_tree(
                session=session,
                team_id=team_id,
                parent_task_id=row.task_id,
                payload=child,
            )
        return row

    def _get_task_row(self, *, session: Session, task_id: str) -> Task:
        row = session.exec(select(Task).where(Task.task_id == task_id)).one_or_none()
        if row is None:
            raise RuntimeError(f"Task not found: {task_id}")
        return row

    def _get_agent_row(self, *, session: Session, agent_id: str) -> Agent:
        row = session.exec(select(Agent).where(Agent.agent_id == agent_id)).one_or_none()
        if row is None:
            raise RuntimeError(f"Agent not found: {agent_id}")
        return row

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        team_id: str,
        task_id: str | None,
        entity_type: str,
        entity_id: str,
        event_type: str,
        status_from: str | None = None,
        status_to: str | None = None,
        details: dict[str, object] | None = None,
    ) -> None:
        row = AuditEventRow(
            team_id=team_id,
            task_id=task_id,
            entity_type=entity_type,
            entity_id=entity_id,
            event_type=event_type,
            status_from=status_from,
            status_to=status_to,
            details_json=_dump_json(details) if details else None,
            created_at=utc_now(),
        )
        session.add(row)
        session.info.setdefault(_AUDIT_ROWS_KEY, []).append(row)

    def _commit(self, session: Session) -> None:
        rows: list[AuditEventRow] = session.info.pop(_AUDIT_ROWS_KEY, [])
        if rows:
            session.flush()
        events = [_to_audit_event(row) for row in rows]
        session.commit()
        if events and self.event_bus is not None:
            self.event_bus.publish(events)

    def _rollback(self, session: Session) -> None:
        session.info.pop(_AUDIT_ROWS_KEY, None)
        session.rollback()


def _dump_json(value: object) -> str:
    return json.dumps(value, ensure_ascii=False, sort_keys=True, default=str)


def _load_json(raw: str | None) -> Any:
    if not raw:
        return None
    return json.loads(raw)


def _load_json_dict(raw: str | None) -> dict[str, Any]:
    parsed = _load_json(raw)
    return parsed if isinstance(parsed, dict) else {}


def _load_json_list(raw: str | None) -> list[Any]:
    parsed = _load_json(raw)
    return parsed if isinstance(parsed, list) else []


def _optional_aware(value: datetime | None) -> datetime | None:
    return to_utc_aware_datetime(value) if value is not None else None


def _to_team_view(row: Team) -> TeamView:
    return TeamView(
        team_id=row.team_id,
        goal=row.goal,
        status=TeamStatus(row.status),
        budget_limit=row.budget_limit,
        manager_agent_id=row.manager_agent_id,
        abort_reason=row.abort_reason,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
        started_at=_optional_aware(row.started_at),
        finished_at=_optional_aware(row.finished_at),
        archived_at=_optional_aware(row.archived_at),
    )


def _to_agent_view(row: Agent) -> AgentView:
    return AgentView(
        agent_id=row.agent_id,
        team_id=row.team_id,
        role=AgentRole(row.role),
        specialization=Specialization(row.specialization) if row.specialization else None,
        skills=parse_skills(_load_json_dict(row.skills_json)),
        permitted_tools=tuple(str(tool) for tool in _load_json_list(row.permitted_tools_json)),
        max_concurrent_tasks=row.max_concurrent_tasks,
        current_workload=row.current_workload,
        active=row.active,
        tasks_attempted=row.tasks_attempted,
        tasks_succeeded=row.tasks_succeeded,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
        skill_outcomes=parse_skill_outcomes(_load_json_dict(row.skill_outcomes_json)),
    )


def _to_task_view(row: Task) -> TaskView:
    output = _load_json(row.output_json)
    return TaskView(
        task_id=row.task_id,
        team_id=row.team_id,
        parent_task_id=row.parent_task_id,
        title=row.title,
        description=row.description,
        acceptance_criteria=tuple(str(item) for item in _load_json_list(row.acceptance_criteria_json)),
        required_skills=parse_skills(_load_json_dict(row.required_skills_json)),
        required_capabilities=tuple(
            Capability(value) for value in _load_json_list(row.required_capabilities_json)
        ),
        keywords=tuple(str(item) for item in _load_json_list(row.keywords_json)),
        steps=tuple(
            PlannedStep.from_payload(item)
            for item in _load_json_list(row.steps_json)
            if isinstance(item, dict)
        ),
        assigned_agent_id=row.assigned_agent_id,
        status=TaskStatus(row.status),
        revision_count=row.revision_count,
        max_revisions=row.max_revisions,
        acceptance_threshold=row.acceptance_threshold,
        quality_score=row.quality_score,
        current_step=row.current_step,
        output=output if isinstance(output, dict) else None,
        abort_reason=row.abort_reason,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
        started_at=_optional_aware(row.started_at),
        finished_at=_optional_aware(row.finished_at),
    )


def _to_record_view(row: ToolExecutionRecord) -> ToolExecutionRecordView:
    return ToolExecutionRecordView(
        record_id=row.record_id,
        team_id=row.team_id,
        task_id=row.task_id,
        tool_id=row.tool_id,
        agent_id=row.agent_id,
        tool_input=_load_json_dict(row.input_json),
        output=_load_json(row.output_json),
        error_code=row.error_code,
        error_detail=row.error_detail,
        succeeded=row.succeeded,
        cache_hit=row.cache_hit,
        timed_out=row.timed_out,
        cost_units=row.cost_units,
        latency_ms=row.latency_ms,
        created_at=to_utc_aware_datetime(row.created_at),
    )


def _to_checkpoint_view(row: Checkpoint) -> CheckpointView:
    return CheckpointView(
        checkpoint_id=row.checkpoint_id,
        task_id=row.task_id,
        step_number=row.step_number,
        snapshot=_load_json_dict(row.snapshot_json),
        cumulative_cost=row.cumulative_cost,
        created_at=to_utc_aware_datetime(row.created_at),
        invalidated_at=_optional_aware(row.invalidated_at),
    )


def _to_failure_view(row: FailureAnalysisRow) -> FailureAnalysisView:
    return FailureAnalysisView(
        analysis_id=row.analysis_id,
        task_id=row.task_id,
        analysis=FailureAnalysis(
            category=FailureCategory(row.category),
            root_cause=row.root_cause,
            confidence=row.confidence,
            recommended_action=RecoveryAction(row.recommended_action),
            escalation_priority=EscalationPriority(row.escalation_priority),
            intervention=InterventionType(row.intervention)
            if row.intervention
            else InterventionType.POLICY_DECISION,
            matched_rule=row.matched_rule,
            evidence=_load_json_dict(row.evidence_json),
        ),
        created_at=to_utc_aware_datetime(row.created_at),
    )


def _to_escalation_view(row: Escalation) -> EscalationView:
    return EscalationView(
        escalation_id=row.escalation_id,
        team_id=row.team_id,
        task_id=row.task_id,
        analysis_id=row.analysis_id,
        category=FailureCategory(row.category),
        priority=EscalationPriority(row.priority),
        intervention=InterventionType(row.intervention) if row.intervention else None,
        recommended_action=RecoveryAction(row.recommended_action),
        evidence=_load_json_dict(row.evidence_json),
        status=EscalationStatus(row.status),
        resolution=EscalationResolution(row.resolution) if row.resolution else None,
        resolution_note=row.resolution_note,
        created_at=to_utc_aware_datetime(row.created_at),
        resolved_at=_optional_aware(row.resolved_at),
    )


def _to_audit_event_view(row: AuditEventRow) -> AuditEventView:
    return AuditEventView(
        event_id=row.id or 0,
        team_id=row.team_id,
        task_id=row.task_id,
        entity_type=row.entity_type,
        entity_id=row.entity_id,
        event_type=row.event_type,
        status_from=row.status_from,
        status_to=row.status_to,
        created_at=to_utc_aware_datetime(row.created_at),
        details=_load_json_dict(row.details_json),
    )


def _to_audit_event(row: AuditEventRow) -> AuditEvent:
    return AuditEvent(
        event_id=row.id or 0,
        team_id=row.team_id,
        task_id=row.task_id,
        entity_type=row.entity_type,
        entity_id=row.entity_id,
        event_type=row.event_type,
        status_from=row.status_from,
        status_to=row.status_to,
        created_at=to_utc_aware_datetime(row.created_at),
        details=freeze_details(_load_json_dict(row.details_json)),
    )
