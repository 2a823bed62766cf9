"""Controllers for taskcrew CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from taskcrew.config import Settings
from taskcrew.orchestrator.backend.builtin import register_default_tools
from taskcrew.orchestrator.backend.completion import CliCompletionClient
from taskcrew.orchestrator.checkpoints import CheckpointStore
from taskcrew.orchestrator.engine import TaskOrchestrator
from taskcrew.orchestrator.models import (
    EscalationResolution,
    EscalationStatus,
    TaskStatus,
    TaskView,
    TeamStatus,
)
from taskcrew.orchestrator.planner import CompletionDecomposer, GoalDecomposer
from taskcrew.orchestrator.repository import OrchestratorRepository
from taskcrew.orchestrator.tools.circuit import CircuitBreakerRegistry
from taskcrew.orchestrator.tools.registry import ToolRegistry


@dataclass(slots=True)
class TeamSubmitCommand:
    """CLI input for goal submission."""

    db_path: Path | None
    goal: str
    budget: float | None
    use_completion: bool = False


@dataclass(slots=True)
class TeamRunCommand:
    db_path: Path | None
    team_id: str


@dataclass(slots=True)
class TeamShowCommand:
    db_path: Path | None
    team_id: str


@dataclass(slots=True)
class TeamListCommand:
    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class TeamBudgetCommand:
    """CLI input for changing a team's budget ceiling."""

    db_path: Path | None
    team_id: str
    budget: float | None


@dataclass(slots=True)
class TaskListCommand:
    db_path: Path | None
    team_id: str | None
    status: str | None
    limit: int


@dataclass(slots=True)
class TaskInspectCommand:
    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class CheckpointListCommand:
    db_path: Path | None
    task_id: str
    include_invalidated: bool


@dataclass(slots=True)
class CheckpointCleanupCommand:
    db_path: Path | None


@dataclass(slots=True)
class EscalationListCommand:
    db_path: Path | None
    team_id: str | None
    include_resolved: bool
    limit: int


@dataclass(slots=True)
class EscalationResolveCommand:
    """CLI input for a human escalation decision."""

    db_path: Path | None
    escalation_id: str
    resolution: str
    note: str | None
    agent_id: str | None


@dataclass(slots=True)
class CostReportCommand:
    db_path: Path | None
    team_id: str | None
    group_by: str
    output_format: str = "table"


@dataclass(slots=True)
class ToolListCommand:
    db_path: Path | None


class TaskcrewCliController:
    """Coordinates team, task, checkpoint, escalation, and cost CLI operations."""

    def submit(self, command: TeamSubmitCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _orchestrator(settings, use_completion=command.use_completion) as orchestrator:
            team = orchestrator.submit_goal(command.goal, budget_limit=command.budget)
            agents = orchestrator.repository.list_agents(team_id=team.team_id)
            tasks = orchestrator.repository.list_tasks(team_id=team.team_id, limit=None)

        lines = [
            f"Team formed: team_id={team.team_id} status={team.status.value} "
            f"budget={_money(team.budget_limit)}",
            f"Agents: {len(agents)}",
        ]
        for agent in agents:
            lines.append(
                f"  {agent.agent_id} role={agent.role.value} "
                f"specialization={agent.specialization.value if agent.specialization else '-'} "
                f"capacity={agent.max_concurrent_tasks}",
            )
        lines.append(f"Tasks: {len(tasks)}")
        for task in tasks:
            parent = f" parent={task.parent_task_id}" if task.parent_task_id else ""
            lines.append(f"  {task.task_id} {task.title!r}{parent} steps={len(task.steps)}")
        return lines

    def run(self, command: TeamRunCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _orchestrator(settings) as orchestrator:
            summary = orchestrator.run(command.team_id)
        return [
            "Run summary: "
            f"team_id={summary.team_id} status={summary.status.value} "
            f"rounds={summary.rounds} dispatched={summary.dispatched} "
            f"approved={summary.approved} aborted={summary.aborted} "
            f"escalated={summary.escalated} open={summary.open_tasks} "
            f"spent={summary.spent:.4f}",
        ]

    def show_team(self, command: TeamShowCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            team = repository.get_team(command.team_id)
            if team is None:
                return [f"Team not found: {command.team_id}"]
            agents = repository.list_agents(team_id=team.team_id, active_only=False)
            tasks = repository.list_tasks(team_id=team.team_id, limit=None)
            spent = repository.team_spent(team_id=team.team_id)
            escalations = repository.list_escalations(
                team_id=team.team_id,
                status=EscalationStatus.OPEN,
            )

        lines = [
            f"Team: {team.team_id}",
            f"Goal: {team.goal}",
            f"Status: {team.status.value}",
            f"Budget: spent={spent:.4f} limit={_money(team.budget_limit)}",
            f"Abort reason: {team.abort_reason or '-'}",
            f"Open escalations: {len(escalations)}",
            f"Agents: {len(agents)}",
        ]
        for agent in agents:
            skills = ", ".join(
                f"{skill.value}={level:.2f}" for skill, level in sorted(agent.skills.items())
            )
            lines.append(
                f"  {agent.agent_id} role={agent.role.value} "
                f"load={agent.current_workload}/{agent.max_concurrent_tasks} "
                f"success={agent.tasks_succeeded}/{agent.tasks_attempted} "
                f"active={agent.active} skills=[{skills}]",
            )
        lines.append(f"Tasks: {len(tasks)}")
        for task in tasks:
            lines.append(_task_line(task))
        return lines

    def list_teams(self, command: TeamListCommand) -> list[str]:
        settings = _settings(command.db_path)
        status = TeamStatus(command.status) if command.status else None
        with _repository(settings) as repository:
            teams = repository.list_teams(status=status, limit=command.limit)
        lines = [f"Teams: {len(teams)}"]
        for team in teams:
            lines.append(
                f"  {team.team_id} status={team.status.value} "
                f"budget={_money(team.budget_limit)} created_at={team.created_at.isoformat()} "
                f"goal={team.goal[:60]!r}",
            )
        return lines

    def set_budget(self, command: TeamBudgetCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            team = repository.update_team_budget(
                team_id=command.team_id,
                budget_limit=command.budget,
            )
        return [f"Budget updated: team_id={team.team_id} limit={_money(team.budget_limit)}"]

    def list_tasks(self, command: TaskListCommand) -> list[str]:
        settings = _settings(command.db_path)
        status = TaskStatus(command.status) if command.status else None
        with _repository(settings) as repository:
            tasks = repository.list_tasks(
                team_id=command.team_id,
                status=status,
                limit=command.limit,
            )
        lines = [f"Tasks: {len(tasks)}"]
        lines.extend(_task_line(task) for task in tasks)
        return lines

    def inspect_task(self, command: TaskInspectCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            details = repository.get_task_details(task_id=command.task_id)
            executions = repository.list_tool_executions(task_id=command.task_id)
        if details is None:
            return [f"Task not found: {command.task_id}"]

        task = details.task
        lines = [
            f"Task: {task.task_id}",
            f"Title: {task.title}",
            f"Status: {task.status.value}",
            f"Assigned agent: {task.assigned_agent_id or '-'}",
            f"Revisions: {task.revision_count}/{task.max_revisions}",
            f"Quality: {_score(task.quality_score)} threshold={task.acceptance_threshold:.2f}",
            f"Cost: {details.cost:.4f}",
            f"Abort reason: {task.abort_reason or '-'}",
            f"Steps: {task.current_step} completed, {len(task.steps)} planned",
            f"Tool executions: {len(executions)}",
        ]
        for record in executions:
            outcome = "ok" if record.succeeded else f"error={record.error_code}"
            lines.append(
                f"  {record.created_at.isoformat()} {record.tool_id} {outcome} "
                f"cost={record.cost_units:.4f} latency_ms={record.latency_ms} "
                f"cache_hit={record.cache_hit}",
            )
        lines.append(f"Revision history: {len(details.revisions)}")
        for revision in details.revisions:
            lines.append(
                f"  #{revision.revision_no} quality {revision.quality_before:.2f} -> "
                f"{revision.quality_after:.2f} cost={revision.cost:.4f}",
            )
        lines.append(f"Failures: {len(details.failures)}")
        for failure in details.failures:
            analysis = failure.analysis
            lines.append(
                f"  {failure.created_at.isoformat()} {analysis.category.value} "
                f"action={analysis.recommended_action.value} "
                f"priority={analysis.escalation_priority.value} "
                f"confidence={analysis.confidence:.2f} cause={analysis.root_cause}",
            )
        lines.append(f"Events: {len(details.events)}")
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from or '-'} -> {event.status_to or '-'}",
            )
        return lines

    def list_checkpoints(self, command: CheckpointListCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            checkpoints = CheckpointStore(repository, settings.checkpoints).list(
                command.task_id,
                include_invalidated=command.include_invalidated,
            )
        lines = [f"Checkpoints: {len(checkpoints)}"]
        for checkpoint in checkpoints:
            invalidated = (
                checkpoint.invalidated_at.isoformat() if checkpoint.invalidated_at else "-"
            )
            lines.append(
                f"  step={checkpoint.step_number} id={checkpoint.checkpoint_id} "
                f"cost={checkpoint.cumulative_cost:.4f} "
                f"created_at={checkpoint.created_at.isoformat()} invalidated_at={invalidated}",
            )
        return lines

    def cleanup_checkpoints(self, command: CheckpointCleanupCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            result = CheckpointStore(repository, settings.checkpoints).cleanup()
        return [
            "Checkpoint cleanup: "
            f"removed={result.removed} terminal={result.removed_terminal} "
            f"invalidated={result.removed_invalidated} cutoff={result.cutoff.isoformat()}",
        ]

    def list_escalations(self, command: EscalationListCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            escalations = repository.list_escalations(
                team_id=command.team_id,
                status=None if command.include_resolved else EscalationStatus.OPEN,
                limit=command.limit,
            )
        lines = [f"Escalations: {len(escalations)}"]
        for escalation in escalations:
            lines.append(
                f"  {escalation.escalation_id} task={escalation.task_id} "
                f"status={escalation.status.value} category={escalation.category.value} "
                f"priority={escalation.priority.value} "
                f"action={escalation.recommended_action.value} "
                f"intervention={escalation.intervention.value if escalation.intervention else '-'}",
            )
            cause = escalation.evidence.get("root_cause")
            if cause:
                lines.append(f"    cause: {cause}")
            if escalation.resolution is not None:
                lines.append(
                    f"    resolution: {escalation.resolution.value} "
                    f"{escalation.resolution_note or ''}".rstrip(),
                )
        return lines

    def resolve_escalation(self, command: EscalationResolveCommand) -> list[str]:
        settings = _settings(command.db_path)
        resolution = EscalationResolution(command.resolution)
        with _orchestrator(settings) as orchestrator:
            checkpoint = orchestrator.resolve_escalation(
                command.escalation_id,
                resolution,
                command.note,
                agent_id=command.agent_id,
            )
        resume = f"step {checkpoint.step_number}" if checkpoint is not None else "the first step"
        return [
            f"Escalation resolved: {command.escalation_id} resolution={resolution.value}",
            f"Task resumes from {resume} on the next `team run`.",
        ]

    def cost_report(self, command: CostReportCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            rows = repository.cost_report(team_id=command.team_id, group_by=command.group_by)

        if command.output_format == "json":
            return [
                json.dumps(
                    {
                        "group_by": command.group_by,
                        "team_id": command.team_id,
                        "groups": [
                            {
                                "group_key": row.group_key,
                                "entries": row.entries,
                                "cache_hits": row.cache_hits,
                                "failures": row.failures,
                                "total_cost": row.total_cost,
                            }
                            for row in rows
                        ],
                    },
                    indent=2,
                    ensure_ascii=False,
                ),
            ]

        total = sum(row.total_cost for row in rows)
        lines = [f"Cost report: groups={len(rows)} group_by={command.group_by} total={total:.4f}"]
        for row in rows:
            lines.append(
                f"  {row.group_key} entries={row.entries} cache_hits={row.cache_hits} "
                f"failures={row.failures} cost={row.total_cost:.4f}",
            )
        return lines

    def list_tools(self, command: ToolListCommand) -> list[str]:
        settings = _settings(command.db_path)
        breakers = CircuitBreakerRegistry(
            failure_threshold=settings.circuit.failure_threshold,
            cooldown_seconds=settings.circuit.cooldown_seconds,
        )
        with _repository(settings) as repository:
            registry = ToolRegistry(breakers=breakers, stats=repository.tool_stats)
            tools = register_default_tools(registry, settings)
            stats = repository.tool_stats([tool.tool_id for tool in tools])
        lines = [f"Tools: {len(tools)}"]
        for tool in tools:
            tool_stats = stats.get(tool.tool_id)
            capabilities = ",".join(sorted(capability.value for capability in tool.capabilities))
            lines.append(
                f"  {tool.tool_id} category={tool.category.value} capabilities={capabilities} "
                f"cost_estimate={tool.cost_estimate:.4f} "
                f"calls={tool_stats.calls if tool_stats else 0} "
                f"error_rate={tool_stats.error_rate if tool_stats else 0.0:.2f}",
            )
        return lines


def _settings(db_path: Path | None) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    settings.validate()
    return settings


@contextmanager
def _repository(settings: Settings) -> Iterator[OrchestratorRepository]:
    repository = OrchestratorRepository(
        db_path=settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


@contextmanager
def _orchestrator(
    settings: Settings,
    *,
    use_completion: bool = False,
) -> Iterator[TaskOrchestrator]:
    decomposer: GoalDecomposer | None = None
    if use_completion:
        if not settings.execution.completion_command:
            raise ValueError("TASKCREW_COMPLETION_COMMAND must be set to plan with --llm.")
        decomposer = CompletionDecomposer(
            CliCompletionClient(
                settings.execution.completion_command,
                model=settings.execution.completion_model,
            ),
            settings=settings,
        )
    with _repository(settings) as repository:
        orchestrator = TaskOrchestrator.create(repository, settings, decomposer=decomposer)
        try:
            yield orchestrator
        finally:
            orchestrator.close()


def _task_line(task: TaskView) -> str:
    parent = f" parent={task.parent_task_id}" if task.parent_task_id else ""
    return (
        f"  {task.task_id} status={task.status.value} "
        f"agent={task.assigned_agent_id or '-'} quality={_score(task.quality_score)} "
        f"revisions={task.revision_count}/{task.max_revisions}{parent} title={task.title!r}"
    )


def _money(value: float | None) -> str:
    return f"{value:.4f}" if value is not None else "unlimited"


def _score(value: float | None) -> str:
    return f"{value:.2f}" if value is not None else "-"
