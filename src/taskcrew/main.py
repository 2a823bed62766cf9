"""CLI entrypoint for taskcrew."""

from collections.abc import Callable
from pathlib import Path

import rich_click as click

from taskcrew import __version__
from taskcrew.config import Settings
from taskcrew.orchestrator.controllers import (
    CheckpointCleanupCommand,
    CheckpointListCommand,
    CostReportCommand,
    EscalationListCommand,
    EscalationResolveCommand,
    TaskcrewCliController,
    TaskInspectCommand,
    TaskListCommand,
    TeamBudgetCommand,
    TeamListCommand,
    TeamRunCommand,
    TeamShowCommand,
    TeamSubmitCommand,
    ToolListCommand,
)

click.rich_click.USE_MARKDOWN = True
CONTROLLER = TaskcrewCliController()

TASK_STATUSES = [
    "pending",
    "assigned",
    "in_progress",
    "review",
    "in_revision",
    "approved",
    "aborted",
]
TEAM_STATUSES = ["forming", "active", "paused", "completed", "aborted"]


@click.group()
@click.version_option(version=__version__, prog_name="taskcrew")
def taskcrew() -> None:
    """Task orchestration for agent teams.

    Submit a goal, run the team, and resolve escalations when the engine
    needs a human decision.
    """

    Settings.from_env().configure_logging()


@taskcrew.group()
def team() -> None:
    """Team lifecycle commands."""


@team.command("submit")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--budget",
    type=click.FloatRange(min=0.0, min_open=True),
    default=None,
    help="Cost ceiling for the whole team. Omit for no ceiling.",
)
@click.option(
    "--llm/--no-llm",
    "use_completion",
    default=False,
    show_default=True,
    help="Plan the task tree with the completion command instead of keyword heuristics.",
)
@click.argument("goal")
def team_submit(
    db_path: Path | None,
    budget: float | None,
    use_completion: bool,
    goal: str,
) -> None:
    """Decompose GOAL into a task tree and form a team for it."""

    _run(
        lambda: CONTROLLER.submit(
            TeamSubmitCommand(
                db_path=db_path,
                goal=goal,
                budget=budget,
                use_completion=use_completion,
            ),
        ),
    )


@team.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("team_id")
def team_run(db_path: Path | None, team_id: str) -> None:
    """Dispatch ready tasks until the team completes, aborts, or waits on escalations."""

    _run(lambda: CONTROLLER.run(TeamRunCommand(db_path=db_path, team_id=team_id)))


@team.command("show")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("team_id")
def team_show(db_path: Path | None, team_id: str) -> None:
    """Show team status, roster, spend, and tasks."""

    _run(lambda: CONTROLLER.show_team(TeamShowCommand(db_path=db_path, team_id=team_id)))


@team.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--status",
    type=click.Choice(TEAM_STATUSES, case_sensitive=False),
    default=None,
    help="Optional team status filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Maximum teams to show.",
)
def team_list(db_path: Path | None, status: str | None, limit: int) -> None:
    """List teams, newest first."""

    _run(
        lambda: CONTROLLER.list_teams(
            TeamListCommand(
                db_path=db_path,
                status=status.lower() if status else None,
                limit=limit,
            ),
        ),
    )


@team.command("budget")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--limit",
    "budget",
    type=click.FloatRange(min=0.0, min_open=True),
    default=None,
    help="New cost ceiling. Omit to remove the ceiling.",
)
@click.argument("team_id")
def team_budget(db_path: Path | None, budget: float | None, team_id: str) -> None:
    """Change the team's budget ceiling; a paused team can then be run again."""

    _run(
        lambda: CONTROLLER.set_budget(
            TeamBudgetCommand(db_path=db_path, team_id=team_id, budget=budget),
        ),
    )


@taskcrew.group()
def task() -> None:
    """Task inspection commands."""


@task.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--team-id", default=None, help="Optional team filter.")
@click.option(
    "--status",
    type=click.Choice(TASK_STATUSES, case_sensitive=False),
    default=None,
    help="Optional task status filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Maximum tasks to show.",
)
def task_list(
    db_path: Path | None,
    team_id: str | None,
    status: str | None,
    limit: int,
) -> None:
    """List tasks."""

    _run(
        lambda: CONTROLLER.list_tasks(
            TaskListCommand(
                db_path=db_path,
                team_id=team_id,
                status=status.lower() if status else None,
                limit=limit,
            ),
        ),
    )


@task.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("task_id")
def task_inspect(db_path: Path | None, task_id: str) -> None:
    """Show task state, tool executions, revisions, failures, and audit events."""

    _run(lambda: CONTROLLER.inspect_task(TaskInspectCommand(db_path=db_path, task_id=task_id)))


@taskcrew.group()
def checkpoint() -> None:
    """Checkpoint commands."""


@checkpoint.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--all",
    "include_invalidated",
    is_flag=True,
    default=False,
    help="Include checkpoints invalidated by a rewind.",
)
@click.argument("task_id")
def checkpoint_list(db_path: Path | None, include_invalidated: bool, task_id: str) -> None:
    """List checkpoints of one task in step order."""

    _run(
        lambda: CONTROLLER.list_checkpoints(
            CheckpointListCommand(
                db_path=db_path,
                task_id=task_id,
                include_invalidated=include_invalidated,
            ),
        ),
    )


@checkpoint.command("cleanup")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def checkpoint_cleanup(db_path: Path | None) -> None:
    """Delete checkpoints past the retention window."""

    _run(lambda: CONTROLLER.cleanup_checkpoints(CheckpointCleanupCommand(db_path=db_path)))


@taskcrew.group()
def escalation() -> None:
    """Human escalation commands."""


@escalation.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--team-id", default=None, help="Optional team filter.")
@click.option(
    "--all",
    "include_resolved",
    is_flag=True,
    default=False,
    help="Include resolved escalations.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Maximum escalations to show.",
)
def escalation_list(
    db_path: Path | None,
    team_id: str | None,
    include_resolved: bool,
    limit: int,
) -> None:
    """List escalations waiting for a decision."""

    _run(
        lambda: CONTROLLER.list_escalations(
            EscalationListCommand(
                db_path=db_path,
                team_id=team_id,
                include_resolved=include_resolved,
                limit=limit,
            ),
        ),
    )


@escalation.command("resolve")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--resolution",
    type=click.Choice(["approve", "clarify", "reassign"], case_sensitive=False),
    required=True,
    help="approve resumes as is; clarify appends --note to the task; reassign moves it.",
)
@click.option("--note", default=None, help="Clarification text or operator note.")
@click.option(
    "--agent-id",
    default=None,
    help="Target agent for reassign. Defaults to the best alternative worker.",
)
@click.argument("escalation_id")
def escalation_resolve(
    db_path: Path | None,
    resolution: str,
    note: str | None,
    agent_id: str | None,
    escalation_id: str,
) -> None:
    """Resolve an escalation so its task resumes from the last checkpoint."""

    _run(
        lambda: CONTROLLER.resolve_escalation(
            EscalationResolveCommand(
                db_path=db_path,
                escalation_id=escalation_id,
                resolution=resolution.lower(),
                note=note,
                agent_id=agent_id,
            ),
        ),
    )


@taskcrew.group()
def cost() -> None:
    """Cost ledger commands."""


@cost.command("report")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--team-id", default=None, help="Optional team filter.")
@click.option(
    "--group-by",
    type=click.Choice(["tool", "task", "team"], case_sensitive=False),
    default="tool",
    show_default=True,
    help="Aggregation key.",
)
@click.option(
    "--output-format",
    type=click.Choice(["table", "json"], case_sensitive=False),
    default="table",
    show_default=True,
    help="Output as a text table or JSON.",
)
def cost_report(
    db_path: Path | None,
    team_id: str | None,
    group_by: str,
    output_format: str,
) -> None:
    """Aggregate the cost ledger."""

    _run(
        lambda: CONTROLLER.cost_report(
            CostReportCommand(
                db_path=db_path,
                team_id=team_id,
                group_by=group_by.lower(),
                output_format=output_format.lower(),
            ),
        ),
    )


@taskcrew.group()
def tool() -> None:
    """Tool catalog commands."""


@tool.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def tool_list(db_path: Path | None) -> None:
    """List built-in tools with historical call stats."""

    _run(lambda: CONTROLLER.list_tools(ToolListCommand(db_path=db_path)))


def _run(action: Callable[[], list[str]]) -> None:
    try:
        lines = action()
    except (RuntimeError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    taskcrew()
