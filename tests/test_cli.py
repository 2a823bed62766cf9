from __future__ import annotations

import json
import re
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner

from taskcrew.main import taskcrew

pytestmark = [
    allure.epic("Runtime"),
    allure.feature("CLI"),
]


@pytest.fixture()
def cli_env(tmp_path: Path, monkeypatch) -> Path:
    monkeypatch.setenv("TASKCREW_WORKSPACE_ROOT", str(tmp_path / "workspace"))
    monkeypatch.delenv("TASKCREW_COMPLETION_COMMAND", raising=False)
    return tmp_path / "cli.db"


def _invoke(runner: CliRunner, *args: str):
    result = runner.invoke(taskcrew, list(args))
    assert result.exit_code == 0, result.output
    return result


def _submit(runner: CliRunner, db_path: Path, *extra: str) -> str:
    result = _invoke(
        runner,
        "team",
        "submit",
        "--db-path",
        str(db_path),
        *extra,
        "Research the history of sqlite",
    )
    match = re.search(r"Team formed: team_id=(\S+)", result.output)
    assert match is not None
    return match.group(1)


def test_submit_run_and_inspect_a_team(cli_env: Path) -> None:
    runner = CliRunner()
    db_path = str(cli_env)
    team_id = _submit(runner, cli_env, "--budget", "1.0")

    run = _invoke(runner, "team", "run", "--db-path", db_path, team_id)
    assert "Run summary:" in run.output
    assert "status=completed" in run.output
    assert "approved=1" in run.output

    show = _invoke(runner, "team", "show", "--db-path", db_path, team_id)
    assert f"Team: {team_id}" in show.output
    assert "Status: completed" in show.output
    assert "Open escalations: 0" in show.output

    listed = _invoke(runner, "team", "list", "--db-path", db_path, "--status", "completed")
    assert "Teams: 1" in listed.output

    tasks = _invoke(runner, "task", "list", "--db-path", db_path, "--team-id", team_id)
    assert "Tasks: 1" in tasks.output
    task_id = re.search(r"^\s+(\S+) status=approved", tasks.output, re.MULTILINE).group(1)

    inspect = _invoke(runner, "task", "inspect", "--db-path", db_path, task_id)
    assert "Status: approved" in inspect.output
    assert "Tool executions: 2" in inspect.output

    checkpoints = _invoke(runner, "checkpoint", "list", "--db-path", db_path, "--all", task_id)
    assert "Checkpoints: 2" in checkpoints.output

    cleanup = _invoke(runner, "checkpoint", "cleanup", "--db-path", db_path)
    assert "Checkpoint cleanup: removed=0" in cleanup.output


def test_budget_escalation_round_trip(cli_env: Path) -> None:
    runner = CliRunner()
    db_path = str(cli_env)
    team_id = _submit(runner, cli_env, "--budget", "0.001")

    paused = _invoke(runner, "team", "run", "--db-path", db_path, team_id)
    assert "status=paused" in paused.output
    assert "escalated=1" in paused.output

    escalations = _invoke(runner, "escalation", "list", "--db-path", db_path, "--team-id", team_id)
    assert "Escalations: 1" in escalations.output
    assert "category=resource_exhaustion" in escalations.output
    escalation_id = re.search(r"^\s+(\S+) task=", escalations.output, re.MULTILINE).group(1)

    budget = _invoke(runner, "team", "budget", "--db-path", db_path, "--limit", "1", team_id)
    assert "limit=1.0000" in budget.output

    resolved = _invoke(
        runner,
        "escalation",
        "resolve",
        "--db-path",
        db_path,
        "--resolution",
        "approve",
        escalation_id,
    )
    assert "Escalation resolved:" in resolved.output
    assert "the first step" in resolved.output

    completed = _invoke(runner, "team", "run", "--db-path", db_path, team_id)
    assert "status=completed" in completed.output

    remaining = _invoke(runner, "escalation", "list", "--db-path", db_path)
    assert "Escalations: 0" in remaining.output


def test_cost_report_as_json(cli_env: Path) -> None:
    runner = CliRunner()
    db_path = str(cli_env)
    team_id = _submit(runner, cli_env)
    _invoke(runner, "team", "run", "--db-path", db_path, team_id)

    report = _invoke(
        runner,
        "cost",
        "report",
        "--db-path",
        db_path,
        "--group-by",
        "tool",
        "--output-format",
        "json",
    )

    payload = json.loads(report.output)
    assert payload["group_by"] == "tool"
    assert {group["group_key"] for group in payload["groups"]} == {
        "workspace_search",
        "draft_writer",
    }
    assert sum(group["total_cost"] for group in payload["groups"]) == pytest.approx(0.06)

    table = _invoke(runner, "cost", "report", "--db-path", db_path, "--group-by", "team")
    assert "Cost report: groups=1 group_by=team total=0.0600" in table.output


def test_tool_list_shows_builtin_catalog(cli_env: Path) -> None:
    result = _invoke(CliRunner(), "tool", "list", "--db-path", str(cli_env))

    assert "Tools: 8" in result.output
    assert "workspace_search category=search" in result.output


def test_show_reports_missing_team(cli_env: Path) -> None:
    result = _invoke(CliRunner(), "team", "show", "--db-path", str(cli_env), "nope")

    assert "Team not found: nope" in result.output


def test_clarify_without_note_is_a_usage_error(cli_env: Path) -> None:
    runner = CliRunner()
    db_path = str(cli_env)
    team_id = _submit(runner, cli_env, "--budget", "0.001")
    _invoke(runner, "team", "run", "--db-path", db_path, team_id)
    escalations = _invoke(runner, "escalation", "list", "--db-path", db_path)
    escalation_id = re.search(r"^\s+(\S+) task=", escalations.output, re.MULTILINE).group(1)

    result = runner.invoke(
        taskcrew,
        ["escalation", "resolve", "--db-path", db_path, "--resolution", "clarify", escalation_id],
    )

    assert result.exit_code == 1
    assert "clarification" in result.output


def test_llm_planning_requires_completion_command(cli_env: Path) -> None:
    result = CliRunner().invoke(
        taskcrew,
        ["team", "submit", "--db-path", str(cli_env), "--llm", "Research sqlite"],
    )

    assert result.exit_code == 1
    assert "TASKCREW_COMPLETION_COMMAND" in result.output
