from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor

import allure
import pytest

from taskcrew.orchestrator.budget import BudgetGuard
from taskcrew.orchestrator.errors import BudgetExceeded
from taskcrew.orchestrator.models import ToolExecutionWrite

pytestmark = [
    allure.epic("Budget"),
    allure.feature("Budget Guard"),
]


def test_reservations_cannot_jointly_exceed_limit(repository, team_factory) -> None:
    team = team_factory(budget_limit=1.0)
    guard = BudgetGuard(repository)

    first = guard.reserve(team.team_id, 0.6)
    with pytest.raises(BudgetExceeded) as error:
        guard.reserve(team.team_id, 0.5)

    assert error.value.committed == pytest.approx(0.6)
    assert error.value.requested == pytest.approx(0.5)
    guard.release(team.team_id, first)
    guard.reserve(team.team_id, 0.5)
    assert guard.remaining(team.team_id) == pytest.approx(0.5)


def test_snapshot_reads_committed_spend_from_ledger(repository, team_factory) -> None:
    team = team_factory(budget_limit=2.0)
    task = repository.list_tasks(team_id=team.team_id)[0]
    repository.record_tool_execution(
        ToolExecutionWrite(
            team_id=team.team_id,
            task_id=task.task_id,
            tool_id="draft_writer",
            agent_id=None,
            tool_input={"prompt": "x"},
            output={"text": "y"},
            cost_units=0.75,
        ),
    )
    guard = BudgetGuard(repository)
    guard.reserve(team.team_id, 0.25)

    snapshot = guard.snapshot(team.team_id)

    assert snapshot.spent == pytest.approx(0.75)
    assert snapshot.reserved == pytest.approx(0.25)
    assert snapshot.remaining == pytest.approx(1.0)
    with pytest.raises(BudgetExceeded):
        guard.reserve(team.team_id, 1.01)


def test_unlimited_team_never_blocks(repository, team_factory) -> None:
    team = team_factory()
    guard = BudgetGuard(repository)

    guard.reserve(team.team_id, 1_000_000.0)

    assert guard.remaining(team.team_id) is None


def test_unknown_team_is_an_error(repository) -> None:
    with pytest.raises(RuntimeError, match="Team not found"):
        BudgetGuard(repository).snapshot("missing")


def test_concurrent_reservations_grant_only_what_fits(repository, team_factory) -> None:
    team = team_factory(budget_limit=1.0)
    guard = BudgetGuard(repository)
    gate = threading.Barrier(50)

    def attempt() -> bool:
        gate.wait(10)
        try:
            guard.reserve(team.team_id, 0.1)
        except BudgetExceeded:
            return False
        return True

    with ThreadPoolExecutor(max_workers=50) as pool:
        granted = [future.result() for future in [pool.submit(attempt) for _ in range(50)]]

    assert granted.count(True) == 10
    assert guard.snapshot(team.team_id).reserved == pytest.approx(1.0)


def test_settle_caps_cost_at_remaining_budget(repository, team_factory) -> None:
    team = team_factory(budget_limit=1.0)
    guard = BudgetGuard(repository)
    other = guard.reserve(team.team_id, 0.3)
    mine = guard.reserve(team.team_id, 0.0)

    assert guard.settle(team.team_id, mine, 0.2) == pytest.approx(0.2)
    assert guard.settle(team.team_id, mine, 5.0) == pytest.approx(0.7)
    assert guard.snapshot(team.team_id).reserved == pytest.approx(1.0)
    guard.release(team.team_id, other)
    guard.release(team.team_id, mine)
    assert guard.remaining(team.team_id) == pytest.approx(1.0)
