from __future__ import annotations

from datetime import timedelta

import allure
import pytest
from conftest import default_roster

from taskcrew.config import CheckpointSettings
from taskcrew.orchestrator.checkpoints import CheckpointStore
from taskcrew.orchestrator.errors import CheckpointSequenceError, InvalidTransition, NoCheckpoint
from taskcrew.orchestrator.models import TaskStatus, TaskView
from taskcrew.storage.common import utc_now

pytestmark = [
    allure.epic("Resilience"),
    allure.feature("Checkpoints"),
]


@pytest.fixture()
def running_task(repository, team_factory) -> TaskView:
    team = team_factory()
    task = repository.list_tasks(team_id=team.team_id)[0]
    repository.transition_task(task_id=task.task_id, status_to=TaskStatus.ASSIGNED)
    return repository.transition_task(task_id=task.task_id, status_to=TaskStatus.IN_PROGRESS)


def test_checkpoints_are_sequential_and_advance_progress(repository, running_task) -> None:
    store = CheckpointStore(repository, CheckpointSettings())

    store.save(running_task.task_id, 1, {"outputs": ["a"]}, 0.1)
    store.save(running_task.task_id, 2, {"outputs": ["a", "b"]}, 0.3)

    latest = store.resume(running_task.task_id)
    assert latest.step_number == 2
    assert latest.snapshot == {"outputs": ["a", "b"]}
    assert latest.cumulative_cost == pytest.approx(0.3)
    assert repository.get_task(running_task.task_id).current_step == 2
    with pytest.raises(CheckpointSequenceError) as error:
        store.save(running_task.task_id, 4, {}, 0.3)
    assert (error.value.expected_step, error.value.got_step) == (3, 4)


def test_checkpoints_require_in_progress_task(repository, team_factory) -> None:
    team = team_factory()
    task = repository.list_tasks(team_id=team.team_id)[0]

    with pytest.raises(InvalidTransition, match="in_progress"):
        CheckpointStore(repository).save(task.task_id, 1, {}, 0.0)


def test_resume_without_checkpoint_raises(repository, running_task) -> None:
    with pytest.raises(NoCheckpoint):
        CheckpointStore(repository).resume(running_task.task_id)


def test_only_last_checkpoints_are_kept(repository, running_task) -> None:
    store = CheckpointStore(repository, CheckpointSettings(keep_last=2))

    for step in (1, 2, 3):
        store.save(running_task.task_id, step, {"step": step}, float(step))

    assert [item.step_number for item in store.list(running_task.task_id)] == [2, 3]


def test_rewind_invalidates_later_steps(repository, running_task) -> None:
    store = CheckpointStore(repository, CheckpointSettings())
    for step in (1, 2, 3):
        store.save(running_task.task_id, step, {"step": step}, float(step))

    invalidated = store.rewind(running_task.task_id, 1)

    assert invalidated == 2
    assert store.latest(running_task.task_id).step_number == 1
    assert repository.get_task(running_task.task_id).current_step == 1
    everything = store.list(running_task.task_id, include_invalidated=True)
    assert [(item.step_number, item.invalidated_at is None) for item in everything] == [
        (1, True),
        (2, False),
        (3, False),
    ]
    store.save(running_task.task_id, 2, {"step": "2b"}, 2.5)
    assert store.latest(running_task.task_id).snapshot == {"step": "2b"}
    with pytest.raises(NoCheckpoint):
        store.rewind(running_task.task_id, 3)


def test_cleanup_removes_terminal_and_stale_invalidated(repository, team_factory) -> None:
    finished_team = team_factory()
    finished = repository.list_tasks(team_id=finished_team.team_id)[0]
    repository.transition_task(task_id=finished.task_id, status_to=TaskStatus.ASSIGNED)
    repository.transition_task(task_id=finished.task_id, status_to=TaskStatus.IN_PROGRESS)
    store = CheckpointStore(repository, CheckpointSettings(terminal_retention_hours=24))
    store.save(finished.task_id, 1, {}, 0.0)
    store.save(finished.task_id, 2, {}, 0.0)
    repository.transition_task(task_id=finished.task_id, status_to=TaskStatus.ABORTED)

    live_team = team_factory(agents=default_roster(suffix="-live"))
    live = repository.list_tasks(team_id=live_team.team_id)[0]
    repository.transition_task(task_id=live.task_id, status_to=TaskStatus.ASSIGNED)
    repository.transition_task(task_id=live.task_id, status_to=TaskStatus.IN_PROGRESS)
    store.save(live.task_id, 1, {}, 0.0)
    store.save(live.task_id, 2, {}, 0.0)
    store.rewind(live.task_id, 1)

    early = store.cleanup(now=utc_now())
    late = store.cleanup(now=utc_now() + timedelta(hours=25))

    assert early.removed == 0
    assert (late.removed_terminal, late.removed_invalidated) == (2, 1)
    assert store.list(finished.task_id, include_invalidated=True) == []
    assert [item.step_number for item in store.list(live.task_id, include_invalidated=True)] == [1]
