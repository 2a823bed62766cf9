from __future__ import annotations

from collections.abc import Iterator

import allure
import pytest

from conftest import default_roster, writing_task
from taskcrew.orchestrator.errors import InvalidTransition
from taskcrew.orchestrator.events import AuditEvent, EventBus, freeze_details
from taskcrew.orchestrator.models import TaskStatus, TeamCreate, TeamView
from taskcrew.orchestrator.repository import OrchestratorRepository
from taskcrew.storage.common import utc_now

pytestmark = [
    allure.epic("Storage"),
    allure.feature("Audit Events"),
]


@pytest.fixture()
def bus() -> EventBus:
    return EventBus()


@pytest.fixture()
def seen(bus: EventBus) -> list[AuditEvent]:
    events: list[AuditEvent] = []
    bus.subscribe(events.append)
    return events


@pytest.fixture()
def observed_repository(settings, bus: EventBus) -> Iterator[OrchestratorRepository]:
    repo = OrchestratorRepository(settings.db_path, event_bus=bus)
    repo.init_schema()
    try:
        yield repo
    finally:
        repo.close()


def _create_team(repository: OrchestratorRepository) -> TeamView:
    return repository.create_team(
        TeamCreate(goal="Ship it"),
        agents=default_roster(),
        tasks=[writing_task()],
    )


def _event(event_id: int) -> AuditEvent:
    return AuditEvent(
        event_id=event_id,
        team_id="team-1",
        task_id=None,
        entity_type="team",
        entity_id="team-1",
        event_type="team_formed",
        status_from=None,
        status_to="forming",
        created_at=utc_now(),
        details=freeze_details({"goal": "x"}),
    )


def test_committed_transitions_are_published(observed_repository, seen) -> None:
    team = _create_team(observed_repository)
    task = observed_repository.list_tasks(team_id=team.team_id)[0]
    seen.clear()

    observed_repository.transition_task(task_id=task.task_id, status_to=TaskStatus.ASSIGNED)

    assert [event.event_type for event in seen] == ["task_status_changed"]
    event = seen[0]
    assert (event.status_from, event.status_to) == ("pending", "assigned")
    assert event.event_id > 0
    with pytest.raises(TypeError):
        event.details["tampered"] = True  # type: ignore[index]


def test_create_team_publishes_formation_events_in_order(observed_repository, seen) -> None:
    _create_team(observed_repository)

    event_types = [event.event_type for event in seen]
    assert event_types[0] == "team_formed"
    assert event_types.count("agent_created") == 3
    assert event_types[-1] == "task_created"
    assert [event.event_id for event in seen] == sorted(event.event_id for event in seen)


def test_rejected_transitions_publish_nothing(observed_repository, seen) -> None:
    team = _create_team(observed_repository)
    task = observed_repository.list_tasks(team_id=team.team_id)[0]
    seen.clear()

    with pytest.raises(InvalidTransition):
        observed_repository.transition_task(task_id=task.task_id, status_to=TaskStatus.APPROVED)

    assert seen == []


def test_failing_subscriber_does_not_block_others(bus, seen) -> None:
    def _broken(event: AuditEvent) -> None:
        raise RuntimeError("subscriber bug")

    bus.subscribe(_broken)
    late: list[AuditEvent] = []
    bus.subscribe(late.append)

    bus.publish([_event(1), _event(2)])

    assert [event.event_id for event in seen] == [1, 2]
    assert [event.event_id for event in late] == [1, 2]


def test_unsubscribe_stops_delivery(bus) -> None:
    received: list[AuditEvent] = []
    unsubscribe = bus.subscribe(received.append)

    unsubscribe()
    unsubscribe()
    bus.publish([_event(1)])

    assert received == []
