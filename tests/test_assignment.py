from __future__ import annotations

import allure
import pytest

from conftest import CODER_ID, MANAGER_ID, WRITER_ID, default_roster, writing_task
from taskcrew.config import AssignmentSettings
from taskcrew.orchestrator.assignment import AgentAssigner, primary_skill
from taskcrew.orchestrator.errors import NoEligibleAgent
from taskcrew.orchestrator.models import AgentCreate, AgentRole, PlannedStep
from taskcrew.orchestrator.skills import Capability, Skill, SkillRegistry, Specialization

pytestmark = [
    allure.epic("Teams"),
    allure.feature("Assignment"),
]


def _coding_task(**overrides):
    values = {
        "title": "Implement migration",
        "description": "Implement the sqlite migration and its tests",
        "required_skills": {Skill.CODING: 0.8, Skill.TESTING: 0.6},
        "required_capabilities": (Capability.CODE_GENERATION,),
        "steps": (
            PlannedStep(description="Write code", capabilities=(Capability.CODE_GENERATION,)),
        ),
    }
    values.update(overrides)
    return writing_task(**values)


def _worker(agent_id: str, skills: dict[Skill, float], capacity: int = 3) -> AgentCreate:
    return AgentCreate(
        role=AgentRole.WORKER,
        skills=skills,
        specialization=Specialization.CODER,
        max_concurrent_tasks=capacity,
        agent_id=agent_id,
    )


def _record_outcomes(
    repository,
    agent_id: str,
    *,
    succeeded: int,
    attempted: int,
    skills: tuple[Skill, ...] = (),
) -> None:
    for index in range(attempted):
        repository.record_agent_outcome(
            agent_id=agent_id,
            success=index < succeeded,
            skills=skills,
        )


def test_weighted_score_prefers_idle_agent_over_busy_expert(repository, team_factory) -> None:
    team = team_factory(
        agents=[
            _worker("expert", {Skill.CODING: 0.95, Skill.TESTING: 0.85}),
            _worker("generalist", {Skill.CODING: 0.82, Skill.TESTING: 0.65}),
        ],
        tasks=[_coding_task()],
    )
    task = repository.list_tasks(team_id=team.team_id)[0]
    repository.acquire_agent_slot(agent_id="expert")
    repository.acquire_agent_slot(agent_id="expert")
    _record_outcomes(repository, "expert", succeeded=9, attempted=10)
    _record_outcomes(repository, "generalist", succeeded=5, attempted=10)
    assigner = AgentAssigner(repository, AssignmentSettings())

    ranked = assigner.rank(task)

    assert [item.agent.agent_id for item in ranked] == ["generalist", "expert"]
    assert ranked[0].score == pytest.approx(0.7675)
    assert ranked[1].score == pytest.approx(0.73)
    assert ranked[1].load_factor == pytest.approx(1 / 3)
    assert assigner.assign(task).agent_id == "generalist"


def test_ties_go_to_lowest_load(repository, team_factory) -> None:
    skills = {Skill.CODING: 0.9, Skill.TESTING: 0.7}
    team = team_factory(
        agents=[_worker("a", skills, capacity=100), _worker("b", skills, capacity=100)],
        tasks=[_coding_task()],
    )
    task = repository.list_tasks(team_id=team.team_id)[0]
    assigner = AgentAssigner(repository, AssignmentSettings(load_weight=0.0, skill_weight=0.8))
    repository.acquire_agent_slot(agent_id="a")

    ranked = assigner.rank(task)

    assert ranked[0].score == ranked[1].score
    assert ranked[0].agent.agent_id == "b"


def test_assign_returns_none_when_skilled_workers_are_full(repository, team_factory) -> None:
    team = team_factory(
        agents=[_worker("solo", {Skill.CODING: 0.9, Skill.TESTING: 0.7}, capacity=1)],
        tasks=[_coding_task()],
    )
    task = repository.list_tasks(team_id=team.team_id)[0]
    assert repository.acquire_agent_slot(agent_id="solo") is True
    assert repository.acquire_agent_slot(agent_id="solo") is False

    assigner = AgentAssigner(repository, AssignmentSettings(allow_spawn=False))

    assert assigner.assign(task) is None
    assert [item.agent.agent_id for item in assigner.rank(task, require_capacity=False)] == [
        "solo",
    ]


def test_no_eligible_agent_without_spawn(repository, team_factory) -> None:
    team = team_factory(tasks=[_coding_task(required_skills={Skill.CODE_REVIEW: 0.8})])
    task = repository.list_tasks(team_id=team.team_id)[0]
    assigner = AgentAssigner(repository, AssignmentSettings(allow_spawn=False))

    with pytest.raises(NoEligibleAgent) as error:
        assigner.assign(task)

    assert error.value.required == {"code_review": 0.8}


def test_spawn_adds_specialized_worker(repository, team_factory) -> None:
    team = team_factory(tasks=[_coding_task(required_skills={Skill.CODE_REVIEW: 0.8})])
    task = repository.list_tasks(team_id=team.team_id)[0]
    assigner = AgentAssigner(
        repository,
        AssignmentSettings(),
        permitted_tools={Specialization.REVIEWER: ("syntax_checker",)},
    )

    agent = assigner.assign(task)

    assert agent is not None
    assert agent.agent_id not in {WRITER_ID, CODER_ID, MANAGER_ID}
    assert agent.specialization == Specialization.REVIEWER
    assert agent.skills[Skill.CODE_REVIEW] >= 0.8
    assert agent.permitted_tools == ("syntax_checker",)


def test_spawn_respects_worker_ceiling(repository, team_factory) -> None:
    team = team_factory(tasks=[_coding_task(required_skills={Skill.CODE_REVIEW: 0.8})])
    task = repository.list_tasks(team_id=team.team_id)[0]
    assigner = AgentAssigner(repository, AssignmentSettings(min_workers=1, max_workers=2))

    assert assigner.spawn_for(task) is None


def test_find_alternative_excludes_failed_agent(repository, team_factory) -> None:
    roster = [*default_roster(), _worker("second-coder", {Skill.CODING: 0.85, Skill.TESTING: 0.7})]
    team = team_factory(agents=roster, tasks=[_coding_task()])
    task = repository.list_tasks(team_id=team.team_id)[0]
    assigner = AgentAssigner(repository, AssignmentSettings())

    alternative = assigner.find_alternative(task, exclude=[CODER_ID])

    assert alternative is not None
    assert alternative.agent_id == "second-coder"
    assert assigner.find_alternative(task, exclude=[CODER_ID, "second-coder"]) is None


def test_manager_is_never_assigned_worker_tasks(repository, team_factory) -> None:
    team = team_factory(tasks=[_coding_task(required_skills={Skill.PLANNING: 0.5})])
    task = repository.list_tasks(team_id=team.team_id)[0]

    with pytest.raises(NoEligibleAgent):
        AgentAssigner(repository, AssignmentSettings(allow_spawn=False)).assign(task)


def test_skill_registry_learns_from_outcomes(repository, team_factory) -> None:
    team_factory()
    registry = SkillRegistry(repository, learning_rate=0.1)

    after_success = registry.record_outcome(
        WRITER_ID,
        {Skill.WRITING: 0.5, Skill.CODING: 0.5},
        success=True,
    )
    after_failure = registry.record_outcome(WRITER_ID, {Skill.RESEARCH: 0.5}, success=False)

    assert after_success[Skill.WRITING] == pytest.approx(0.91)
    assert Skill.CODING not in after_success
    assert after_failure[Skill.RESEARCH] == pytest.approx(0.63)
    agent = repository.get_agent(WRITER_ID)
    assert (agent.tasks_attempted, agent.tasks_succeeded) == (2, 1)
    assert registry.holds_all(WRITER_ID, {Skill.WRITING: 0.9}, 0.5)
    assert not registry.holds_all("missing", {Skill.WRITING: 0.1}, 0.5)


def test_success_on_similar_tasks_outweighs_overall_record(repository, team_factory) -> None:
    skills = {Skill.CODING: 0.9, Skill.TESTING: 0.7, Skill.WRITING: 0.7}
    team = team_factory(
        agents=[_worker("prolific", skills), _worker("specialist", skills)],
        tasks=[_coding_task()],
    )
    task = repository.list_tasks(team_id=team.team_id)[0]
    _record_outcomes(repository, "prolific", succeeded=6, attempted=6, skills=(Skill.WRITING,))
    _record_outcomes(repository, "prolific", succeeded=0, attempted=4, skills=(Skill.CODING,))
    _record_outcomes(repository, "specialist", succeeded=3, attempted=3, skills=(Skill.CODING,))
    _record_outcomes(repository, "specialist", succeeded=0, attempted=7, skills=(Skill.WRITING,))
    prolific = repository.get_agent("prolific")
    specialist = repository.get_agent("specialist")
    assert prolific.success_rate(0.5) > specialist.success_rate(0.5)

    ranked = AgentAssigner(repository, AssignmentSettings()).rank(task)

    assert primary_skill(task.required_skills) == Skill.CODING
    assert [item.agent.agent_id for item in ranked] == ["specialist", "prolific"]
    assert ranked[0].success_rate == pytest.approx(1.0)
    assert ranked[1].success_rate == pytest.approx(0.0)


def test_success_rate_falls_back_to_overall_then_default(repository, team_factory) -> None:
    team_factory(agents=[_worker("veteran", {Skill.CODING: 0.9}), _worker("rookie", {})])
    _record_outcomes(repository, "veteran", succeeded=3, attempted=4, skills=(Skill.CODING,))

    veteran = repository.get_agent("veteran")
    rookie = repository.get_agent("rookie")

    assert veteran.skill_outcomes == {Skill.CODING: (4, 3)}
    assert veteran.success_rate(0.5, Skill.CODING) == pytest.approx(0.75)
    assert veteran.success_rate(0.5, Skill.RESEARCH) == pytest.approx(0.75)
    assert rookie.success_rate(0.5, Skill.CODING) == pytest.approx(0.5)
    assert primary_skill({}) is None
