"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from dataclasses import replace
from pathlib import Path

import pytest

from taskcrew.config import Settings
from taskcrew.orchestrator.models import (
    AgentCreate,
    AgentRole,
    PlannedStep,
    TaskCreate,
    TeamCreate,
    TeamView,
)
from taskcrew.orchestrator.repository import OrchestratorRepository
from taskcrew.orchestrator.skills import Capability, Skill, Specialization

WRITER_ID = "agent-writer"
CODER_ID = "agent-coder"
MANAGER_ID = "agent-manager"


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    base = Settings(db_path=tmp_path / "taskcrew.db")
    return replace(
        base,
        execution=replace(base.execution, workspace_root=tmp_path / "workspace"),
    )


@pytest.fixture()
def repository(settings: Settings) -> Iterator[OrchestratorRepository]:
    repo = OrchestratorRepository(settings.db_path)
    repo.init_schema()
    try:
        yield repo
    finally:
        repo.close()


def writing_task(**overrides) -> TaskCreate:
    values = {
        "title": "Draft release notes",
        "description": "Write release notes for the sqlite upgrade",
        "acceptance_criteria": ("release notes sqlite upgrade",),
        "required_skills": {Skill.WRITING: 0.5},
        "required_capabilities": (Capability.TEXT_GENERATION,),
        "steps": (
            PlannedStep(
                description="Write draft: release notes for the sqlite upgrade",
                capabilities=(Capability.TEXT_GENERATION,),
            ),
        ),
    }
    values.update(overrides)
    return TaskCreate(**values)


def default_roster(permitted_tools: tuple[str, ...] = (), *, suffix: str = "") -> list[AgentCreate]:
    """`suffix` keeps agent ids unique when one test forms several teams."""

    return [
        AgentCreate(
            role=AgentRole.MANAGER,
            skills={Skill.PLANNING: 0.9},
            permitted_tools=permitted_tools,
            agent_id=MANAGER_ID + suffix,
        ),
        AgentCreate(
            role=AgentRole.WORKER,
            skills={Skill.WRITING: 0.9, Skill.RESEARCH: 0.7},
            permitted_tools=permitted_tools,
            specialization=Specialization.WRITER,
            agent_id=WRITER_ID + suffix,
        ),
        AgentCreate(
            role=AgentRole.WORKER,
            skills={Skill.CODING: 0.9, Skill.TESTING: 0.6},
            permitted_tools=permitted_tools,
            specialization=Specialization.CODER,
            agent_id=CODER_ID + suffix,
        ),
    ]


@pytest.fixture()
def team_factory(repository: OrchestratorRepository) -> Callable[..., TeamView]:
    """Create a team with the default roster and one writing task unless overridden."""

    def _create(
        *,
        budget_limit: float | None = None,
        tasks: list[TaskCreate] | None = None,
        agents: list[AgentCreate] | None = None,
        team_id: str | None = None,
    ) -> TeamView:
        return repository.create_team(
            TeamCreate(goal="Ship the sqlite upgrade", budget_limit=budget_limit, team_id=team_id),
            agents=agents if agents is not None else default_roster(),
            tasks=tasks if tasks is not None else [writing_task()],
        )

    return _create
