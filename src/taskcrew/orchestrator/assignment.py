"""Agent assignment: weighted skill/load/success scoring with optional spawning."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass

from taskcrew.config import AssignmentSettings
from taskcrew.orchestrator.errors import NoEligibleAgent
from taskcrew.orchestrator.models import AgentCreate, AgentRole, AgentView, TaskView
from taskcrew.orchestrator.repository import OrchestratorRepository
from taskcrew.orchestrator.skills import (
    SKILL_SPECIALIZATION,
    SPECIALIZATION_SKILLS,
    Skill,
    Specialization,
    holds_all,
    skill_match,
)

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class AgentScore:
    agent: AgentView
    score: float
    skill_match: float
    load_factor: float
    success_rate: float


class AgentAssigner:
    """Pick the best worker for a task.

    score = skill_weight * skill match
          + load_weight * (1 - workload / capacity)
          + success_weight * success rate on tasks needing the same primary skill
    Highest score wins; ties go to the agent with the lowest current load.
    """

    def __init__(
        self,
        repository: OrchestratorRepository,
        settings: AssignmentSettings | None = None,
        *,
        permitted_tools: dict[Specialization, tuple[str, ...]] | None = None,
    ) -> None:
        self.repository = repository
        self.settings = settings or AssignmentSettings()
        self.permitted_tools = permitted_tools or {}

    def required_skills(self, task: TaskView) -> dict[Skill, float]:
        return dict(task.required_skills)

    def score(self, agent: AgentView, required: dict[Skill, float]) -> AgentScore:
        match = skill_match(agent, required)
        capacity = max(1, agent.max_concurrent_tasks)
        load_factor = 1.0 - min(agent.current_workload, capacity) / capacity
        success = agent.success_rate(self.settings.default_success_rate, primary_skill(required))
        total = (
            self.settings.skill_weight * match
            + self.settings.load_weight * load_factor
            + self.settings.success_weight * success
        )
        return AgentScore(
            agent=agent,
            score=round(total, 9),
            skill_match=match,
            load_factor=load_factor,
            success_rate=success,
        )

    def rank(
        self,
        task: TaskView,
        *,
        exclude: Iterable[str] = (),
        require_capacity: bool = True,
    ) -> list[AgentScore]:
        required = self.required_skills(task)
        excluded = set(exclude)
        scores = []
        for agent in self.skilled_workers(task):
            if agent.agent_id in excluded:
                continue
            if require_capacity and not agent.has_capacity:
                continue
            scores.append(self.score(agent, required))
        scores.sort(
            key=lambda item: (-item.score, item.agent.current_workload, item.agent.agent_id),
        )
        return scores

    def skilled_workers(self, task: TaskView) -> list[AgentView]:
        required = self.required_skills(task)
        return [
            agent
            for agent in self.repository.list_agents(team_id=task.team_id, role=AgentRole.WORKER)
            if holds_all(agent, required, self.settings.minimum_proficiency)
        ]

    def assign(self, task: TaskView) -> AgentView | None:
        """Best eligible worker with free capacity.

        Returns None when qualified workers exist but all are at capacity; the
        task stays pending until a slot frees up. Raises `NoEligibleAgent` when
        no worker is qualified and no new one can be spawned.
        """

        ranked = self.rank(task)
        if ranked:
            return ranked[0].agent
        if self.skilled_workers(task):
            return None
        spawned = self.spawn_for(task)
        if spawned is not None:
            return spawned
        raise NoEligibleAgent(
            task.task_id,
            {skill.value: level for skill, level in self.required_skills(task).items()},
        )

    def find_alternative(self, task: TaskView, *, exclude: Iterable[str]) -> AgentView | None:
        ranked = self.rank(task, exclude=exclude)
        return ranked[0].agent if ranked else None

    def spawn_for(self, task: TaskView) -> AgentView | None:
        """Add a specialized worker for the task's skills when policy allows."""

        if not self.settings.allow_spawn:
            return None
        workers = self.repository.list_agents(team_id=task.team_id, role=AgentRole.WORKER)
        if len(workers) >= self.settings.max_workers:
            return None
        required = self.required_skills(task)
        specialization = _specialization_for(required)
        skills = dict(SPECIALIZATION_SKILLS[specialization])
        for skill, level in required.items():
            floor = max(level, self.settings.minimum_proficiency, self.settings.spawn_proficiency)
            skills[skill] = max(skills.get(skill, 0.0), min(1.0, floor))
        agent = self.repository.add_agent(
            team_id=task.team_id,
            payload=AgentCreate(
                role=AgentRole.WORKER,
                skills=skills,
                permitted_tools=self.permitted_tools.get(specialization, ()),
                specialization=specialization,
                max_concurrent_tasks=self.settings.max_concurrent_tasks,
            ),
        )
        logger.info(
            "Spawned %s worker %s for task %s",
            specialization.value,
            agent.agent_id,
            task.task_id,
        )
        return agent


def _specialization_for(required: dict[Skill, float]) -> Specialization:
    if not required:
        return Specialization.WRITER
    strongest = max(sorted(required, key=lambda skill: skill.value), key=lambda s: required[s])
    return SKILL_SPECIALIZATION[strongest]


def primary_skill(required: dict[Skill, float]) -> Skill | None:
    """The most demanding required skill; it identifies similar tasks."""

    if not required:
        return None
    return max(sorted(required), key=lambda skill: required[skill])
