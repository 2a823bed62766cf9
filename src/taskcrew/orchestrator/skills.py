"""Enumerated skills/capabilities and the per-agent skill registry."""

from __future__ import annotations

import threading
from collections.abc import Mapping
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from taskcrew.orchestrator.repository import OrchestratorRepository


class Skill(str, Enum):
    """Skills a worker can hold with a proficiency in [0, 1]."""

    RESEARCH = "research"
    CODING = "coding"
    CODE_REVIEW = "code_review"
    TESTING = "testing"
    WRITING = "writing"
    DATA_ANALYSIS = "data_analysis"
    PLANNING = "planning"


class Capability(str, Enum):
    """Capability tags declared by tools and required by task steps."""

    WEB_SEARCH = "web_search"
    DOCUMENT_RETRIEVAL = "document_retrieval"
    CODE_GENERATION = "code_generation"
    CODE_EXECUTION = "code_execution"
    DATA_ANALYSIS = "data_analysis"
    FILE_READ = "file_read"
    FILE_WRITE = "file_write"
    TEXT_GENERATION = "text_generation"
    SUMMARIZATION = "summarization"
    VALIDATION = "validation"


class Specialization(str, Enum):
    """Worker specializations used to form team rosters."""

    RESEARCHER = "researcher"
    CODER = "coder"
    REVIEWER = "reviewer"
    TESTER = "tester"
    WRITER = "writer"


SPECIALIZATION_SKILLS: dict[Specialization, dict[Skill, float]] = {
    Specialization.RESEARCHER: {
        Skill.RESEARCH: 0.9,
        Skill.DATA_ANALYSIS: 0.7,
        Skill.WRITING: 0.6,
    },
    Specialization.CODER: {
        Skill.CODING: 0.9,
        Skill.TESTING: 0.6,
        Skill.DATA_ANALYSIS: 0.6,
    },
    Specialization.REVIEWER: {
        Skill.CODE_REVIEW: 0.9,
        Skill.WRITING: 0.7,
        Skill.RESEARCH: 0.6,
    },
    Specialization.TESTER: {
        Skill.TESTING: 0.9,
        Skill.CODING: 0.7,
        Skill.CODE_REVIEW: 0.6,
    },
    Specialization.WRITER: {
        Skill.WRITING: 0.9,
        Skill.RESEARCH: 0.7,
        Skill.DATA_ANALYSIS: 0.5,
    },
}

MANAGER_SKILLS: dict[Skill, float] = {
    Skill.PLANNING: 0.9,
    Skill.CODE_REVIEW: 0.7,
    Skill.WRITING: 0.6,
}

SPECIALIZATION_CAPABILITIES: dict[Specialization, frozenset[Capability]] = {
    Specialization.RESEARCHER: frozenset(
        {
            Capability.WEB_SEARCH,
            Capability.DOCUMENT_RETRIEVAL,
            Capability.DATA_ANALYSIS,
            Capability.SUMMARIZATION,
            Capability.FILE_READ,
            Capability.TEXT_GENERATION,
        },
    ),
    Specialization.CODER: frozenset(
        {
            Capability.CODE_GENERATION,
            Capability.CODE_EXECUTION,
            Capability.FILE_READ,
            Capability.FILE_WRITE,
            Capability.DATA_ANALYSIS,
        },
    ),
    Specialization.REVIEWER: frozenset(
        {
            Capability.VALIDATION,
            Capability.FILE_READ,
            Capability.SUMMARIZATION,
            Capability.TEXT_GENERATION,
        },
    ),
    Specialization.TESTER: frozenset(
        {
            Capability.CODE_GENERATION,
            Capability.CODE_EXECUTION,
            Capability.VALIDATION,
            Capability.FILE_READ,
        },
    ),
    Specialization.WRITER: frozenset(
        {
            Capability.TEXT_GENERATION,
            Capability.SUMMARIZATION,
            Capability.DOCUMENT_RETRIEVAL,
            Capability.FILE_WRITE,
        },
    ),
}

SKILL_SPECIALIZATION: dict[Skill, Specialization] = {
    Skill.RESEARCH: Specialization.RESEARCHER,
    Skill.DATA_ANALYSIS: Specialization.RESEARCHER,
    Skill.CODING: Specialization.CODER,
    Skill.CODE_REVIEW: Specialization.REVIEWER,
    Skill.TESTING: Specialization.TESTER,
    Skill.WRITING: Specialization.WRITER,
    Skill.PLANNING: Specialization.WRITER,
}


class HasSkills(Protocol):
    """Anything exposing a skill -> proficiency mapping."""

    @property
    def skills(self) -> Mapping[Skill, float]: ...


class HasCapabilities(Protocol):
    """Anything exposing enumerated capability tags."""

    @property
    def capabilities(self) -> frozenset[Capability]: ...


def skill_match(holder: HasSkills, required: Mapping[Skill, float]) -> float:
    """Average proficiency across required skills (1.0 when nothing is required)."""

    if not required:
        return 1.0
    return sum(holder.skills.get(skill, 0.0) for skill in required) / len(required)


def holds_all(holder: HasSkills, required: Mapping[Skill, float], minimum: float) -> bool:
    """True when every required skill is held at or above both its level and `minimum`."""

    for skill, level in required.items():
        if holder.skills.get(skill, 0.0) < max(level, minimum):
            return False
    return True


def missing_skills(holder: HasSkills, required: Mapping[Skill, float]) -> dict[Skill, float]:
    """Required skills the holder lacks, with the shortfall."""

    gaps: dict[Skill, float] = {}
    for skill, level in required.items():
        held = holder.skills.get(skill, 0.0)
        if held < level:
            gaps[skill] = round(level - held, 4)
    return gaps


def capability_overlap(holder: HasCapabilities, required: frozenset[Capability]) -> float:
    """Share of required capabilities offered by the holder."""

    if not required:
        return 0.0
    return len(holder.capabilities & required) / len(required)


def parse_skills(raw: Mapping[str, float]) -> dict[Skill, float]:
    """Convert a stored mapping into enum keys, clamping proficiencies to [0, 1]."""

    return {Skill(name): _clamp(float(value)) for name, value in raw.items()}


def dump_skills(skills: Mapping[Skill, float]) -> dict[str, float]:
    return {skill.value: round(_clamp(value), 4) for skill, value in sorted(skills.items())}


def parse_skill_outcomes(raw: Mapping[str, Any]) -> dict[Skill, tuple[int, int]]:
    outcomes: dict[Skill, tuple[int, int]] = {}
    for name, pair in raw.items():
        attempted, succeeded = (int(value) for value in pair)
        outcomes[Skill(name)] = (attempted, min(succeeded, attempted))
    return outcomes


def dump_skill_outcomes(outcomes: Mapping[Skill, tuple[int, int]]) -> dict[str, list[int]]:
    return {skill.value: list(pair) for skill, pair in sorted(outcomes.items())}


class SkillRegistry:
    """Per-agent skill lookups backed by the orchestrator store."""

    def __init__(self, repository: OrchestratorRepository, *, learning_rate: float = 0.1) -> None:
        self.repository = repository
        self.learning_rate = learning_rate
        self._lock = threading.Lock()

    def get(self, agent_id: str) -> dict[Skill, float]:
        agent = self.repository.get_agent(agent_id)
        if agent is None:
            raise RuntimeError(f"Agent not found: {agent_id}")
        return dict(agent.skills)

    def proficiency(self, agent_id: str, skill: Skill) -> float:
        return self.get(agent_id).get(skill, 0.0)

    def holds_all(
        self,
        agent_id: str,
        required: Mapping[Skill, float],
        minimum: float,
    ) -> bool:
        agent = self.repository.get_agent(agent_id)
        if agent is None:
            return False
        return holds_all(agent, required, minimum)

    def update(self, agent_id: str, skill: Skill, proficiency: float) -> dict[Skill, float]:
        """Set one proficiency explicitly."""

        with self._lock:
            skills = self.get(agent_id)
            skills[skill] = _clamp(proficiency)
            self.repository.update_agent_skills(agent_id=agent_id, skills=skills)
            return skills

    def record_outcome(
        self,
        agent_id: str,
        skills_used: Mapping[Skill, float],
        *,
        success: bool,
    ) -> dict[Skill, float]:
        """Nudge used skills toward 1.0 on success and toward 0.0 on failure.

        Only skills the agent already holds are adjusted; the task outcome
        counters are updated in the same call.
        """

        with self._lock:
            skills = self.get(agent_id)
            target = 1.0 if success else 0.0
            for skill in skills_used:
                if skill not in skills:
                    continue
                current = skills[skill]
                skills[skill] = _clamp(current + self.learning_rate * (target - current))
            self.repository.update_agent_skills(agent_id=agent_id, skills=skills)
            self.repository.record_agent_outcome(
                agent_id=agent_id,
                success=success,
                skills=skills_used,
            )
            return skills


def _clamp(value: float) -> float:
    return min(1.0, max(0.0, value))
