"""Goal decomposition into task trees and team roster planning."""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Protocol

from taskcrew.config import Settings
from taskcrew.orchestrator.backend.base import CompletionClient, CompletionRequest, ProviderError
from taskcrew.orchestrator.models import AgentCreate, AgentRole, PlannedStep, TaskCreate
from taskcrew.orchestrator.skills import (
    MANAGER_SKILLS,
    SKILL_SPECIALIZATION,
    SPECIALIZATION_CAPABILITIES,
    SPECIALIZATION_SKILLS,
    Capability,
    Skill,
    Specialization,
)
from taskcrew.orchestrator.tools.registry import ToolDefinition

logger = logging.getLogger(__name__)

_CLAUSE_SPLIT = re.compile(r"(?<=[.!?;])\s+|\s*;\s*|\s+then\s+|\n+", re.IGNORECASE)
_JSON_ARRAY_RE = re.compile(r"```(?:json)?\s*(\[.*?\])\s*```", re.DOTALL)
_WORD = re.compile(r"[a-z]+")

# Checked in order; the first skill whose keywords occur in a clause wins.
SKILL_KEYWORDS: tuple[tuple[Skill, frozenset[str]], ...] = (
    (Skill.TESTING, frozenset({"test", "tests", "testing", "verify", "qa"})),
    (Skill.CODE_REVIEW, frozenset({"review", "audit", "inspect", "critique"})),
    (
        Skill.CODING,
        frozenset({"code", "implement", "build", "program", "script", "function", "fix"}),
    ),
    (
        Skill.DATA_ANALYSIS,
        frozenset({"analyze", "analyse", "analysis", "compare", "measure", "statistics"}),
    ),
    (
        Skill.RESEARCH,
        frozenset({"research", "investigate", "find", "search", "gather", "collect", "survey"}),
    ),
    (
        Skill.WRITING,
        frozenset({"write", "draft", "summarize", "summarise", "report", "document", "explain"}),
    ),
)
DEFAULT_SKILL = Skill.RESEARCH

SKILL_STEPS: dict[Skill, tuple[tuple[str, tuple[Capability, ...]], ...]] = {
    Skill.RESEARCH: (
        ("Gather sources", (Capability.DOCUMENT_RETRIEVAL,)),
        ("Summarize findings", (Capability.SUMMARIZATION,)),
    ),
    Skill.DATA_ANALYSIS: (
        ("Analyze material", (Capability.DATA_ANALYSIS,)),
        ("Summarize analysis", (Capability.SUMMARIZATION,)),
    ),
    Skill.CODING: (
        ("Write code", (Capability.CODE_GENERATION,)),
        ("Run code", (Capability.CODE_EXECUTION,)),
    ),
    Skill.TESTING: (
        ("Write test code", (Capability.CODE_GENERATION,)),
        ("Validate test code", (Capability.VALIDATION,)),
        ("Run tests", (Capability.CODE_EXECUTION,)),
    ),
    Skill.CODE_REVIEW: (("Write review notes", (Capability.TEXT_GENERATION,)),),
    Skill.WRITING: (("Write draft", (Capability.TEXT_GENERATION,)),),
    Skill.PLANNING: (("Write plan", (Capability.TEXT_GENERATION,)),),
}

ROSTER_ORDER: tuple[Specialization, ...] = (
    Specialization.RESEARCHER,
    Specialization.WRITER,
    Specialization.CODER,
    Specialization.REVIEWER,
    Specialization.TESTER,
)

DECOMPOSE_PROMPT = """\
Split the goal below into 1-6 independent work items.
Reply with a JSON array only. Each item must be an object with keys:
"title", "description", "skill" (one of: {skills}), "acceptance_criteria" (list of strings).

Goal: {goal}
"""


@dataclass(slots=True)
class TaskTree:
    """Root task with nested children, ready for `create_team`."""

    goal: str
    root: TaskCreate

    def leaves(self) -> list[TaskCreate]:
        found: list[TaskCreate] = []
        stack = [self.root]
        while stack:
            node = stack.pop()
            if node.children:
                stack.extend(reversed(node.children))
            else:
                found.append(node)
        return found

    def required_skills(self) -> list[Skill]:
        seen: list[Skill] = []
        for leaf in self.leaves():
            for skill in leaf.required_skills:
                if skill not in seen:
                    seen.append(skill)
        return seen


class GoalDecomposer(Protocol):
    def decompose(self, goal: str) -> TaskTree: ...


class HeuristicDecomposer:
    """Deterministic clause splitting with keyword -> skill inference."""

    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings or Settings()

    def decompose(self, goal: str) -> TaskTree:
        cleaned = " ".join(goal.split())
        if not cleaned:
            raise ValueError("Goal must not be empty.")
        clauses = split_clauses(cleaned)
        leaves = [
            self.leaf(title=_title(clause), description=clause, skill=infer_skill(clause))
            for clause in clauses
        ]
        if len(leaves) == 1:
            return TaskTree(goal=cleaned, root=leaves[0])
        root = TaskCreate(
            title=_title(cleaned),
            description=cleaned,
            max_revisions=self.settings.revision.max_revisions,
            acceptance_threshold=self.settings.revision.acceptance_threshold,
            children=leaves,
        )
        return TaskTree(goal=cleaned, root=root)

    def leaf(
        self,
        *,
        title: str,
        description: str,
        skill: Skill,
        acceptance_criteria: tuple[str, ...] | None = None,
    ) -> TaskCreate:
        steps = tuple(
            PlannedStep(
                description=f"{label}: {description}",
                capabilities=capabilities,
                keywords=tuple(_keywords(description)),
            )
            for label, capabilities in SKILL_STEPS[skill]
        )
        capabilities: list[Capability] = []
        for step in steps:
            for capability in step.capabilities:
                if capability not in capabilities:
                    capabilities.append(capability)
        return TaskCreate(
            title=title,
            description=description,
            acceptance_criteria=acceptance_criteria or (description,),
            required_skills={skill: self.settings.assignment.default_required_level},
            required_capabilities=tuple(capabilities),
            keywords=tuple(_keywords(description)),
            steps=steps,
            max_revisions=self.settings.revision.max_revisions,
            acceptance_threshold=self.settings.revision.acceptance_threshold,
        )


class CompletionDecomposer:
    """Ask the completion provider for a JSON work breakdown.

    Falls back to the heuristic decomposer when the provider fails or the
    reply is not a usable JSON array.
    """

    def __init__(
        self,
        client: CompletionClient,
        *,
        settings: Settings | None = None,
        fallback: HeuristicDecomposer | None = None,
    ) -> None:
        self.client = client
        self.settings = settings or Settings()
        self.fallback = fallback or HeuristicDecomposer(self.settings)

    def decompose(self, goal: str) -> TaskTree:
        cleaned = " ".join(goal.split())
        if not cleaned:
            raise ValueError("Goal must not be empty.")
        request = CompletionRequest(
            role_context="You are the manager of a small team. You plan work; you do not do it.",
            conversation_history=[
                {
                    "role": "user",
                    "content": DECOMPOSE_PROMPT.format(
                        skills=", ".join(skill.value for skill in Skill),
                        goal=cleaned,
                    ),
                },
            ],
        )
        try:
            response = self.client.complete(
                request,
                timeout_seconds=self.settings.execution.default_tool_timeout_seconds,
            )
        except ProviderError as error:
            logger.warning("Decomposition request failed, using heuristic plan: %s", error)
            return self.fallback.decompose(cleaned)

        leaves = self._parse(response.text)
        if not leaves:
            logger.warning("Decomposition reply was not a usable JSON array, using heuristic plan")
            return self.fallback.decompose(cleaned)
        if len(leaves) == 1:
            return TaskTree(goal=cleaned, root=leaves[0])
        root = TaskCreate(
            title=_title(cleaned),
            description=cleaned,
            max_revisions=self.settings.revision.max_revisions,
            acceptance_threshold=self.settings.revision.acceptance_threshold,
            children=leaves,
        )
        return TaskTree(goal=cleaned, root=root)

    def _parse(self, raw: str) -> list[TaskCreate]:
        text = raw.strip()
        fenced = _JSON_ARRAY_RE.search(text)
        if fenced:
            text = fenced.group(1).strip()
        if not text.startswith("["):
            start = text.find("[")
            end = text.rfind("]")
            if start >= 0 and end > start:
                text = text[start : end + 1]
        try:
            data = json.loads(text)
        except json.JSONDecodeError:
            return []
        if not isinstance(data, list):
            return []

        leaves = []
        for item in data:
            if not isinstance(item, dict):
                continue
            description = str(item.get("description") or item.get("title") or "").strip()
            if not description:
                continue
            try:
                skill = Skill(str(item.get("skill", "")).strip().lower())
            except ValueError:
                skill = infer_skill(description)
            criteria = item.get("acceptance_criteria")
            leaves.append(
                self.fallback.leaf(
                    title=str(item.get("title") or _title(description)),
                    description=description,
                    skill=skill,
                    acceptance_criteria=(
                        tuple(str(value) for value in criteria if str(value).strip())
                        if isinstance(criteria, list)
                        else None
                    ),
                ),
            )
        return leaves


def split_clauses(goal: str) -> list[str]:
    clauses = []
    for part in _CLAUSE_SPLIT.split(goal):
        clause = part.strip().strip(".;!?").strip()
        if len(clause) >= 3:
            clauses.append(clause)
    return clauses or [goal.strip()]


def infer_skill(text: str) -> Skill:
    words = set(_WORD.findall(text.lower()))
    for skill, keywords in SKILL_KEYWORDS:
        if words & keywords:
            return skill
    return DEFAULT_SKILL


def permitted_tools_by_specialization(
    catalog: Iterable[ToolDefinition],
) -> dict[Specialization, tuple[str, ...]]:
    tools = list(catalog)
    return {
        specialization: tuple(
            sorted(
                tool.tool_id
                for tool in tools
                if tool.capabilities & SPECIALIZATION_CAPABILITIES[specialization]
            ),
        )
        for specialization in Specialization
    }


def plan_roster(
    tree: TaskTree,
    settings: Settings,
    catalog: Iterable[ToolDefinition],
) -> list[AgentCreate]:
    """Manager plus `min_workers`..`max_workers` specialized workers covering the tree."""

    tools = list(catalog)
    permitted = permitted_tools_by_specialization(tools)
    needed: list[Specialization] = []
    for skill in tree.required_skills():
        specialization = SKILL_SPECIALIZATION[skill]
        if specialization not in needed:
            needed.append(specialization)
    for specialization in ROSTER_ORDER:
        if len(needed) >= settings.assignment.min_workers:
            break
        if specialization not in needed:
            needed.append(specialization)
    needed = needed[: settings.assignment.max_workers]

    roster = [
        AgentCreate(
            role=AgentRole.MANAGER,
            skills=dict(MANAGER_SKILLS),
            permitted_tools=tuple(sorted(tool.tool_id for tool in tools)),
            max_concurrent_tasks=settings.assignment.max_concurrent_tasks,
        ),
    ]
    roster.extend(
        AgentCreate(
            role=AgentRole.WORKER,
            skills=dict(SPECIALIZATION_SKILLS[specialization]),
            permitted_tools=permitted[specialization],
            specialization=specialization,
            max_concurrent_tasks=settings.assignment.max_concurrent_tasks,
        )
        for specialization in needed
    )
    return roster


def _keywords(text: str) -> list[str]:
    seen: list[str] = []
    for word in _WORD.findall(text.lower()):
        if len(word) > 3 and word not in seen:
            seen.append(word)
    return seen[:12]


def _title(text: str) -> str:
    words = text.split()
    title = " ".join(words[:8])
    return title if len(words) <= 8 else f"{title}..."
