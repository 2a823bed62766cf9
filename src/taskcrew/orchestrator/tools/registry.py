"""Tool catalog and capability-based tool selection."""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from taskcrew.orchestrator.models import AgentView, ToolStats
from taskcrew.orchestrator.skills import Capability
from taskcrew.orchestrator.tools.circuit import CircuitBreakerRegistry

if TYPE_CHECKING:
    from taskcrew.orchestrator.backend.base import ToolProvider

CAPABILITY_WEIGHT = 0.8
KEYWORD_WEIGHT = 0.2


class ToolCategory(str, Enum):
    SEARCH = "search"
    CODE_EXECUTION = "code_execution"
    DATA_ANALYSIS = "data_analysis"
    FILE_IO = "file_io"
    COMPLETION = "completion"


@dataclass(slots=True)
class ToolDefinition:
    """Registered tool. Only `healthy` changes after registration."""

    tool_id: str
    name: str
    category: ToolCategory
    capabilities: frozenset[Capability]
    keywords: frozenset[str] = frozenset()
    input_schema: dict[str, Any] = field(default_factory=dict)
    cost_estimate: float = 0.0
    timeout_seconds: float | None = None
    cacheable: bool = True
    healthy: bool = True


@dataclass(slots=True)
class ToolRequirements:
    """What a task step needs from a tool."""

    capabilities: frozenset[Capability]
    keywords: frozenset[str] = frozenset()
    exclude_tool_ids: frozenset[str] = frozenset()


@dataclass(slots=True)
class ToolCandidate:
    tool: ToolDefinition
    score: float
    error_rate: float
    average_cost: float


class ToolRegistry:
    """Registered tools with their providers, plus candidate ranking."""

    def __init__(
        self,
        *,
        breakers: CircuitBreakerRegistry,
        stats: Callable[[Iterable[str]], dict[str, ToolStats]] | None = None,
    ) -> None:
        self._breakers = breakers
        self._stats = stats
        self._tools: dict[str, ToolDefinition] = {}
        self._providers: dict[str, ToolProvider] = {}
        self._lock = threading.Lock()

    def register(self, tool: ToolDefinition, provider: ToolProvider) -> None:
        if not tool.capabilities:
            raise ValueError(f"Tool {tool.tool_id} declares no capabilities.")
        with self._lock:
            self._tools[tool.tool_id] = tool
            self._providers[tool.tool_id] = provider

    def get(self, tool_id: str) -> ToolDefinition | None:
        with self._lock:
            return self._tools.get(tool_id)

    def provider(self, tool_id: str) -> ToolProvider:
        with self._lock:
            provider = self._providers.get(tool_id)
        if provider is None:
            raise KeyError(f"No provider registered for tool {tool_id}")
        return provider

    def all(self) -> list[ToolDefinition]:
        with self._lock:
            return sorted(self._tools.values(), key=lambda tool: tool.tool_id)

    def set_health(self, tool_id: str, *, healthy: bool) -> None:
        with self._lock:
            tool = self._tools.get(tool_id)
            if tool is None:
                raise KeyError(f"Unknown tool: {tool_id}")
            tool.healthy = healthy

    def find_candidates(
        self,
        requirements: ToolRequirements,
        agent: AgentView | None = None,
    ) -> list[ToolDefinition]:
        """Ordered candidates; an empty list means nothing can serve the requirement."""

        return [candidate.tool for candidate in self.rank(requirements, agent)]

    def rank(
        self,
        requirements: ToolRequirements,
        agent: AgentView | None = None,
    ) -> list[ToolCandidate]:
        permitted = set(agent.permitted_tools) if agent is not None else None
        scored: list[tuple[ToolDefinition, float]] = []
        for tool in self.all():
            if not tool.healthy or tool.tool_id in requirements.exclude_tool_ids:
                continue
            if permitted is not None and tool.tool_id not in permitted:
                continue
            score = _score(tool, requirements)
            if score <= 0.0:
                continue
            if not self._breakers.get(tool.tool_id).is_selectable():
                continue
            scored.append((tool, score))

        stats = self._stats([tool.tool_id for tool, _ in scored]) if self._stats and scored else {}
        candidates = []
        for tool, score in scored:
            tool_stats = stats.get(tool.tool_id)
            candidates.append(
                ToolCandidate(
                    tool=tool,
                    score=score,
                    error_rate=tool_stats.error_rate if tool_stats else 0.0,
                    average_cost=tool_stats.average_cost if tool_stats else tool.cost_estimate,
                ),
            )
        candidates.sort(
            key=lambda item: (
                -round(item.score, 9),
                item.error_rate,
                item.average_cost,
                item.tool.tool_id,
            ),
        )
        return candidates


def _score(tool: ToolDefinition, requirements: ToolRequirements) -> float:
    if not requirements.capabilities:
        return 0.0
    capability_hits = len(tool.capabilities & requirements.capabilities)
    if capability_hits == 0:
        return 0.0
    capability_score = capability_hits / len(requirements.capabilities)
    keyword_score = 0.0
    wanted = {keyword.lower() for keyword in requirements.keywords}
    if wanted:
        offered = {keyword.lower() for keyword in tool.keywords}
        keyword_score = len(offered & wanted) / len(wanted)
    return CAPABILITY_WEIGHT * capability_score + KEYWORD_WEIGHT * keyword_score
