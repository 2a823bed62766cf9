"""Tool registry, selection, circuit breakers, result cache, and execution."""

from taskcrew.orchestrator.tools.cache import ResultCache, cache_key
from taskcrew.orchestrator.tools.circuit import CircuitBreaker, CircuitBreakerRegistry
from taskcrew.orchestrator.tools.executor import (
    ToolExecutionContext,
    ToolExecutionResult,
    ToolExecutor,
)
from taskcrew.orchestrator.tools.registry import (
    ToolCategory,
    ToolDefinition,
    ToolRegistry,
    ToolRequirements,
)

__all__ = [
    "CircuitBreaker",
    "CircuitBreakerRegistry",
    "ResultCache",
    "ToolCategory",
    "ToolDefinition",
    "ToolExecutionContext",
    "ToolExecutionResult",
    "ToolExecutor",
    "ToolRegistry",
    "ToolRequirements",
    "cache_key",
]
