"""Tool execution with timeouts, result caching, breakers, and cost metering."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from typing import Any

from taskcrew.config import Settings
from taskcrew.orchestrator.backend.base import ToolInvocation, ToolProviderResponse
from taskcrew.orchestrator.errors import ExecutionError
from taskcrew.orchestrator.models import ToolExecutionWrite
from taskcrew.orchestrator.repository import OrchestratorRepository
from taskcrew.orchestrator.tools.cache import ResultCache, cache_key
from taskcrew.orchestrator.tools.circuit import CircuitBreakerRegistry
from taskcrew.orchestrator.tools.registry import ToolDefinition, ToolRegistry

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ToolExecutionContext:
    """Who is calling: ledger rows are attributed to this team/task/agent."""

    team_id: str
    task_id: str
    agent_id: str | None = None
    # Returns the part of an actual cost that fits the team budget.
    settle: Callable[[float], float] | None = None


@dataclass(slots=True)
class ToolExecutionResult:
    ok: bool
    output: Any = None
    error: ExecutionError | None = None
    cost_units: float = 0.0
    cache_hit: bool = False
    record_id: str | None = None
    latency_ms: int = 0


class ToolExecutor:
    """Run one tool call and append exactly one ledger record for it.

    Provider calls run on a dedicated invocation pool so the caller can stop
    waiting at the timeout. On timeout the invocation's cancel event is set
    and the result, if it ever arrives, is discarded.
    """

    def __init__(
        self,
        *,
        repository: OrchestratorRepository,
        registry: ToolRegistry,
        breakers: CircuitBreakerRegistry,
        cache: ResultCache | None,
        settings: Settings,
    ) -> None:
        self.repository = repository
        self.registry = registry
        self.breakers = breakers
        self.cache = cache if settings.cache.enabled else None
        self.settings = settings
        self._pool = ThreadPoolExecutor(
            max_workers=settings.execution.invocation_workers,
            thread_name_prefix="taskcrew-tool",
        )

    def close(self) -> None:
        self._pool.shutdown(wait=False, cancel_futures=True)

    def execute(
        self,
        tool: ToolDefinition,
        tool_input: dict[str, Any],
        context: ToolExecutionContext,
    ) -> ToolExecutionResult:
        cache = self.cache if tool.cacheable else None
        key = cache_key(tool.tool_id, tool_input)
        if cache is not None:
            hit, cached = cache.get(key)
            if hit:
                record = self.repository.record_tool_execution(
                    ToolExecutionWrite(
                        team_id=context.team_id,
                        task_id=context.task_id,
                        tool_id=tool.tool_id,
                        agent_id=context.agent_id,
                        tool_input=tool_input,
                        output=cached,
                        cache_hit=True,
                        cost_units=0.0,
                    ),
                )
                return ToolExecutionResult(
                    ok=True,
                    output=cached,
                    cache_hit=True,
                    record_id=record.record_id,
                )

        breaker = self.breakers.get(tool.tool_id)
        if not breaker.acquire():
            return ToolExecutionResult(
                ok=False,
                error=ExecutionError(
                    code="circuit_open",
                    detail=f"Circuit open for tool {tool.tool_id}",
                    tool_id=tool.tool_id,
                ),
            )

        timeout = tool.timeout_seconds or self.settings.execution.default_tool_timeout_seconds
        invocation = ToolInvocation(
            tool_name=tool.name,
            parameters=dict(tool_input),
            timeout_seconds=timeout,
            cancel_event=threading.Event(),
        )
        provider = self.registry.provider(tool.tool_id)
        begun = threading.Event()

        def _run() -> ToolProviderResponse:
            begun.set()
            return provider.invoke(invocation)

        queued = time.monotonic()
        future: Future[ToolProviderResponse] = self._pool.submit(_run)
        # The timeout covers the provider call only, not the wait for a free invocation slot.
        if not begun.wait(self.settings.execution.invocation_queue_timeout_seconds):
            if future.cancel():
                breaker.release()
                logger.warning("Tool %s never left the invocation queue", tool.tool_id)
                return self._record_failure(
                    tool=tool,
                    tool_input=tool_input,
                    context=context,
                    error=ExecutionError(
                        code="queue_timeout",
                        detail=f"No free invocation slot for tool {tool.tool_id}",
                        tool_id=tool.tool_id,
                        transient=True,
                    ),
                    cost_units=0.0,
                    latency_ms=_elapsed_ms(queued),
                )
        started = time.monotonic()
        try:
            response = future.result(timeout=timeout)
        except FutureTimeoutError:
            invocation.cancel_event.set()
            future.cancel()
            breaker.record_failure()
            logger.warning("Tool %s timed out after %.1fs", tool.tool_id, timeout)
            error = ExecutionError(
                code="timeout",
                detail=f"Tool {tool.tool_id} timed out after {timeout}s",
                tool_id=tool.tool_id,
                transient=True,
                timed_out=True,
            )
            return self._record_failure(
                tool=tool,
                tool_input=tool_input,
                context=context,
                error=error,
                cost_units=0.0,
                latency_ms=_elapsed_ms(started),
            )
        except Exception as exc:  # noqa: BLE001
            breaker.record_failure()
            logger.warning("Tool %s raised %s", tool.tool_id, type(exc).__name__)
            error = ExecutionError(
                code="provider_exception",
                detail=f"{type(exc).__name__}: {exc}",
                tool_id=tool.tool_id,
                transient=bool(getattr(exc, "transient", False)),
            )
            return self._record_failure(
                tool=tool,
                tool_input=tool_input,
                context=context,
                error=error,
                cost_units=0.0,
                latency_ms=_elapsed_ms(started),
            )

        latency_ms = _elapsed_ms(started)
        if not response.ok:
            breaker.record_failure()
            signals = {
                name: float(value)
                for name, value in (
                    ("confidence", response.confidence),
                    ("ambiguity", response.ambiguity),
                )
                if value is not None
            }
            error = ExecutionError(
                code=response.error_code or "provider_error",
                detail=response.error_detail or "",
                tool_id=tool.tool_id,
                transient=response.transient,
                timed_out=response.error_code == "timeout",
                signals=signals,
            )
            booked = _settle(context, response.cost_units)
            return self._record_failure(
                tool=tool,
                tool_input=tool_input,
                context=context,
                error=error,
                cost_units=booked,
                latency_ms=latency_ms,
                cost_source=_cost_source(booked, response.cost_units),
            )

        breaker.record_success()
        booked = _settle(context, response.cost_units)
        if booked < response.cost_units:
            logger.warning(
                "Tool %s cost %.4f exceeds the remaining budget of team %s",
                tool.tool_id,
                response.cost_units,
                context.team_id,
            )
            return self._record_failure(
                tool=tool,
                tool_input=tool_input,
                context=context,
                error=ExecutionError(
                    code="budget_exceeded",
                    detail=(
                        f"Tool {tool.tool_id} cost {response.cost_units:.4f} but only "
                        f"{booked:.4f} of the team budget remained"
                    ),
                    tool_id=tool.tool_id,
                ),
                cost_units=booked,
                latency_ms=latency_ms,
                cost_source="budget_cap",
            )
        if cache is not None:
            cache.put(key, response.output)
        record = self.repository.record_tool_execution(
            ToolExecutionWrite(
                team_id=context.team_id,
                task_id=context.task_id,
                tool_id=tool.tool_id,
                agent_id=context.agent_id,
                tool_input=tool_input,
                output=response.output,
                cost_units=response.cost_units,
                latency_ms=latency_ms,
            ),
        )
        return ToolExecutionResult(
            ok=True,
            output=response.output,
            cost_units=record.cost_units,
            record_id=record.record_id,
            latency_ms=latency_ms,
        )

    def _record_failure(  # noqa: PLR0913
        self,
        *,
        tool: ToolDefinition,
        tool_input: dict[str, Any],
        context: ToolExecutionContext,
        error: ExecutionError,
        cost_units: float,
        latency_ms: int,
        cost_source: str = "provider",
    ) -> ToolExecutionResult:
        record = self.repository.record_tool_execution(
            ToolExecutionWrite(
                team_id=context.team_id,
                task_id=context.task_id,
                tool_id=tool.tool_id,
                agent_id=context.agent_id,
                tool_input=tool_input,
                error_code=error.code,
                error_detail=error.detail[:2_000],
                succeeded=False,
                timed_out=error.timed_out,
                cost_units=cost_units,
                latency_ms=latency_ms,
                cost_source=cost_source,
            ),
        )
        return ToolExecutionResult(
            ok=False,
            error=error,
            cost_units=record.cost_units,
            record_id=record.record_id,
            latency_ms=latency_ms,
        )


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def _settle(context: ToolExecutionContext, cost_units: float) -> float:
    if context.settle is None or cost_units <= 0:
        return cost_units
    return context.settle(cost_units)


def _cost_source(booked: float, actual: float) -> str:
    return "budget_cap" if booked < actual else "provider"
