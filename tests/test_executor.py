from __future__ import annotations

import threading
import time
from collections.abc import Callable, Iterator
from dataclasses import replace

import allure
import pytest

from taskcrew.config import Settings
from taskcrew.orchestrator.backend.base import ProviderError, ToolInvocation
from taskcrew.orchestrator.backend.callable_provider import CallableToolProvider
from taskcrew.orchestrator.models import BreakerState
from taskcrew.orchestrator.repository import OrchestratorRepository
from taskcrew.orchestrator.skills import Capability
from taskcrew.orchestrator.tools.cache import ResultCache
from taskcrew.orchestrator.tools.circuit import CircuitBreakerRegistry
from taskcrew.orchestrator.tools.executor import ToolExecutionContext, ToolExecutor
from taskcrew.orchestrator.tools.registry import ToolCategory, ToolDefinition, ToolRegistry

pytestmark = [
    allure.epic("Tool Execution"),
    allure.feature("Executor"),
]


class _Harness:
    def __init__(self, repository: OrchestratorRepository, settings: Settings) -> None:
        self.repository = repository
        self.breakers = CircuitBreakerRegistry(failure_threshold=2, cooldown_seconds=60.0)
        self.registry = ToolRegistry(breakers=self.breakers)
        self.executor = ToolExecutor(
            repository=repository,
            registry=self.registry,
            breakers=self.breakers,
            cache=ResultCache(ttl_seconds=60.0),
            settings=settings,
        )

    def register(
        self,
        func: Callable[[ToolInvocation], object],
        *,
        cost_units: float = 0.5,
        timeout_seconds: float | None = None,
        cacheable: bool = True,
    ) -> ToolDefinition:
        tool = ToolDefinition(
            tool_id="lookup",
            name="lookup",
            category=ToolCategory.SEARCH,
            capabilities=frozenset({Capability.DOCUMENT_RETRIEVAL}),
            timeout_seconds=timeout_seconds,
            cacheable=cacheable,
        )
        self.registry.register(tool, CallableToolProvider(func, cost_units=cost_units))
        return tool


@pytest.fixture()
def harness(repository, settings) -> Iterator[_Harness]:
    value = _Harness(repository, settings)
    try:
        yield value
    finally:
        value.executor.close()


@pytest.fixture()
def context(team_factory, repository) -> ToolExecutionContext:
    team = team_factory()
    task = repository.list_tasks(team_id=team.team_id)[0]
    return ToolExecutionContext(team_id=team.team_id, task_id=task.task_id, agent_id="agent-writer")


def test_successful_call_is_metered_and_cached(harness, context, repository) -> None:
    calls: list[dict] = []

    def lookup(invocation: ToolInvocation) -> dict:
        calls.append(invocation.parameters)
        return {"hits": [invocation.parameters["query"]]}

    tool = harness.register(lookup)

    first = harness.executor.execute(tool, {"query": "SQLite WAL"}, context)
    second = harness.executor.execute(tool, {"query": "  sqlite   wal"}, context)

    assert first.ok and not first.cache_hit
    assert first.cost_units == pytest.approx(0.5)
    assert second.ok and second.cache_hit
    assert second.output == {"hits": ["SQLite WAL"]}
    assert len(calls) == 1
    records = repository.list_tool_executions(task_id=context.task_id)
    assert [record.cache_hit for record in records] == [False, True]
    assert [record.cost_units for record in records] == [0.5, 0.0]
    assert repository.task_cost(task_id=context.task_id) == pytest.approx(0.5)


def test_provider_error_is_recorded_with_transience(harness, context, repository) -> None:
    def lookup(invocation: ToolInvocation) -> dict:
        raise ProviderError("upstream unavailable", code="unavailable", transient=True)

    tool = harness.register(lookup)

    result = harness.executor.execute(tool, {"query": "sqlite"}, context)

    assert not result.ok
    assert result.error is not None
    assert (result.error.code, result.error.transient) == ("unavailable", True)
    record = repository.list_tool_executions(task_id=context.task_id)[0]
    assert record.succeeded is False
    assert record.error_code == "unavailable"


def test_unexpected_exception_becomes_provider_exception(harness, context) -> None:
    def lookup(invocation: ToolInvocation) -> dict:
        raise KeyError("query")

    tool = harness.register(lookup)

    result = harness.executor.execute(tool, {}, context)

    assert result.error is not None
    assert result.error.code == "provider_exception"
    assert "KeyError" in result.error.detail


def test_timeout_cancels_invocation_and_records_failure(harness, context, repository) -> None:
    def lookup(invocation: ToolInvocation) -> dict:
        invocation.cancel_event.wait(5)
        return {"late": True}

    tool = harness.register(lookup, timeout_seconds=0.2)

    result = harness.executor.execute(tool, {"query": "slow"}, context)

    assert result.error is not None
    assert result.error.timed_out is True
    assert result.error.transient is True
    record = repository.list_tool_executions(task_id=context.task_id)[0]
    assert record.timed_out is True
    assert record.succeeded is False


def test_open_circuit_short_circuits_without_ledger_record(harness, context, repository) -> None:
    def lookup(invocation: ToolInvocation) -> dict:
        raise ProviderError("boom", transient=False)

    tool = harness.register(lookup)
    harness.executor.execute(tool, {"query": "one"}, context)
    harness.executor.execute(tool, {"query": "two"}, context)

    result = harness.executor.execute(tool, {"query": "three"}, context)

    assert harness.breakers.get("lookup").state() == BreakerState.OPEN
    assert result.error is not None
    assert result.error.code == "circuit_open"
    assert result.record_id is None
    assert len(repository.list_tool_executions(task_id=context.task_id)) == 2


def test_non_cacheable_tool_runs_every_time(harness, context, repository) -> None:
    calls: list[str] = []

    def run(invocation: ToolInvocation) -> dict:
        calls.append(invocation.parameters["code"])
        return {"stdout": invocation.parameters["code"]}

    tool = harness.register(run, cacheable=False)

    harness.executor.execute(tool, {"code": 'print("A")'}, context)
    second = harness.executor.execute(tool, {"code": 'print("A")'}, context)

    assert not second.cache_hit
    assert calls == ['print("A")', 'print("A")']
    records = repository.list_tool_executions(task_id=context.task_id)
    assert [record.cache_hit for record in records] == [False, False]


def _single_slot_harness(repository, settings: Settings, *, queue_timeout: float) -> _Harness:
    narrow = replace(
        settings,
        execution=replace(
            settings.execution,
            invocation_workers=1,
            invocation_queue_timeout_seconds=queue_timeout,
        ),
    )
    return _Harness(repository, narrow)


def test_queue_wait_does_not_count_against_tool_timeout(repository, settings, context) -> None:
    harness = _single_slot_harness(repository, settings, queue_timeout=5.0)

    def lookup(invocation: ToolInvocation) -> dict:
        time.sleep(0.3)
        return {"query": invocation.parameters["query"]}

    tool = harness.register(lookup, timeout_seconds=0.5)
    results: list = []

    def call(query: str) -> None:
        results.append(harness.executor.execute(tool, {"query": query}, context))

    threads = [threading.Thread(target=call, args=(query,)) for query in ("first", "second")]
    try:
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(5)
    finally:
        harness.executor.close()

    assert len(results) == 2
    assert all(result.ok for result in results)
    assert harness.breakers.get("lookup").snapshot().consecutive_failures == 0


def test_queue_expiry_is_transient_and_spares_the_breaker(repository, settings, context) -> None:
    harness = _single_slot_harness(repository, settings, queue_timeout=0.1)
    busy = threading.Event()
    release = threading.Event()

    def lookup(invocation: ToolInvocation) -> dict:
        busy.set()
        release.wait(5)
        return {"query": invocation.parameters["query"]}

    tool = harness.register(lookup, timeout_seconds=5.0)
    holder = threading.Thread(
        target=harness.executor.execute,
        args=(tool, {"query": "holder"}, context),
    )
    holder.start()
    try:
        assert busy.wait(5)
        result = harness.executor.execute(tool, {"query": "queued"}, context)
    finally:
        release.set()
        holder.join(5)
        harness.executor.close()

    assert result.error is not None
    assert (result.error.code, result.error.transient) == ("queue_timeout", True)
    assert harness.breakers.get("lookup").snapshot().consecutive_failures == 0
    records = repository.list_tool_executions(task_id=context.task_id)
    assert "queue_timeout" in [record.error_code for record in records]
