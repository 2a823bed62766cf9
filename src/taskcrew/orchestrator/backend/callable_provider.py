"""In-process tool provider wrapping a plain Python callable."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

from taskcrew.orchestrator.backend.base import ProviderError, ToolInvocation, ToolProviderResponse

ToolFunction = Callable[[ToolInvocation], Any]


class CallableToolProvider:
    """Run `func(invocation)` and report a fixed cost per successful call.

    Long-running functions should poll `invocation.cancel_event` and stop
    early once it is set. A function may return a ready `ToolProviderResponse`
    to report its own cost or error.
    """

    def __init__(self, func: ToolFunction, *, cost_units: float = 0.0) -> None:
        self._func = func
        self._cost_units = cost_units

    def invoke(self, invocation: ToolInvocation) -> ToolProviderResponse:
        try:
            result = self._func(invocation)
        except ProviderError as error:
            return ToolProviderResponse(
                error_code=error.code,
                error_detail=str(error),
                transient=error.transient,
            )
        if invocation.cancel_event.is_set():
            return ToolProviderResponse(error_code="cancelled", error_detail="invocation cancelled")
        if isinstance(result, ToolProviderResponse):
            return result
        return ToolProviderResponse(output=result, cost_units=self._cost_units)
