"""Provider interfaces for tool and completion execution."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Any, Protocol


class ProviderError(RuntimeError):
    """Provider failure with retryability hint."""

    def __init__(self, message: str, *, code: str = "provider_error", transient: bool) -> None:
        super().__init__(message)
        self.code = code
        self.transient = transient


@dataclass(slots=True)
class ToolInvocation:
    """Inputs required to execute one tool call."""

    tool_name: str
    parameters: dict[str, Any]
    timeout_seconds: float
    cancel_event: threading.Event = field(default_factory=threading.Event)


@dataclass(slots=True)
class ToolProviderResponse:
    """Outcome of one tool call: an output, or an error code with detail.

    `confidence` and `ambiguity` are optional bounded scores in [0, 1] that
    model-backed providers may report; classification only reads them as
    numbers.
    """

    output: Any = None
    error_code: str | None = None
    error_detail: str | None = None
    transient: bool = False
    cost_units: float = 0.0
    confidence: float | None = None
    ambiguity: float | None = None

    @property
    def ok(self) -> bool:
        return self.error_code is None


class ToolProvider(Protocol):
    """Protocol implemented by tool backends."""

    def invoke(self, invocation: ToolInvocation) -> ToolProviderResponse:
        """Run one call and return its output or error."""


@dataclass(slots=True)
class CompletionRequest:
    role_context: str
    conversation_history: list[dict[str, str]]
    max_tokens: int = 1_024


@dataclass(slots=True)
class CompletionResponse:
    text: str
    token_usage: dict[str, int] = field(default_factory=dict)


class CompletionClient(Protocol):
    """Language-model completion collaborator."""

    def complete(
        self,
        request: CompletionRequest,
        *,
        timeout_seconds: float,
        cancel_event: threading.Event | None = None,
    ) -> CompletionResponse:
        """Return the model's reply or raise `ProviderError`."""
