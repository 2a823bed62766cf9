"""Tool provider implementations."""

from taskcrew.orchestrator.backend.base import (
    CompletionClient,
    CompletionRequest,
    CompletionResponse,
    ProviderError,
    ToolInvocation,
    ToolProvider,
    ToolProviderResponse,
)
from taskcrew.orchestrator.backend.callable_provider import CallableToolProvider
from taskcrew.orchestrator.backend.cli_backend import SubprocessToolProvider
from taskcrew.orchestrator.backend.completion import CliCompletionClient, CompletionToolProvider

__all__ = [
    "CallableToolProvider",
    "CliCompletionClient",
    "CompletionClient",
    "CompletionRequest",
    "CompletionResponse",
    "CompletionToolProvider",
    "ProviderError",
    "SubprocessToolProvider",
    "ToolInvocation",
    "ToolProvider",
    "ToolProviderResponse",
]
