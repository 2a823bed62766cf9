"""Language-model completion behind the tool provider interface."""

from __future__ import annotations

import json
import os
import tempfile
import threading
from typing import Any

from taskcrew.orchestrator.backend.base import (
    CompletionClient,
    CompletionRequest,
    CompletionResponse,
    ProviderError,
    ToolInvocation,
    ToolProviderResponse,
)
from taskcrew.orchestrator.backend.cli_backend import (
    build_run_args,
    read_back,
    run_subprocess_with_cancel,
)
from taskcrew.orchestrator.failure_classifier import looks_transient
from taskcrew.orchestrator.pricing import token_cost
from taskcrew.orchestrator.usage import extract_token_usage

DEFAULT_ROLE_CONTEXT = "You are a worker agent on a small team. Complete the step you are given."


class CliCompletionClient:
    """Completion client that shells out to a CLI model runner.

    The command template must contain `{prompt}`; `{model}` and
    `{max_tokens}` are optional placeholders.
    """

    def __init__(
        self,
        command_template: str,
        *,
        provider: str = "cli",
        model: str = "default",
        transient_exit_codes: tuple[int, ...] = (75, 137, 143),
    ) -> None:
        if "{prompt}" not in command_template:
            raise ValueError("Completion command template must include {prompt}.")
        self.command_template = command_template
        self.provider = provider
        self.model = model
        self.transient_exit_codes = transient_exit_codes

    def complete(
        self,
        request: CompletionRequest,
        *,
        timeout_seconds: float,
        cancel_event: threading.Event | None = None,
    ) -> CompletionResponse:
        run_args = build_run_args(
            command_template=self.command_template,
            parameters={
                "prompt": render_prompt(request),
                "model": self.model,
                "max_tokens": str(request.max_tokens),
            },
        )
        try:
            with (
                tempfile.TemporaryFile(mode="w+", encoding="utf-8") as stdout_handle,
                tempfile.TemporaryFile(mode="w+", encoding="utf-8") as stderr_handle,
            ):
                exit_code, timed_out = run_subprocess_with_cancel(
                    run_args=run_args,
                    env=os.environ.copy(),
                    timeout_seconds=timeout_seconds,
                    stdout_handle=stdout_handle,
                    stderr_handle=stderr_handle,
                    cancel_event=cancel_event or threading.Event(),
                )
                stdout = read_back(stdout_handle)
                stderr = read_back(stderr_handle)
        except FileNotFoundError as error:
            raise ProviderError(
                f"Completion command not found: {run_args[0]}",
                code="command_not_found",
                transient=False,
            ) from error
        except OSError as error:
            raise ProviderError(
                f"Completion command failed to start: {error}",
                code="spawn_failed",
                transient=True,
            ) from error

        if timed_out:
            raise ProviderError(
                f"Completion timed out after {timeout_seconds}s",
                code="timeout",
                transient=True,
            )
        if exit_code != 0:
            detail = (stderr.strip() or stdout.strip())[:2_000]
            raise ProviderError(
                detail or f"Completion command exited with {exit_code}",
                code=f"exit_{exit_code}",
                transient=exit_code in self.transient_exit_codes or looks_transient(detail),
            )
        usage = extract_token_usage(stdout=stdout, stderr=stderr)
        return CompletionResponse(text=stdout.strip(), token_usage=usage)


class CompletionToolProvider:
    """Expose a `CompletionClient` as a text-generation tool."""

    def __init__(
        self,
        client: CompletionClient,
        *,
        provider: str = "cli",
        model: str = "default",
        max_tokens: int = 1_024,
    ) -> None:
        self.client = client
        self.provider = provider
        self.model = model
        self.max_tokens = max_tokens

    def invoke(self, invocation: ToolInvocation) -> ToolProviderResponse:
        request = build_completion_request(invocation.parameters, max_tokens=self.max_tokens)
        try:
            response = self.client.complete(
                request,
                timeout_seconds=invocation.timeout_seconds,
                cancel_event=invocation.cancel_event,
            )
        except ProviderError as error:
            return ToolProviderResponse(
                error_code=error.code,
                error_detail=str(error),
                transient=error.transient,
            )
        cost = token_cost(provider=self.provider, model=self.model, usage=response.token_usage)
        return ToolProviderResponse(
            output={"text": response.text, "token_usage": dict(response.token_usage)},
            cost_units=cost or 0.0,
        )


def build_completion_request(parameters: dict[str, Any], *, max_tokens: int) -> CompletionRequest:
    history: list[dict[str, str]] = []
    previous = parameters.get("previous_output")
    if previous:
        history.append({"role": "assistant", "content": _as_text(previous)})
    feedback = parameters.get("feedback")
    if feedback:
        history.append({"role": "user", "content": f"Reviewer feedback: {_as_text(feedback)}"})
    prompt = parameters.get("prompt") or parameters.get("description") or ""
    history.append({"role": "user", "content": _as_text(prompt)})
    return CompletionRequest(
        role_context=str(parameters.get("role_context") or DEFAULT_ROLE_CONTEXT),
        conversation_history=history,
        max_tokens=int(parameters.get("max_tokens") or max_tokens),
    )


def render_prompt(request: CompletionRequest) -> str:
    lines = [request.role_context.strip(), ""]
    for message in request.conversation_history:
        lines.append(f"[{message.get('role', 'user')}]")
        lines.append(message.get("content", "").strip())
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def _as_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False, sort_keys=True, default=str)
