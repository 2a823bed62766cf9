"""Subprocess-based tool provider for command-line tools."""

from __future__ import annotations

import json
import os
import shlex
import subprocess
import tempfile
import threading
import time
from typing import IO, Any

from taskcrew.orchestrator.backend.base import ProviderError, ToolInvocation, ToolProviderResponse
from taskcrew.orchestrator.pricing import token_cost
from taskcrew.orchestrator.usage import extract_token_usage

TIMEOUT_EXIT_CODE = 124
_POLL_INTERVAL_SECONDS = 0.05


class SubprocessToolProvider:
    """Run a command template per invocation.

    Placeholders in the template are filled from invocation parameters
    (shell-quoted) plus `{params_json}` with the whole parameter object.
    Stdout that parses as JSON becomes the output, otherwise the stripped text.
    Cost comes from reported token usage priced via `TASKCREW_PRICING`, falling
    back to `cost_units` per call.
    """

    def __init__(
        self,
        command_template: str,
        *,
        provider: str = "cli",
        model: str = "*",
        cost_units: float = 0.0,
        transient_exit_codes: tuple[int, ...] = (75, 137, 143),
        env: dict[str, str] | None = None,
    ) -> None:
        self.command_template = command_template
        self.provider = provider
        self.model = model
        self.cost_units = cost_units
        self.transient_exit_codes = transient_exit_codes
        self._env = env

    def invoke(self, invocation: ToolInvocation) -> ToolProviderResponse:
        try:
            run_args = build_run_args(
                command_template=self.command_template,
                parameters=invocation.parameters,
            )
        except ProviderError as error:
            return ToolProviderResponse(error_code=error.code, error_detail=str(error))

        env = os.environ.copy()
        if self._env:
            env.update(self._env)
        env["TASKCREW_TOOL_NAME"] = invocation.tool_name

        try:
            with (
                tempfile.TemporaryFile(mode="w+", encoding="utf-8") as stdout_handle,
                tempfile.TemporaryFile(mode="w+", encoding="utf-8") as stderr_handle,
            ):
                exit_code, timed_out = run_subprocess_with_cancel(
                    run_args=run_args,
                    env=env,
                    timeout_seconds=invocation.timeout_seconds,
                    stdout_handle=stdout_handle,
                    stderr_handle=stderr_handle,
                    cancel_event=invocation.cancel_event,
                )
                stdout = read_back(stdout_handle)
                stderr = read_back(stderr_handle)
        except FileNotFoundError:
            return ToolProviderResponse(
                error_code="command_not_found",
                error_detail=f"Tool command not found: {run_args[0]}",
            )
        except OSError as error:
            return ToolProviderResponse(
                error_code="spawn_failed",
                error_detail=f"Tool command failed to start: {error}",
                transient=True,
            )

        if timed_out:
            return ToolProviderResponse(
                error_code="timeout",
                error_detail=f"Tool command exceeded {invocation.timeout_seconds}s",
                transient=True,
            )
        cost = self._cost(stdout=stdout, stderr=stderr)
        if exit_code != 0:
            return ToolProviderResponse(
                error_code=f"exit_{exit_code}",
                error_detail=(stderr.strip() or stdout.strip())[:2_000],
                transient=exit_code in self.transient_exit_codes,
                cost_units=cost,
            )
        return ToolProviderResponse(output=_parse_output(stdout), cost_units=cost)

    def _cost(self, *, stdout: str, stderr: str) -> float:
        estimated = token_cost(
            provider=self.provider,
            model=self.model,
            usage=extract_token_usage(stdout=stdout, stderr=stderr),
        )
        return estimated if estimated is not None else self.cost_units


def build_run_args(*, command_template: str, parameters: dict[str, Any]) -> list[str]:
    stripped = command_template.strip()
    if not stripped:
        raise ProviderError(
            "Tool command template is empty.",
            code="invalid_command",
            transient=False,
        )
    values = {key: shlex.quote(_as_text(value)) for key, value in parameters.items()}
    values["params_json"] = shlex.quote(json.dumps(parameters, sort_keys=True, default=str))
    try:
        rendered = stripped.format(**values)
    except KeyError as error:
        raise ProviderError(
            f"Missing parameter for command template placeholder: {error}",
            code="invalid_input",
            transient=False,
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise ProviderError(
            "Tool command template rendered empty command.",
            code="invalid_command",
            transient=False,
        )
    return argv


def run_subprocess_with_cancel(  # noqa: PLR0913
    *,
    run_args: list[str],
    env: dict[str, str],
    timeout_seconds: float,
    stdout_handle: IO[str],
    stderr_handle: IO[str],
    cancel_event: threading.Event,
) -> tuple[int, bool]:
    """Poll the process until it exits, times out, or the cancel event is set.

    Returns `(exit_code, timed_out)`; a cancelled run counts as timed out.
    """

    process = subprocess.Popen(  # noqa: S603
        run_args,
        env=env,
        stdout=stdout_handle,
        stderr=stderr_handle,
        text=True,
    )
    start_monotonic = time.monotonic()

    while True:
        returncode = process.poll()
        if returncode is not None:
            return returncode, False

        if cancel_event.is_set() or time.monotonic() - start_monotonic >= timeout_seconds:
            terminate_process(process)
            return TIMEOUT_EXIT_CODE, True

        time.sleep(_POLL_INTERVAL_SECONDS)


def terminate_process(process: subprocess.Popen[str] | subprocess.Popen[bytes]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)


def read_back(handle: IO[str]) -> str:
    handle.flush()
    handle.seek(0)
    return handle.read()


def _parse_output(stdout: str) -> Any:
    text = stdout.strip()
    if not text:
        return ""
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return text


def _as_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, sort_keys=True, default=str)
