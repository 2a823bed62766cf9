from __future__ import annotations

import sys

import allure
import pytest

from taskcrew.orchestrator.backend.base import (
    CompletionRequest,
    ProviderError,
    ToolInvocation,
)
from taskcrew.orchestrator.backend.cli_backend import SubprocessToolProvider, build_run_args
from taskcrew.orchestrator.backend.completion import (
    CliCompletionClient,
    CompletionToolProvider,
    build_completion_request,
    render_prompt,
)

pytestmark = [
    allure.epic("Tool Execution"),
    allure.feature("Command-Line Providers"),
]

_PY = sys.executable


def test_build_run_args_quotes_parameters_and_params_json() -> None:
    run_args = build_run_args(
        command_template="runner --query {query} --all {params_json}",
        parameters={"query": "hello world", "limit": 3},
    )

    assert run_args[:3] == ["runner", "--query", "hello world"]
    assert run_args[-1] == '{"limit": 3, "query": "hello world"}'


def test_build_run_args_reports_missing_placeholder() -> None:
    with pytest.raises(ProviderError) as error:
        build_run_args(command_template="runner {missing}", parameters={})

    assert error.value.code == "invalid_input"
    assert error.value.transient is False


def test_subprocess_provider_parses_json_stdout() -> None:
    provider = SubprocessToolProvider(
        f'{_PY} -c "import json,sys; print(json.dumps([sys.argv[1]]))" {{query}}',
        cost_units=0.25,
    )

    response = provider.invoke(
        ToolInvocation(tool_name="echo", parameters={"query": "sqlite"}, timeout_seconds=10),
    )

    assert response.ok
    assert response.output == ["sqlite"]
    assert response.cost_units == 0.25


def test_subprocess_provider_reports_exit_code_and_transience() -> None:
    provider = SubprocessToolProvider(
        f'{_PY} -c "import sys; sys.stderr.write(\'boom\'); sys.exit(75)"',
    )

    response = provider.invoke(ToolInvocation(tool_name="fail", parameters={}, timeout_seconds=10))

    assert response.error_code == "exit_75"
    assert response.error_detail == "boom"
    assert response.transient is True


def test_subprocess_provider_times_out() -> None:
    provider = SubprocessToolProvider(f'{_PY} -c "import time; time.sleep(5)"')

    response = provider.invoke(
        ToolInvocation(tool_name="sleep", parameters={}, timeout_seconds=0.2),
    )

    assert response.error_code == "timeout"
    assert response.transient is True


def test_subprocess_provider_prices_reported_tokens(monkeypatch) -> None:
    monkeypatch.setenv("TASKCREW_PRICING", "cli:*:1000000.0:1000000.0")
    provider = SubprocessToolProvider(
        f"{_PY} -c \"print('total_tokens: 3')\"",
        cost_units=9.0,
    )

    response = provider.invoke(ToolInvocation(tool_name="tokens", parameters={}, timeout_seconds=10))

    assert response.ok
    assert response.cost_units == pytest.approx(3.0)


def test_completion_client_requires_prompt_placeholder() -> None:
    with pytest.raises(ValueError, match="\\{prompt\\}"):
        CliCompletionClient("runner --model {model}")


def test_completion_tool_provider_returns_text() -> None:
    client = CliCompletionClient(f"{_PY} -c \"import sys; print(sys.argv[1].upper())\" {{prompt}}")
    provider = CompletionToolProvider(client)

    response = provider.invoke(
        ToolInvocation(
            tool_name="llm_completion",
            parameters={"prompt": "summarize the findings"},
            timeout_seconds=10,
        ),
    )

    assert response.ok
    assert "SUMMARIZE THE FINDINGS" in response.output["text"]


def test_completion_request_carries_previous_output_and_feedback() -> None:
    request = build_completion_request(
        {
            "prompt": "Write draft",
            "previous_output": {"text": "first attempt"},
            "feedback": ["mention the upgrade"],
        },
        max_tokens=256,
    )

    assert [message["role"] for message in request.conversation_history] == [
        "assistant",
        "user",
        "user",
    ]
    assert request.max_tokens == 256
    rendered = render_prompt(
        CompletionRequest(role_context="ctx", conversation_history=request.conversation_history),
    )
    assert "Reviewer feedback" in rendered
    assert rendered.endswith("Write draft\n")
