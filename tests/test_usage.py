from __future__ import annotations

import allure

from taskcrew.orchestrator.usage import extract_token_usage

pytestmark = [
    allure.epic("Tool Execution"),
    allure.feature("Cost Metering"),
]


def test_json_usage_block_wins_over_text_markers() -> None:
    usage = extract_token_usage(
        stdout='{"usage": {"prompt_tokens": 120, "completion_tokens": 30, "total_tokens": 150}}',
        stderr="tokens used: 999",
    )

    assert usage == {"prompt_tokens": 120, "completion_tokens": 30, "total_tokens": 150}


def test_missing_total_is_the_sum_of_parts() -> None:
    usage = extract_token_usage(stdout='{"input_tokens": 40, "output_tokens": 2}', stderr="")

    assert usage == {"prompt_tokens": 40, "completion_tokens": 2, "total_tokens": 42}


def test_text_markers_are_read_from_both_streams() -> None:
    usage = extract_token_usage(stdout="input tokens: 1,200", stderr="tokens used\n1,500")

    assert usage == {"prompt_tokens": 1200, "total_tokens": 1500}


def test_output_without_markers_reports_nothing() -> None:
    assert extract_token_usage(stdout="plain answer", stderr="") == {}
