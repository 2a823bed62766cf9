"""Token counts reported by subprocess providers on stdout or stderr."""

from __future__ import annotations

import re

_JSON_MARKERS = {
    "prompt_tokens": re.compile(r'"(?:prompt|input)_tokens"\s*:\s*(\d+)', re.IGNORECASE),
    "completion_tokens": re.compile(r'"(?:completion|output)_tokens"\s*:\s*(\d+)', re.IGNORECASE),
    "total_tokens": re.compile(r'"total_tokens"\s*:\s*(\d+)', re.IGNORECASE),
}
_TEXT_MARKERS = {
    "prompt_tokens": (re.compile(r"input[_ ]tokens?\s*[:=]\s*([\d,]+)", re.IGNORECASE),),
    "completion_tokens": (
        re.compile(r"(?:output|completion)[_ ]tokens?\s*[:=]\s*([\d,]+)", re.IGNORECASE),
    ),
    "total_tokens": (
        re.compile(r"total[_ ]tokens?\s*[:=]\s*([\d,]+)", re.IGNORECASE),
        re.compile(r"tokens used\s*[:=]?[\r\n ]*\s*([\d,]+)", re.IGNORECASE),
    ),
}


def extract_token_usage(*, stdout: str, stderr: str) -> dict[str, int]:
    """Token counts keyed like `prompt_tokens`; empty when nothing was reported.

    A JSON usage block on either stream wins over free-text markers. A
    missing total is the sum of the reported parts.
    """

    usage = _structured(stdout) or _structured(stderr) or _textual(stderr, stdout)
    if usage and "total_tokens" not in usage:
        usage["total_tokens"] = sum(usage.values())
    return usage


def _structured(text: str) -> dict[str, int]:
    usage: dict[str, int] = {}
    for name, pattern in _JSON_MARKERS.items():
        value = _extract_int(pattern, text)
        if value is not None:
            usage[name] = value
    return usage


def _textual(*texts: str) -> dict[str, int]:
    usage: dict[str, int] = {}
    for text in texts:
        for name, patterns in _TEXT_MARKERS.items():
            if name in usage:
                continue
            for pattern in patterns:
                value = _extract_int(pattern, text)
                if value is not None:
                    usage[name] = value
                    break
    return usage


def _extract_int(pattern: re.Pattern[str], text: str) -> int | None:
    match = pattern.search(text)
    if match is None:
        return None
    raw = match.group(1).replace(",", "").strip()
    return int(raw) if raw.isdigit() else None
