"""Built-in tool catalog registered by the CLI.

These tools are deterministic and local: they search, read and write files
under the workspace root, draft text from the step description, sketch and
syntax-check Python code, and run it in an isolated interpreter. An LLM
completion tool is added when a completion command is configured.
"""

from __future__ import annotations

import ast
import json
import re
import sys
from collections import Counter
from pathlib import Path
from typing import Any

from taskcrew.config import Settings
from taskcrew.orchestrator.backend.base import (
    ProviderError,
    ToolInvocation,
    ToolProvider,
    ToolProviderResponse,
)
from taskcrew.orchestrator.backend.callable_provider import CallableToolProvider
from taskcrew.orchestrator.backend.cli_backend import SubprocessToolProvider
from taskcrew.orchestrator.backend.completion import CliCompletionClient, CompletionToolProvider
from taskcrew.orchestrator.skills import Capability
from taskcrew.orchestrator.tools.registry import ToolCategory, ToolDefinition, ToolRegistry

_WORD = re.compile(r"[a-z0-9_]+")
_MAX_SEARCH_MATCHES = 20
_MAX_READ_CHARS = 20_000


def build_default_catalog(settings: Settings) -> list[tuple[ToolDefinition, ToolProvider]]:
    workspace = settings.execution.workspace_root
    catalog: list[tuple[ToolDefinition, ToolProvider]] = [
        (
            ToolDefinition(
                tool_id="workspace_search",
                name="workspace_search",
                category=ToolCategory.SEARCH,
                capabilities=frozenset({Capability.DOCUMENT_RETRIEVAL}),
                keywords=frozenset({"search", "find", "research", "lookup", "sources"}),
                input_schema={"query": "string"},
                cost_estimate=0.01,
            ),
            CallableToolProvider(
                lambda invocation: _search(workspace, invocation),
                cost_units=0.01,
            ),
        ),
        (
            ToolDefinition(
                tool_id="workspace_reader",
                name="workspace_reader",
                category=ToolCategory.FILE_IO,
                capabilities=frozenset({Capability.FILE_READ}),
                keywords=frozenset({"read", "load", "open", "file"}),
                input_schema={"path": "string"},
                cost_estimate=0.005,
            ),
            CallableToolProvider(
                lambda invocation: _read(workspace, invocation),
                cost_units=0.005,
            ),
        ),
        (
            ToolDefinition(
                tool_id="workspace_writer",
                name="workspace_writer",
                category=ToolCategory.FILE_IO,
                capabilities=frozenset({Capability.FILE_WRITE}),
                keywords=frozenset({"write", "save", "store", "file", "report"}),
                input_schema={"path": "string", "content": "string"},
                cost_estimate=0.005,
                cacheable=False,
            ),
            CallableToolProvider(
                lambda invocation: _write(workspace, invocation),
                cost_units=0.005,
            ),
        ),
        (
            ToolDefinition(
                tool_id="draft_writer",
                name="draft_writer",
                category=ToolCategory.COMPLETION,
                capabilities=frozenset({Capability.TEXT_GENERATION, Capability.SUMMARIZATION}),
                keywords=frozenset({"write", "draft", "summarize", "summary", "report", "explain"}),
                input_schema={"description": "string", "previous_step": "any"},
                cost_estimate=0.05,
            ),
            CallableToolProvider(_draft, cost_units=0.05),
        ),
        (
            ToolDefinition(
                tool_id="text_analyzer",
                name="text_analyzer",
                category=ToolCategory.DATA_ANALYSIS,
                capabilities=frozenset({Capability.DATA_ANALYSIS}),
                keywords=frozenset({"analyze", "analysis", "compare", "metrics", "statistics"}),
                input_schema={"previous_step": "any"},
                cost_estimate=0.02,
            ),
            CallableToolProvider(_analyze, cost_units=0.02),
        ),
        (
            ToolDefinition(
                tool_id="code_sketch",
                name="code_sketch",
                category=ToolCategory.CODE_EXECUTION,
                capabilities=frozenset({Capability.CODE_GENERATION}),
                keywords=frozenset({"code", "implement", "function", "script", "program"}),
                input_schema={"description": "string"},
                cost_estimate=0.05,
            ),
            CallableToolProvider(_sketch_code, cost_units=0.05),
        ),
        (
            ToolDefinition(
                tool_id="syntax_checker",
                name="syntax_checker",
                category=ToolCategory.CODE_EXECUTION,
                capabilities=frozenset({Capability.VALIDATION}),
                keywords=frozenset({"check", "validate", "review", "lint", "verify"}),
                input_schema={"previous_step": "any"},
                cost_estimate=0.01,
            ),
            CallableToolProvider(_check_syntax, cost_units=0.01),
        ),
        (
            ToolDefinition(
                tool_id="python_runner",
                name="python_runner",
                category=ToolCategory.CODE_EXECUTION,
                capabilities=frozenset({Capability.CODE_EXECUTION}),
                keywords=frozenset({"run", "execute", "test", "python"}),
                input_schema={"code": "string"},
                cost_estimate=0.02,
                timeout_seconds=settings.execution.default_tool_timeout_seconds,
                cacheable=False,
            ),
            PythonRunnerProvider(cost_units=0.02),
        ),
    ]
    if settings.execution.completion_command:
        catalog.append(
            (
                ToolDefinition(
                    tool_id="llm_completion",
                    name="llm_completion",
                    category=ToolCategory.COMPLETION,
                    capabilities=frozenset(
                        {Capability.TEXT_GENERATION, Capability.SUMMARIZATION},
                    ),
                    keywords=frozenset({"write", "draft", "summarize", "explain", "plan"}),
                    input_schema={"prompt": "string"},
                    cost_estimate=0.2,
                ),
                CompletionToolProvider(
                    CliCompletionClient(
                        settings.execution.completion_command,
                        model=settings.execution.completion_model,
                    ),
                    model=settings.execution.completion_model,
                ),
            ),
        )
    return catalog


def register_default_tools(registry: ToolRegistry, settings: Settings) -> list[ToolDefinition]:
    registered = []
    for tool, provider in build_default_catalog(settings):
        registry.register(tool, provider)
        registered.append(tool)
    return registered


class PythonRunnerProvider:
    """Run Python source from the step input in an isolated interpreter."""

    def __init__(self, *, cost_units: float = 0.0) -> None:
        self._runner = SubprocessToolProvider(
            "{python} -I -c {code}",
            provider="python",
            cost_units=cost_units,
        )

    def invoke(self, invocation: ToolInvocation) -> ToolProviderResponse:
        params = invocation.parameters
        code = params.get("code") or _code_of(params.get("previous_step"))
        return self._runner.invoke(
            ToolInvocation(
                tool_name=invocation.tool_name,
                parameters={"python": sys.executable, "code": code or "print('no code to run')"},
                timeout_seconds=invocation.timeout_seconds,
                cancel_event=invocation.cancel_event,
            ),
        )


def text_of(value: Any) -> str:
    """Best-effort plain text of a tool output."""

    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, dict):
        for key in ("text", "content", "code", "summary"):
            if isinstance(value.get(key), str):
                return value[key]
    return json.dumps(value, ensure_ascii=False, sort_keys=True, default=str)


def _resolve_inside(workspace: Path, raw_path: str) -> Path:
    root = workspace.resolve()
    candidate = (root / raw_path).resolve()
    if candidate != root and root not in candidate.parents:
        raise ProviderError(
            f"permission denied: {raw_path} is outside the workspace",
            code="boundary_violation",
            transient=False,
        )
    return candidate


def _search(workspace: Path, invocation: ToolInvocation) -> dict[str, Any]:
    params = invocation.parameters
    query = str(params.get("query") or params.get("description") or "")
    terms = {term for term in _WORD.findall(query.lower()) if len(term) > 3}
    matches: list[dict[str, Any]] = []
    root = workspace.resolve()
    if root.is_dir() and terms:
        for path in sorted(root.rglob("*")):
            if invocation.cancel_event.is_set() or len(matches) >= _MAX_SEARCH_MATCHES:
                break
            if not path.is_file() or path.suffix not in {".txt", ".md", ".py", ".json", ".csv"}:
                continue
            text = path.read_text("utf-8", errors="replace")
            for line_no, line in enumerate(text.splitlines(), start=1):
                lowered = line.lower()
                if any(term in lowered for term in terms):
                    matches.append(
                        {
                            "path": str(path.relative_to(root)),
                            "line": line_no,
                            "text": line.strip()[:200],
                        },
                    )
                    if len(matches) >= _MAX_SEARCH_MATCHES:
                        break
    summary = "\n".join(f"{item['path']}:{item['line']}: {item['text']}" for item in matches)
    return {
        "query": query,
        "matches": matches,
        "text": f"Findings for {query}:\n{summary}" if matches else f"No findings for {query}",
    }


def _read(workspace: Path, invocation: ToolInvocation) -> dict[str, Any]:
    raw_path = str(invocation.parameters.get("path") or "")
    if not raw_path:
        raise ProviderError("Missing path", code="invalid_input", transient=False)
    path = _resolve_inside(workspace, raw_path)
    if not path.is_file():
        raise ProviderError(f"File not found: {raw_path}", code="not_found", transient=False)
    return {"path": raw_path, "text": path.read_text("utf-8", errors="replace")[:_MAX_READ_CHARS]}


def _write(workspace: Path, invocation: ToolInvocation) -> dict[str, Any]:
    params = invocation.parameters
    raw_path = str(params.get("path") or f"{_slug(str(params.get('task', 'output')))}.md")
    content = params.get("content")
    if content is None:
        content = text_of(params.get("previous_step"))
    path = _resolve_inside(workspace, raw_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(str(content), "utf-8")
    return {"path": raw_path, "bytes": len(str(content).encode()), "text": str(content)}


def _draft(invocation: ToolInvocation) -> dict[str, Any]:
    params = invocation.parameters
    description = str(params.get("description") or params.get("prompt") or "").strip()
    sections = [description]
    previous = text_of(params.get("previous_step")).strip()
    if previous:
        sections.append(previous)
    earlier = text_of(params.get("previous_output")).strip()
    if earlier and earlier not in sections:
        sections.append(earlier)
    for item in params.get("feedback") or []:
        sections.append(f"Addressed: {item}")
    return {"text": "\n\n".join(section for section in sections if section)}


def _analyze(invocation: ToolInvocation) -> dict[str, Any]:
    params = invocation.parameters
    text = text_of(params.get("previous_step")) or str(params.get("description") or "")
    words = [word for word in _WORD.findall(text.lower()) if len(word) > 3]
    top_terms = Counter(words).most_common(10)
    summary = ", ".join(f"{term} ({count})" for term, count in top_terms)
    return {
        "words": len(words),
        "unique_terms": len(set(words)),
        "top_terms": top_terms,
        "text": f"{params.get('description', '')}\nKey terms: {summary}".strip(),
    }


def _sketch_code(invocation: ToolInvocation) -> dict[str, Any]:
    description = str(invocation.parameters.get("description") or "task").strip()
    name = f"step_{_slug(description)[:40]}".rstrip("_")
    code = (
        f"def {name}():\n"
        f"    {json.dumps(description)}\n"
        f"    return {json.dumps(description)}\n"
        f"\n"
        f"print({name}())\n"
    )
    return {"language": "python", "code": code, "text": f"{description}\n\n{code}"}


def _check_syntax(invocation: ToolInvocation) -> dict[str, Any]:
    params = invocation.parameters
    code = params.get("code") or _code_of(params.get("previous_step"))
    if not code:
        raise ProviderError("No code to validate", code="invalid_input", transient=False)
    try:
        ast.parse(code)
    except SyntaxError as error:
        return {"valid": False, "errors": [f"line {error.lineno}: {error.msg}"], "text": code}
    return {"valid": True, "errors": [], "code": code, "text": f"validated\n{code}"}


def _code_of(value: Any) -> str:
    if isinstance(value, dict) and isinstance(value.get("code"), str):
        return value["code"]
    if isinstance(value, str):
        return value
    return ""


def _slug(text: str) -> str:
    return "_".join(_WORD.findall(text.lower()))
