from __future__ import annotations

import allure

from taskcrew.orchestrator.tools.cache import ResultCache, cache_key, normalize_input

pytestmark = [
    allure.epic("Tool Execution"),
    allure.feature("Result Cache"),
]


class _Clock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def test_cache_key_ignores_case_whitespace_and_key_order() -> None:
    first = cache_key("search", {"Query": "  SQLite   Internals ", "limit": 3})
    second = cache_key("search", {"limit": 3, "query": "sqlite internals"})

    assert first == second
    assert first.startswith("search:")
    assert cache_key("reader", {"query": "sqlite internals", "limit": 3}) != first


def test_normalize_input_recurses_into_collections() -> None:
    assert normalize_input({"Items": ("A  b", {"K": "V"})}) == {"items": ["A  b", {"k": "V"}]}
    assert normalize_input({"Items": ("A  b",)}, fold=True) == {"items": ["a b"]}


def test_case_sensitive_fields_keep_distinct_keys() -> None:
    upper = cache_key("python_runner", {"code": 'print("A")'})
    lower = cache_key("python_runner", {"code": 'print("a")'})

    assert upper != lower
    assert cache_key("workspace_writer", {"path": "Notes.md"}) != cache_key(
        "workspace_writer",
        {"path": "notes.md"},
    )


def test_cache_returns_copies_until_ttl_expires() -> None:
    clock = _Clock()
    cache = ResultCache(ttl_seconds=10.0, clock=clock)
    cache.put("k", {"hits": [1]})

    hit, value = cache.get("k")
    value["hits"].append(2)

    assert hit is True
    assert cache.get("k") == (True, {"hits": [1]})
    clock.now = 10.5
    assert cache.get("k") == (False, None)
    assert len(cache) == 0


def test_cache_evicts_least_recently_used() -> None:
    cache = ResultCache(ttl_seconds=60.0, max_entries=2)
    cache.put("a", 1)
    cache.put("b", 2)
    cache.get("a")

    cache.put("c", 3)

    assert cache.get("b") == (False, None)
    assert cache.get("a") == (True, 1)
    assert cache.get("c") == (True, 3)


def test_zero_ttl_disables_cache() -> None:
    cache = ResultCache(ttl_seconds=0)
    cache.put("a", 1)

    assert cache.get("a") == (False, None)
    assert len(cache) == 0
