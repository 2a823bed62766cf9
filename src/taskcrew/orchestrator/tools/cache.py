"""In-process result cache keyed by normalized tool input."""

from __future__ import annotations

import copy
import hashlib
import json
import threading
import time
from collections import OrderedDict
from collections.abc import Callable
from typing import Any

# Query-like fields where case and spacing never change a tool's answer.
FOLDED_FIELDS = frozenset({"query", "keywords"})


def normalize_input(value: Any, *, fold: bool = False) -> Any:
    """Lowercase dict keys recursively; fold string case and spacing only when `fold`."""

    if isinstance(value, str):
        return " ".join(value.lower().split()) if fold else value
    if isinstance(value, dict):
        return {
            str(key).strip().lower(): normalize_input(item, fold=fold)
            for key, item in value.items()
        }
    if isinstance(value, list | tuple):
        return [normalize_input(item, fold=fold) for item in value]
    return value


def cache_key(
    tool_id: str,
    tool_input: dict[str, Any],
    *,
    folded_fields: frozenset[str] = FOLDED_FIELDS,
) -> str:
    normalized = {}
    for key, item in tool_input.items():
        name = str(key).strip().lower()
        normalized[name] = normalize_input(item, fold=name in folded_fields)
    serialized = json.dumps(
        normalized,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=True,
        default=str,
    )
    digest = hashlib.sha256(f"{tool_id}\n{serialized}".encode()).hexdigest()
    return f"{tool_id}:{digest}"


class ResultCache:
    """TTL cache of successful tool outputs with LRU eviction."""

    def __init__(
        self,
        *,
        ttl_seconds: float,
        max_entries: int = 1_024,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = ttl_seconds
        self._max_entries = max(1, max_entries)
        self._clock = clock
        self._storage: OrderedDict[str, tuple[float, Any]] = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: str) -> tuple[bool, Any]:
        """Return `(hit, output)`; outputs are deep copies."""

        if self._ttl <= 0:
            return False, None
        with self._lock:
            entry = self._storage.get(key)
            if entry is None:
                return False, None
            stored_at, value = entry
            if self._clock() - stored_at > self._ttl:
                del self._storage[key]
                return False, None
            self._storage.move_to_end(key)
            return True, copy.deepcopy(value)

    def put(self, key: str, value: Any) -> None:
        if self._ttl <= 0:
            return
        with self._lock:
            self._storage[key] = (self._clock(), copy.deepcopy(value))
            self._storage.move_to_end(key)
            while len(self._storage) > self._max_entries:
                self._storage.popitem(last=False)

    def __len__(self) -> int:
        with self._lock:
            return len(self._storage)
