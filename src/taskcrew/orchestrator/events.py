"""Read-only audit event bus.

Events are published only after the transaction that produced them commits.
Subscribers observe; they cannot veto or alter orchestration, and a failing
subscriber is logged and skipped.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Any

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class AuditEvent:
    """Immutable record of one state transition, invocation, checkpoint, or cost entry."""

    event_id: int
    team_id: str
    task_id: str | None
    entity_type: str
    entity_id: str
    event_type: str
    status_from: str | None
    status_to: str | None
    created_at: datetime
    details: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))


EventSubscriber = Callable[[AuditEvent], None]


class EventBus:
    """Fan-out of committed audit events to read-only subscribers."""

    def __init__(self) -> None:
        self._subscribers: list[EventSubscriber] = []
        self._lock = threading.Lock()

    def subscribe(self, subscriber: EventSubscriber) -> Callable[[], None]:
        """Register subscriber; returns a callable that unsubscribes it."""

        with self._lock:
            self._subscribers.append(subscriber)

        def _unsubscribe() -> None:
            with self._lock:
                if subscriber in self._subscribers:
                    self._subscribers.remove(subscriber)

        return _unsubscribe

    def publish(self, events: Iterable[AuditEvent]) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        if not subscribers:
            return
        for event in events:
            for subscriber in subscribers:
                try:
                    subscriber(event)
                except Exception:
                    logger.exception(
                        "Audit subscriber %r failed on event %s (%s)",
                        subscriber,
                        event.event_id,
                        event.event_type,
                    )


def freeze_details(details: Mapping[str, Any] | None) -> Mapping[str, Any]:
    return MappingProxyType(dict(details or {}))
