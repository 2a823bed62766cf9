"""Human escalation sink."""

from __future__ import annotations

import logging
from typing import Protocol

from taskcrew.orchestrator.models import EscalationRequest
from taskcrew.orchestrator.repository import OrchestratorRepository

logger = logging.getLogger(__name__)


class EscalationSink(Protocol):
    """Receives escalations; resolutions come back through the orchestrator."""

    def open(self, request: EscalationRequest) -> str: ...


class RepositoryEscalationSink:
    """Persist escalations so an operator can resolve them from the CLI."""

    def __init__(self, repository: OrchestratorRepository) -> None:
        self.repository = repository

    def open(self, request: EscalationRequest) -> str:
        escalation = self.repository.open_escalation(request)
        logger.warning(
            "Escalated task %s: category=%s priority=%s action=%s (escalation %s)",
            request.task_id,
            request.category.value,
            request.priority.value,
            request.recommended_action.value,
            escalation.escalation_id,
        )
        return escalation.escalation_id
