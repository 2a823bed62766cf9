"""Per-team budget guard serializing pre-dispatch spend checks."""

from __future__ import annotations

import threading
from collections import defaultdict
from dataclasses import dataclass
from uuid import uuid4

from taskcrew.orchestrator.errors import BudgetExceeded
from taskcrew.orchestrator.repository import OrchestratorRepository


@dataclass(slots=True)
class BudgetSnapshot:
    team_id: str
    budget_limit: float | None
    spent: float
    reserved: float

    @property
    def remaining(self) -> float | None:
        if self.budget_limit is None:
            return None
        return max(0.0, self.budget_limit - self.spent - self.reserved)


class BudgetGuard:
    """Reserve estimated cost before dispatch so concurrent tasks cannot jointly overspend.

    Reservations live in memory for the lifetime of one orchestrator process;
    committed spend is always read back from the cost ledger.
    """

    def __init__(self, repository: OrchestratorRepository) -> None:
        self.repository = repository
        self._locks: defaultdict[str, threading.Lock] = defaultdict(threading.Lock)
        self._locks_guard = threading.Lock()
        self._reservations: dict[str, dict[str, float]] = defaultdict(dict)

    def reserve(self, team_id: str, amount: float) -> str:
        """Hold `amount` against the team ceiling; returns a reservation id."""

        with self._team_lock(team_id):
            snapshot = self._snapshot_locked(team_id)
            amount = max(0.0, amount)
            if (
                snapshot.budget_limit is not None
                and snapshot.spent + snapshot.reserved + amount > snapshot.budget_limit
            ):
                raise BudgetExceeded(
                    team_id,
                    budget_limit=snapshot.budget_limit,
                    committed=snapshot.spent + snapshot.reserved,
                    requested=amount,
                )
            reservation_id = str(uuid4())
            self._reservations[team_id][reservation_id] = amount
            return reservation_id

    def settle(self, team_id: str, reservation_id: str, actual: float) -> float:
        """Resize a reservation to the part of `actual` that fits under the ceiling.

        Returns the amount that may be booked. It stays reserved until
        `release`, which callers run after the ledger write.
        """

        with self._team_lock(team_id):
            snapshot = self._snapshot_locked(team_id)
            actual = max(0.0, actual)
            held = self._reservations[team_id].get(reservation_id, 0.0)
            booked = actual
            if snapshot.budget_limit is not None:
                others = snapshot.reserved - held
                booked = min(actual, max(0.0, snapshot.budget_limit - snapshot.spent - others))
            self._reservations[team_id][reservation_id] = booked
            return booked

    def release(self, team_id: str, reservation_id: str) -> None:
        with self._team_lock(team_id):
            self._reservations[team_id].pop(reservation_id, None)

    def snapshot(self, team_id: str) -> BudgetSnapshot:
        with self._team_lock(team_id):
            return self._snapshot_locked(team_id)

    def remaining(self, team_id: str) -> float | None:
        return self.snapshot(team_id).remaining

    def _snapshot_locked(self, team_id: str) -> BudgetSnapshot:
        team = self.repository.get_team(team_id)
        if team is None:
            raise RuntimeError(f"Team not found: {team_id}")
        return BudgetSnapshot(
            team_id=team_id,
            budget_limit=team.budget_limit,
            spent=self.repository.team_spent(team_id=team_id),
            reserved=sum(self._reservations[team_id].values()),
        )

    def _team_lock(self, team_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks[team_id]
