from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

from agentos.models import EntityKind, Goal, utcnow_iso

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class StatusReport:
    unit_id: str
    status: str
    message: str
    entity: EntityKind
    team_id: str | None = None
    at: str = field(default_factory=utcnow_iso)


class InMemoryGoalSource:
    """Goal source kept entirely in process memory."""

    name = "memory"

    def __init__(self, goals: Iterable[Goal] = ()) -> None:
        self.goals: dict[str, Goal] = {goal.id: goal for goal in goals}
        self.claims: dict[str, str] = {}
        self.reports: list[StatusReport] = []
        self.clarifications: list[tuple[str, str]] = []
        self.notifications: list[str] = []
        self._claim_lock = asyncio.Lock()

    def add_goal(self, goal: Goal) -> None:
        self.goals[goal.id] = goal

    def reports_for(
        self, *, entity: EntityKind | None = None, status: str | None = None
    ) -> list[StatusReport]:
        return [
            report
            for report in self.reports
            if (entity is None or report.entity == entity)
            and (status is None or report.status == status)
        ]

    async def poll_goals(self, team_id: str | None = None) -> list[Goal]:
        return [
            goal
            for goal in self.goals.values()
            if goal.status == "pending" and (team_id is None or goal.team_id == team_id)
        ]

    async def claim(self, unit_id: str, worker_id: str) -> bool:
        async with self._claim_lock:
            if unit_id in self.claims:
                return False
            self.claims[unit_id] = worker_id
            return True

    async def release(self, unit_id: str) -> None:
        async with self._claim_lock:
            self.claims.pop(unit_id, None)

    async def report(
        self,
        unit_id: str,
        status: str,
        message: str,
        *,
        entity: EntityKind,
        team_id: str | None = None,
    ) -> None:
        self.reports.append(
            StatusReport(unit_id=unit_id, status=status, message=message, entity=entity, team_id=team_id)
        )
        if entity == "goal" and unit_id in self.goals:
            self.goals[unit_id].status = status  # type: ignore[assignment]

    async def request_clarification(self, goal_id: str, question: str) -> None:
        self.clarifications.append((goal_id, question))

    async def notify(self, message: str) -> None:
        logger.info("[notify] %s", message)
        self.notifications.append(message)
