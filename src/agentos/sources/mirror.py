from __future__ import annotations

from collections.abc import Sequence

from agentos.models import EntityKind, Goal
from agentos.sources.base import GoalSource


class MirroredGoalSource:
    """Reads and claims through ``primary``; copies status to every mirror.

    Mirrors see reports, clarifications and notifications after the primary
    has handled them.
    """

    def __init__(self, primary: GoalSource, mirrors: Sequence[GoalSource]) -> None:
        self.primary = primary
        self.mirrors = list(mirrors)
        self.name = "+".join([primary.name, *(mirror.name for mirror in self.mirrors)])

    async def poll_goals(self, team_id: str | None = None) -> list[Goal]:
        return await self.primary.poll_goals(team_id)

    async def claim(self, unit_id: str, worker_id: str) -> bool:
        return await self.primary.claim(unit_id, worker_id)

    async def release(self, unit_id: str) -> None:
        await self.primary.release(unit_id)

    async def report(
        self,
        unit_id: str,
        status: str,
        message: str,
        *,
        entity: EntityKind,
        team_id: str | None = None,
    ) -> None:
        for source in (self.primary, *self.mirrors):
            await source.report(unit_id, status, message, entity=entity, team_id=team_id)

    async def request_clarification(self, goal_id: str, question: str) -> None:
        for source in (self.primary, *self.mirrors):
            await source.request_clarification(goal_id, question)

    async def notify(self, message: str) -> None:
        for source in (self.primary, *self.mirrors):
            await source.notify(message)
