from __future__ import annotations

from typing import Protocol

from agentos.models import EntityKind, Goal


class GoalSource(Protocol):
    """Where goals come from and where status goes.

    ``claim`` must be atomic: the first caller for an id wins and every later
    caller gets ``False`` until ``release`` is called for that id. ``report``
    failures are the source's own concern.
    """

    name: str

    async def poll_goals(self, team_id: str | None = None) -> list[Goal]: ...

    async def claim(self, unit_id: str, worker_id: str) -> bool: ...

    async def release(self, unit_id: str) -> None: ...

    async def report(
        self,
        unit_id: str,
        status: str,
        message: str,
        *,
        entity: EntityKind,
        team_id: str | None = None,
    ) -> None: ...

    async def request_clarification(self, goal_id: str, question: str) -> None: ...

    async def notify(self, message: str) -> None: ...
