from __future__ import annotations

import logging
from collections.abc import Callable, Mapping, Sequence

from agentos.models import Task, Team, WorkerDescriptor

logger = logging.getLogger(__name__)

RoutingPolicy = Callable[[Task, Sequence[WorkerDescriptor]], WorkerDescriptor | None]


def first_capable_or_any(
    task: Task, roster: Sequence[WorkerDescriptor]
) -> WorkerDescriptor | None:
    """First worker covering every required capability, else the first active one."""
    for worker in roster:
        if worker.can_handle(task.required_capabilities):
            return worker
    if roster:
        logger.info(
            "No worker covers %s for task %s; assigning %s",
            sorted(task.required_capabilities),
            task.id,
            roster[0].id,
        )
        return roster[0]
    return None


def require_capable(task: Task, roster: Sequence[WorkerDescriptor]) -> WorkerDescriptor | None:
    for worker in roster:
        if worker.can_handle(task.required_capabilities):
            return worker
    return None


class CapabilityRouter:
    def __init__(
        self,
        workers: Mapping[str, WorkerDescriptor],
        teams: Mapping[str, Team],
        *,
        policy: RoutingPolicy = first_capable_or_any,
    ) -> None:
        self.workers = workers
        self.teams = teams
        self.policy = policy

    def active_roster(self, team_id: str) -> list[WorkerDescriptor]:
        team = self.teams.get(team_id)
        if team is None:
            return []
        roster: list[WorkerDescriptor] = []
        for worker_id in team.agents:
            worker = self.workers.get(worker_id)
            if worker is not None and worker.is_active:
                roster.append(worker)
        return roster

    def find_worker(self, task: Task, team_id: str) -> WorkerDescriptor | None:
        return self.policy(task, self.active_roster(team_id))
