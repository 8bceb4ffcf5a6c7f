from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Literal

from agentos.core.router import CapabilityRouter
from agentos.core.state_machine import StateMachine
from agentos.errors import ClaimConflict, DependencyError, TransitionError
from agentos.models import Goal, GoalStatus, Task, TaskStatus, WorkerDescriptor, utcnow_iso
from agentos.sources.base import GoalSource
from agentos.stages.clarify import ClarifyStage, format_clarification
from agentos.stages.execute import ExecuteStage

logger = logging.getLogger(__name__)

Settlement = Literal["completed", "failed", "blocked"]


@dataclass(slots=True)
class SchedulerOutcome:
    completed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    blocked: list[str] = field(default_factory=list)
    reasons: dict[str, str] = field(default_factory=dict)
    passes: int = 0

    @property
    def counts(self) -> dict[str, int]:
        return {
            "completed": len(self.completed),
            "failed": len(self.failed),
            "blocked": len(self.blocked),
        }

    @property
    def goal_status(self) -> GoalStatus:
        return derive_goal_status(self)


def derive_goal_status(outcome: SchedulerOutcome) -> GoalStatus:
    if outcome.failed:
        return "failed"
    if outcome.blocked:
        return "blocked"
    return "completed"


class DependencyScheduler:
    """Drives one goal's tasks to settlement in dependency order.

    Passes repeat over the remaining tasks until none are left or a pass makes
    no progress, in which case whatever remains is blocked. Tasks run one at a
    time.
    """

    def __init__(
        self,
        source: GoalSource,
        router: CapabilityRouter,
        clarify: ClarifyStage,
        execute: ExecuteStage,
        *,
        state_machine: StateMachine | None = None,
    ) -> None:
        self.source = source
        self.router = router
        self.clarify = clarify
        self.execute = execute
        self.state_machine = state_machine or StateMachine()

    async def _report_task(self, task: Task, status: str, message: str) -> None:
        await self.source.report(task.id, status, message, entity="task", team_id=task.team_id)

    def _require(self, task: Task, target: TaskStatus) -> None:
        result = self.state_machine.transition(task, target)
        if not result.success:
            raise TransitionError(result.error or f"Cannot transition {task.id} to {target}")

    @staticmethod
    def _settle_undispatched(task: Task, status: TaskStatus) -> None:
        # The task never left pending, so the lifecycle table does not apply.
        task.status = status
        if status == "failed":
            task.completed_at = utcnow_iso()

    async def _block(self, task: Task, reason: str, *, report: bool = True) -> None:
        logger.info("Task %s blocked: %s", task.id, reason)
        self._settle_undispatched(task, "blocked")
        task.metadata["blocked_reason"] = reason
        if report:
            await self._report_task(task, "blocked", reason)

    @staticmethod
    def _check_dependencies(
        task: Task,
        batch_ids: set[str],
        completed: set[str],
        failed: set[str],
        blocked: set[str],
    ) -> bool:
        """Return True when every dependency completed, False while still waiting."""
        unknown = [dep for dep in task.dependencies if dep not in batch_ids]
        if unknown:
            raise DependencyError(task.id, f"unknown dependency: {', '.join(unknown)}")
        stuck = [dep for dep in task.dependencies if dep in failed or dep in blocked]
        if stuck:
            raise DependencyError(task.id, f"blocked by dependency: {', '.join(stuck)}")
        return all(dep in completed for dep in task.dependencies)

    async def _claim(self, task: Task, worker: WorkerDescriptor) -> None:
        if not await self.source.claim(task.id, worker.id):
            raise ClaimConflict(task.id)

    async def _dispatch(self, task: Task, goal: Goal) -> tuple[Settlement, str]:
        worker = self.router.find_worker(task, goal.team_id)
        if worker is None:
            reason = f"no active worker in team {goal.team_id}"
            await self._block(task, reason)
            return "blocked", reason

        try:
            clarification = await self.clarify.assess_task(task, goal)
        except Exception as exc:
            logger.warning("Clarification for task %s failed: %s", task.id, exc)
            self._settle_undispatched(task, "failed")
            await self._report_task(task, "failed", f"Clarification failed: {exc}")
            return "failed", str(exc)
        if clarification.blocking:
            await self.source.request_clarification(
                goal.id, format_clarification(f"task {task.id}", clarification)
            )
            reason = "awaiting clarification"
            await self._block(task, reason)
            return "blocked", reason

        try:
            await self._claim(task, worker)
        except ClaimConflict as exc:
            # Another actor owns the task; its status is theirs to report.
            await self._block(task, str(exc), report=False)
            return "blocked", str(exc)

        task.assigned_to = worker.id
        self._require(task, "claimed")
        await self._report_task(task, "claimed", f"Claimed by {worker.id}")
        self._require(task, "in_progress")
        await self._report_task(task, "in_progress", "Starting execution")

        try:
            result = await self.execute.run(task, goal)
        except Exception as exc:
            logger.warning("Task %s failed: %s", task.id, exc)
            self._require(task, "failed")
            await self._report_task(task, "failed", str(exc))
            await self.source.release(task.id)
            return "failed", str(exc)

        task.result = result
        self._require(task, "completed")
        await self._report_task(task, "completed", result.summary)
        await self.source.release(task.id)
        return "completed", result.summary

    async def execute_goal_tasks(self, tasks: list[Task], goal: Goal) -> SchedulerOutcome:
        batch_ids = {task.id for task in tasks}
        remaining = {task.id: task for task in tasks}
        completed: set[str] = set()
        failed: set[str] = set()
        blocked: set[str] = set()
        outcome = SchedulerOutcome()
        settled = {"completed": completed, "failed": failed, "blocked": blocked}

        def _record(task_id: str, settlement: Settlement, reason: str) -> None:
            settled[settlement].add(task_id)
            getattr(outcome, settlement).append(task_id)
            if settlement != "completed":
                outcome.reasons[task_id] = reason

        while remaining:
            outcome.passes += 1
            progress = False
            for task_id, task in list(remaining.items()):
                try:
                    ready = self._check_dependencies(task, batch_ids, completed, failed, blocked)
                except DependencyError as exc:
                    del remaining[task_id]
                    progress = True
                    await self._block(task, exc.reason)
                    _record(task_id, "blocked", exc.reason)
                    continue
                if not ready:
                    continue
                del remaining[task_id]
                progress = True
                settlement, reason = await self._dispatch(task, goal)
                _record(task_id, settlement, reason)

            if not progress:
                for task_id, task in list(remaining.items()):
                    reason = "unresolvable dependencies"
                    await self._block(task, reason)
                    _record(task_id, "blocked", reason)
                remaining.clear()

        goal.status = outcome.goal_status
        counts = outcome.counts
        message = (
            f"{counts['completed']} completed, {counts['failed']} failed, "
            f"{counts['blocked']} blocked"
        )
        logger.info("Goal %s %s: %s", goal.id, goal.status, message)
        await self.source.report(goal.id, goal.status, message, entity="goal", team_id=goal.team_id)
        return outcome
