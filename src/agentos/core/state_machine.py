from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType

from agentos.models import Task, TaskStatus, utcnow_iso

TRANSITIONS: MappingProxyType[str, tuple[str, ...]] = MappingProxyType(
    {
        "pending": ("claimed",),
        "claimed": ("in_progress", "failed"),
        "in_progress": ("blocked", "completed", "failed"),
        "blocked": ("in_progress", "failed"),
        "completed": (),
        "failed": ("pending",),  # retry re-entry point
    }
)


@dataclass(frozen=True, slots=True)
class TransitionResult:
    success: bool
    error: str | None = None


class StateMachine:
    """Task lifecycle table. Holds no task storage."""

    def __init__(self, transitions: MappingProxyType[str, tuple[str, ...]] = TRANSITIONS) -> None:
        self._transitions = transitions

    def can_transition(self, current: str, target: str) -> bool:
        return target in self._transitions.get(current, ())

    def allowed_transitions(self, status: str) -> tuple[str, ...]:
        return self._transitions.get(status, ())

    def transition(self, task: Task, target: TaskStatus) -> TransitionResult:
        if not self.can_transition(task.status, target):
            return TransitionResult(
                success=False,
                error=f"Cannot transition {task.id} from {task.status} to {target}",
            )
        task.status = target
        if target == "pending":
            task.claimed_at = None
            task.completed_at = None
        if target == "claimed":
            task.claimed_at = utcnow_iso()
        if target in {"completed", "failed"}:
            task.completed_at = utcnow_iso()
        return TransitionResult(success=True)
