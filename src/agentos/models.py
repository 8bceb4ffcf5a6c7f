from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal

Priority = Literal["low", "medium", "high", "urgent"]
GoalStatus = Literal["pending", "blocked", "completed", "failed"]
TaskStatus = Literal["pending", "claimed", "in_progress", "blocked", "completed", "failed"]
EntityKind = Literal["goal", "task"]

PRIORITIES: tuple[str, ...] = ("low", "medium", "high", "urgent")


def utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def task_id_for(goal_id: str, ordinal: int) -> str:
    """Stable task id for the ``ordinal``-th (0-based) task of a decomposition."""
    return f"{goal_id}-task-{ordinal + 1}"


@dataclass(slots=True)
class Goal:
    id: str
    team_id: str
    description: str
    success_criteria: list[str] = field(default_factory=list)
    context: str | None = None
    priority: Priority = "medium"
    status: GoalStatus = "pending"
    source: str = "unknown"
    created_by: str = "unknown"
    created_at: str = field(default_factory=utcnow_iso)
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class Artifact:
    type: str
    name: str
    location: str
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class TaskMetrics:
    duration_seconds: float
    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def tokens_used(self) -> int:
        return self.prompt_tokens + self.completion_tokens


@dataclass(slots=True)
class TaskResult:
    summary: str
    artifacts: list[Artifact] = field(default_factory=list)
    metrics: TaskMetrics | None = None


@dataclass(slots=True)
class Task:
    id: str
    goal_id: str
    team_id: str
    description: str
    type: str
    required_capabilities: list[str] = field(default_factory=list)
    dependencies: list[str] = field(default_factory=list)
    estimated_effort: str = ""
    status: TaskStatus = "pending"
    assigned_to: str | None = None
    claimed_at: str | None = None
    completed_at: str | None = None
    result: TaskResult | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class WorkerDescriptor:
    id: str
    name: str
    capabilities: list[str] = field(default_factory=list)
    teams: list[str] = field(default_factory=list)
    # Advisory only; nothing in the scheduler enforces it.
    max_parallel_tasks: int = 1
    is_active: bool = True
    discord_id: str = ""

    def can_handle(self, required: list[str] | set[str]) -> bool:
        return set(required).issubset(self.capabilities)


@dataclass(slots=True)
class Team:
    id: str
    name: str
    agents: list[str] = field(default_factory=list)
    goals_dir: str = ""
