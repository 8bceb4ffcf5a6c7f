import asyncio
import json
from typing import Any

import pytest

from agentos.core.router import CapabilityRouter
from agentos.core.scheduler import DependencyScheduler
from agentos.core.state_machine import StateMachine
from agentos.errors import InvocationError, TransitionError
from agentos.llm.base import LLMResponse, LLMUsage
from agentos.models import Goal, Task, Team, WorkerDescriptor
from agentos.sources.memory import InMemoryGoalSource
from agentos.stages.clarify import ClarifyStage
from agentos.stages.execute import ExecuteStage

CLEAR = {"isClearEnough": True, "confidence": 90, "questions": []}


class ScriptedInvoker:
    def __init__(self, *, failing: set[str] = frozenset(), clarify: dict[str, Any] | None = None) -> None:
        self.failing = failing
        self.clarify = clarify or CLEAR
        self.executed: list[str] = []
        self.clarified: list[str] = []

    async def generate(self, stage: str, prompt: str, **kwargs: Any) -> LLMResponse:
        task_line = next(line for line in prompt.splitlines() if line.startswith("Task ("))
        description = task_line.split(": ", 1)[1]
        if stage == "clarify":
            self.clarified.append(description)
            payload = self.clarify
        else:
            self.executed.append(description)
            if description in self.failing:
                raise InvocationError("provider exploded", stage=stage)
            payload = {"summary": f"did {description}", "artifacts": []}
        return LLMResponse(
            text=json.dumps(payload),
            usage=LLMUsage(prompt_tokens=20, completion_tokens=10),
            model_alias="fake",
            stage=stage,
        )


def _goal() -> Goal:
    return Goal(id="goal-1", team_id="team-1", description="Ship the report", success_criteria=["done"])


def _task(name: str, *deps: str, capabilities: tuple[str, ...] = ("research",)) -> Task:
    return Task(
        id=name,
        goal_id="goal-1",
        team_id="team-1",
        description=name,
        type="research",
        required_capabilities=list(capabilities),
        dependencies=list(deps),
    )


def _scheduler(
    invoker: ScriptedInvoker,
    source: InMemoryGoalSource,
    *,
    workers: list[WorkerDescriptor] | None = None,
    state_machine: StateMachine | None = None,
) -> DependencyScheduler:
    if workers is None:
        workers = [WorkerDescriptor(id="agent-1", name="Agent", capabilities=["research", "writing"])]
    teams = {"team-1": Team(id="team-1", name="Team", agents=[w.id for w in workers])}
    router = CapabilityRouter({w.id: w for w in workers}, teams)
    return DependencyScheduler(
        source,
        router,
        ClarifyStage(invoker),
        ExecuteStage(invoker),
        state_machine=state_machine,
    )


def _statuses(source: InMemoryGoalSource, unit_id: str) -> list[str]:
    return [report.status for report in source.reports if report.unit_id == unit_id]


def test_dependencies_dispatch_in_order() -> None:
    invoker = ScriptedInvoker()
    source = InMemoryGoalSource()
    goal = _goal()
    tasks = [_task("B", "A"), _task("A")]

    outcome = asyncio.run(_scheduler(invoker, source).execute_goal_tasks(tasks, goal))

    assert invoker.executed == ["A", "B"]
    assert outcome.completed == ["A", "B"]
    assert outcome.passes == 2
    assert goal.status == "completed"
    assert _statuses(source, "A") == ["claimed", "in_progress", "completed"]
    assert all(task.status == "completed" and task.result for task in tasks)
    task_b = next(task for task in tasks if task.id == "B")
    assert task_b.result.summary == "did B"
    assert task_b.assigned_to == "agent-1"
    assert source.claims == {}
    goal_reports = source.reports_for(entity="goal")
    assert [(r.unit_id, r.status, r.message) for r in goal_reports] == [
        ("goal-1", "completed", "2 completed, 0 failed, 0 blocked")
    ]


def test_unknown_dependency_blocks_without_dispatch() -> None:
    invoker = ScriptedInvoker()
    source = InMemoryGoalSource()
    tasks = [_task("C", "Z")]

    outcome = asyncio.run(_scheduler(invoker, source).execute_goal_tasks(tasks, _goal()))

    assert outcome.blocked == ["C"]
    assert "unknown dependency: Z" in outcome.reasons["C"]
    assert invoker.clarified == []
    assert invoker.executed == []
    assert source.claims == {}
    assert tasks[0].status == "blocked"
    assert _statuses(source, "C") == ["blocked"]
    assert outcome.goal_status == "blocked"


def test_failed_dependency_blocks_dependent() -> None:
    invoker = ScriptedInvoker(failing={"A"})
    source = InMemoryGoalSource()
    goal = _goal()
    tasks = [_task("A"), _task("B", "A")]

    outcome = asyncio.run(_scheduler(invoker, source).execute_goal_tasks(tasks, goal))

    assert outcome.failed == ["A"]
    assert outcome.blocked == ["B"]
    assert "blocked by dependency: A" in outcome.reasons["B"]
    assert invoker.executed == ["A"]
    assert tasks[0].status == "failed"
    assert tasks[0].completed_at is not None
    assert _statuses(source, "A") == ["claimed", "in_progress", "failed"]
    assert source.reports_for(entity="task", status="failed")[0].message == "provider exploded"
    assert goal.status == "failed"


def test_dependency_cycle_blocks_both_in_one_pass() -> None:
    invoker = ScriptedInvoker()
    source = InMemoryGoalSource()
    tasks = [_task("A", "B"), _task("B", "A")]

    outcome = asyncio.run(_scheduler(invoker, source).execute_goal_tasks(tasks, _goal()))

    assert outcome.passes == 1
    assert sorted(outcome.blocked) == ["A", "B"]
    assert outcome.reasons == {"A": "unresolvable dependencies", "B": "unresolvable dependencies"}
    assert invoker.executed == []


def test_independent_task_survives_sibling_failure() -> None:
    invoker = ScriptedInvoker(failing={"A"})
    source = InMemoryGoalSource()
    tasks = [_task("A"), _task("B")]

    outcome = asyncio.run(_scheduler(invoker, source).execute_goal_tasks(tasks, _goal()))

    assert outcome.counts == {"completed": 1, "failed": 1, "blocked": 0}
    assert outcome.completed == ["B"]


def test_no_active_worker_blocks_task() -> None:
    invoker = ScriptedInvoker()
    source = InMemoryGoalSource()
    idle = WorkerDescriptor(id="agent-1", name="Idle", capabilities=["research"], is_active=False)
    tasks = [_task("A")]

    outcome = asyncio.run(
        _scheduler(invoker, source, workers=[idle]).execute_goal_tasks(tasks, _goal())
    )

    assert outcome.blocked == ["A"]
    assert outcome.reasons["A"] == "no active worker in team team-1"
    assert invoker.clarified == []


def test_under_qualified_worker_still_executes() -> None:
    invoker = ScriptedInvoker()
    source = InMemoryGoalSource()
    tasks = [_task("A", capabilities=("design",))]

    outcome = asyncio.run(_scheduler(invoker, source).execute_goal_tasks(tasks, _goal()))

    assert outcome.completed == ["A"]
    assert tasks[0].assigned_to == "agent-1"


def test_claim_conflict_blocks_without_report() -> None:
    invoker = ScriptedInvoker()
    source = InMemoryGoalSource()
    source.claims["A"] = "someone-else"
    tasks = [_task("A")]

    outcome = asyncio.run(_scheduler(invoker, source).execute_goal_tasks(tasks, _goal()))

    assert outcome.blocked == ["A"]
    assert invoker.executed == []
    assert _statuses(source, "A") == []
    assert tasks[0].status == "blocked"


def test_blocking_task_clarification_requests_answer() -> None:
    invoker = ScriptedInvoker(
        clarify={
            "isClearEnough": True,
            "confidence": 85,
            "questions": [
                {
                    "question": "Which region?",
                    "blocking": True,
                    "urgency": "high",
                    "why": "Data differs per region",
                    "assumptionIfUnanswered": "EU",
                }
            ],
        }
    )
    source = InMemoryGoalSource()
    tasks = [_task("A")]

    outcome = asyncio.run(_scheduler(invoker, source).execute_goal_tasks(tasks, _goal()))

    assert outcome.blocked == ["A"]
    assert outcome.reasons["A"] == "awaiting clarification"
    assert invoker.executed == []
    [(goal_id, question)] = source.clarifications
    assert goal_id == "goal-1"
    assert "1. [BLOCKING] (high) Which region?" in question


def test_forbidden_transition_propagates() -> None:
    class FrozenMachine(StateMachine):
        def can_transition(self, current: str, target: str) -> bool:
            return False

    invoker = ScriptedInvoker()
    source = InMemoryGoalSource()

    with pytest.raises(TransitionError):
        asyncio.run(
            _scheduler(invoker, source, state_machine=FrozenMachine()).execute_goal_tasks(
                [_task("A")], _goal()
            )
        )
