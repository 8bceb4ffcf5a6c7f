import asyncio
import json
from pathlib import Path
from typing import Any

from agentos.config import AgentOSConfig, ModelPricing
from agentos.core.pipeline import build_pipeline
from agentos.core.router import require_capable
from agentos.errors import InvocationError
from agentos.llm.base import LLMResponse, LLMUsage
from agentos.llm.cost_tracker import SQLiteCostTracker
from agentos.models import Goal
from agentos.sources.memory import InMemoryGoalSource

UNCLEAR = {
    "isClearEnough": False,
    "confidence": 30,
    "questions": [
        {
            "question": "What does done look like?",
            "blocking": True,
            "urgency": "high",
            "why": "No criteria",
            "assumptionIfUnanswered": "None",
        }
    ],
}


class FakeInvoker:
    def __init__(self, *, goal_clarity: dict[str, Any] | None = None, broken_goals: set[str] = frozenset()) -> None:
        self.goal_clarity = goal_clarity
        self.broken_goals = broken_goals
        self.stages: list[str] = []
        self.execute_down = False

    async def generate(self, stage: str, prompt: str, **kwargs: Any) -> LLMResponse:
        _ = kwargs
        self.stages.append(stage)
        if stage == "parse":
            if any(marker in prompt for marker in self.broken_goals):
                raise InvocationError("parse models unavailable", stage=stage)
            raw = prompt.split('"""')[1].strip()
            payload: Any = {"description": raw, "successCriteria": ["it is done"], "priority": "medium"}
        elif stage == "clarify":
            is_goal = "clear enough to decompose" in prompt
            payload = self.goal_clarity if (is_goal and self.goal_clarity) else {
                "isClearEnough": True,
                "confidence": 90,
                "questions": [],
            }
        elif stage == "decompose":
            payload = {
                "strategy": "two independent steps",
                "tasks": [
                    {
                        "description": "Gather sources",
                        "type": "research",
                        "requiredCapabilities": ["research"],
                        "estimatedEffort": "1 hour",
                    },
                    {
                        "description": "Draft outline",
                        "type": "write",
                        "requiredCapabilities": ["writing"],
                        "estimatedEffort": "1 hour",
                    },
                ],
            }
        else:
            if self.execute_down:
                raise InvocationError("execute models unavailable", stage=stage)
            payload = {"summary": "finished", "artifacts": []}
        return LLMResponse(
            text=json.dumps(payload),
            usage=LLMUsage(prompt_tokens=10, completion_tokens=5),
            model_alias="fake",
            stage=stage,
        )


def _goal(goal_id: str, description: str = "Write a market brief") -> Goal:
    return Goal(id=goal_id, team_id="team-1", description=description)


def test_end_to_end_goal_completes() -> None:
    source = InMemoryGoalSource([_goal("goal-1")])
    invoker = FakeInvoker()
    pipeline = build_pipeline(AgentOSConfig.default(), source, invoker=invoker)

    summary = asyncio.run(pipeline.run_cycle())

    assert summary.goals == {"goal-1": "completed"}
    task_completions = source.reports_for(entity="task", status="completed")
    assert sorted(report.unit_id for report in task_completions) == ["goal-1-task-1", "goal-1-task-2"]
    goal_reports = source.reports_for(entity="goal")
    assert [(report.unit_id, report.status) for report in goal_reports] == [("goal-1", "completed")]
    assert source.goals["goal-1"].status == "completed"
    assert invoker.stages[:3] == ["parse", "clarify", "decompose"]
    assert invoker.stages.count("execute") == 2

    second = asyncio.run(pipeline.run_cycle())
    assert second.goals == {}


def test_unclear_goal_requests_clarification() -> None:
    source = InMemoryGoalSource([_goal("goal-1")])
    invoker = FakeInvoker(goal_clarity=UNCLEAR)
    pipeline = build_pipeline(AgentOSConfig.default(), source, invoker=invoker)

    summary = asyncio.run(pipeline.run_cycle())

    assert summary.goals == {"goal-1": "blocked"}
    [(goal_id, question)] = source.clarifications
    assert goal_id == "goal-1"
    assert "What does done look like?" in question
    assert source.notifications == ["Goal goal-1 needs clarification"]
    assert "decompose" not in invoker.stages
    assert source.goals["goal-1"].status == "blocked"


def test_failing_goal_does_not_stop_others() -> None:
    source = InMemoryGoalSource([_goal("goal-1", "BROKEN request"), _goal("goal-2")])
    config = AgentOSConfig.default()
    config.goal_concurrency = 2
    pipeline = build_pipeline(config, source, invoker=FakeInvoker(broken_goals={"BROKEN"}))

    summary = asyncio.run(pipeline.run_cycle())

    assert summary.goals == {"goal-1": "failed", "goal-2": "completed"}
    [failure] = source.reports_for(entity="goal", status="failed")
    assert failure.unit_id == "goal-1"
    assert failure.message == "parse models unavailable"


def test_team_filter_limits_polling() -> None:
    other = Goal(id="goal-9", team_id="team-2", description="Elsewhere")
    source = InMemoryGoalSource([_goal("goal-1"), other])
    pipeline = build_pipeline(AgentOSConfig.default(), source, invoker=FakeInvoker())

    summary = asyncio.run(pipeline.run_cycle("team-2"))

    assert summary.goals == {"goal-9": "blocked"}
    assert source.goals["goal-1"].status == "pending"


def test_strict_routing_blocks_uncovered_tasks() -> None:
    config = AgentOSConfig.default()
    config.agents["agent-1"].capabilities = ["research"]
    source = InMemoryGoalSource([_goal("goal-1")])
    pipeline = build_pipeline(config, source, invoker=FakeInvoker(), routing_policy=require_capable)

    summary = asyncio.run(pipeline.run_cycle())

    assert summary.goals == {"goal-1": "blocked"}
    [blocked] = source.reports_for(entity="task", status="blocked")
    assert blocked.unit_id == "goal-1-task-2"


def test_exhausted_budget_skips_cycle(tmp_path: Path) -> None:
    tracker = SQLiteCostTracker(tmp_path / "costs.db")
    tracker.log_call("execute", "kimi-k2", 1000, 0, ModelPricing(input_per_1k=5.0))
    config = AgentOSConfig.default()
    config.cost_tracking.monthly_budget = 5.0
    source = InMemoryGoalSource([_goal("goal-1")])
    invoker = FakeInvoker()
    pipeline = build_pipeline(config, source, invoker=invoker, cost_tracker=tracker)

    summary = asyncio.run(pipeline.run_cycle())

    assert summary.skipped is True
    assert summary.budget is not None and summary.budget.over_budget
    assert invoker.stages == []
    assert "Monthly budget exhausted" in source.notifications[0]


def test_budget_alert_notifies_but_runs(tmp_path: Path) -> None:
    tracker = SQLiteCostTracker(tmp_path / "costs.db")
    tracker.log_call("execute", "kimi-k2", 1000, 0, ModelPricing(input_per_1k=9.0))
    config = AgentOSConfig.default()
    config.cost_tracking.monthly_budget = 10.0
    source = InMemoryGoalSource([_goal("goal-1")])
    pipeline = build_pipeline(config, source, invoker=FakeInvoker(), cost_tracker=tracker)

    summary = asyncio.run(pipeline.run_cycle())

    assert summary.goals == {"goal-1": "completed"}
    assert source.notifications[0].startswith("Monthly spend at 90% of budget")


def test_run_forever_stops_after_max_cycles() -> None:
    source = InMemoryGoalSource([_goal("goal-1")])
    pipeline = build_pipeline(AgentOSConfig.default(), source, invoker=FakeInvoker())

    cycles = asyncio.run(pipeline.run_forever(0, max_cycles=3))

    assert cycles == 3
    assert len(source.reports_for(entity="goal")) == 1


def test_failed_goal_reset_to_pending_runs_again() -> None:
    source = InMemoryGoalSource([_goal("goal-1")])
    invoker = FakeInvoker()
    invoker.execute_down = True
    pipeline = build_pipeline(AgentOSConfig.default(), source, invoker=invoker)

    first = asyncio.run(pipeline.run_cycle())
    assert first.goals == {"goal-1": "failed"}
    assert source.claims == {}

    source.goals["goal-1"].status = "pending"
    invoker.execute_down = False
    second = asyncio.run(pipeline.run_cycle())

    assert second.goals == {"goal-1": "completed"}
    assert len(source.reports_for(entity="task", status="completed")) == 2
