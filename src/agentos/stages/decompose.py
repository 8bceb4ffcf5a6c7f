from __future__ import annotations

import logging

from pydantic import Field

from agentos.errors import ParseError
from agentos.models import Goal, Task, task_id_for
from agentos.stages.base import CamelModel, StageExecutor

logger = logging.getLogger(__name__)

MAX_TASKS = 10


class PlannedTask(CamelModel):
    description: str = Field(min_length=1, description="Specific, actionable task description")
    type: str = Field(min_length=1, description="research, write, code, design, review, test, ...")
    required_capabilities: list[str] = Field(description='Skills needed, e.g. ["research"]')
    estimated_effort: str = Field(description='Time estimate, e.g. "2 hours"')
    dependencies: list[int] = Field(
        default_factory=list, description="0-based indices of tasks this one depends on"
    )


class Decomposition(CamelModel):
    tasks: list[PlannedTask] = Field(min_length=1, max_length=MAX_TASKS)
    strategy: str = Field(default="", description="Brief explanation of the approach")


class DecomposeStage(StageExecutor[Decomposition]):
    stage = "decompose"
    schema = Decomposition
    system_prompt = """
You are the planner. Break goals into concrete, independently executable tasks
with explicit ordering. You produce plans, not the work itself.
Respond with a single JSON object and nothing else.
""".strip()

    @staticmethod
    def build_prompt(goal: Goal) -> str:
        criteria = "\n".join(f"- {item}" for item in goal.success_criteria)
        context = f"Context:\n{goal.context}\n\n" if goal.context else ""
        return f"""Decompose this goal into executable tasks.

Goal: {goal.description}

Success Criteria:
{criteria}

{context}Break this down into 1-{MAX_TASKS} specific, actionable tasks. Each task should:
- Be concrete and completable
- Specify required capabilities (skills needed)
- Have a realistic time estimate
- List the 0-based indices of tasks it depends on (never itself)

Strategy: Start with research/planning tasks, then implementation, then review.

Respond with JSON: {{"strategy": str, "tasks": [{{"description": str, "type": str,
"requiredCapabilities": [str], "estimatedEffort": str, "dependencies": [int]}}]}}"""

    def build_tasks(self, goal: Goal, decomposition: Decomposition, raw_text: str = "") -> list[Task]:
        tasks: list[Task] = []
        for ordinal, planned in enumerate(decomposition.tasks):
            if ordinal in planned.dependencies:
                raise ParseError(
                    f"task {ordinal} depends on itself",
                    stage=self.stage,
                    text=raw_text,
                )
            dependencies: list[str] = []
            for index in planned.dependencies:
                dependency_id = task_id_for(goal.id, index)
                if dependency_id not in dependencies:
                    dependencies.append(dependency_id)
            tasks.append(
                Task(
                    id=task_id_for(goal.id, ordinal),
                    goal_id=goal.id,
                    team_id=goal.team_id,
                    description=planned.description,
                    type=planned.type,
                    required_capabilities=list(planned.required_capabilities),
                    dependencies=dependencies,
                    estimated_effort=planned.estimated_effort,
                    metadata={"rationale": decomposition.strategy, "order": ordinal},
                )
            )
        return tasks

    async def run(self, goal: Goal) -> list[Task]:
        logger.info("Decomposing goal=%s", goal.id)
        decomposition, response = await self.invoke(self.build_prompt(goal))
        tasks = self.build_tasks(goal, decomposition, response.text)
        logger.info("Decomposed goal=%s into %d tasks", goal.id, len(tasks))
        return tasks
