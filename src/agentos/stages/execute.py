from __future__ import annotations

import logging
import time

from pydantic import Field

from agentos.models import Artifact, Goal, Task, TaskMetrics, TaskResult
from agentos.stages.base import CamelModel, StageExecutor

logger = logging.getLogger(__name__)


class ArtifactOutput(CamelModel):
    type: str
    name: str
    location: str


class ExecutionOutput(CamelModel):
    summary: str = Field(min_length=1)
    artifacts: list[ArtifactOutput] = Field(default_factory=list)


class ExecuteStage(StageExecutor[ExecutionOutput]):
    stage = "execute"
    schema = ExecutionOutput
    system_prompt = """
You are a specialist carrying out one task of a larger goal.
Do the work described, then report what you produced.
Respond with a single JSON object and nothing else.
""".strip()

    @staticmethod
    def build_prompt(task: Task, goal: Goal) -> str:
        criteria = "\n".join(f"- {item}" for item in goal.success_criteria)
        context = f"Context:\n{goal.context}\n\n" if goal.context else ""
        return f"""Execute this task.

Goal: {goal.description}

Success Criteria:
{criteria}

{context}Task ({task.type}): {task.description}
Estimated effort: {task.estimated_effort or "unknown"}

Respond with JSON: {{"summary": str, "artifacts": [{{"type": str, "name": str,
"location": str}}]}}. Artifacts are references only (a path, URL or identifier)."""

    async def run(self, task: Task, goal: Goal) -> TaskResult:
        logger.info("Executing task=%s type=%s", task.id, task.type)
        started = time.monotonic()
        output, response = await self.invoke(self.build_prompt(task, goal), task_type=task.type)
        duration = time.monotonic() - started
        return TaskResult(
            summary=output.summary,
            artifacts=[
                Artifact(type=item.type, name=item.name, location=item.location)
                for item in output.artifacts
            ],
            metrics=TaskMetrics(
                duration_seconds=duration,
                prompt_tokens=response.usage.prompt_tokens,
                completion_tokens=response.usage.completion_tokens,
            ),
        )
