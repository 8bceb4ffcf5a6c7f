from __future__ import annotations

import logging
from typing import Literal

from pydantic import Field

from agentos.models import Goal, Task
from agentos.stages.base import CamelModel, StageExecutor

logger = logging.getLogger(__name__)

# Below this confidence the subject blocks.
BLOCKING_CONFIDENCE_THRESHOLD = 60


class ClarifyingQuestion(CamelModel):
    question: str
    blocking: bool
    urgency: Literal["low", "medium", "high"]
    why: str
    assumption_if_unanswered: str


class ClarificationResult(CamelModel):
    is_clear_enough: bool
    confidence: int = Field(ge=0, le=100)
    questions: list[ClarifyingQuestion] = Field(default_factory=list)

    @property
    def blocking(self) -> bool:
        return requires_blocking(self.is_clear_enough, self.confidence, self.questions)


def requires_blocking(
    is_clear_enough: bool, confidence: int, questions: list[ClarifyingQuestion]
) -> bool:
    return (
        not is_clear_enough
        or confidence < BLOCKING_CONFIDENCE_THRESHOLD
        or any(question.blocking for question in questions)
    )


def format_clarification(subject: str, result: ClarificationResult) -> str:
    lines = [f"Clarification needed for {subject} (confidence {result.confidence}%):"]
    if not result.questions:
        lines.append("The request is not clear enough to proceed. Please add detail.")
    for number, item in enumerate(result.questions, start=1):
        label = "BLOCKING" if item.blocking else "Non-blocking"
        lines.append(f"{number}. [{label}] ({item.urgency}) {item.question}")
        if item.why:
            lines.append(f"   Why: {item.why}")
        if item.assumption_if_unanswered:
            lines.append(f"   If unanswered: {item.assumption_if_unanswered}")
    return "\n".join(lines)


class ClarifyStage(StageExecutor[ClarificationResult]):
    stage = "clarify"
    schema = ClarificationResult
    system_prompt = """
You review work requests before they are executed and decide whether they are
clear enough to act on. Ask only questions whose answers would change the work.
Respond with a single JSON object and nothing else.
""".strip()

    @staticmethod
    def _response_contract() -> str:
        return (
            'Respond with JSON: {"isClearEnough": bool, "confidence": 0-100, '
            '"questions": [{"question": str, "blocking": bool, '
            '"urgency": "low"|"medium"|"high", "why": str, '
            '"assumptionIfUnanswered": str}]}'
        )

    def build_goal_prompt(self, goal: Goal) -> str:
        criteria = "\n".join(f"- {item}" for item in goal.success_criteria) or "- (none given)"
        context = f"\nContext:\n{goal.context}\n" if goal.context else ""
        return (
            "Decide whether this goal is clear enough to decompose into tasks.\n\n"
            f"Goal: {goal.description}\n\n"
            f"Success Criteria:\n{criteria}\n"
            f"{context}\n"
            f"Priority: {goal.priority}\n\n"
            f"{self._response_contract()}"
        )

    def build_task_prompt(self, task: Task, goal: Goal) -> str:
        capabilities = ", ".join(task.required_capabilities) or "none"
        return (
            "Decide whether this task is clear enough to execute.\n\n"
            f"Goal: {goal.description}\n"
            f"Task ({task.type}): {task.description}\n"
            f"Required capabilities: {capabilities}\n"
            f"Estimated effort: {task.estimated_effort or 'unknown'}\n\n"
            f"{self._response_contract()}"
        )

    async def assess_goal(self, goal: Goal) -> ClarificationResult:
        result, _ = await self.invoke(self.build_goal_prompt(goal))
        logger.info(
            "Clarify goal=%s: clear=%s confidence=%d questions=%d blocking=%s",
            goal.id,
            result.is_clear_enough,
            result.confidence,
            len(result.questions),
            result.blocking,
        )
        return result

    async def assess_task(self, task: Task, goal: Goal) -> ClarificationResult:
        result, _ = await self.invoke(self.build_task_prompt(task, goal))
        logger.info(
            "Clarify task=%s: clear=%s confidence=%d blocking=%s",
            task.id,
            result.is_clear_enough,
            result.confidence,
            result.blocking,
        )
        return result
