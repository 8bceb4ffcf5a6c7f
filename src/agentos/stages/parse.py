from __future__ import annotations

import logging
from typing import Any, Literal

from pydantic import Field

from agentos.models import Goal, utcnow_iso
from agentos.stages.base import CamelModel, StageExecutor

logger = logging.getLogger(__name__)


class GoalDraft(CamelModel):
    description: str = Field(min_length=1, description="Clear, concise description of the goal")
    success_criteria: list[str] = Field(description="Specific, measurable outcomes")
    context: str | None = Field(default=None, description="Background information and constraints")
    priority: Literal["low", "medium", "high", "urgent"]


class ParseStage(StageExecutor[GoalDraft]):
    stage = "parse"
    schema = GoalDraft
    system_prompt = """
You turn free-text requests into structured goals.
Respond with a single JSON object and nothing else.
""".strip()

    @staticmethod
    def build_prompt(raw_input: str) -> str:
        return f"""Analyze this goal description and extract structured information.

Input:
\"\"\"
{raw_input}
\"\"\"

Extract:
1. A clear, concise description of what needs to be done
2. Specific, measurable success criteria (how will we know it's done?)
3. Any background context or constraints
4. Priority level (low, medium, high, urgent)

Respond with JSON using the keys "description", "successCriteria" (array of strings),
"context" (string, optional) and "priority"."""

    async def run(
        self,
        raw_input: str,
        *,
        goal_id: str,
        team_id: str,
        created_by: str = "unknown",
        created_at: str | None = None,
        source: str = "unknown",
        metadata: dict[str, Any] | None = None,
    ) -> Goal:
        logger.info("Starting parse for goal=%s (%d chars)", goal_id, len(raw_input))
        draft, response = await self.invoke(self.build_prompt(raw_input))
        logger.info(
            "Parsed goal=%s: priority=%s, criteria=%d",
            goal_id,
            draft.priority,
            len(draft.success_criteria),
        )
        return Goal(
            id=goal_id,
            team_id=team_id,
            description=draft.description,
            success_criteria=list(draft.success_criteria),
            context=draft.context,
            priority=draft.priority,
            status="pending",
            source=source,
            created_by=created_by,
            created_at=created_at or utcnow_iso(),
            metadata={
                **(metadata or {}),
                "parsed_at": utcnow_iso(),
                "input_length": len(raw_input),
                "parse_model": response.model_alias,
            },
        )
