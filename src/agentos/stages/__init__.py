from agentos.stages.base import StageExecutor, StageInvoker
from agentos.stages.clarify import (
    BLOCKING_CONFIDENCE_THRESHOLD,
    ClarificationResult,
    ClarifyingQuestion,
    ClarifyStage,
    format_clarification,
    requires_blocking,
)
from agentos.stages.decompose import Decomposition, DecomposeStage, PlannedTask
from agentos.stages.execute import ExecuteStage, ExecutionOutput
from agentos.stages.parse import GoalDraft, ParseStage

__all__ = [
    "BLOCKING_CONFIDENCE_THRESHOLD",
    "ClarificationResult",
    "ClarifyStage",
    "ClarifyingQuestion",
    "DecomposeStage",
    "Decomposition",
    "ExecuteStage",
    "ExecutionOutput",
    "GoalDraft",
    "ParseStage",
    "PlannedTask",
    "StageExecutor",
    "StageInvoker",
    "format_clarification",
    "requires_blocking",
]
