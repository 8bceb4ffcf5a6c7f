from agentos.core.pipeline import CycleSummary, Pipeline, build_pipeline
from agentos.core.router import CapabilityRouter, first_capable_or_any, require_capable
from agentos.core.scheduler import DependencyScheduler, SchedulerOutcome, derive_goal_status
from agentos.core.state_machine import TRANSITIONS, StateMachine, TransitionResult

__all__ = [
    "TRANSITIONS",
    "CapabilityRouter",
    "CycleSummary",
    "DependencyScheduler",
    "Pipeline",
    "SchedulerOutcome",
    "StateMachine",
    "TransitionResult",
    "build_pipeline",
    "derive_goal_status",
    "first_capable_or_any",
    "require_capable",
]
