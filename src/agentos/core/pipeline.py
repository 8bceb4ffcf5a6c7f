from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from agentos.config import AgentOSConfig, CostTrackingConfig
from agentos.core.router import CapabilityRouter, RoutingPolicy, first_capable_or_any
from agentos.core.scheduler import DependencyScheduler
from agentos.llm.cost_tracker import BudgetStatus, SQLiteCostTracker, check_budget
from agentos.llm.resilient import InvocationEventHook, ProviderFactory, ResilientInvoker, build_registry
from agentos.models import Goal, GoalStatus
from agentos.sources.base import GoalSource
from agentos.stages.clarify import ClarifyStage, format_clarification
from agentos.stages.decompose import DecomposeStage
from agentos.stages.execute import ExecuteStage
from agentos.stages.parse import ParseStage

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CycleSummary:
    goals: dict[str, GoalStatus] = field(default_factory=dict)
    skipped: bool = False
    budget: BudgetStatus | None = None


class Pipeline:
    """Parse -> Clarify -> Decompose -> schedule, once per polled goal."""

    def __init__(
        self,
        source: GoalSource,
        *,
        parse: ParseStage,
        clarify: ClarifyStage,
        decompose: DecomposeStage,
        scheduler: DependencyScheduler,
        goal_concurrency: int = 1,
        cost_tracker: SQLiteCostTracker | None = None,
        cost_config: CostTrackingConfig | None = None,
    ) -> None:
        self.source = source
        self.parse = parse
        self.clarify = clarify
        self.decompose = decompose
        self.scheduler = scheduler
        self.goal_concurrency = max(1, goal_concurrency)
        self.cost_tracker = cost_tracker
        self.cost_config = cost_config

    async def _check_budget(self) -> BudgetStatus | None:
        if self.cost_tracker is None or self.cost_config is None or not self.cost_config.enabled:
            return None
        status = check_budget(self.cost_tracker, self.cost_config)
        currency = self.cost_config.currency
        if status.over_budget:
            logger.warning("Monthly budget exhausted: %.2f/%.2f %s", status.spend, status.budget, currency)
            await self.source.notify(
                f"Monthly budget exhausted ({status.spend:.2f}/{status.budget:.2f} {currency}); "
                "skipping cycle"
            )
        elif status.alert:
            await self.source.notify(
                f"Monthly spend at {status.percent:.0f}% of budget "
                f"({status.spend:.2f}/{status.budget:.2f} {currency})"
            )
        return status

    async def process_goal(self, goal: Goal) -> GoalStatus:
        logger.info("Processing goal %s", goal.id)
        try:
            parsed = await self.parse.run(
                goal.description,
                goal_id=goal.id,
                team_id=goal.team_id,
                created_by=goal.created_by,
                created_at=goal.created_at,
                source=goal.source,
                metadata=goal.metadata,
            )

            clarification = await self.clarify.assess_goal(parsed)
            if clarification.blocking:
                await self.source.request_clarification(
                    goal.id, format_clarification(f"goal {goal.id}", clarification)
                )
                await self.source.notify(f"Goal {goal.id} needs clarification")
                await self.source.report(
                    goal.id,
                    "blocked",
                    "Awaiting clarification",
                    entity="goal",
                    team_id=goal.team_id,
                )
                return "blocked"

            tasks = await self.decompose.run(parsed)
            outcome = await self.scheduler.execute_goal_tasks(tasks, parsed)
            return outcome.goal_status
        except Exception as exc:
            logger.error("Failed goal %s: %s", goal.id, exc, exc_info=True)
            await self.source.report(goal.id, "failed", str(exc), entity="goal", team_id=goal.team_id)
            return "failed"

    async def run_cycle(self, team_id: str | None = None) -> CycleSummary:
        budget = await self._check_budget()
        if budget is not None and budget.over_budget:
            return CycleSummary(skipped=True, budget=budget)

        goals = await self.source.poll_goals(team_id)
        summary = CycleSummary(budget=budget)
        if not goals:
            logger.debug("No pending goals for team=%s", team_id or "*")
            return summary

        semaphore = asyncio.Semaphore(self.goal_concurrency)

        async def _run_one(goal: Goal) -> None:
            async with semaphore:
                try:
                    summary.goals[goal.id] = await self.process_goal(goal)
                except Exception:
                    logger.exception("Unhandled error while processing goal %s", goal.id)
                    summary.goals[goal.id] = "failed"

        await asyncio.gather(*(_run_one(goal) for goal in goals))
        return summary

    async def run_forever(
        self,
        interval_seconds: float,
        *,
        team_id: str | None = None,
        max_cycles: int | None = None,
    ) -> int:
        cycles = 0
        while max_cycles is None or cycles < max_cycles:
            try:
                summary = await self.run_cycle(team_id)
                if summary.goals:
                    logger.info("Cycle %d processed %d goals", cycles + 1, len(summary.goals))
            except Exception:
                logger.exception("Cycle %d failed", cycles + 1)
            cycles += 1
            if max_cycles is not None and cycles >= max_cycles:
                break
            await asyncio.sleep(interval_seconds)
        return cycles


def build_pipeline(
    config: AgentOSConfig,
    source: GoalSource,
    *,
    invoker: ResilientInvoker | None = None,
    cost_tracker: SQLiteCostTracker | None = None,
    event_hook: InvocationEventHook | None = None,
    provider_factory: ProviderFactory | None = None,
    routing_policy: RoutingPolicy = first_capable_or_any,
) -> Pipeline:
    if invoker is None:
        invoker = ResilientInvoker(
            build_registry(config, provider_factory),
            config.pipeline,
            cost_sink=cost_tracker,
            event_hook=event_hook,
        )
    clarify = ClarifyStage(invoker)
    router = CapabilityRouter(config.agents, config.teams, policy=routing_policy)
    scheduler = DependencyScheduler(source, router, clarify, ExecuteStage(invoker))
    return Pipeline(
        source,
        parse=ParseStage(invoker),
        clarify=clarify,
        decompose=DecomposeStage(invoker),
        scheduler=scheduler,
        goal_concurrency=config.goal_concurrency,
        cost_tracker=cost_tracker,
        cost_config=config.cost_tracking,
    )
