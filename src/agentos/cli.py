from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from contextlib import AsyncExitStack
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, TypeVar

import click

from agentos import __version__
from agentos.config import AgentOSConfig, load_config, load_or_default, save_config
from agentos.core.pipeline import Pipeline, build_pipeline
from agentos.errors import ConfigError
from agentos.llm.cost_tracker import SQLiteCostTracker, check_budget
from agentos.llm.resilient import ResilientInvoker, build_registry
from agentos.sources.base import GoalSource
from agentos.sources.discord_channel import DiscordGoalSource
from agentos.sources.filesystem import FileSystemGoalSource
from agentos.sources.mirror import MirroredGoalSource

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(slots=True)
class Runtime:
    root: Path
    config_path: Path
    config: AgentOSConfig
    source: GoalSource
    cost_tracker: SQLiteCostTracker | None
    pipeline: Pipeline
    discord: DiscordGoalSource | None = None

    async def run(self, work: Callable[[], Awaitable[T]]) -> T:
        async with AsyncExitStack() as stack:
            if self.discord is not None:
                await stack.enter_async_context(self.discord)
            return await work()


def _resolve_path(root: Path, value: str) -> Path:
    path = Path(value)
    if not path.is_absolute():
        path = root / path
    return path.resolve()


def _log_invocation_event(event: dict[str, Any]) -> None:
    logger.debug("invocation event: %s", json.dumps(event, ensure_ascii=False))


def _build_cost_tracker(config: AgentOSConfig, root: Path) -> SQLiteCostTracker | None:
    if not config.cost_tracking.enabled:
        return None
    return SQLiteCostTracker(_resolve_path(root, config.cost_tracking.db_path))


def _build_invoker(
    config: AgentOSConfig, cost_tracker: SQLiteCostTracker | None
) -> ResilientInvoker:
    return ResilientInvoker(
        build_registry(config),
        config.pipeline,
        cost_sink=cost_tracker,
        event_hook=_log_invocation_event,
    )


def _build_source(config: AgentOSConfig, root: Path) -> FileSystemGoalSource:
    if not config.adapters.filesystem.enabled:
        raise click.ClickException("No goal source enabled. Enable [adapters.filesystem].")
    return FileSystemGoalSource(_resolve_path(root, config.adapters.filesystem.base_dir), config.teams)


def _build_discord(config: AgentOSConfig) -> DiscordGoalSource | None:
    if not config.adapters.discord.enabled:
        return None
    return DiscordGoalSource(config.adapters.discord, config.agents, config.teams)


def _load_runtime(root: Path, config_path: Path) -> Runtime:
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc
    cost_tracker = _build_cost_tracker(config, root)
    source: GoalSource = _build_source(config, root)
    discord = _build_discord(config)
    if discord is not None:
        source = MirroredGoalSource(source, [discord])
    pipeline = build_pipeline(
        config,
        source,
        invoker=_build_invoker(config, cost_tracker),
        cost_tracker=cost_tracker,
    )
    return Runtime(
        root=root,
        config_path=config_path,
        config=config,
        source=source,
        cost_tracker=cost_tracker,
        pipeline=pipeline,
        discord=discord,
    )


@click.group()
@click.option("--verbose", "-v", is_flag=True, default=False, help="Enable debug logging.")
@click.version_option(__version__, prog_name="agentos")
def cli(verbose: bool) -> None:
    """AgentOS CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] [%(name)s] %(message)s",
    )


@cli.command("init")
@click.option("--config", "config_value", default="agentos.toml", show_default=True)
def init_command(config_value: str) -> None:
    root = Path.cwd().resolve()
    config_path = _resolve_path(root, config_value)
    try:
        config = load_or_default(config_path)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc
    save_config(config_path, config)

    goals_root = _resolve_path(root, config.adapters.filesystem.base_dir)
    for team in config.teams.values():
        (goals_root / (team.goals_dir or team.id) / "done").mkdir(parents=True, exist_ok=True)

    click.echo(f"Initialized AgentOS in {root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Goals: {goals_root}")
    click.echo(f"Teams: {', '.join(sorted(config.teams))}")


@cli.command("validate")
@click.option("--config", "config_value", default="agentos.toml", show_default=True)
def validate_command(config_value: str) -> None:
    root = Path.cwd().resolve()
    try:
        config = load_config(_resolve_path(root, config_value))
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(
        f"Config OK: {len(config.agents)} agents, {len(config.teams)} teams, "
        f"{len(config.models)} models"
    )


@cli.command("run")
@click.option("--team", "team_id", default=None, help="Only poll goals for this team.")
@click.option("--config", "config_value", default="agentos.toml", show_default=True)
def run_command(team_id: str | None, config_value: str) -> None:
    root = Path.cwd().resolve()
    runtime = _load_runtime(root, _resolve_path(root, config_value))
    if team_id and team_id not in runtime.config.teams:
        raise click.ClickException(f"Unknown team: {team_id}")
    summary = asyncio.run(runtime.run(lambda: runtime.pipeline.run_cycle(team_id)))
    if summary.skipped:
        click.echo("Cycle skipped: monthly budget exhausted.")
        return
    if not summary.goals:
        click.echo("No pending goals.")
        return
    for goal_id, status in summary.goals.items():
        click.echo(f"{goal_id}: {status}")


@cli.command("serve")
@click.option("--team", "team_id", default=None, help="Only poll goals for this team.")
@click.option("--interval", type=float, default=None, help="Seconds between cycles.")
@click.option("--max-cycles", type=int, default=None, help="Stop after this many cycles.")
@click.option("--config", "config_value", default="agentos.toml", show_default=True)
def serve_command(
    team_id: str | None, interval: float | None, max_cycles: int | None, config_value: str
) -> None:
    root = Path.cwd().resolve()
    runtime = _load_runtime(root, _resolve_path(root, config_value))
    seconds = interval if interval is not None else runtime.config.polling_interval_seconds
    click.echo(f"Starting AgentOS loop (every {seconds:g}s)")
    try:
        cycles = asyncio.run(
            runtime.run(
                lambda: runtime.pipeline.run_forever(seconds, team_id=team_id, max_cycles=max_cycles)
            )
        )
    except KeyboardInterrupt:
        click.echo("Stopped.")
        return
    click.echo(f"Completed {cycles} cycles.")


@cli.command("costs")
@click.option("--days", type=int, default=None, help="Show a per-day breakdown instead of totals.")
@click.option("--config", "config_value", default="agentos.toml", show_default=True)
def costs_command(days: int | None, config_value: str) -> None:
    root = Path.cwd().resolve()
    try:
        config = load_config(_resolve_path(root, config_value))
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc
    tracker = _build_cost_tracker(config, root)
    if tracker is None:
        raise click.ClickException("Cost tracking is disabled.")
    if days is not None:
        payload: Any = [asdict(record) for record in tracker.daily_report(days)]
    else:
        payload = tracker.stats()
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@cli.command("status")
@click.option("--config", "config_value", default="agentos.toml", show_default=True)
def status_command(config_value: str) -> None:
    root = Path.cwd().resolve()
    try:
        config = load_config(_resolve_path(root, config_value))
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc
    payload: dict[str, Any] = {
        "version": __version__,
        "models": {alias: model.model_id for alias, model in config.models.items()},
        "stages": {
            "parse": config.pipeline.parse.primary,
            "clarify": config.pipeline.clarify.primary,
            "decompose": config.pipeline.decompose.primary,
            "execute": config.pipeline.execute.default,
        },
        "teams": {
            team_id: {"name": team.name, "agents": list(team.agents)}
            for team_id, team in config.teams.items()
        },
    }
    tracker = _build_cost_tracker(config, root)
    if tracker is not None:
        payload["budget"] = asdict(check_budget(tracker, config.cost_tracking))
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))
