from __future__ import annotations

import json
import logging
import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from agentos.errors import ConfigError
from agentos.models import Team, WorkerDescriptor

logger = logging.getLogger(__name__)

STAGES: tuple[str, ...] = ("parse", "clarify", "decompose", "execute")
ENV_REFERENCE = re.compile(r"\$\{([^}]+)\}")
BARE_KEY = re.compile(r"^[A-Za-z0-9_-]+$")


@dataclass(slots=True)
class ModelPricing:
    input_per_1k: float = 0.0
    output_per_1k: float = 0.0


@dataclass(slots=True)
class ModelConfig:
    provider: str
    model_id: str
    base_url: str = ""
    api_key: str = ""
    api_key_env: str = ""
    request_timeout_seconds: float = 120.0
    pricing: ModelPricing = field(default_factory=ModelPricing)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ModelConfig:
        payload = dict(data)
        pricing = ModelPricing(**payload.pop("pricing", {}))
        return cls(pricing=pricing, **payload)

    def resolve_api_key(self) -> str:
        if self.api_key:
            return self.api_key
        if self.api_key_env:
            return os.environ.get(self.api_key_env, "")
        return ""


@dataclass(slots=True)
class StageConfig:
    primary: str
    fallback: str | None = None
    timeout_seconds: float = 60.0
    max_retries: int = 2
    backoff_seconds: float = 0.5


@dataclass(slots=True)
class ExecuteStageConfig:
    default: str
    fallback: str | None = None
    by_type: dict[str, str] = field(default_factory=dict)
    timeout_seconds: float = 120.0
    max_retries: int = 2
    backoff_seconds: float = 0.5

    def model_for_type(self, task_type: str | None) -> str:
        if task_type and task_type in self.by_type:
            return self.by_type[task_type]
        return self.default


@dataclass(slots=True)
class PipelineConfig:
    parse: StageConfig
    clarify: StageConfig
    decompose: StageConfig
    execute: ExecuteStageConfig

    def stage(self, name: str) -> StageConfig | ExecuteStageConfig:
        if name not in STAGES:
            raise ConfigError(f"Unknown pipeline stage: {name}")
        return getattr(self, name)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PipelineConfig:
        try:
            return cls(
                parse=StageConfig(**data["parse"]),
                clarify=StageConfig(**data["clarify"]),
                decompose=StageConfig(**data["decompose"]),
                execute=ExecuteStageConfig(**data["execute"]),
            )
        except KeyError as exc:
            raise ConfigError(f"Pipeline is missing stage {exc.args[0]!r}") from exc
        except TypeError as exc:
            raise ConfigError(f"Invalid pipeline stage configuration: {exc}") from exc


@dataclass(slots=True)
class CostTrackingConfig:
    enabled: bool = True
    db_path: str = ".agentos/costs.db"
    monthly_budget: float = 100.0
    currency: str = "USD"
    alert_at_percent: int = 80


@dataclass(slots=True)
class FileSystemAdapterConfig:
    enabled: bool = True
    base_dir: str = "goals"


@dataclass(slots=True)
class DiscordAdapterConfig:
    enabled: bool = False
    bot_token: str = ""
    task_channel_id: str = ""
    guild_id: str = ""
    admin_user_id: str = ""


@dataclass(slots=True)
class AdaptersConfig:
    filesystem: FileSystemAdapterConfig = field(default_factory=FileSystemAdapterConfig)
    discord: DiscordAdapterConfig = field(default_factory=DiscordAdapterConfig)


def _default_models() -> dict[str, ModelConfig]:
    return {
        "kimi-k2": ModelConfig(
            provider="moonshot",
            model_id="kimi-k2.5",
            base_url="https://api.moonshot.cn/v1",
            api_key_env="MOONSHOT_API_KEY",
            pricing=ModelPricing(input_per_1k=0.005, output_per_1k=0.015),
        ),
        "minimax": ModelConfig(
            provider="minimax",
            model_id="MiniMax-M2.5",
            base_url="https://api.minimax.chat/v1",
            api_key_env="MINIMAX_API_KEY",
            pricing=ModelPricing(input_per_1k=0.0015, output_per_1k=0.006),
        ),
        "glm-47": ModelConfig(
            provider="zhipu",
            model_id="glm-4.7",
            base_url="https://open.bigmodel.cn/api/paas/v4",
            api_key_env="ZHIPU_API_KEY",
            pricing=ModelPricing(input_per_1k=0.003, output_per_1k=0.009),
        ),
    }


def _default_pipeline() -> PipelineConfig:
    return PipelineConfig(
        parse=StageConfig(primary="minimax", fallback="glm-47", timeout_seconds=10.0),
        clarify=StageConfig(primary="kimi-k2", fallback="minimax", timeout_seconds=20.0),
        decompose=StageConfig(primary="kimi-k2", fallback="glm-47", timeout_seconds=30.0),
        execute=ExecuteStageConfig(
            default="kimi-k2",
            fallback="glm-47",
            by_type={"code": "kimi-k2", "research": "minimax", "write": "glm-47"},
            timeout_seconds=60.0,
        ),
    )


def _default_agents() -> dict[str, WorkerDescriptor]:
    return {
        "agent-1": WorkerDescriptor(
            id="agent-1",
            name="Generalist",
            capabilities=["research", "writing", "code", "design", "review", "test"],
            teams=["team-1"],
            max_parallel_tasks=3,
        )
    }


def _default_teams() -> dict[str, Team]:
    return {"team-1": Team(id="team-1", name="Default Team", agents=["agent-1"], goals_dir="team-1")}


@dataclass(slots=True)
class AgentOSConfig:
    models: dict[str, ModelConfig] = field(default_factory=_default_models)
    pipeline: PipelineConfig = field(default_factory=_default_pipeline)
    agents: dict[str, WorkerDescriptor] = field(default_factory=_default_agents)
    teams: dict[str, Team] = field(default_factory=_default_teams)
    cost_tracking: CostTrackingConfig = field(default_factory=CostTrackingConfig)
    adapters: AdaptersConfig = field(default_factory=AdaptersConfig)
    polling_interval_seconds: float = 60.0
    goal_concurrency: int = 1

    @classmethod
    def default(cls) -> AgentOSConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AgentOSConfig:
        try:
            models = {
                alias: ModelConfig.from_dict(payload)
                for alias, payload in data.get("models", {}).items()
            }
            agents = {
                agent_id: WorkerDescriptor(id=agent_id, **{k: v for k, v in payload.items() if k != "id"})
                for agent_id, payload in data.get("agents", {}).items()
            }
            teams = {
                team_id: Team(id=team_id, **{k: v for k, v in payload.items() if k != "id"})
                for team_id, payload in data.get("teams", {}).items()
            }
            adapters = data.get("adapters", {})
            return cls(
                models=models,
                pipeline=PipelineConfig.from_dict(data.get("pipeline", {})),
                agents=agents,
                teams=teams,
                cost_tracking=CostTrackingConfig(**data.get("cost_tracking", {})),
                adapters=AdaptersConfig(
                    filesystem=FileSystemAdapterConfig(**adapters.get("filesystem", {})),
                    discord=DiscordAdapterConfig(**adapters.get("discord", {})),
                ),
                polling_interval_seconds=float(data.get("polling_interval_seconds", 60.0)),
                goal_concurrency=int(data.get("goal_concurrency", 1)),
            )
        except TypeError as exc:
            raise ConfigError(f"Invalid configuration: {exc}") from exc

    def to_dict(self) -> dict[str, Any]:
        execute = self.pipeline.execute
        discord = self.adapters.discord
        return {
            "polling_interval_seconds": self.polling_interval_seconds,
            "goal_concurrency": self.goal_concurrency,
            "models": {
                alias: {
                    "provider": model.provider,
                    "model_id": model.model_id,
                    "base_url": model.base_url,
                    "api_key": model.api_key,
                    "api_key_env": model.api_key_env,
                    "request_timeout_seconds": model.request_timeout_seconds,
                    "pricing": {
                        "input_per_1k": model.pricing.input_per_1k,
                        "output_per_1k": model.pricing.output_per_1k,
                    },
                }
                for alias, model in self.models.items()
            },
            "pipeline": {
                **{
                    name: {
                        "primary": stage.primary,
                        "fallback": stage.fallback,
                        "timeout_seconds": stage.timeout_seconds,
                        "max_retries": stage.max_retries,
                        "backoff_seconds": stage.backoff_seconds,
                    }
                    for name, stage in (
                        ("parse", self.pipeline.parse),
                        ("clarify", self.pipeline.clarify),
                        ("decompose", self.pipeline.decompose),
                    )
                },
                "execute": {
                    "default": execute.default,
                    "fallback": execute.fallback,
                    "timeout_seconds": execute.timeout_seconds,
                    "max_retries": execute.max_retries,
                    "backoff_seconds": execute.backoff_seconds,
                    "by_type": dict(execute.by_type),
                },
            },
            "agents": {
                agent_id: {
                    "name": agent.name,
                    "capabilities": list(agent.capabilities),
                    "teams": list(agent.teams),
                    "max_parallel_tasks": agent.max_parallel_tasks,
                    "is_active": agent.is_active,
                    "discord_id": agent.discord_id,
                }
                for agent_id, agent in self.agents.items()
            },
            "teams": {
                team_id: {
                    "name": team.name,
                    "agents": list(team.agents),
                    "goals_dir": team.goals_dir,
                }
                for team_id, team in self.teams.items()
            },
            "cost_tracking": {
                "enabled": self.cost_tracking.enabled,
                "db_path": self.cost_tracking.db_path,
                "monthly_budget": self.cost_tracking.monthly_budget,
                "currency": self.cost_tracking.currency,
                "alert_at_percent": self.cost_tracking.alert_at_percent,
            },
            "adapters": {
                "filesystem": {
                    "enabled": self.adapters.filesystem.enabled,
                    "base_dir": self.adapters.filesystem.base_dir,
                },
                "discord": {
                    "enabled": discord.enabled,
                    "bot_token": discord.bot_token,
                    "task_channel_id": discord.task_channel_id,
                    "guild_id": discord.guild_id,
                    "admin_user_id": discord.admin_user_id,
                },
            },
        }


def validate_config(config: AgentOSConfig) -> None:
    if not config.agents:
        raise ConfigError("Config must have at least one agent defined")
    if not config.teams:
        raise ConfigError("Config must have at least one team defined")
    if not config.models:
        raise ConfigError("Config must have at least one model defined")

    for team_id, team in config.teams.items():
        for agent_id in team.agents:
            if agent_id not in config.agents:
                raise ConfigError(f"Team {team_id} references unknown agent: {agent_id}")
    for agent_id, agent in config.agents.items():
        for team_id in agent.teams:
            if team_id not in config.teams:
                raise ConfigError(f"Agent {agent_id} references unknown team: {team_id}")

    for alias, model in config.models.items():
        if not model.base_url:
            raise ConfigError(f'Model "{alias}" is missing required base_url')
        if not model.api_key and not model.api_key_env:
            raise ConfigError(f'Model "{alias}" must have either api_key or api_key_env')

    def _check_alias(where: str, alias: str | None) -> None:
        if alias is not None and alias not in config.models:
            raise ConfigError(f"Pipeline stage {where} references unknown model: {alias}")

    for name in ("parse", "clarify", "decompose"):
        stage = config.pipeline.stage(name)
        _check_alias(name, stage.primary)
        _check_alias(f"{name} fallback", stage.fallback)
    execute = config.pipeline.execute
    _check_alias("execute default", execute.default)
    _check_alias("execute fallback", execute.fallback)
    for task_type, alias in execute.by_type.items():
        _check_alias(f'execute.by_type["{task_type}"]', alias)

    for name in STAGES:
        stage = config.pipeline.stage(name)
        if stage.max_retries < 0:
            raise ConfigError(f"Pipeline stage {name} has negative max_retries")
        if stage.timeout_seconds <= 0:
            raise ConfigError(f"Pipeline stage {name} must have a positive timeout_seconds")
    if config.goal_concurrency < 1:
        raise ConfigError("goal_concurrency must be at least 1")

    discord = config.adapters.discord
    if discord.enabled:
        if not discord.bot_token:
            raise ConfigError("Discord adapter enabled but bot_token is missing")
        if not discord.task_channel_id:
            raise ConfigError("Discord adapter enabled but task_channel_id is missing")


def expand_env_vars(value: Any) -> Any:
    if isinstance(value, str):
        return ENV_REFERENCE.sub(lambda match: os.environ.get(match.group(1), ""), value)
    if isinstance(value, dict):
        return {key: expand_env_vars(item) for key, item in value.items()}
    if isinstance(value, list):
        return [expand_env_vars(item) for item in value]
    return value


def _toml_key(key: str) -> str:
    return key if BARE_KEY.match(key) else json.dumps(key, ensure_ascii=False)


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.6f}".rstrip("0")
        return rendered + "0" if rendered.endswith(".") else rendered
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def _dump_table(path: list[str], table: dict[str, Any], lines: list[str]) -> None:
    scalars = [(k, v) for k, v in table.items() if not isinstance(v, dict) and v is not None]
    tables = [(k, v) for k, v in table.items() if isinstance(v, dict)]
    if path and (scalars or not tables):
        lines.append("[" + ".".join(_toml_key(part) for part in path) + "]")
    for key, value in scalars:
        lines.append(f"{_toml_key(key)} = {_toml_value(value)}")
    if path and (scalars or not tables):
        lines.append("")
    for key, value in tables:
        _dump_table([*path, key], value, lines)


def dumps_toml(config: AgentOSConfig) -> str:
    lines: list[str] = []
    data = config.to_dict()
    top_level = {k: v for k, v in data.items() if not isinstance(v, dict)}
    for key, value in top_level.items():
        lines.append(f"{key} = {_toml_value(value)}")
    lines.append("")
    for section in ("models", "pipeline", "agents", "teams", "cost_tracking", "adapters"):
        _dump_table([section], data[section], lines)
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path, *, validate: bool = True) -> AgentOSConfig:
    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")
    logger.info("Loading config from %s", path)
    try:
        raw = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Config file {path} is not valid TOML: {exc}") from exc
    config = AgentOSConfig.from_dict(expand_env_vars(raw))
    if validate:
        validate_config(config)
    logger.info(
        "Config loaded: %d agents, %d teams, %d models",
        len(config.agents),
        len(config.teams),
        len(config.models),
    )
    return config


def load_or_default(path: Path) -> AgentOSConfig:
    if not path.exists():
        return AgentOSConfig.default()
    return load_config(path)


def save_config(path: Path, config: AgentOSConfig) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(dumps_toml(config), encoding="utf-8")
