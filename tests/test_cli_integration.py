import json
from pathlib import Path
from typing import Any

import pytest
from click.testing import CliRunner

from agentos import __version__
from agentos.cli import cli
from agentos.config import load_config, save_config
from agentos.sources.discord_channel import DiscordGoalSource
from agentos.llm.base import LLMResponse, LLMUsage


class FakeInvoker:
    async def generate(self, stage: str, prompt: str, **kwargs: Any) -> LLMResponse:
        _ = prompt, kwargs
        payloads: dict[str, Any] = {
            "parse": {"description": "Write a brief", "successCriteria": ["done"], "priority": "low"},
            "clarify": {"isClearEnough": True, "confidence": 95, "questions": []},
            "decompose": {
                "tasks": [
                    {
                        "description": "Write it",
                        "type": "write",
                        "requiredCapabilities": ["writing"],
                        "estimatedEffort": "1 hour",
                    }
                ]
            },
            "execute": {"summary": "Brief written", "artifacts": []},
        }
        return LLMResponse(
            text=json.dumps(payloads[stage]),
            usage=LLMUsage(prompt_tokens=5, completion_tokens=5),
            model_alias="fake",
            stage=stage,
        )


@pytest.fixture
def workspace(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr("agentos.cli._build_invoker", lambda config, tracker: FakeInvoker())
    return tmp_path


def test_init_validate_and_run(workspace: Path) -> None:
    runner = CliRunner()

    init_result = runner.invoke(cli, ["init"])
    assert init_result.exit_code == 0, init_result.output
    assert "Initialized AgentOS" in init_result.output
    assert (workspace / "agentos.toml").exists()
    assert (workspace / "goals" / "team-1" / "done").is_dir()

    validate_result = runner.invoke(cli, ["validate"])
    assert validate_result.exit_code == 0, validate_result.output
    assert "Config OK: 1 agents, 1 teams, 3 models" in validate_result.output

    goal_path = workspace / "goals" / "team-1" / "brief.goal.md"
    goal_path.write_text("Write a one-page brief on the widget market.\n", encoding="utf-8")

    run_result = runner.invoke(cli, ["run"])
    assert run_result.exit_code == 0, run_result.output
    assert "brief: completed" in run_result.output
    assert not goal_path.exists()
    assert (workspace / "goals" / "team-1" / "done" / "brief.goal.md").exists()
    assert "brief-task-1\tcompleted" in (workspace / "goals" / "team-1" / "tasks.log").read_text(
        encoding="utf-8"
    )

    idle_result = runner.invoke(cli, ["run"])
    assert "No pending goals." in idle_result.output


class FakeDiscordChannel:
    def __init__(self) -> None:
        self.sent: list[str] = []
        self.threads: list[Any] = []

    async def send(self, content: str) -> None:
        self.sent.append(content)


class FakeDiscordClient:
    def __init__(self) -> None:
        self.channel = FakeDiscordChannel()
        self.closed = False

    async def login(self, token: str) -> None:
        _ = token

    async def close(self) -> None:
        self.closed = True

    async def fetch_channel(self, channel_id: int) -> FakeDiscordChannel:
        assert channel_id == 42
        return self.channel


def test_run_mirrors_status_to_discord(workspace: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    runner = CliRunner()
    runner.invoke(cli, ["init"])
    config = load_config(workspace / "agentos.toml")
    config.adapters.discord.enabled = True
    config.adapters.discord.bot_token = "t0ken"
    config.adapters.discord.task_channel_id = "42"
    save_config(workspace / "agentos.toml", config)
    client = FakeDiscordClient()
    monkeypatch.setattr(
        "agentos.cli._build_discord",
        lambda config: DiscordGoalSource(config.adapters.discord, config.agents, config.teams, client=client),
    )
    (workspace / "goals" / "team-1" / "brief.goal.md").write_text("Write a brief.\n", encoding="utf-8")

    result = runner.invoke(cli, ["run"])

    assert result.exit_code == 0, result.output
    assert "brief: completed" in result.output
    assert "**Status Update**: completed\n1 completed, 0 failed, 0 blocked" in client.channel.sent
    assert client.closed is True


def test_run_rejects_unknown_team(workspace: Path) -> None:
    runner = CliRunner()
    runner.invoke(cli, ["init"])

    result = runner.invoke(cli, ["run", "--team", "team-9"])

    assert result.exit_code != 0
    assert "Unknown team: team-9" in result.output


def test_serve_runs_bounded_cycles(workspace: Path) -> None:
    runner = CliRunner()
    runner.invoke(cli, ["init"])

    result = runner.invoke(cli, ["serve", "--interval", "0", "--max-cycles", "2"])

    assert result.exit_code == 0, result.output
    assert "Completed 2 cycles." in result.output


def test_validate_reports_config_errors(workspace: Path) -> None:
    runner = CliRunner()
    runner.invoke(cli, ["init"])
    config = load_config(workspace / "agentos.toml")
    config.teams["team-1"].agents.append("ghost")
    save_config(workspace / "agentos.toml", config)

    result = runner.invoke(cli, ["validate"])

    assert result.exit_code != 0
    assert "unknown agent: ghost" in result.output


def test_missing_config_is_reported(workspace: Path) -> None:
    result = CliRunner().invoke(cli, ["status"])

    assert result.exit_code != 0
    assert "Config file not found" in result.output


def test_status_and_costs_output_json(workspace: Path) -> None:
    runner = CliRunner()
    runner.invoke(cli, ["init"])

    status_result = runner.invoke(cli, ["status"])
    assert status_result.exit_code == 0, status_result.output
    status = json.loads(status_result.output)
    assert status["version"] == __version__
    assert status["stages"]["execute"] == "kimi-k2"
    assert status["teams"]["team-1"]["agents"] == ["agent-1"]
    assert status["budget"]["over_budget"] is False

    costs_result = runner.invoke(cli, ["costs"])
    assert costs_result.exit_code == 0, costs_result.output
    assert json.loads(costs_result.output)["total_calls"] == 0

    daily_result = runner.invoke(cli, ["costs", "--days", "3"])
    assert json.loads(daily_result.output) == []


def test_version_option() -> None:
    result = CliRunner().invoke(cli, ["--version"])

    assert result.exit_code == 0
    assert __version__ in result.output
