from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from typing import Any

import discord

from agentos.config import DiscordAdapterConfig
from agentos.core.router import CapabilityRouter
from agentos.errors import AgentOSError
from agentos.models import EntityKind, Goal, Task, Team, WorkerDescriptor

logger = logging.getLogger(__name__)

THREAD_ARCHIVE_MINUTES = 1440
HISTORY_LIMIT = 10
COMPLETION_MARKERS: tuple[str, ...] = ("done", "complete", "✅")


def thread_name(task_id: str) -> str:
    return f"task-{task_id}"


def _intents() -> discord.Intents:
    intents = discord.Intents.default()
    intents.message_content = True
    return intents


class DiscordGoalSource:
    """Posts tasks and status into a Discord channel.

    Goals are never read from chat, so ``poll_goals`` is always empty. A claim
    succeeds only for agents that have a ``discord_id``. Delivery failures are
    logged and never raised; using the source before ``start`` (or after
    ``close``) is an error.
    """

    name = "discord"

    def __init__(
        self,
        config: DiscordAdapterConfig,
        agents: Mapping[str, WorkerDescriptor],
        teams: Mapping[str, Team],
        *,
        client: Any | None = None,
    ) -> None:
        self.config = config
        self.agents = agents
        self.router = CapabilityRouter(agents, teams)
        self.client = client
        self.claims: dict[str, str] = {}
        self._threads: dict[str, int] = {}
        self._ready = False
        self._claim_lock = asyncio.Lock()

    @property
    def ready(self) -> bool:
        return self._ready

    async def start(self) -> None:
        if self.client is None:
            self.client = discord.Client(intents=_intents())
        await self.client.login(self.config.bot_token)
        self._ready = True
        logger.info("Discord source logged in; task channel %s", self.config.task_channel_id)

    async def close(self) -> None:
        self._ready = False
        if self.client is not None:
            await self.client.close()

    async def __aenter__(self) -> DiscordGoalSource:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    def _require_ready(self) -> Any:
        if not self._ready or self.client is None:
            raise AgentOSError("Discord goal source not initialized")
        return self.client

    async def _task_channel(self) -> Any:
        client = self._require_ready()
        return await client.fetch_channel(int(self.config.task_channel_id))

    async def _find_thread(self, task_id: str) -> Any | None:
        client = self._require_ready()
        thread_id = self._threads.get(task_id)
        if thread_id is not None:
            return await client.fetch_channel(thread_id)
        channel = await self._task_channel()
        name = thread_name(task_id)
        return next((thread for thread in channel.threads if thread.name == name), None)

    async def poll_goals(self, team_id: str | None = None) -> list[Goal]:
        _ = team_id
        return []

    async def claim(self, unit_id: str, worker_id: str) -> bool:
        agent = self.agents.get(worker_id)
        if agent is None or not agent.discord_id:
            logger.warning("No Discord ID for agent: %s", worker_id)
            return False
        async with self._claim_lock:
            if unit_id in self.claims:
                return False
            self.claims[unit_id] = worker_id
            return True

    async def release(self, unit_id: str) -> None:
        async with self._claim_lock:
            self.claims.pop(unit_id, None)

    async def report(
        self,
        unit_id: str,
        status: str,
        message: str,
        *,
        entity: EntityKind,
        team_id: str | None = None,
    ) -> None:
        _ = team_id
        self._require_ready()
        text = f"**Status Update**: {status}\n{message}"
        try:
            target = await self._find_thread(unit_id) if entity == "task" else None
            if target is None:
                target = await self._task_channel()
            await target.send(text)
        except discord.DiscordException:
            logger.warning("Failed to report %s %s to Discord", entity, unit_id, exc_info=True)

    async def notify(self, message: str) -> None:
        self._require_ready()
        try:
            channel = await self._task_channel()
            await channel.send(message)
        except discord.DiscordException:
            logger.warning("Failed to notify Discord", exc_info=True)

    async def request_clarification(self, goal_id: str, question: str) -> None:
        self._require_ready()
        if self.config.admin_user_id:
            header = f"<@{self.config.admin_user_id}> **Clarification Needed**"
        else:
            logger.warning("No admin_user_id configured; clarification for %s has no mention", goal_id)
            header = "**Clarification Needed**"
        try:
            channel = await self._task_channel()
            await channel.send(f"{header}\n\nGoal: {goal_id}\n\n{question}")
        except discord.DiscordException:
            logger.warning("Failed to request clarification for %s", goal_id, exc_info=True)

    async def assign_task(self, task: Task, goal: Goal) -> bool:
        """Announce ``task`` to its agent and open a thread for it.

        Returns ``False`` when no active agent with a Discord ID can take the
        task or when Discord rejects the messages.
        """
        self._require_ready()
        agent = self.router.find_worker(task, task.team_id)
        if agent is None or not agent.discord_id:
            logger.warning("Could not find a Discord agent for task: %s", task.id)
            return False
        try:
            channel = await self._task_channel()
            announcement = await channel.send(
                f"<@{agent.discord_id}> **New Task Assigned**\n\n"
                f"**Goal**: {goal.description[:100]}...\n"
                f"**Task**: {task.description}\n"
                f"**Type**: {task.type}\n"
                f"**Estimated**: {task.estimated_effort}\n\n"
                "Reply in this thread to claim and work on this task."
            )
            thread = await announcement.create_thread(
                name=thread_name(task.id), auto_archive_duration=THREAD_ARCHIVE_MINUTES
            )
            dependencies = ", ".join(task.dependencies) or "None"
            await thread.send(
                "Task details:\n"
                f"- ID: {task.id}\n"
                f"- Required skills: {', '.join(task.required_capabilities)}\n"
                f"- Dependencies: {dependencies}\n\n"
                'Reply with **"claim"** to start working on this task.'
            )
        except discord.DiscordException:
            logger.warning("Failed to assign task %s on Discord", task.id, exc_info=True)
            return False
        self._threads[task.id] = thread.id
        logger.info("Task %s assigned to %s in thread %s", task.id, agent.name, thread.name)
        return True

    async def check_for_task_completion(self, task_id: str) -> str | None:
        """Content of the latest thread message that reports the task done."""
        self._require_ready()
        try:
            thread = await self._find_thread(task_id)
            if thread is None:
                return None
            async for message in thread.history(limit=HISTORY_LIMIT):
                content = message.content.lower()
                if any(marker in content for marker in COMPLETION_MARKERS):
                    return message.content
        except discord.DiscordException:
            logger.warning("Failed to read thread for task %s", task_id, exc_info=True)
        return None
