from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import date, datetime
from pathlib import Path
from typing import Any

import yaml

from agentos.models import PRIORITIES, EntityKind, Goal, Team, utcnow_iso

logger = logging.getLogger(__name__)

GOAL_SUFFIX = ".goal.md"
FRONTMATTER_PATTERN = re.compile(r"^---\n(.*?)\n---\n?(.*)$", re.DOTALL)


@dataclass(slots=True)
class GoalFile:
    path: Path
    frontmatter: dict[str, Any]
    body: str


def parse_goal_file(path: Path) -> GoalFile:
    content = path.read_text(encoding="utf-8")
    match = FRONTMATTER_PATTERN.match(content)
    if not match:
        return GoalFile(path=path, frontmatter={}, body=content.strip())
    loaded = yaml.safe_load(match.group(1)) or {}
    if not isinstance(loaded, dict):
        loaded = {}
    return GoalFile(path=path, frontmatter=loaded, body=match.group(2).strip())


def render_goal_file(goal_file: GoalFile) -> str:
    frontmatter = yaml.safe_dump(goal_file.frontmatter, sort_keys=False, allow_unicode=True)
    return f"---\n{frontmatter.strip()}\n---\n{goal_file.body}\n"


def _as_text(value: Any, default: str) -> str:
    if value is None:
        return default
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)


class FileSystemGoalSource:
    """Goals stored as ``*.goal.md`` files, one directory per team.

    Frontmatter carries status and metadata, the body is the raw goal text.
    A goal file without frontmatter counts as pending.
    """

    name = "filesystem"

    def __init__(self, base_dir: Path, teams: Mapping[str, Team]) -> None:
        self.base_dir = base_dir.resolve()
        self.teams = teams
        self.locks_dir = self.base_dir / ".locks"

    def team_dir(self, team_id: str | None) -> Path:
        team = self.teams.get(team_id) if team_id else None
        if team is None:
            return self.base_dir
        return self.base_dir / (team.goals_dir or team.id)

    @staticmethod
    def goal_id_for(path: Path) -> str:
        return path.name[: -len(GOAL_SUFFIX)]

    def _ensure_dirs(self, team_dir: Path) -> None:
        (team_dir / "done").mkdir(parents=True, exist_ok=True)

    def _find_goal_file(self, goal_id: str, team_id: str | None) -> Path | None:
        candidates = [self.team_dir(team_id)] if team_id else []
        candidates.extend(self.team_dir(other) for other in self.teams)
        for directory in candidates:
            path = directory / f"{goal_id}{GOAL_SUFFIX}"
            if path.exists():
                return path
        return None

    def _goal_from_file(self, goal_file: GoalFile, team_id: str) -> Goal:
        frontmatter = goal_file.frontmatter
        criteria = frontmatter.get("successCriteria") or []
        if isinstance(criteria, str):
            criteria = [criteria]
        priority = str(frontmatter.get("priority", "medium")).lower()
        return Goal(
            id=self.goal_id_for(goal_file.path),
            team_id=team_id,
            description=goal_file.body,
            success_criteria=[str(item) for item in criteria],
            context=frontmatter.get("context"),
            priority=priority if priority in PRIORITIES else "medium",  # type: ignore[arg-type]
            status="pending",
            source=self.name,
            created_by=_as_text(frontmatter.get("createdBy"), "unknown"),
            created_at=_as_text(frontmatter.get("createdAt"), utcnow_iso()),
            metadata={"file": str(goal_file.path)},
        )

    async def poll_goals(self, team_id: str | None = None) -> list[Goal]:
        team_ids = [team_id] if team_id else list(self.teams)
        goals: list[Goal] = []
        for current_team in team_ids:
            directory = self.team_dir(current_team)
            self._ensure_dirs(directory)
            for path in sorted(directory.glob(f"*{GOAL_SUFFIX}")):
                goal_file = parse_goal_file(path)
                status = str(goal_file.frontmatter.get("status", "pending"))
                if status != "pending":
                    continue
                goals.append(self._goal_from_file(goal_file, current_team))
        logger.debug("Polled %d pending goals from %s", len(goals), self.base_dir)
        return goals

    async def claim(self, unit_id: str, worker_id: str) -> bool:
        self.locks_dir.mkdir(parents=True, exist_ok=True)
        lock_path = self.locks_dir / f"{unit_id}.lock"
        try:
            with lock_path.open("x", encoding="utf-8") as handle:
                handle.write(worker_id)
        except FileExistsError:
            return False
        return True

    async def release(self, unit_id: str) -> None:
        (self.locks_dir / f"{unit_id}.lock").unlink(missing_ok=True)

    async def report(
        self,
        unit_id: str,
        status: str,
        message: str,
        *,
        entity: EntityKind,
        team_id: str | None = None,
    ) -> None:
        if entity == "task":
            log_path = self.team_dir(team_id) / "tasks.log"
            log_path.parent.mkdir(parents=True, exist_ok=True)
            with log_path.open("a", encoding="utf-8") as handle:
                handle.write(f"{utcnow_iso()}\t{unit_id}\t{status}\t{message}\n")
            logger.info("[filesystem] task %s: %s %s", unit_id, status, message)
            return

        path = self._find_goal_file(unit_id, team_id)
        if path is None:
            logger.warning("Cannot report %s for unknown goal %s", status, unit_id)
            return
        goal_file = parse_goal_file(path)
        goal_file.frontmatter["status"] = status
        goal_file.frontmatter["lastMessage"] = message
        goal_file.frontmatter["updatedAt"] = utcnow_iso()
        rendered = render_goal_file(goal_file)
        if status == "completed":
            done_dir = path.parent / "done"
            done_dir.mkdir(parents=True, exist_ok=True)
            (done_dir / path.name).write_text(rendered, encoding="utf-8")
            path.unlink()
        else:
            path.write_text(rendered, encoding="utf-8")
        logger.info("[filesystem] goal %s: %s", unit_id, status)

    async def request_clarification(self, goal_id: str, question: str) -> None:
        path = self._find_goal_file(goal_id, None)
        directory = path.parent if path is not None else self.base_dir
        directory.mkdir(parents=True, exist_ok=True)
        clarification = directory / f"{goal_id}.clarification.md"
        clarification.write_text(
            f"# Clarification Request\n\n## Questions\n{question}\n\n## Status\nAwaiting answer...\n",
            encoding="utf-8",
        )
        logger.info("[filesystem] clarification requested for %s", goal_id)

    async def notify(self, message: str) -> None:
        logger.info("[notify] %s", message)
