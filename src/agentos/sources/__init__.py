from agentos.sources.base import GoalSource
from agentos.sources.discord_channel import DiscordGoalSource
from agentos.sources.filesystem import FileSystemGoalSource
from agentos.sources.memory import InMemoryGoalSource, StatusReport
from agentos.sources.mirror import MirroredGoalSource

__all__ = [
    "DiscordGoalSource",
    "FileSystemGoalSource",
    "GoalSource",
    "InMemoryGoalSource",
    "MirroredGoalSource",
    "StatusReport",
]
