from __future__ import annotations


class AgentOSError(RuntimeError):
    """Base class for agentos failures."""


class ConfigError(AgentOSError):
    """Raised when the configuration file is missing or inconsistent."""


class InvocationError(AgentOSError):
    """Raised when every model/attempt combination for a stage has failed.

    The message is the last underlying error's message, unchanged, and the
    error itself is kept on ``last_error`` (and as ``__cause__``).
    """

    def __init__(
        self,
        message: str,
        *,
        stage: str,
        last_error: BaseException | None = None,
        attempts: int = 0,
    ) -> None:
        super().__init__(message)
        self.stage = stage
        self.last_error = last_error
        self.attempts = attempts


class ParseError(AgentOSError):
    """Raised when a stage response is not valid JSON or fails its schema."""

    FRAGMENT_LENGTH = 200

    def __init__(self, message: str, *, stage: str, text: str = "") -> None:
        self.stage = stage
        self.fragment = text[: self.FRAGMENT_LENGTH]
        detail = f"{message}: {self.fragment}" if self.fragment else message
        super().__init__(f"{stage} stage: {detail}")


class TransitionError(AgentOSError):
    """Raised when the scheduler hits an edge the lifecycle table forbids."""


class ClaimConflict(AgentOSError):
    """Another actor already owns the unit; the caller should skip it."""

    def __init__(self, unit_id: str) -> None:
        super().__init__(f"{unit_id} is already claimed")
        self.unit_id = unit_id


class DependencyError(AgentOSError):
    """A task cannot run because of its dependencies; always ends as blocked."""

    def __init__(self, task_id: str, reason: str) -> None:
        super().__init__(f"{task_id}: {reason}")
        self.task_id = task_id
        self.reason = reason
