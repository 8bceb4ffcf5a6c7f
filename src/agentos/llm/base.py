from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field


class ProviderError(RuntimeError):
    """Raised when a provider call fails."""

    def __init__(
        self,
        message: str,
        *,
        provider: str | None = None,
        status_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code
        self.retriable = retriable


class ProviderTimeoutError(ProviderError):
    """Raised when a provider call exceeds the stage timeout."""


@dataclass(slots=True)
class LLMUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


@dataclass(slots=True)
class ProviderReply:
    text: str
    usage: LLMUsage = field(default_factory=LLMUsage)


@dataclass(slots=True)
class LLMResponse:
    text: str
    usage: LLMUsage
    model_alias: str
    stage: str
    attempts: int = 1
    cost: float = 0.0


class LLMProvider(ABC):
    name: str = "provider"

    @abstractmethod
    async def complete(
        self,
        *,
        model_id: str,
        prompt: str,
        system_prompt: str | None = None,
        json_mode: bool = False,
    ) -> ProviderReply:
        """Run one completion and return its text and token usage."""
