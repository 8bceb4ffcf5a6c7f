from __future__ import annotations

import asyncio
import logging
from typing import Any

from openai import APIConnectionError, APIStatusError, APITimeoutError, OpenAI

from agentos.llm.base import LLMProvider, LLMUsage, ProviderError, ProviderReply

logger = logging.getLogger(__name__)

NON_RETRIABLE_STATUS = {400, 401, 403, 404, 422}


class OpenAICompatibleProvider(LLMProvider):
    """Chat-completions provider for any OpenAI-compatible endpoint.

    The SDK client is synchronous and runs in a worker thread. A stage timeout
    abandons the wait on that thread; the request itself is only cut off by
    the client's own ``request_timeout``.
    """

    def __init__(
        self,
        *,
        name: str,
        base_url: str,
        api_key: str,
        request_timeout: float = 120.0,
        client: Any | None = None,
    ) -> None:
        self.name = name
        self.base_url = base_url
        self._client: Any | None = client
        if self._client is None and api_key:
            self._client = OpenAI(
                base_url=base_url,
                api_key=api_key,
                timeout=request_timeout,
                max_retries=0,
            )

    @staticmethod
    def _extract_text(payload: Any) -> str:
        choices = getattr(payload, "choices", None)
        if choices is None and isinstance(payload, dict):
            choices = payload.get("choices")
        if not choices:
            return ""
        first = choices[0]
        message = getattr(first, "message", None)
        if message is None and isinstance(first, dict):
            message = first.get("message")
        content = getattr(message, "content", None)
        if content is None and isinstance(message, dict):
            content = message.get("content")
        return str(content or "")

    @staticmethod
    def _extract_usage(payload: Any) -> LLMUsage:
        usage = getattr(payload, "usage", None)
        if usage is None and isinstance(payload, dict):
            usage = payload.get("usage")
        if usage is None:
            return LLMUsage()
        if isinstance(usage, dict):
            return LLMUsage(
                prompt_tokens=int(usage.get("prompt_tokens") or 0),
                completion_tokens=int(usage.get("completion_tokens") or 0),
            )
        return LLMUsage(
            prompt_tokens=int(getattr(usage, "prompt_tokens", 0) or 0),
            completion_tokens=int(getattr(usage, "completion_tokens", 0) or 0),
        )

    async def complete(
        self,
        *,
        model_id: str,
        prompt: str,
        system_prompt: str | None = None,
        json_mode: bool = False,
    ) -> ProviderReply:
        if self._client is None:
            raise ProviderError(
                f"Provider {self.name} has no API key configured",
                provider=self.name,
                retriable=False,
            )

        messages: list[dict[str, str]] = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})
        request: dict[str, Any] = {"model": model_id, "messages": messages}
        if json_mode:
            request["response_format"] = {"type": "json_object"}

        def _request() -> Any:
            return self._client.chat.completions.create(**request)

        try:
            payload = await asyncio.to_thread(_request)
        except APITimeoutError as exc:
            raise ProviderError(
                f"{self.name} request timed out: {exc}", provider=self.name, retriable=True
            ) from exc
        except APIStatusError as exc:
            raise ProviderError(
                f"{self.name} returned HTTP {exc.status_code}: {exc.message}",
                provider=self.name,
                status_code=exc.status_code,
                retriable=exc.status_code not in NON_RETRIABLE_STATUS,
            ) from exc
        except APIConnectionError as exc:
            raise ProviderError(
                f"{self.name} connection failed: {exc}", provider=self.name, retriable=True
            ) from exc

        text = self._extract_text(payload).strip()
        usage = self._extract_usage(payload)
        logger.debug(
            "%s completion for %s: %d chars, %d/%d tokens",
            self.name,
            model_id,
            len(text),
            usage.prompt_tokens,
            usage.completion_tokens,
        )
        return ProviderReply(text=text, usage=usage)
