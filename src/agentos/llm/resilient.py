from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any

from pydantic import BaseModel

from agentos.config import AgentOSConfig, ExecuteStageConfig, ModelConfig, PipelineConfig
from agentos.errors import InvocationError
from agentos.llm.base import (
    LLMProvider,
    LLMResponse,
    LLMUsage,
    ProviderError,
    ProviderReply,
    ProviderTimeoutError,
)
from agentos.llm.cost_tracker import CostSink, estimate_cost
from agentos.llm.openai_compatible import OpenAICompatibleProvider
from agentos.llm.structured import StructuredOutputValidator

logger = logging.getLogger(__name__)

InvocationEventHook = Callable[[dict[str, Any]], None]
ProviderFactory = Callable[[ModelConfig], LLMProvider]


@dataclass(frozen=True, slots=True)
class ModelBinding:
    alias: str
    config: ModelConfig
    provider: LLMProvider


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    max_retries: int = 2
    backoff_seconds: float = 0.5
    timeout_seconds: float = 60.0

    @classmethod
    def for_stage(cls, stage_config: Any) -> RetryPolicy:
        return cls(
            max_retries=max(0, int(stage_config.max_retries)),
            backoff_seconds=max(0.0, float(stage_config.backoff_seconds)),
            timeout_seconds=float(stage_config.timeout_seconds),
        )


def _default_provider_factory(model: ModelConfig) -> LLMProvider:
    return OpenAICompatibleProvider(
        name=model.provider,
        base_url=model.base_url,
        api_key=model.resolve_api_key(),
        request_timeout=model.request_timeout_seconds,
    )


def build_registry(
    config: AgentOSConfig,
    provider_factory: ProviderFactory | None = None,
) -> Mapping[str, ModelBinding]:
    """Bind every configured model alias to a provider, sharing identical endpoints."""
    factory = provider_factory or _default_provider_factory
    providers: dict[tuple[str, str, str], LLMProvider] = {}
    bindings: dict[str, ModelBinding] = {}
    for alias, model in config.models.items():
        key = (model.provider, model.base_url, model.resolve_api_key())
        if key not in providers:
            providers[key] = factory(model)
        bindings[alias] = ModelBinding(alias=alias, config=model, provider=providers[key])
    return MappingProxyType(bindings)


class ResilientInvoker:
    """Runs one stage call across primary/fallback models with timeout and retry."""

    def __init__(
        self,
        registry: Mapping[str, ModelBinding],
        pipeline: PipelineConfig,
        *,
        cost_sink: CostSink | None = None,
        event_hook: InvocationEventHook | None = None,
    ) -> None:
        self.registry = MappingProxyType(dict(registry))
        self.pipeline = pipeline
        self.cost_sink = cost_sink
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if not self.event_hook:
            return
        try:
            self.event_hook(event)
        except Exception:
            logger.warning("Invocation event hook failed on %s", event.get("event"), exc_info=True)

    def candidate_models(
        self,
        stage: str,
        *,
        model_alias: str | None = None,
        task_type: str | None = None,
    ) -> list[str]:
        stage_config = self.pipeline.stage(stage)
        if isinstance(stage_config, ExecuteStageConfig):
            primary = model_alias or stage_config.model_for_type(task_type)
            candidates = [primary, stage_config.fallback, stage_config.default]
        else:
            candidates = [model_alias or stage_config.primary, stage_config.fallback]
        ordered: list[str] = []
        for alias in candidates:
            if alias and alias not in ordered:
                ordered.append(alias)
        return ordered

    async def _call_with_timeout(
        self,
        binding: ModelBinding,
        policy: RetryPolicy,
        *,
        stage: str,
        prompt: str,
        system_prompt: str | None,
        json_mode: bool,
    ) -> ProviderReply:
        try:
            return await asyncio.wait_for(
                binding.provider.complete(
                    model_id=binding.config.model_id,
                    prompt=prompt,
                    system_prompt=system_prompt,
                    json_mode=json_mode,
                ),
                timeout=policy.timeout_seconds,
            )
        except TimeoutError as exc:
            raise ProviderTimeoutError(
                f"{stage} call to {binding.alias} timed out after {policy.timeout_seconds:.1f}s",
                provider=binding.config.provider,
                retriable=True,
            ) from exc

    def _record_failure(
        self, stage: str, alias: str, attempt: int, exc: BaseException, retriable: bool
    ) -> None:
        logger.warning(
            "%s attempt %d on model %s failed: %s", stage, attempt, alias, exc
        )
        self._emit(
            {
                "event": "invocation_attempt_failed",
                "stage": stage,
                "model": alias,
                "attempt": attempt,
                "error": str(exc),
                "retriable": retriable,
            }
        )

    def _account(self, stage: str, binding: ModelBinding, usage: LLMUsage) -> float:
        pricing = binding.config.pricing
        cost = estimate_cost(usage.prompt_tokens, usage.completion_tokens, pricing)
        logger.info(
            "%s -> %s: $%.4f (%dp/%dc)",
            stage,
            binding.alias,
            cost,
            usage.prompt_tokens,
            usage.completion_tokens,
        )
        self._emit(
            {
                "event": "invocation_cost",
                "stage": stage,
                "model": binding.alias,
                "prompt_tokens": usage.prompt_tokens,
                "completion_tokens": usage.completion_tokens,
                "cost": cost,
            }
        )
        if self.cost_sink is not None:
            try:
                self.cost_sink.log_call(
                    stage,
                    binding.alias,
                    usage.prompt_tokens,
                    usage.completion_tokens,
                    pricing,
                )
            except Exception:
                logger.warning(
                    "Could not record cost for %s -> %s", stage, binding.alias, exc_info=True
                )
        return cost

    async def generate(
        self,
        stage: str,
        prompt: str,
        *,
        schema: type[BaseModel] | None = None,
        system_prompt: str | None = None,
        model_alias: str | None = None,
        task_type: str | None = None,
    ) -> LLMResponse:
        candidates = self.candidate_models(stage, model_alias=model_alias, task_type=task_type)
        policy = RetryPolicy.for_stage(self.pipeline.stage(stage))
        validator = StructuredOutputValidator(schema) if schema is not None else None

        last_error: BaseException | None = None
        attempts = 0
        for index, alias in enumerate(candidates):
            if index > 0:
                logger.warning("%s falling back to model %s", stage, alias)
                self._emit({"event": "invocation_fallback_start", "stage": stage, "model": alias})
            binding = self.registry.get(alias)
            for attempt in range(policy.max_retries + 1):
                if attempt > 0:
                    delay = policy.backoff_seconds * (2 ** (attempt - 1))
                    self._emit(
                        {
                            "event": "invocation_retry",
                            "stage": stage,
                            "model": alias,
                            "attempt": attempt,
                            "delay_seconds": delay,
                        }
                    )
                    if delay > 0:
                        await asyncio.sleep(delay)
                attempts += 1
                try:
                    if binding is None:
                        raise ProviderError(f"No model config for alias: {alias}", retriable=False)
                    reply = await self._call_with_timeout(
                        binding,
                        policy,
                        stage=stage,
                        prompt=prompt,
                        system_prompt=system_prompt,
                        json_mode=validator is not None,
                    )
                    cost = self._account(stage, binding, reply.usage)
                    text = reply.text
                    if validator is not None:
                        text = validator.dump(validator.validate_text(reply.text))
                except ProviderError as exc:
                    last_error = exc
                    self._record_failure(stage, alias, attempt, exc, exc.retriable)
                    if not exc.retriable:
                        break
                    continue
                except Exception as exc:
                    last_error = exc
                    self._record_failure(stage, alias, attempt, exc, True)
                    continue

                if index > 0:
                    self._emit(
                        {
                            "event": "invocation_fallback_success",
                            "stage": stage,
                            "model": alias,
                            "attempt": attempt,
                        }
                    )
                return LLMResponse(
                    text=text,
                    usage=reply.usage,
                    model_alias=alias,
                    stage=stage,
                    attempts=attempts,
                    cost=cost,
                )

        if last_error is None:
            raise InvocationError(f"No models configured for stage {stage}", stage=stage)
        raise InvocationError(
            str(last_error), stage=stage, last_error=last_error, attempts=attempts
        ) from last_error
