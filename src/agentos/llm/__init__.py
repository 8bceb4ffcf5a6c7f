from agentos.llm.base import (
    LLMProvider,
    LLMResponse,
    LLMUsage,
    ProviderError,
    ProviderReply,
    ProviderTimeoutError,
)
from agentos.llm.cost_tracker import CostSink, SQLiteCostTracker, check_budget, estimate_cost
from agentos.llm.openai_compatible import OpenAICompatibleProvider
from agentos.llm.resilient import ModelBinding, ResilientInvoker, RetryPolicy, build_registry
from agentos.llm.structured import (
    StructuredOutputError,
    StructuredOutputValidator,
    normalize_key_case,
)

__all__ = [
    "CostSink",
    "LLMProvider",
    "LLMResponse",
    "LLMUsage",
    "ModelBinding",
    "OpenAICompatibleProvider",
    "ProviderError",
    "ProviderReply",
    "ProviderTimeoutError",
    "ResilientInvoker",
    "RetryPolicy",
    "SQLiteCostTracker",
    "StructuredOutputError",
    "StructuredOutputValidator",
    "build_registry",
    "check_budget",
    "estimate_cost",
    "normalize_key_case",
]
