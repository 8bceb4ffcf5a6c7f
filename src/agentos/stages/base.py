from __future__ import annotations

import json
import logging
from typing import Generic, Protocol, TypeVar

from pydantic import BaseModel, ConfigDict, ValidationError
from pydantic.alias_generators import to_camel

from agentos.errors import InvocationError, ParseError
from agentos.llm.base import LLMResponse
from agentos.llm.structured import StructuredOutputError

logger = logging.getLogger(__name__)

SchemaT = TypeVar("SchemaT", bound=BaseModel)


class CamelModel(BaseModel):
    """Schema base: snake_case in Python, camelCase on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class StageInvoker(Protocol):
    async def generate(
        self,
        stage: str,
        prompt: str,
        *,
        schema: type[BaseModel] | None = None,
        system_prompt: str | None = None,
        model_alias: str | None = None,
        task_type: str | None = None,
    ) -> LLMResponse: ...


class StageExecutor(Generic[SchemaT]):
    stage: str = "stage"
    schema: type[SchemaT]
    system_prompt: str = "You are a precise planning assistant. Respond with JSON only."

    def __init__(self, invoker: StageInvoker, *, model_alias: str | None = None) -> None:
        self.invoker = invoker
        self.model_alias = model_alias

    def parse_response(self, text: str) -> SchemaT:
        try:
            payload = json.loads(text)
        except json.JSONDecodeError as exc:
            logger.error("%s stage returned invalid JSON", self.stage)
            raise ParseError("model returned invalid JSON", stage=self.stage, text=text) from exc
        try:
            return self.schema.model_validate(payload)
        except ValidationError as exc:
            logger.error("%s stage output failed %s validation", self.stage, self.schema.__name__)
            raise ParseError(
                f"output failed {self.schema.__name__} validation "
                f"({exc.error_count()} errors)",
                stage=self.stage,
                text=text,
            ) from exc

    async def invoke(
        self, prompt: str, *, task_type: str | None = None
    ) -> tuple[SchemaT, LLMResponse]:
        try:
            response = await self.invoker.generate(
                self.stage,
                prompt,
                schema=self.schema,
                system_prompt=self.system_prompt,
                model_alias=self.model_alias,
                task_type=task_type,
            )
        except InvocationError as exc:
            if isinstance(exc.last_error, StructuredOutputError):
                raise ParseError(
                    "model output failed schema validation",
                    stage=self.stage,
                    text=exc.last_error.raw_text,
                ) from exc
            raise
        return self.parse_response(response.text), response
