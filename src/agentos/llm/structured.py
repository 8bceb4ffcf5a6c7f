"""Structured output validation for model responses.

Validation runs in two phases. The raw text is decoded and validated against
the pydantic schema as-is. If that fails, a normalizer rewrites the payload
(by default: repairs key casing so ``is_clear_enough`` or ``IsClearEnough``
match a schema key ``isClearEnough``) and the result is validated once more.
If the second pass fails too, the original validation error is reported.
"""

from __future__ import annotations

import json
import re
from collections.abc import Callable
from typing import Any, Generic, TypeVar

from pydantic import BaseModel, ValidationError

SchemaT = TypeVar("SchemaT", bound=BaseModel)
Normalizer = Callable[[Any, type[BaseModel]], Any]

FENCE_PATTERN = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)


class StructuredOutputError(ValueError):
    """Model output could not be decoded or validated against its schema."""

    def __init__(
        self,
        message: str,
        *,
        raw_text: str,
        validation_error: ValidationError | None = None,
    ) -> None:
        super().__init__(message)
        self.raw_text = raw_text
        self.validation_error = validation_error


def _canonical_key(key: str) -> str:
    return re.sub(r"[^a-z0-9]", "", key.lower())


def _resolve_node(node: dict[str, Any], defs: dict[str, Any]) -> dict[str, Any]:
    ref = node.get("$ref")
    if isinstance(ref, str):
        return defs.get(ref.rsplit("/", 1)[-1], {})
    for option in node.get("anyOf", []):
        resolved = _resolve_node(option, defs)
        if "properties" in resolved or "items" in resolved:
            return resolved
    return node


def _normalize_node(value: Any, node: dict[str, Any], defs: dict[str, Any]) -> Any:
    node = _resolve_node(node, defs)
    if isinstance(value, dict):
        properties: dict[str, Any] = node.get("properties", {})
        lookup = {_canonical_key(name): name for name in properties}
        normalized: dict[str, Any] = {}
        for key, item in value.items():
            target = lookup.get(_canonical_key(str(key)), key)
            # An exact key always wins over a repaired one.
            if target in normalized and target != key:
                continue
            normalized[target] = _normalize_node(item, properties.get(target, {}), defs)
        return normalized
    if isinstance(value, list):
        items = node.get("items", {})
        return [_normalize_node(item, items, defs) for item in value]
    return value


def normalize_key_case(payload: Any, schema: type[BaseModel]) -> Any:
    """Rename payload keys to the schema's spelling, ignoring case and separators."""
    json_schema = schema.model_json_schema(by_alias=True)
    return _normalize_node(payload, json_schema, json_schema.get("$defs", {}))


def decode_json(text: str) -> Any:
    candidate = text.strip()
    fenced = FENCE_PATTERN.match(candidate)
    if fenced:
        candidate = fenced.group(1)
    return json.loads(candidate)


class StructuredOutputValidator(Generic[SchemaT]):
    def __init__(self, schema: type[SchemaT], normalizer: Normalizer = normalize_key_case) -> None:
        self.schema = schema
        self.normalizer = normalizer

    def validate_strict(self, payload: Any) -> SchemaT:
        return self.schema.model_validate(payload)

    def validate_normalized(self, payload: Any) -> SchemaT:
        return self.schema.model_validate(self.normalizer(payload, self.schema))

    def validate_text(self, text: str) -> SchemaT:
        try:
            payload = decode_json(text)
        except json.JSONDecodeError as exc:
            raise StructuredOutputError(
                f"Response is not valid JSON: {exc}", raw_text=text
            ) from exc

        try:
            return self.validate_strict(payload)
        except ValidationError as original:
            try:
                return self.validate_normalized(payload)
            except ValidationError:
                raise StructuredOutputError(
                    f"Response does not match {self.schema.__name__}: {original}",
                    raw_text=text,
                    validation_error=original,
                ) from original

    def dump(self, model: SchemaT) -> str:
        return model.model_dump_json(by_alias=True)
