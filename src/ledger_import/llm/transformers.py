"""Per-provider schema transformers.

Providers differ in which JSON Schema subset their structured-output mode
accepts. A transformer converts standard JSON Schema into the dialect of one
provider. Transformers are pure functions of their input.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any

from ledger_import.llm.schema import (
    ArraySchema,
    EnumSchema,
    NullableSchema,
    ObjectSchema,
    PrimitiveSchema,
    SchemaNode,
    parse_json_schema,
)

logger = logging.getLogger(__name__)


class SchemaTransformer(ABC):
    """Converts standard JSON Schema to a provider's accepted dialect."""

    @abstractmethod
    def transform(self, schema: dict[str, Any]) -> dict[str, Any]:
        """Return the provider-compatible schema. Must not mutate the input."""
        pass

    @abstractmethod
    def supports(self, provider_name: str) -> bool:
        """Whether this transformer handles the named provider."""
        pass


class PassthroughSchemaTransformer(SchemaTransformer):
    """For providers with full JSON Schema support (OpenAI, Ollama)."""

    PROVIDERS = ("openai", "ollama")

    def transform(self, schema: dict[str, Any]) -> dict[str, Any]:
        return schema

    def supports(self, provider_name: str) -> bool:
        return provider_name.lower() in self.PROVIDERS


class GeminiSchemaTransformer(SchemaTransformer):
    """Converts JSON Schema to the OpenAPI-style subset Gemini accepts.

    Rules:
    - ``type`` is always a single upper-case name, never an array
    - nullability is expressed as ``nullable: true``
    - unions collapse to their first non-null branch
    - ``$ref`` is inlined, ``$defs``/``definitions`` are dropped
    - ``$schema``, ``additionalProperties``, ``title`` and ``default`` are removed
    - ``enum`` and ``description`` are preserved

    Applying the transform to its own output yields the same output.
    """

    def transform(self, schema: dict[str, Any]) -> dict[str, Any]:
        node = parse_json_schema(schema)
        return self._render(node)

    def supports(self, provider_name: str) -> bool:
        return provider_name.lower() == "gemini"

    def _render(self, node: SchemaNode) -> dict[str, Any]:
        if isinstance(node, NullableSchema):
            rendered = self._render(node.inner)
            rendered["nullable"] = True
            return rendered

        if isinstance(node, PrimitiveSchema):
            rendered: dict[str, Any] = {"type": node.kind.upper()}
        elif isinstance(node, EnumSchema):
            rendered = {"type": "STRING", "enum": list(node.values)}
        elif isinstance(node, ArraySchema):
            rendered = {"type": "ARRAY", "items": self._render(node.items)}
        elif isinstance(node, ObjectSchema):
            rendered = {
                "type": "OBJECT",
                "properties": {
                    name: self._render(child) for name, child in node.properties.items()
                },
                "required": [
                    name
                    for name, child in node.properties.items()
                    if not isinstance(child, NullableSchema)
                ],
                "propertyOrdering": list(node.properties),
            }
        else:
            raise TypeError(f"Not a schema node: {node!r}")

        if node.description:
            rendered["description"] = node.description
        return rendered


_TRANSFORMERS: list[SchemaTransformer] = [
    GeminiSchemaTransformer(),
    PassthroughSchemaTransformer(),
]


def get_transformer(provider_name: str) -> SchemaTransformer:
    """Pick the transformer for a provider; unknown providers get pass-through."""
    for transformer in _TRANSFORMERS:
        if transformer.supports(provider_name):
            return transformer
    logger.debug("No schema transformer registered for %s, using pass-through", provider_name)
    return _TRANSFORMERS[-1]
