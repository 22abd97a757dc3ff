"""Schema-constrained extraction engine.

Stateless facade over the router used by document processors, the column
mapper and the categorizer.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from ledger_import.errors import ErrorKind, ProviderExhaustedError
from ledger_import.llm.router import ProviderRouter
from ledger_import.llm.schema import SchemaNode
from ledger_import.llm.types import (
    DEFAULT_MAX_TOKENS,
    STRUCTURED_TEMPERATURE,
    TEXT_TEMPERATURE,
    ExtractionRequest,
    ImagePayload,
    ProviderResponse,
)

logger = logging.getLogger(__name__)


@dataclass
class ExtractionResult:
    """Outcome of one extraction call."""

    success: bool
    data: Any = None
    error: str | None = None
    error_kind: ErrorKind | None = None
    provider: str | None = None
    model: str | None = None
    tokens_used: int | None = None

    @classmethod
    def from_response(cls, response: ProviderResponse) -> ExtractionResult:
        return cls(
            success=response.success,
            data=response.data,
            error=response.error,
            error_kind=response.error_kind,
            provider=response.provider,
            model=response.model,
            tokens_used=response.tokens_used,
        )

    def unwrap(self) -> Any:
        """Return the data or raise ``ProviderExhaustedError``."""
        if not self.success:
            raise ProviderExhaustedError(self.error or "Extraction failed", self.error_kind)
        return self.data

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "success": self.success,
            "data": self.data,
            "error": self.error,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "provider": self.provider,
            "model": self.model,
            "tokens_used": self.tokens_used,
        }


class ExtractionEngine:
    """Runs structured extraction requests through the provider router."""

    def __init__(self, router: ProviderRouter) -> None:
        self.router = router

    def extract(
        self,
        prompt: str,
        schema: SchemaNode,
        *,
        image: ImagePayload | None = None,
        temperature: float = STRUCTURED_TEMPERATURE,
        max_tokens: int = DEFAULT_MAX_TOKENS,
    ) -> ExtractionResult:
        """Extract a value conforming to *schema*.

        The schema is rendered for each candidate provider only when that
        provider is attempted.
        """
        request = ExtractionRequest(
            prompt=prompt,
            target_schema=schema,
            image=image,
            temperature=temperature,
            max_tokens=max_tokens,
        )
        result = ExtractionResult.from_response(self.router.generate_structured(request))
        if result.success:
            logger.debug(
                "Extraction succeeded via %s (%s tokens)", result.provider, result.tokens_used
            )
        return result

    def generate_text(
        self,
        prompt: str,
        *,
        image: ImagePayload | None = None,
        temperature: float = TEXT_TEMPERATURE,
        max_tokens: int = DEFAULT_MAX_TOKENS,
    ) -> ExtractionResult:
        request = ExtractionRequest(
            prompt=prompt, image=image, temperature=temperature, max_tokens=max_tokens
        )
        return ExtractionResult.from_response(self.router.generate_text(request))
