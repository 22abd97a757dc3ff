"""Provider router with sequential fallback.

For each request the router walks the registry in order. One attempt is one
network call plus decoding; any failure moves on to the next provider, and
there are no retries within a provider. When every provider fails the
response carries the last provider's error.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any

from ledger_import.errors import ErrorKind, ProviderError, StructuredOutputError
from ledger_import.llm.providers import LLMProvider
from ledger_import.llm.registry import ProviderRegistry
from ledger_import.llm.schema import to_json_schema
from ledger_import.llm.types import (
    ExtractionRequest,
    ProviderAttempt,
    ProviderReply,
    ProviderResponse,
)
from ledger_import.llm.validation import decode_structured_output

logger = logging.getLogger(__name__)

NO_PROVIDERS_MESSAGE = "No LLM providers available"

Attempt = Callable[[LLMProvider], tuple[ProviderReply, Any]]


class ProviderRouter:
    """Routes requests across the registry with automatic fallback."""

    def __init__(self, registry: ProviderRegistry) -> None:
        self.registry = registry

    def generate_structured(
        self,
        request: ExtractionRequest,
        decode: Callable[[str], Any] | None = None,
    ) -> ProviderResponse:
        """Structured generation with per-provider schema transformation.

        Args:
            request: Prompt, abstract target schema and generation options.
            decode: Optional custom decoder for the raw text. Defaults to
                JSON decoding validated against ``request.target_schema``.
        """
        if request.target_schema is None:
            raise ValueError("generate_structured requires a target_schema")

        target = request.target_schema
        standard_schema = to_json_schema(target)

        def attempt(provider: LLMProvider) -> tuple[ProviderReply, Any]:
            # Converted per provider at call time, never shared between providers
            schema = self.registry.transformer_for(provider).transform(standard_schema)
            reply = provider.generate_structured(
                request.prompt,
                schema,
                image=request.image,
                temperature=request.temperature,
                max_tokens=request.max_tokens,
            )
            if decode is not None:
                return reply, decode(reply.text)
            return reply, decode_structured_output(reply.text, target)

        return self._route(attempt)

    def generate_text(self, request: ExtractionRequest) -> ProviderResponse:
        """Free-form text generation with the same fallback semantics."""

        def attempt(provider: LLMProvider) -> tuple[ProviderReply, Any]:
            reply = provider.generate_text(
                request.prompt,
                image=request.image,
                temperature=request.temperature,
                max_tokens=request.max_tokens,
            )
            return reply, reply.text

        return self._route(attempt)

    def _route(self, attempt: Attempt) -> ProviderResponse:
        providers = self.registry.providers
        if not providers:
            logger.error(NO_PROVIDERS_MESSAGE)
            return ProviderResponse(
                success=False,
                error=NO_PROVIDERS_MESSAGE,
                error_kind=ErrorKind.NO_PROVIDERS,
            )

        attempts: list[ProviderAttempt] = []
        last_error: str | None = None
        last_kind: ErrorKind | None = None

        for index, provider in enumerate(providers):
            started = time.monotonic()
            try:
                reply, data = attempt(provider)
            except (ProviderError, StructuredOutputError) as e:
                last_error, last_kind = e.message, e.kind
            except Exception as e:
                logger.exception("Unexpected error from provider %s", provider.name)
                last_error, last_kind = str(e) or type(e).__name__, ErrorKind.PROVIDER_ERROR
            else:
                attempts.append(
                    ProviderAttempt(
                        provider=provider.name,
                        success=True,
                        duration_ms=int((time.monotonic() - started) * 1000),
                    )
                )
                if index > 0:
                    logger.info(
                        "Request served by fallback provider %s after %d failure(s)",
                        provider.name,
                        index,
                    )
                return ProviderResponse(
                    success=True,
                    data=data,
                    provider=reply.provider,
                    model=reply.model,
                    tokens_used=reply.tokens_used,
                    attempts=attempts,
                )

            attempts.append(
                ProviderAttempt(
                    provider=provider.name,
                    success=False,
                    error=last_error,
                    error_kind=last_kind,
                    duration_ms=int((time.monotonic() - started) * 1000),
                )
            )
            logger.warning(
                "Provider %s failed (%s): %s",
                provider.name,
                last_kind.value if last_kind else "unknown",
                last_error,
            )

        logger.error("All %d LLM provider(s) failed; last error: %s", len(providers), last_error)
        return ProviderResponse(
            success=False,
            error=last_error,
            error_kind=last_kind,
            provider=providers[-1].name,
            attempts=attempts,
        )
