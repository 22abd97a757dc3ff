"""Google Gemini provider (generateContent REST API)."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from ledger_import.errors import ProviderEmptyResponse
from ledger_import.llm.providers.base import LLMProvider
from ledger_import.llm.types import (
    DEFAULT_MAX_TOKENS,
    STRUCTURED_TEMPERATURE,
    TEXT_TEMPERATURE,
    ImagePayload,
    ProviderReply,
)

logger = logging.getLogger(__name__)


class GeminiProvider(LLMProvider):
    """Gemini via ``models/{model}:generateContent``.

    Structured output uses ``responseSchema``, which only accepts the
    OpenAPI-style subset produced by ``GeminiSchemaTransformer``.
    """

    name = "gemini"

    def __init__(
        self,
        api_key: str,
        model: str = "gemini-2.0-flash",
        base_url: str = "https://generativelanguage.googleapis.com/v1beta",
        timeout_seconds: float = 60,
        client: httpx.Client | None = None,
    ) -> None:
        super().__init__(model, timeout_seconds, client)
        self._api_key = api_key
        self.base_url = base_url.rstrip("/")

    def generate_structured(
        self,
        prompt: str,
        schema: dict[str, Any],
        *,
        image: ImagePayload | None = None,
        temperature: float = STRUCTURED_TEMPERATURE,
        max_tokens: int = DEFAULT_MAX_TOKENS,
    ) -> ProviderReply:
        generation_config = {
            "temperature": temperature,
            "maxOutputTokens": max_tokens,
            "responseMimeType": "application/json",
            "responseSchema": schema,
        }
        return self._generate(prompt, image, generation_config)

    def generate_text(
        self,
        prompt: str,
        *,
        image: ImagePayload | None = None,
        temperature: float = TEXT_TEMPERATURE,
        max_tokens: int = DEFAULT_MAX_TOKENS,
    ) -> ProviderReply:
        generation_config = {"temperature": temperature, "maxOutputTokens": max_tokens}
        return self._generate(prompt, image, generation_config)

    def _generate(
        self,
        prompt: str,
        image: ImagePayload | None,
        generation_config: dict[str, Any],
    ) -> ProviderReply:
        parts: list[dict[str, Any]] = [{"text": prompt}]
        if image is not None:
            parts.append(
                {"inline_data": {"mime_type": image.mime_type, "data": image.to_base64()}}
            )

        payload = {
            "contents": [{"role": "user", "parts": parts}],
            "generationConfig": generation_config,
        }
        data = self._post_json(
            f"{self.base_url}/models/{self.model}:generateContent",
            payload,
            headers={"x-goog-api-key": self._api_key},
        )

        candidates = data.get("candidates") or []
        if not candidates:
            block_reason = (data.get("promptFeedback") or {}).get("blockReason")
            if block_reason:
                raise ProviderEmptyResponse(self.name, f"Prompt blocked: {block_reason}")
            raise ProviderEmptyResponse(self.name)

        content_parts = (candidates[0].get("content") or {}).get("parts") or []
        text = "".join(part.get("text", "") for part in content_parts)
        if not text.strip():
            finish_reason = candidates[0].get("finishReason")
            raise ProviderEmptyResponse(
                self.name, f"Empty response from provider (finishReason={finish_reason})"
            )

        usage = data.get("usageMetadata") or {}
        logger.debug("Gemini %s returned %d chars", self.model, len(text))
        return ProviderReply(
            text=text,
            provider=self.name,
            model=self.model,
            tokens_used=usage.get("totalTokenCount"),
        )
