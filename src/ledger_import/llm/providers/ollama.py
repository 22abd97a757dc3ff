"""Ollama provider (local, LAN or remote ``/api/chat``)."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from ledger_import.errors import ErrorKind, ProviderEmptyResponse, ProviderTransientError
from ledger_import.llm.providers.base import LLMConcurrencyLimiter, LLMProvider
from ledger_import.llm.types import (
    DEFAULT_MAX_TOKENS,
    STRUCTURED_TEMPERATURE,
    TEXT_TEMPERATURE,
    ImagePayload,
    ProviderReply,
)

logger = logging.getLogger(__name__)


def parse_auth_header(auth_header: str | None) -> dict[str, str]:
    """Support formats: "Bearer token" or "Custom-Header: value"."""
    if not auth_header:
        return {}
    if ":" in auth_header:
        key, value = auth_header.split(":", 1)
        return {key.strip(): value.strip()}
    return {"Authorization": auth_header}


class OllamaProvider(LLMProvider):
    """Ollama chat API with schema-constrained ``format``.

    Requests go through a concurrency limiter because a single Ollama
    server serializes inference; a batch worker pool would otherwise pile
    up requests until they time out.
    """

    name = "ollama"

    def __init__(
        self,
        url: str = "http://localhost:11434",
        model: str = "qwen2.5vl:7b",
        auth_header: str | None = None,
        timeout_seconds: float = 120,
        max_concurrent: int = 2,
        client: httpx.Client | None = None,
    ) -> None:
        super().__init__(model, timeout_seconds, client, headers=parse_auth_header(auth_header))
        self.url = url.rstrip("/")
        self._limiter = LLMConcurrencyLimiter(max_concurrent=max_concurrent)

    @property
    def active_requests(self) -> int:
        return self._limiter.active_requests

    def generate_structured(
        self,
        prompt: str,
        schema: dict[str, Any],
        *,
        image: ImagePayload | None = None,
        temperature: float = STRUCTURED_TEMPERATURE,
        max_tokens: int = DEFAULT_MAX_TOKENS,
    ) -> ProviderReply:
        return self._chat(prompt, image, temperature, max_tokens, response_format=schema)

    def generate_text(
        self,
        prompt: str,
        *,
        image: ImagePayload | None = None,
        temperature: float = TEXT_TEMPERATURE,
        max_tokens: int = DEFAULT_MAX_TOKENS,
    ) -> ProviderReply:
        return self._chat(prompt, image, temperature, max_tokens, response_format=None)

    def _chat(
        self,
        prompt: str,
        image: ImagePayload | None,
        temperature: float,
        max_tokens: int,
        response_format: dict[str, Any] | None,
    ) -> ProviderReply:
        if not self._limiter.acquire(timeout=self.timeout_seconds):
            raise ProviderTransientError(
                self.name,
                f"Timed out waiting for concurrency slot (active={self.active_requests})",
                ErrorKind.TIMEOUT,
            )

        try:
            message: dict[str, Any] = {"role": "user", "content": prompt}
            if image is not None:
                message["images"] = [image.to_base64()]

            payload: dict[str, Any] = {
                "model": self.model,
                "messages": [message],
                "stream": False,
                "options": {"temperature": temperature, "num_predict": max_tokens},
            }
            if response_format is not None:
                payload["format"] = response_format

            data = self._post_json(f"{self.url}/api/chat", payload)
        finally:
            # Always release the concurrency slot
            self._limiter.release()

        text = (data.get("message") or {}).get("content", "")
        if not text.strip():
            raise ProviderEmptyResponse(self.name)

        tokens = None
        if "eval_count" in data or "prompt_eval_count" in data:
            tokens = int(data.get("prompt_eval_count", 0)) + int(data.get("eval_count", 0))

        logger.debug("Ollama %s returned %d chars", self.model, len(text))
        return ProviderReply(text=text, provider=self.name, model=self.model, tokens_used=tokens)
