"""OpenAI provider (Chat Completions API)."""

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


class OpenAIProvider(LLMProvider):
    """OpenAI chat completions with strict ``json_schema`` response format."""

    name = "openai"

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o-mini",
        base_url: str = "https://api.openai.com/v1",
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
        response_format = {
            "type": "json_schema",
            "json_schema": {"name": "extraction", "schema": schema, "strict": True},
        }
        return self._complete(prompt, image, temperature, max_tokens, response_format)

    def generate_text(
        self,
        prompt: str,
        *,
        image: ImagePayload | None = None,
        temperature: float = TEXT_TEMPERATURE,
        max_tokens: int = DEFAULT_MAX_TOKENS,
    ) -> ProviderReply:
        return self._complete(prompt, image, temperature, max_tokens, None)

    @staticmethod
    def _user_content(prompt: str, image: ImagePayload | None) -> Any:
        if image is None:
            return prompt
        if image.mime_type == "application/pdf":
            attachment = {
                "type": "file",
                "file": {"filename": "document.pdf", "file_data": image.to_data_uri()},
            }
        else:
            attachment = {"type": "image_url", "image_url": {"url": image.to_data_uri()}}
        return [{"type": "text", "text": prompt}, attachment]

    def _complete(
        self,
        prompt: str,
        image: ImagePayload | None,
        temperature: float,
        max_tokens: int,
        response_format: dict[str, Any] | None,
    ) -> ProviderReply:
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": [{"role": "user", "content": self._user_content(prompt, image)}],
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        if response_format is not None:
            payload["response_format"] = response_format

        data = self._post_json(
            f"{self.base_url}/chat/completions",
            payload,
            headers={"Authorization": f"Bearer {self._api_key}"},
        )

        choices = data.get("choices") or []
        if not choices:
            raise ProviderEmptyResponse(self.name)
        message = choices[0].get("message") or {}
        if message.get("refusal"):
            raise ProviderEmptyResponse(self.name, f"Model refused: {message['refusal']}")
        text = message.get("content") or ""
        if not text.strip():
            raise ProviderEmptyResponse(self.name)

        usage = data.get("usage") or {}
        logger.debug("OpenAI %s returned %d chars", self.model, len(text))
        return ProviderReply(
            text=text,
            provider=self.name,
            model=data.get("model", self.model),
            tokens_used=usage.get("total_tokens"),
        )
