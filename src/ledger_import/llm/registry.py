"""Provider registry.

Built once at startup from configuration and passed to the router as a
value. Only providers with valid credentials are registered; their order is
the fallback order and never changes afterwards.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator

from ledger_import.config import ProvidersConfig
from ledger_import.llm.providers import (
    GeminiProvider,
    LLMProvider,
    OllamaProvider,
    OpenAIProvider,
)
from ledger_import.llm.transformers import SchemaTransformer, get_transformer

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """Ordered, immutable collection of eligible providers."""

    def __init__(self, providers: list[LLMProvider]) -> None:
        names = [p.name for p in providers]
        if len(set(names)) != len(names):
            raise ValueError(f"Duplicate providers in registry: {names}")
        self._providers: tuple[LLMProvider, ...] = tuple(providers)

    @classmethod
    def from_config(cls, config: ProvidersConfig) -> ProviderRegistry:
        """Instantiate every configured provider in the configured order."""
        providers: list[LLMProvider] = []

        for name in config.order:
            if name == "gemini":
                if not config.gemini.is_configured:
                    logger.info("Skipping gemini provider: no API key configured")
                    continue
                providers.append(
                    GeminiProvider(
                        api_key=config.gemini.api_key,
                        model=config.gemini.model,
                        base_url=config.gemini.base_url,
                        timeout_seconds=config.gemini.timeout_seconds,
                    )
                )
            elif name == "openai":
                if not config.openai.is_configured:
                    logger.info("Skipping openai provider: no API key configured")
                    continue
                providers.append(
                    OpenAIProvider(
                        api_key=config.openai.api_key,
                        model=config.openai.model,
                        base_url=config.openai.base_url,
                        timeout_seconds=config.openai.timeout_seconds,
                    )
                )
            elif name == "ollama":
                if not config.ollama.is_configured:
                    logger.info("Skipping ollama provider: not enabled")
                    continue
                if config.ollama.is_remote() and not config.ollama.auth_header:
                    logger.warning("Ollama at a remote URL without auth header")
                providers.append(
                    OllamaProvider(
                        url=config.ollama.url,
                        model=config.ollama.model,
                        auth_header=config.ollama.auth_header,
                        timeout_seconds=config.ollama.timeout_seconds,
                        max_concurrent=config.ollama.max_concurrent,
                    )
                )
            else:
                logger.warning("Unknown provider '%s' in providers.order, ignoring", name)

        if providers:
            logger.info("LLM provider chain: %s", " -> ".join(p.name for p in providers))
        else:
            logger.warning("No LLM providers configured; AI steps will fail")

        return cls(providers)

    @property
    def providers(self) -> tuple[LLMProvider, ...]:
        return self._providers

    @property
    def names(self) -> list[str]:
        return [p.name for p in self._providers]

    def transformer_for(self, provider: LLMProvider) -> SchemaTransformer:
        return get_transformer(provider.name)

    def __iter__(self) -> Iterator[LLMProvider]:
        return iter(self._providers)

    def __len__(self) -> int:
        return len(self._providers)

    def close(self) -> None:
        """Close every provider's HTTP client."""
        for provider in self._providers:
            provider.close()

    def __enter__(self) -> ProviderRegistry:
        return self

    def __exit__(self, *args) -> None:
        self.close()
