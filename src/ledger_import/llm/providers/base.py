"""Abstract base for all LLM providers.

A provider performs exactly one network call per request and translates
every failure into a ``ProviderError`` subclass. Retrying and fallback are
the router's job, never the provider's.

Privacy: prompts and raw output are never logged at INFO level.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from typing import Any

import httpx

from ledger_import.errors import (
    ErrorKind,
    ProviderError,
    ProviderRequestError,
    ProviderTransientError,
    preview,
)
from ledger_import.llm.types import (
    DEFAULT_MAX_TOKENS,
    STRUCTURED_TEMPERATURE,
    TEXT_TEMPERATURE,
    ImagePayload,
    ProviderReply,
)

logger = logging.getLogger(__name__)


def build_timeout(timeout_seconds: float) -> httpx.Timeout:
    """Explicit timeout: short connect/pool, long read for inference."""
    return httpx.Timeout(
        connect=10.0,
        read=float(timeout_seconds),
        write=30.0,
        pool=10.0,
    )


class LLMConcurrencyLimiter:
    """Semaphore-based concurrency limiter for LLM requests.

    Prevents a worker pool from overwhelming a single (often local) model
    server. Thread-safe for synchronous usage.
    """

    def __init__(self, max_concurrent: int = 2) -> None:
        self._semaphore = threading.Semaphore(max_concurrent)
        self._active_count = 0
        self._lock = threading.Lock()

    def acquire(self, timeout: float | None = None) -> bool:
        """Acquire a slot; returns False on timeout."""
        acquired = self._semaphore.acquire(blocking=True, timeout=timeout)
        if acquired:
            with self._lock:
                self._active_count += 1
        return acquired

    def release(self) -> None:
        """Release a slot after request completes."""
        with self._lock:
            self._active_count -= 1
        self._semaphore.release()

    @property
    def active_requests(self) -> int:
        with self._lock:
            return self._active_count


class LLMProvider(ABC):
    """Contract that every LLM vendor adapter implements."""

    name: str = "base"

    def __init__(
        self,
        model: str,
        timeout_seconds: float = 60,
        client: httpx.Client | None = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        """
        Args:
            model: Vendor model identifier.
            timeout_seconds: Read timeout for one call.
            client: Pre-built HTTP client (tests inject a MockTransport client).
            headers: Default headers for a client created here.
        """
        self.model = model
        self.timeout_seconds = timeout_seconds
        self._owns_client = client is None
        self._client = client or httpx.Client(
            timeout=build_timeout(timeout_seconds),
            headers=headers or {},
        )

    @abstractmethod
    def generate_structured(
        self,
        prompt: str,
        schema: dict[str, Any],
        *,
        image: ImagePayload | None = None,
        temperature: float = STRUCTURED_TEMPERATURE,
        max_tokens: int = DEFAULT_MAX_TOKENS,
    ) -> ProviderReply:
        """Request JSON constrained by *schema* (already in this provider's dialect)."""
        pass

    @abstractmethod
    def generate_text(
        self,
        prompt: str,
        *,
        image: ImagePayload | None = None,
        temperature: float = TEXT_TEMPERATURE,
        max_tokens: int = DEFAULT_MAX_TOKENS,
    ) -> ProviderReply:
        """Request free-form text."""
        pass

    def _post_json(
        self,
        url: str,
        payload: dict[str, Any],
        headers: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        """POST a JSON payload and return the decoded JSON body.

        Raises:
            ProviderTransientError: timeout, transport failure, 429 or 5xx.
            ProviderRequestError: any other non-2xx status.
            ProviderError: body is not JSON.
        """
        logger.debug("Calling %s model %s", self.name, self.model)
        try:
            response = self._client.post(url, json=payload, headers=headers)
        except httpx.TimeoutException as e:
            raise ProviderTransientError(
                self.name, f"Request timed out after {self.timeout_seconds}s", ErrorKind.TIMEOUT
            ) from e
        except httpx.RequestError as e:
            raise ProviderTransientError(
                self.name, f"Request failed: {e}", ErrorKind.NETWORK
            ) from e

        if response.status_code == 429:
            raise ProviderTransientError(self.name, "Rate limit exceeded", ErrorKind.RATE_LIMIT)
        if response.status_code >= 500:
            raise ProviderTransientError(
                self.name,
                f"HTTP {response.status_code}: {self._error_message(response)}",
                ErrorKind.NETWORK,
            )
        if not response.is_success:
            raise ProviderRequestError(
                self.name, response.status_code, self._error_message(response)
            )

        try:
            return response.json()
        except ValueError as e:
            raise ProviderError(
                self.name, f"Non-JSON response body: {preview(response.text, 80)}"
            ) from e

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return preview(response.text, 200) or response.reason_phrase
        error = body.get("error") if isinstance(body, dict) else None
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str):
            return error
        return preview(response.text, 200) or response.reason_phrase

    def close(self) -> None:
        """Close HTTP client (only if created here)."""
        if self._owns_client:
            self._client.close()

    def __repr__(self) -> str:
        return f"<{type(self).__name__} model={self.model}>"
