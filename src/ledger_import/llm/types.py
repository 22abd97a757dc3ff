"""Request/response value types shared by providers, router and engine."""

from __future__ import annotations

import base64
from dataclasses import dataclass, field
from typing import Any

from ledger_import.errors import ErrorKind
from ledger_import.llm.schema import SchemaNode

# Generation defaults
STRUCTURED_TEMPERATURE = 0.1
TEXT_TEMPERATURE = 0.7
DEFAULT_MAX_TOKENS = 2048


@dataclass(frozen=True)
class ImagePayload:
    """Binary image (or PDF page) attached to a prompt."""

    data: bytes
    mime_type: str

    def to_base64(self) -> str:
        return base64.b64encode(self.data).decode("ascii")

    def to_data_uri(self) -> str:
        return f"data:{self.mime_type};base64,{self.to_base64()}"


@dataclass(frozen=True)
class ExtractionRequest:
    """One structured-generation request, independent of provider."""

    prompt: str
    target_schema: SchemaNode | None = None
    image: ImagePayload | None = None
    temperature: float = STRUCTURED_TEMPERATURE
    max_tokens: int = DEFAULT_MAX_TOKENS


@dataclass(frozen=True)
class ProviderReply:
    """Raw successful answer from one provider call."""

    text: str
    provider: str
    model: str
    tokens_used: int | None = None


@dataclass
class ProviderAttempt:
    """Outcome of one provider attempt inside a fallback chain."""

    provider: str
    success: bool
    error: str | None = None
    error_kind: ErrorKind | None = None
    duration_ms: int = 0

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "provider": self.provider,
            "success": self.success,
            "error": self.error,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "duration_ms": self.duration_ms,
        }


@dataclass
class ProviderResponse:
    """Final outcome of a routed request (success or exhausted chain)."""

    success: bool
    data: Any = None
    error: str | None = None
    error_kind: ErrorKind | None = None
    provider: str | None = None
    model: str | None = None
    tokens_used: int | None = None
    attempts: list[ProviderAttempt] = field(default_factory=list)

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
            "attempts": [a.to_dict() for a in self.attempts],
        }
