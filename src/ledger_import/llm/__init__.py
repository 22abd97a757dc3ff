"""LLM layer: provider adapters, schema transformation, fallback routing.

All model output passes through structural validation before any caller
sees it.
"""

from ledger_import.llm.engine import ExtractionEngine, ExtractionResult
from ledger_import.llm.registry import ProviderRegistry
from ledger_import.llm.router import NO_PROVIDERS_MESSAGE, ProviderRouter
from ledger_import.llm.types import ExtractionRequest, ImagePayload, ProviderResponse

__all__ = [
    "ExtractionEngine",
    "ExtractionResult",
    "ExtractionRequest",
    "ImagePayload",
    "ProviderRegistry",
    "ProviderResponse",
    "ProviderRouter",
    "NO_PROVIDERS_MESSAGE",
]


def build_engine(registry: ProviderRegistry) -> ExtractionEngine:
    """Wire an extraction engine over a registry."""
    return ExtractionEngine(ProviderRouter(registry))
