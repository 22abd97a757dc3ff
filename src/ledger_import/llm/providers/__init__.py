"""LLM vendor adapters."""

from .base import LLMConcurrencyLimiter, LLMProvider
from .gemini import GeminiProvider
from .ollama import OllamaProvider
from .openai import OpenAIProvider

__all__ = [
    "LLMProvider",
    "LLMConcurrencyLimiter",
    "GeminiProvider",
    "OpenAIProvider",
    "OllamaProvider",
]
