"""
Tests for LLM provider adapters.

These tests use httpx.MockTransport to validate request shape and error
translation without making real API calls.
"""

import json

import httpx
import pytest

from ledger_import.config import GeminiConfig, OllamaConfig, OpenAIConfig, ProvidersConfig
from ledger_import.errors import (
    ErrorKind,
    ProviderEmptyResponse,
    ProviderError,
    ProviderRequestError,
    ProviderTransientError,
)
from ledger_import.llm.providers import GeminiProvider, OllamaProvider, OpenAIProvider
from ledger_import.llm.providers.ollama import parse_auth_header
from ledger_import.llm.registry import ProviderRegistry
from ledger_import.llm.types import ImagePayload

SCHEMA = {"type": "object", "properties": {"total": {"type": "number"}}, "required": ["total"]}


def mock_client(handler):
    return httpx.Client(transport=httpx.MockTransport(handler))


class TestGeminiProvider:
    """Test Gemini generateContent adapter."""

    def test_structured_request_shape(self):
        """Schema goes into generationConfig.responseSchema, key into a header."""
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["headers"] = request.headers
            seen["body"] = json.loads(request.content)
            return httpx.Response(
                200,
                json={
                    "candidates": [{"content": {"parts": [{"text": '{"total": 11.48}'}]}}],
                    "usageMetadata": {"totalTokenCount": 120},
                },
            )

        provider = GeminiProvider(api_key="g-key", model="gemini-test", client=mock_client(handler))
        reply = provider.generate_structured(
            "extract", SCHEMA, image=ImagePayload(b"\x89PNG", "image/png")
        )

        assert reply.text == '{"total": 11.48}'
        assert reply.provider == "gemini"
        assert reply.tokens_used == 120
        assert seen["url"].endswith("/models/gemini-test:generateContent")
        assert seen["headers"]["x-goog-api-key"] == "g-key"
        config = seen["body"]["generationConfig"]
        assert config["responseMimeType"] == "application/json"
        assert config["responseSchema"] == SCHEMA
        parts = seen["body"]["contents"][0]["parts"]
        assert parts[1]["inline_data"]["mime_type"] == "image/png"

    def test_blocked_prompt_is_empty_response(self):
        """No candidates with a block reason surfaces as an empty response."""

        def handler(request):
            return httpx.Response(200, json={"promptFeedback": {"blockReason": "SAFETY"}})

        provider = GeminiProvider(api_key="k", client=mock_client(handler))
        with pytest.raises(ProviderEmptyResponse, match="SAFETY"):
            provider.generate_structured("extract", SCHEMA)

    def test_rate_limit_is_transient(self):
        def handler(request):
            return httpx.Response(429, json={"error": {"message": "quota"}})

        provider = GeminiProvider(api_key="k", client=mock_client(handler))
        with pytest.raises(ProviderTransientError) as exc_info:
            provider.generate_structured("extract", SCHEMA)

        assert exc_info.value.kind == ErrorKind.RATE_LIMIT


class TestOpenAIProvider:
    """Test OpenAI chat completions adapter."""

    def test_strict_json_schema_response_format(self):
        seen = {}

        def handler(request):
            seen["headers"] = request.headers
            seen["body"] = json.loads(request.content)
            return httpx.Response(
                200,
                json={
                    "model": "gpt-test-2024",
                    "choices": [{"message": {"content": '{"total": 5}'}}],
                    "usage": {"total_tokens": 33},
                },
            )

        provider = OpenAIProvider(api_key="sk-test", model="gpt-test", client=mock_client(handler))
        reply = provider.generate_structured("extract", SCHEMA)

        assert reply.text == '{"total": 5}'
        assert reply.model == "gpt-test-2024"
        assert reply.tokens_used == 33
        assert seen["headers"]["authorization"] == "Bearer sk-test"
        response_format = seen["body"]["response_format"]
        assert response_format["type"] == "json_schema"
        assert response_format["json_schema"]["strict"] is True
        assert response_format["json_schema"]["schema"] == SCHEMA

    def test_image_sent_as_data_uri(self):
        seen = {}

        def handler(request):
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"choices": [{"message": {"content": "{}"}}]})

        provider = OpenAIProvider(api_key="sk", client=mock_client(handler))
        provider.generate_structured("extract", SCHEMA, image=ImagePayload(b"abc", "image/jpeg"))

        content = seen["body"]["messages"][0]["content"]
        assert content[0] == {"type": "text", "text": "extract"}
        assert content[1]["image_url"]["url"].startswith("data:image/jpeg;base64,")

    def test_refusal_is_empty_response(self):
        def handler(request):
            return httpx.Response(
                200, json={"choices": [{"message": {"content": None, "refusal": "cannot help"}}]}
            )

        provider = OpenAIProvider(api_key="sk", client=mock_client(handler))
        with pytest.raises(ProviderEmptyResponse, match="cannot help"):
            provider.generate_structured("extract", SCHEMA)

    def test_client_error_is_request_error(self):
        """4xx other than 429 is not transient."""

        def handler(request):
            return httpx.Response(400, json={"error": {"message": "Invalid schema"}})

        provider = OpenAIProvider(api_key="sk", client=mock_client(handler))
        with pytest.raises(ProviderRequestError) as exc_info:
            provider.generate_structured("extract", SCHEMA)

        assert exc_info.value.status_code == 400
        assert "Invalid schema" in exc_info.value.message
        assert exc_info.value.kind == ErrorKind.PROVIDER_ERROR

    def test_server_error_is_transient(self):
        def handler(request):
            return httpx.Response(503, text="unavailable")

        provider = OpenAIProvider(api_key="sk", client=mock_client(handler))
        with pytest.raises(ProviderTransientError) as exc_info:
            provider.generate_structured("extract", SCHEMA)

        assert exc_info.value.kind == ErrorKind.NETWORK

    def test_timeout_is_transient(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        provider = OpenAIProvider(api_key="sk", client=mock_client(handler))
        with pytest.raises(ProviderTransientError) as exc_info:
            provider.generate_structured("extract", SCHEMA)

        assert exc_info.value.kind == ErrorKind.TIMEOUT

    def test_non_json_body(self):
        def handler(request):
            return httpx.Response(200, text="<html>gateway</html>")

        provider = OpenAIProvider(api_key="sk", client=mock_client(handler))
        with pytest.raises(ProviderError, match="Non-JSON"):
            provider.generate_structured("extract", SCHEMA)


class TestOllamaProvider:
    """Test Ollama chat adapter."""

    def test_format_and_images(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            return httpx.Response(
                200,
                json={
                    "message": {"content": '{"total": 1}'},
                    "prompt_eval_count": 10,
                    "eval_count": 5,
                },
            )

        provider = OllamaProvider(url="http://ollama.test:11434/", client=mock_client(handler))
        reply = provider.generate_structured("extract", SCHEMA, image=ImagePayload(b"abc", "image/png"))

        assert seen["url"] == "http://ollama.test:11434/api/chat"
        assert seen["body"]["format"] == SCHEMA
        assert seen["body"]["stream"] is False
        assert seen["body"]["messages"][0]["images"] == ["YWJj"]
        assert reply.tokens_used == 15
        assert provider.active_requests == 0

    def test_slot_released_on_failure(self):
        """The concurrency slot is released even when the call fails."""

        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        provider = OllamaProvider(max_concurrent=1, client=mock_client(handler))
        with pytest.raises(ProviderTransientError):
            provider.generate_structured("extract", SCHEMA)

        assert provider.active_requests == 0

    def test_empty_content(self):
        def handler(request):
            return httpx.Response(200, json={"message": {"content": "   "}})

        provider = OllamaProvider(client=mock_client(handler))
        with pytest.raises(ProviderEmptyResponse):
            provider.generate_text("hello")

    def test_parse_auth_header(self):
        assert parse_auth_header(None) == {}
        assert parse_auth_header("Bearer abc") == {"Authorization": "Bearer abc"}
        assert parse_auth_header("X-Api-Key: secret") == {"X-Api-Key": "secret"}


class TestProviderRegistry:
    """Test registry construction from configuration."""

    def test_only_configured_providers_in_order(self):
        """Providers without credentials are skipped; order is kept."""
        config = ProvidersConfig(
            order=["openai", "gemini", "ollama"],
            gemini=GeminiConfig(api_key="g"),
            openai=OpenAIConfig(api_key=""),
            ollama=OllamaConfig(enabled=True),
        )

        with ProviderRegistry.from_config(config) as registry:
            assert registry.names() == ["gemini", "ollama"]

    def test_empty_registry(self):
        registry = ProviderRegistry.from_config(ProvidersConfig(order=["gemini", "openai"]))

        assert len(registry) == 0

    def test_duplicate_provider_rejected(self):
        first = OpenAIProvider(api_key="a", client=mock_client(lambda r: httpx.Response(200)))
        second = OpenAIProvider(api_key="b", client=mock_client(lambda r: httpx.Response(200)))

        with pytest.raises(ValueError, match="Duplicate"):
            ProviderRegistry([first, second])
