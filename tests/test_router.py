"""Tests for provider fallback routing and the extraction engine."""

import pytest

from ledger_import.errors import (
    ErrorKind,
    ProviderExhaustedError,
    ProviderRequestError,
    ProviderTransientError,
)
from ledger_import.llm import NO_PROVIDERS_MESSAGE, ProviderRegistry, ProviderRouter
from ledger_import.llm import schema as s
from ledger_import.llm.types import ExtractionRequest

from .conftest import FakeProvider, make_engine

TOTAL_SCHEMA = s.obj({"total": s.number(), "currency": s.nullable(s.string())})


def _request(schema=TOTAL_SCHEMA):
    return ExtractionRequest(prompt="extract", target_schema=schema)


class TestFallback:
    """Tests for sequential fallback across providers."""

    def test_first_provider_success_stops_chain(self):
        """Later providers are never called when the first succeeds."""
        first = FakeProvider("openai", responses=[{"total": 1}])
        second = FakeProvider("ollama", responses=[{"total": 2}])

        response = ProviderRouter(ProviderRegistry([first, second])).generate_structured(_request())

        assert response.success is True
        assert response.data == {"total": 1, "currency": None}
        assert response.provider == "openai"
        assert len(second.calls) == 0

    def test_provider_n_serves_and_nothing_beyond(self):
        """Providers 1..N-1 fail, N succeeds, N+1 is never called."""
        failing = [
            FakeProvider("gemini", responses=[ProviderTransientError("gemini", "down", ErrorKind.NETWORK)]),
            FakeProvider("openai", responses=["not json at all"]),
        ]
        serving = FakeProvider("ollama", responses=[{"total": 9.5}])
        beyond = FakeProvider("backup", responses=[{"total": 0}])

        router = ProviderRouter(ProviderRegistry([*failing, serving, beyond]))
        response = router.generate_structured(_request())

        assert response.success is True
        assert response.provider == "ollama"
        assert response.data["total"] == 9.5
        assert [len(p.calls) for p in failing] == [1, 1]
        assert len(serving.calls) == 1
        assert len(beyond.calls) == 0
        assert [a.success for a in response.attempts] == [False, False, True]
        assert response.attempts[1].error_kind == ErrorKind.JSON_PARSE

    def test_no_retries_within_a_provider(self):
        """A failed provider is tried exactly once per request."""
        flaky = FakeProvider(
            "gemini",
            responses=[ProviderTransientError("gemini", "timeout", ErrorKind.TIMEOUT), {"total": 1}],
        )
        backup = FakeProvider("openai", responses=[{"total": 2}])

        response = ProviderRouter(ProviderRegistry([flaky, backup])).generate_structured(_request())

        assert response.provider == "openai"
        assert len(flaky.calls) == 1

    def test_schema_mismatch_falls_back(self):
        """Structurally invalid output counts as a provider failure."""
        wrong = FakeProvider("openai", responses=[{"total": "n/a"}])
        right = FakeProvider("ollama", responses=[{"total": 3}])

        response = ProviderRouter(ProviderRegistry([wrong, right])).generate_structured(_request())

        assert response.provider == "ollama"
        assert response.attempts[0].error_kind == ErrorKind.SCHEMA_VALIDATION

    def test_all_fail_reports_last_error(self):
        """The exhausted response carries the last provider's error."""
        first = FakeProvider("gemini", responses=[ProviderTransientError("gemini", "down", ErrorKind.NETWORK)])
        last = FakeProvider("openai", responses=[ProviderRequestError("openai", 400, "bad request")])

        response = ProviderRouter(ProviderRegistry([first, last])).generate_structured(_request())

        assert response.success is False
        assert response.error_kind == ErrorKind.PROVIDER_ERROR
        assert "bad request" in response.error
        assert response.provider == "openai"
        assert len(response.attempts) == 2

    def test_unexpected_exception_is_absorbed(self):
        """A crashing provider does not break the chain."""
        broken = FakeProvider("gemini", responses=[RuntimeError("boom")])
        backup = FakeProvider("openai", responses=[{"total": 4}])

        response = ProviderRouter(ProviderRegistry([broken, backup])).generate_structured(_request())

        assert response.success is True
        assert response.attempts[0].error == "boom"

    def test_no_providers(self):
        response = ProviderRouter(ProviderRegistry([])).generate_structured(_request())

        assert response.success is False
        assert response.error == NO_PROVIDERS_MESSAGE
        assert response.error_kind == ErrorKind.NO_PROVIDERS

    def test_schema_transformed_per_provider(self):
        """Gemini gets its dialect, OpenAI gets standard JSON Schema."""
        gemini = FakeProvider("gemini", responses=[ProviderTransientError("gemini", "down", ErrorKind.NETWORK)])
        openai = FakeProvider("openai", responses=[{"total": 1}])

        ProviderRouter(ProviderRegistry([gemini, openai])).generate_structured(_request())

        gemini_schema = gemini.calls[0]["schema"]
        openai_schema = openai.calls[0]["schema"]
        assert gemini_schema["properties"]["currency"] == {"type": "STRING", "nullable": True}
        assert openai_schema["properties"]["currency"]["type"] == ["string", "null"]

    def test_requires_target_schema(self):
        with pytest.raises(ValueError):
            ProviderRouter(ProviderRegistry([])).generate_structured(ExtractionRequest(prompt="x"))

    def test_text_generation_uses_fallback(self):
        first = FakeProvider("gemini", responses=[ProviderTransientError("gemini", "down", ErrorKind.NETWORK)])
        second = FakeProvider("openai", responses=["plain answer"])

        response = ProviderRouter(ProviderRegistry([first, second])).generate_text(
            ExtractionRequest(prompt="say hi")
        )

        assert response.success is True
        assert response.data == "plain answer"


class TestExtractionEngine:
    """Tests for the extraction facade."""

    def test_extract_success(self):
        engine = make_engine(FakeProvider("openai", responses=[{"total": 12.5, "currency": "cad"}]))

        result = engine.extract("extract", TOTAL_SCHEMA)

        assert result.success is True
        assert result.data == {"total": 12.5, "currency": "cad"}
        assert result.provider == "openai"
        assert result.tokens_used == 42
        assert result.unwrap() == result.data

    def test_unwrap_raises_when_exhausted(self):
        """unwrap() turns an exhausted chain into ProviderExhaustedError."""
        engine = make_engine(
            FakeProvider("openai", responses=[ProviderTransientError("openai", "429", ErrorKind.RATE_LIMIT)])
        )

        result = engine.extract("extract", TOTAL_SCHEMA)

        assert result.success is False
        with pytest.raises(ProviderExhaustedError) as exc_info:
            result.unwrap()
        assert exc_info.value.kind == ErrorKind.RATE_LIMIT
        assert exc_info.value.is_transient is True

    def test_non_transient_exhaustion(self):
        engine = make_engine(FakeProvider("openai", responses=["garbage"]))

        with pytest.raises(ProviderExhaustedError) as exc_info:
            engine.extract("extract", TOTAL_SCHEMA).unwrap()

        assert exc_info.value.is_transient is False
