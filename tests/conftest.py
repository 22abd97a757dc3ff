"""Test fixtures and utilities."""

import json
import threading
from pathlib import Path

import pytest

from ledger_import.config import BatchConfig, Config
from ledger_import.llm import ProviderRegistry, build_engine
from ledger_import.llm.providers import LLMProvider
from ledger_import.llm.types import ProviderReply
from ledger_import.state_store import StateStore

SAMPLE_BANK_CSV = """Date,Description,Amount,Balance
2024-01-03,STARBUCKS STORE 1234 POS PURCHASE,-5.75,994.25
2024-01-05,PAYROLL DEPOSIT ACME CORP,2500.00,3494.25
2024-01-09,SHELL OIL 5567,-48.10,3446.15
"""

SAMPLE_DEBIT_CREDIT_CSV = """Transaction Date,Details,Debit,Credit,Balance
03/01/2024,GROCERY MART #4411,82.14,,917.86
05/01/2024,E-TRANSFER FROM J SMITH,,150.00,1067.86
09/01/2024,HYDRO ONE BILL PYMT,120.00,,947.86
"""

SAMPLE_CREDIT_CARD_CSV = """Posted,Merchant,Amount
2024-02-01,AMAZON.COM,34.99
2024-02-03,NETFLIX.COM,15.49
2024-02-07,UBER TRIP,22.10
2024-02-10,PAYMENT THANK YOU,-72.58
2024-02-12,WHOLE FOODS,61.20
2024-02-15,SPOTIFY,10.99
"""


class FakeProvider(LLMProvider):
    """
    Scripted provider.

    Replies come from a handler ``(prompt, schema, image) -> reply`` or from
    a list consumed in order (the last entry repeats). A reply is a string
    (raw model text), a dict (sent as JSON) or an exception (raised).
    """

    def __init__(self, name="fake", responses=None, handler=None):
        super().__init__(model=f"{name}-model")
        self.name = name
        self.responses = list(responses or [])
        self.handler = handler
        self.calls = []
        self._lock = threading.Lock()

    def _next(self, prompt, schema, image):
        with self._lock:
            self.calls.append({"prompt": prompt, "schema": schema, "image": image})
            if self.handler is not None:
                reply = self.handler(prompt, schema, image)
            elif len(self.responses) > 1:
                reply = self.responses.pop(0)
            elif self.responses:
                reply = self.responses[0]
            else:
                raise AssertionError(f"{self.name} has no scripted response")
        if isinstance(reply, Exception):
            raise reply
        if not isinstance(reply, str):
            reply = json.dumps(reply)
        return ProviderReply(text=reply, provider=self.name, model=self.model, tokens_used=42)

    def generate_structured(self, prompt, schema, *, image=None, temperature=0.1, max_tokens=2048):
        return self._next(prompt, schema, image)

    def generate_text(self, prompt, *, image=None, temperature=0.7, max_tokens=2048):
        return self._next(prompt, None, image)


def make_engine(*providers):
    """Extraction engine over the given providers, in fallback order."""
    return build_engine(ProviderRegistry(list(providers)))


@pytest.fixture
def temp_db(tmp_path) -> Path:
    """Temporary database path for testing."""
    return tmp_path / "test_state.db"


@pytest.fixture
def store(temp_db) -> StateStore:
    """Fresh state store with migrations applied."""
    return StateStore(temp_db)


@pytest.fixture
def config(temp_db) -> Config:
    """Configuration with fast, deterministic batch settings."""
    return Config(
        batch=BatchConfig(
            max_workers=2,
            max_retries=0,
            backoff_base_seconds=0.01,
            backoff_max_seconds=0.05,
            poll_interval_seconds=0.01,
        ),
        state_db_path=temp_db,
    )


@pytest.fixture
def receipt_json() -> dict:
    """Typical model answer for a receipt."""
    return {
        "date": "2024-11-18",
        "totalAmount": 11.48,
        "merchantName": "SPAR",
        "subtotal": 10.44,
        "taxAmount": 1.04,
        "tipAmount": None,
        "discountAmount": None,
        "receiptNumber": "R-2024-11832",
        "paymentMethod": "card",
        "category": "Groceries",
        "description": "Groceries",
        "currency": "EUR",
    }
