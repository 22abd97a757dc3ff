"""
Keyword heuristics over transaction descriptions and header rows.
"""

import re
from typing import Any, Optional

# Header keywords per target field (matched as substrings of the lowercased header)
HEADER_KEYWORDS = {
    "transactionDate": ["date", "txn date", "transaction date", "effective date"],
    "postedDate": ["posted", "posting date", "post date"],
    "description": [
        "description",
        "desc",
        "memo",
        "payee",
        "merchant",
        "narrative",
        "details",
        "transaction",
    ],
    "amount": ["amount", "amt", "value", "net"],
    "debit": ["debit", "dr", "withdrawal", "money out"],
    "credit": ["credit", "cr", "deposit", "money in"],
    "balance": ["balance", "bal", "running balance"],
}

# Short keywords that must match a whole header word ("dr" must not match "address")
_WHOLE_WORD_KEYWORDS = {"dr", "cr", "bal", "amt", "net", "desc"}

_CARD_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"\bVISA\b",
        r"\bMC\b",
        r"MASTERCARD",
        r"\bAMEX\b",
        r"AMERICAN\s+EXPRESS",
        r"\bDISCOVER\b",
        r"CREDIT\s+CARD",
        r"DEBIT\s+CARD",
        r"CARD\s+PAYMENT",
        r"CARD\s*#?\*?\d{4}",
        r"\*{4}\d{4}",
        r"\bPOS\b",
        r"\bCHIP\b",
        r"CONTACTLESS",
        r"\bTAP\b",
        r"E-COMMERCE",
        r"ONLINE\s+PURCHASE",
    )
]

_CHECK_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (r"\bCHECK\s+#?\d+", r"\bCHEQUE\s+#?\d+", r"\bCHK\b", r"\bCHQ\b", r"\bCHECK\b", r"\bCHEQUE\b")
]

_CASH_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (r"\bCASH\b", r"ATM\s+WITHDRAWAL", r"\bATM\b", r"CASH\s+WITHDRAWAL")
]

_TRANSFER_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"\bWIRE\b",
        r"\bACH\b",
        r"\bEFT\b",
        r"ELECTRONIC\s+TRANSFER",
        r"BANK\s+TRANSFER",
        r"DIRECT\s+DEBIT",
    )
]

_PURCHASE = re.compile(r"\b(PURCHASE|PAYMENT|POS)\b", re.IGNORECASE)
_RETAIL = re.compile(
    r"\b(STORE|SHOP|RESTAURANT|CAFE|MARKET|GROCERY|GAS|FUEL|PHARMACY)\b", re.IGNORECASE
)


def detect_payment_method(description: Optional[str]) -> Optional[str]:
    """
    Guess the payment method from a bank statement description.

    Returns:
        "card", "check", "cash", "other" (transfers), or None
    """
    if not description:
        return None

    if any(p.search(description) for p in _CARD_PATTERNS):
        return "card"
    if any(p.search(description) for p in _CHECK_PATTERNS):
        return "check"
    if any(p.search(description) for p in _CASH_PATTERNS):
        return "cash"
    if any(p.search(description) for p in _TRANSFER_PATTERNS):
        return "other"
    if _PURCHASE.search(description) and _RETAIL.search(description):
        return "card"
    return None


def header_matches(header: Any, field_name: str) -> bool:
    """Check whether a header cell names the given target field."""
    if not isinstance(header, str) or not header.strip():
        return False
    text = header.strip().lower()
    words = set(re.split(r"[^a-z0-9]+", text))
    for keyword in HEADER_KEYWORDS.get(field_name, []):
        if keyword in _WHOLE_WORD_KEYWORDS:
            if keyword in words:
                return True
        elif keyword in text:
            return True
    return False


def find_header_column(header_row: list[Any], field_name: str) -> Optional[int]:
    """Index of the first header cell matching a field, or None."""
    for index, cell in enumerate(header_row):
        if header_matches(cell, field_name):
            return index
    return None


def find_debit_credit_columns(header_row: list[Any]) -> Optional[tuple[int, int]]:
    """
    Locate separate debit and credit columns in a header row.

    Returns:
        (debit_index, credit_index) when both exist as distinct columns
    """
    debit = find_header_column(header_row, "debit")
    credit = find_header_column(header_row, "credit")
    if debit is None or credit is None or debit == credit:
        return None
    return debit, credit
