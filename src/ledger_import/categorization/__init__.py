"""Rule-based and AI categorization of transactions and documents."""

from ledger_import.categorization.engine import (
    RULE_CONFIDENCE,
    CategorizationEngine,
    CategorizationResult,
    UserContext,
    match_category,
)
from ledger_import.categorization.filters import CategoryFilter, infer_transaction_type
from ledger_import.categorization.seed import SYSTEM_CATEGORIES, seed_system_categories

__all__ = [
    "CategorizationEngine",
    "CategorizationResult",
    "CategoryFilter",
    "RULE_CONFIDENCE",
    "SYSTEM_CATEGORIES",
    "UserContext",
    "infer_transaction_type",
    "match_category",
    "seed_system_categories",
]
