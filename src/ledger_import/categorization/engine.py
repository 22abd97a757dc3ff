"""
Two-tier transaction categorization.

Tier 1 evaluates the user's rules in order and returns on the first match.
Tier 2 asks the model to pick one of the categories available to the user.
"""

import logging
import re
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Union

from ledger_import.categorization.filters import CategoryFilter, infer_transaction_type
from ledger_import.llm import schema as s
from ledger_import.llm.engine import ExtractionEngine
from ledger_import.llm.prompts import CategorizationPrompt
from ledger_import.state_store import (
    BusinessRecord,
    CategoryRecord,
    CategoryRuleRecord,
    StateStore,
)

logger = logging.getLogger(__name__)

RULE_CONFIDENCE = 0.85
DEFAULT_MIN_CONFIDENCE = 0.7

CATEGORIZATION_SCHEMA = s.obj(
    {
        "categoryName": s.string("Chosen or suggested category name"),
        "confidence": s.number("Confidence score 0.0 to 1.0"),
        "isNewCategory": s.boolean("True if the category is not in the available list"),
        "isBusinessExpense": s.boolean(),
        "businessId": s.nullable(s.string("ID of the matching business")),
        "businessName": s.nullable(s.string()),
    }
)


@dataclass
class UserContext:
    """Who the transaction belongs to and how strict auto-apply is."""

    user_id: str
    country: Optional[str] = None
    usage_type: Optional[str] = None
    transaction_type: Optional[str] = None  # declared type; inferred from amount otherwise
    min_confidence: float = DEFAULT_MIN_CONFIDENCE
    include_ai: bool = True


@dataclass
class CategorizationResult:
    """Category assignment for one transaction or document."""

    category_id: Optional[int] = None
    category_name: Optional[str] = None
    confidence: float = 0.0
    is_new_category: bool = False
    is_business_expense: bool = False
    business_id: Optional[int] = None
    business_name: Optional[str] = None
    source: str = "none"  # "rule", "ai" or "none"
    needs_review: bool = True
    transaction_type: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return self.source == "none"

    def to_dict(self) -> dict:
        return {
            "category_id": self.category_id,
            "category_name": self.category_name,
            "confidence": self.confidence,
            "is_new_category": self.is_new_category,
            "is_business_expense": self.is_business_expense,
            "business_id": self.business_id,
            "business_name": self.business_name,
            "source": self.source,
            "needs_review": self.needs_review,
            "transaction_type": self.transaction_type,
        }


def match_category(
    raw_category: str, categories: list[CategoryRecord], exact_only: bool = False
) -> Optional[CategoryRecord]:
    """Fuzzy match a category name to available categories.

    Args:
        raw_category: Raw category name from the model.
        categories: Candidates.
        exact_only: Skip substring and word-overlap matching (used when the
            model proposes a new category).

    Returns:
        Matched category or None if no match.
    """
    if not raw_category:
        return None

    raw_lower = raw_category.casefold().strip()

    # Exact match first
    for cat in categories:
        if cat.name.casefold() == raw_lower:
            return cat

    if exact_only:
        return None

    # Substring match
    for cat in categories:
        name = cat.name.casefold()
        if raw_lower in name or name in raw_lower:
            return cat

    # Word overlap match
    raw_words = set(re.findall(r"\w+", raw_lower))
    best_match = None
    best_overlap = 0
    for cat in categories:
        overlap = len(raw_words & set(re.findall(r"\w+", cat.name.casefold())))
        if overlap > best_overlap:
            best_overlap = overlap
            best_match = cat

    if best_overlap > 0:
        return best_match

    logger.debug("Could not match category '%s' to available categories", raw_category)
    return None


def rule_matches(rule: CategoryRuleRecord, merchant_name: Optional[str], description: Optional[str]) -> bool:
    """Check one rule against the transaction. Invalid regexes never match."""
    subject = merchant_name if rule.field == "merchantName" else description
    if not subject:
        return False

    if rule.match_type == "exact":
        return subject.strip().casefold() == rule.value.strip().casefold()
    if rule.match_type == "contains":
        return rule.value.casefold() in subject.casefold()
    if rule.match_type == "regex":
        try:
            return re.search(rule.value, subject, re.IGNORECASE) is not None
        except re.error as e:
            logger.warning("Skipping rule %s with invalid regex %r: %s", rule.id, rule.value, e)
            return False
    logger.warning("Skipping rule %s with unknown match type %s", rule.id, rule.match_type)
    return False


class CategorizationEngine:
    """Assigns categories using rules first, then the model."""

    def __init__(
        self,
        engine: Optional[ExtractionEngine],
        store: StateStore,
        prompt: Optional[CategorizationPrompt] = None,
    ):
        self.engine = engine
        self.store = store
        self.filter = CategoryFilter(store)
        self.prompt = prompt or CategorizationPrompt()

    def categorize(
        self,
        merchant_name: Optional[str],
        description: Optional[str],
        amount: Union[Decimal, float, None],
        context: UserContext,
    ) -> CategorizationResult:
        """
        Categorize a transaction.

        Args:
            merchant_name: Merchant or vendor name
            description: Free-text description
            amount: Signed amount (negative = expense)
            context: User context and review threshold

        Returns:
            CategorizationResult; an empty result (source "none") when
            nothing matched and the model was skipped or failed
        """
        transaction_type = context.transaction_type or infer_transaction_type(amount)

        result = self._match_rules(merchant_name, description, context)
        if result is None and context.include_ai and self.engine is not None:
            result = self._categorize_with_ai(merchant_name, description, amount, transaction_type, context)
        if result is None:
            result = CategorizationResult()

        result.transaction_type = transaction_type
        result.needs_review = result.confidence < context.min_confidence
        return result

    def _match_rules(
        self,
        merchant_name: Optional[str],
        description: Optional[str],
        context: UserContext,
    ) -> Optional[CategorizationResult]:
        for rule in self.store.list_category_rules(context.user_id):
            if not rule_matches(rule, merchant_name, description):
                continue

            category = self.store.get_category(rule.category_id)
            if category is None:
                logger.warning("Rule %s points at missing category %s", rule.id, rule.category_id)
                continue

            business = self._business_by_id(context.user_id, rule.business_id)
            logger.debug("Rule %s matched: %s", rule.id, category.name)
            return CategorizationResult(
                category_id=category.id,
                category_name=category.name,
                confidence=RULE_CONFIDENCE,
                is_business_expense=business is not None,
                business_id=business.id if business else None,
                business_name=business.name if business else None,
                source="rule",
            )
        return None

    def _categorize_with_ai(
        self,
        merchant_name: Optional[str],
        description: Optional[str],
        amount: Union[Decimal, float, None],
        transaction_type: str,
        context: UserContext,
    ) -> Optional[CategorizationResult]:
        categories = self.filter.available_categories(
            context.user_id, transaction_type=transaction_type, usage_type=context.usage_type
        )
        businesses = self.store.list_businesses(context.user_id)

        prompt = self.prompt.format(
            merchant_name=merchant_name,
            description=description,
            amount=str(amount) if amount is not None else None,
            categories=sorted({c.name for c in categories}, key=str.casefold),
            country=context.country,
            usage_type=context.usage_type or self.filter.user_preference(context.user_id),
            businesses=[(str(b.id), b.name) for b in businesses],
        )
        extraction = self.engine.extract(prompt, CATEGORIZATION_SCHEMA)
        if not extraction.success:
            logger.warning("AI categorization failed: %s", extraction.error)
            return None

        data = extraction.data
        raw_name = (data.get("categoryName") or "").strip()
        confidence = min(1.0, max(0.0, float(data.get("confidence") or 0.0)))
        proposes_new = bool(data.get("isNewCategory"))
        matched = match_category(raw_name, categories, exact_only=proposes_new)

        business = self._resolve_business(data.get("businessId"), data.get("businessName"), businesses)
        is_business = bool(data.get("isBusinessExpense")) or business is not None

        if matched is None and not raw_name:
            return None

        return CategorizationResult(
            category_id=matched.id if matched else None,
            category_name=matched.name if matched else raw_name,
            confidence=confidence,
            is_new_category=matched is None,
            is_business_expense=is_business,
            business_id=business.id if business else None,
            business_name=business.name if business else None,
            source="ai",
        )

    def _business_by_id(self, user_id: str, business_id: Optional[int]) -> Optional[BusinessRecord]:
        if business_id is None:
            return None
        for business in self.store.list_businesses(user_id):
            if business.id == business_id:
                return business
        return None

    @staticmethod
    def _resolve_business(
        raw_id: Optional[str],
        raw_name: Optional[str],
        businesses: list[BusinessRecord],
    ) -> Optional[BusinessRecord]:
        """Match the model's business reference; unknown IDs are dropped."""
        if raw_id is not None:
            for business in businesses:
                if str(business.id) == str(raw_id).strip():
                    return business
            logger.debug("Dropping unknown business id %r", raw_id)
        if raw_name:
            for business in businesses:
                if business.name.casefold() == raw_name.strip().casefold():
                    return business
        return None
