"""
Category scoping by usage preference and transaction type.
"""

import logging
from decimal import Decimal
from typing import Optional, Union

from ledger_import.state_store import CategoryRecord, StateStore

logger = logging.getLogger(__name__)

USAGE_TYPES = ("personal", "business", "both")
TRANSACTION_TYPES = ("income", "expense")
DEFAULT_USAGE_TYPE = "personal"


def infer_transaction_type(amount: Union[Decimal, float, int, None]) -> str:
    """Non-negative amounts are income, negative amounts are expenses."""
    if amount is None:
        return "expense"
    return "income" if amount >= 0 else "expense"


class CategoryFilter:
    """Selects the categories a user may be assigned."""

    def __init__(self, store: StateStore):
        self.store = store

    def user_preference(self, user_id: str) -> str:
        """The user's usage type; "personal" when unset."""
        settings = self.store.get_user_settings(user_id)
        if settings and settings.usage_type in USAGE_TYPES:
            return settings.usage_type
        return DEFAULT_USAGE_TYPE

    def available_categories(
        self,
        user_id: str,
        transaction_type: Optional[str] = None,
        usage_type: Optional[str] = None,
        include_user_categories: bool = True,
    ) -> list[CategoryRecord]:
        """
        Categories available to a user.

        System categories are kept when the user's preference is "both", or
        when their usage scope equals the preference or is "both". The user's
        own categories are always included unless disabled.

        Args:
            user_id: User whose categories to list
            transaction_type: Keep only "income" or "expense" categories
            usage_type: Override the stored preference
            include_user_categories: Include the user's own categories
        """
        preference = usage_type if usage_type in USAGE_TYPES else self.user_preference(user_id)

        result = []
        for category in self.store.list_categories(user_id):
            if category.type == "system":
                if preference != "both" and category.usage_scope not in (preference, "both"):
                    continue
            elif not include_user_categories or category.user_id != user_id:
                continue
            if transaction_type and category.transaction_type != transaction_type:
                continue
            result.append(category)
        return result

    def category_names_for_ai(
        self,
        user_id: str,
        transaction_type: Optional[str] = None,
        usage_type: Optional[str] = None,
    ) -> list[str]:
        """Sorted category names for prompts."""
        categories = self.available_categories(user_id, transaction_type, usage_type)
        return sorted({c.name for c in categories}, key=str.casefold)

    infer_transaction_type = staticmethod(infer_transaction_type)
