"""
System category seed data.

(name, transaction_type, usage_scope)
"""

import logging

from ledger_import.state_store import StateStore

logger = logging.getLogger(__name__)

SYSTEM_CATEGORIES: list[tuple[str, str, str]] = [
    # Income
    ("Salary & Wages", "income", "personal"),
    ("Gifts & Donations Received", "income", "personal"),
    ("Freelance Income", "income", "both"),
    ("Investment Income", "income", "both"),
    ("Interest Income", "income", "both"),
    ("Refunds & Reimbursements", "income", "both"),
    ("Tax Refund", "income", "both"),
    ("Other Income", "income", "both"),
    ("Business Revenue", "income", "business"),
    ("Client Payments", "income", "business"),
    ("Grant Income", "income", "business"),
    # Expenses used by everyone
    ("Food & Dining", "expense", "both"),
    ("Transportation", "expense", "both"),
    ("Utilities", "expense", "both"),
    ("Healthcare & Medical", "expense", "both"),
    ("Education", "expense", "both"),
    ("Insurance", "expense", "both"),
    ("Taxes", "expense", "both"),
    ("Subscriptions", "expense", "both"),
    ("Other Expense", "expense", "both"),
    # Personal expenses
    ("Groceries", "expense", "personal"),
    ("Housing & Rent", "expense", "personal"),
    ("Entertainment", "expense", "personal"),
    ("Shopping & Retail", "expense", "personal"),
    ("Personal Care", "expense", "personal"),
    # Business expenses
    ("Office Supplies", "expense", "business"),
    ("Professional Services", "expense", "business"),
    ("Software & Tools", "expense", "business"),
    ("Advertising & Marketing", "expense", "business"),
    ("Business Travel", "expense", "business"),
    ("Business Meals", "expense", "business"),
    ("Equipment & Hardware", "expense", "business"),
    ("Rent & Lease", "expense", "business"),
    ("Payroll & Contractors", "expense", "business"),
]


def seed_system_categories(store: StateStore) -> int:
    """
    Insert missing system categories. Safe to run repeatedly.

    Returns:
        Number of categories inserted
    """
    inserted = 0
    for name, transaction_type, usage_scope in SYSTEM_CATEGORIES:
        if store.upsert_system_category(name, transaction_type, usage_scope):
            inserted += 1
    logger.info("Seeded %d system categories (%d total)", inserted, len(SYSTEM_CATEGORIES))
    return inserted
