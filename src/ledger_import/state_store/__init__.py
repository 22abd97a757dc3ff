"""
State Store (SQLite-based).

Lightweight persistent DB for tracking:
- Categories, rules, businesses and user settings
- Import batches, their items and activity log
- File hash claims (dedupe)
- Extracted documents and bank transactions
"""

from .sqlite_store import (
    ActivityRecord,
    BatchItemRecord,
    BatchRecord,
    BusinessRecord,
    CategoryRecord,
    CategoryRuleRecord,
    StateStore,
    UserSettingsRecord,
)

__all__ = [
    "StateStore",
    "ActivityRecord",
    "BatchItemRecord",
    "BatchRecord",
    "BusinessRecord",
    "CategoryRecord",
    "CategoryRuleRecord",
    "UserSettingsRecord",
]
