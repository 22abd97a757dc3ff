"""
Migration 003: Persisted extraction results.

- documents: one row per extracted receipt or invoice (full extraction as JSON)
- transactions: normalized rows from bank statement spreadsheets

Amounts are stored as decimal strings.
"""

import sqlite3

VERSION = 3
NAME = "documents_transactions"


def upgrade(conn: sqlite3.Connection) -> None:
    """Create documents and transactions tables."""
    cursor = conn.cursor()

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS documents (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT NOT NULL,
            batch_item_id INTEGER,
            document_type TEXT NOT NULL,
            file_name TEXT,
            file_hash TEXT,
            date TEXT NOT NULL,
            total_amount TEXT NOT NULL,
            currency TEXT NOT NULL,
            merchant_name TEXT,
            category_id INTEGER,
            business_id INTEGER,
            needs_review INTEGER NOT NULL DEFAULT 0,
            extraction_json TEXT NOT NULL,
            created_at TEXT NOT NULL
        )
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS transactions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT NOT NULL,
            batch_item_id INTEGER,
            transaction_date TEXT NOT NULL,
            posted_date TEXT,
            amount TEXT NOT NULL,
            description TEXT,
            merchant_name TEXT,
            reference_number TEXT,
            payment_method TEXT,
            balance TEXT,
            currency TEXT NOT NULL,
            category_id INTEGER,
            business_id INTEGER,
            is_business_expense INTEGER NOT NULL DEFAULT 0,
            needs_review INTEGER NOT NULL DEFAULT 0,
            row_index INTEGER,
            created_at TEXT NOT NULL
        )
    """)

    cursor.execute(
        "CREATE INDEX IF NOT EXISTS idx_documents_item ON documents (batch_item_id)"
    )
    cursor.execute(
        "CREATE INDEX IF NOT EXISTS idx_transactions_item ON transactions (batch_item_id)"
    )
    cursor.execute(
        "CREATE INDEX IF NOT EXISTS idx_transactions_user_date ON transactions (user_id, transaction_date)"
    )

    conn.commit()


def downgrade(conn: sqlite3.Connection) -> None:
    cursor = conn.cursor()
    cursor.execute("DROP TABLE IF EXISTS transactions")
    cursor.execute("DROP TABLE IF EXISTS documents")
    conn.commit()
