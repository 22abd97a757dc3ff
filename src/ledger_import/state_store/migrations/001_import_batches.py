"""
Migration 001: Import batches, batch items and the activity log.

Batch items follow the state machine QUEUED -> PROCESSING -> COMPLETED | FAILED.
Items carry their own retry budget and the earliest time of their next attempt.
"""

import sqlite3

VERSION = 1
NAME = "import_batches"


def upgrade(conn: sqlite3.Connection) -> None:
    """Create import_batches, batch_items and batch_activity_logs."""
    cursor = conn.cursor()

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS import_batches (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT NOT NULL,

            -- receipts, bank_statements, invoices, mixed
            import_type TEXT NOT NULL,
            source_format TEXT,

            -- Stored status: queued, processing, completed, cancelled
            status TEXT NOT NULL DEFAULT 'queued',
            total_files INTEGER NOT NULL DEFAULT 0,
            cancelled INTEGER NOT NULL DEFAULT 0,

            created_at TEXT NOT NULL,
            started_at TEXT,
            completed_at TEXT
        )
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS batch_items (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            batch_id INTEGER NOT NULL,
            file_name TEXT NOT NULL,
            file_url TEXT NOT NULL,
            file_format TEXT NOT NULL DEFAULT '',
            item_order INTEGER NOT NULL DEFAULT 0,

            -- Status: queued, processing, completed, failed
            status TEXT NOT NULL DEFAULT 'queued',
            -- Completed items only: processed, duplicate_detected
            outcome TEXT,

            file_hash TEXT,
            document_id INTEGER,
            error_message TEXT,
            error_code TEXT,

            -- Retry tracking
            retry_count INTEGER NOT NULL DEFAULT 0,
            max_retries INTEGER NOT NULL DEFAULT 3,
            next_attempt_at TEXT,

            started_at TEXT,
            completed_at TEXT,
            duration_ms INTEGER,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            FOREIGN KEY (batch_id) REFERENCES import_batches(id) ON DELETE CASCADE
        )
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS batch_activity_logs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            batch_id INTEGER NOT NULL,
            batch_item_id INTEGER,
            activity_type TEXT NOT NULL,
            message TEXT NOT NULL,
            details_json TEXT,
            created_at TEXT NOT NULL,
            FOREIGN KEY (batch_id) REFERENCES import_batches(id) ON DELETE CASCADE
        )
    """)

    # Dispatch lookups: queued items of a batch by due time
    cursor.execute("""
        CREATE INDEX IF NOT EXISTS idx_batch_items_dispatch
        ON batch_items (batch_id, status, next_attempt_at)
    """)

    cursor.execute("""
        CREATE INDEX IF NOT EXISTS idx_batch_activity_batch
        ON batch_activity_logs (batch_id, id)
    """)

    conn.commit()


def downgrade(conn: sqlite3.Connection) -> None:
    """Drop the batch tables."""
    cursor = conn.cursor()
    cursor.execute("DROP INDEX IF EXISTS idx_batch_activity_batch")
    cursor.execute("DROP INDEX IF EXISTS idx_batch_items_dispatch")
    cursor.execute("DROP TABLE IF EXISTS batch_activity_logs")
    cursor.execute("DROP TABLE IF EXISTS batch_items")
    cursor.execute("DROP TABLE IF EXISTS import_batches")
    conn.commit()
