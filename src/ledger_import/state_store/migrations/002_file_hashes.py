"""
Migration 002: File hash claims.

One row per (user, SHA256 of the uploaded bytes). The primary key makes the
claim atomic: the first batch item to insert owns the file, later uploads of
the same bytes are duplicates.
"""

import sqlite3

VERSION = 2
NAME = "file_hashes"


def upgrade(conn: sqlite3.Connection) -> None:
    cursor = conn.cursor()
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS file_hashes (
            user_id TEXT NOT NULL,
            file_hash TEXT NOT NULL,
            batch_item_id INTEGER NOT NULL,
            created_at TEXT NOT NULL,
            PRIMARY KEY (user_id, file_hash)
        )
    """)
    conn.commit()


def downgrade(conn: sqlite3.Connection) -> None:
    conn.execute("DROP TABLE IF EXISTS file_hashes")
    conn.commit()
