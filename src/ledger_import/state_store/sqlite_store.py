"""
SQLite-based state store implementation.

Tables:
- categories / category_rules / businesses / user_settings: categorization data
- import_batches / batch_items: batch state machine
- batch_activity_logs: append-only activity log
- file_hashes: per-user file dedupe claims
- documents / transactions: persisted extraction results
"""

import json
import sqlite3
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from ledger_import.schemas.documents import ExtractedDocument
from ledger_import.schemas.jobs import ItemOutcome, ItemStatus
from ledger_import.schemas.mapping import NormalizedTransaction

# Seconds a connection waits on a locked database
CONNECT_TIMEOUT = 30.0

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def format_timestamp(moment: datetime) -> str:
    """Fixed-width UTC timestamp; sorts lexicographically."""
    return moment.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def parse_timestamp(value: str) -> datetime:
    return datetime.strptime(value, TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)


def utc_now() -> str:
    return format_timestamp(datetime.now(timezone.utc))


@dataclass
class CategoryRecord:
    """System or user-defined category."""

    id: int
    name: str
    type: str  # "system" or "user"
    user_id: str | None
    transaction_type: str  # "income" or "expense"
    usage_scope: str  # "personal", "business" or "both"

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "CategoryRecord":
        """Create from database row."""
        return cls(
            id=row["id"],
            name=row["name"],
            type=row["type"],
            user_id=row["user_id"],
            transaction_type=row["transaction_type"],
            usage_scope=row["usage_scope"],
        )


@dataclass
class CategoryRuleRecord:
    """User rule mapping a merchant/description pattern to a category."""

    id: int
    user_id: str
    category_id: int
    match_type: str  # "exact", "contains" or "regex"
    field: str  # "merchantName" or "description"
    value: str
    priority: int
    business_id: int | None = None
    is_active: bool = True

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "CategoryRuleRecord":
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            category_id=row["category_id"],
            match_type=row["match_type"],
            field=row["field"],
            value=row["value"],
            priority=row["priority"],
            business_id=row["business_id"],
            is_active=bool(row["is_active"]),
        )


@dataclass
class BusinessRecord:
    id: int
    user_id: str
    name: str

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "BusinessRecord":
        return cls(id=row["id"], user_id=row["user_id"], name=row["name"])


@dataclass
class UserSettingsRecord:
    """Per-user preferences used as categorization and extraction context."""

    user_id: str
    usage_type: str
    country: str | None
    province: str | None
    currency: str | None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "UserSettingsRecord":
        return cls(
            user_id=row["user_id"],
            usage_type=row["usage_type"],
            country=row["country"],
            province=row["province"],
            currency=row["currency"],
        )


@dataclass
class BatchRecord:
    """Record of an import batch."""

    id: int
    user_id: str
    import_type: str
    source_format: str | None
    status: str
    total_files: int
    cancelled: bool
    created_at: str
    started_at: str | None
    completed_at: str | None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "BatchRecord":
        """Create from database row."""
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            import_type=row["import_type"],
            source_format=row["source_format"],
            status=row["status"],
            total_files=row["total_files"],
            cancelled=bool(row["cancelled"]),
            created_at=row["created_at"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
        )


@dataclass
class BatchItemRecord:
    """Record of one file within a batch."""

    id: int
    batch_id: int
    file_name: str
    file_url: str
    file_format: str
    item_order: int
    status: ItemStatus
    outcome: ItemOutcome | None
    file_hash: str | None
    document_id: int | None
    error_message: str | None
    error_code: str | None
    retry_count: int
    max_retries: int
    next_attempt_at: str | None
    started_at: str | None
    completed_at: str | None
    duration_ms: int | None

    @property
    def can_retry(self) -> bool:
        return self.retry_count < self.max_retries

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "BatchItemRecord":
        """Create from database row."""
        return cls(
            id=row["id"],
            batch_id=row["batch_id"],
            file_name=row["file_name"],
            file_url=row["file_url"],
            file_format=row["file_format"],
            item_order=row["item_order"],
            status=ItemStatus(row["status"]),
            outcome=ItemOutcome(row["outcome"]) if row["outcome"] else None,
            file_hash=row["file_hash"],
            document_id=row["document_id"],
            error_message=row["error_message"],
            error_code=row["error_code"],
            retry_count=row["retry_count"],
            max_retries=row["max_retries"],
            next_attempt_at=row["next_attempt_at"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
            duration_ms=row["duration_ms"],
        )


@dataclass
class ActivityRecord:
    id: int
    batch_id: int
    batch_item_id: int | None
    activity_type: str
    message: str
    details: dict[str, Any]
    created_at: str

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "ActivityRecord":
        return cls(
            id=row["id"],
            batch_id=row["batch_id"],
            batch_item_id=row["batch_item_id"],
            activity_type=row["activity_type"],
            message=row["message"],
            details=json.loads(row["details_json"]) if row["details_json"] else {},
            created_at=row["created_at"],
        )


class StateStore:
    """
    SQLite-based state store for the import pipeline.

    Provides persistent tracking of:
    - Categories, categorization rules, businesses and user settings
    - Import batches and their items
    - Batch activity log
    - File hash claims for dedupe
    - Extracted documents and bank transactions

    Every operation opens its own connection, so the store can be shared
    across worker threads.
    """

    SCHEMA_VERSION = 1

    def __init__(self, db_path: Path | str, run_migrations: bool = True):
        """
        Initialize state store.

        Args:
            db_path: Path to SQLite database file
            run_migrations: Whether to run pending migrations (default True)
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()
        if run_migrations:
            self._run_migrations()

    def _get_connection(self) -> sqlite3.Connection:
        """Get a database connection with row factory."""
        conn = sqlite3.connect(str(self.db_path), timeout=CONNECT_TIMEOUT)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Context manager for database transactions."""
        conn = self._get_connection()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self._transaction() as conn:
            conn.execute("PRAGMA journal_mode = WAL")

            # Schema version tracking
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS schema_version (
                    version INTEGER PRIMARY KEY
                )
            """
            )

            # Categories (system categories have NULL user_id)
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS categories (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL,
                    type TEXT NOT NULL DEFAULT 'system',
                    user_id TEXT,
                    transaction_type TEXT NOT NULL DEFAULT 'expense',
                    usage_scope TEXT NOT NULL DEFAULT 'both',
                    created_at TEXT NOT NULL
                )
            """
            )
            conn.execute(
                """
                CREATE UNIQUE INDEX IF NOT EXISTS idx_categories_unique_name
                ON categories (type, COALESCE(user_id, ''), name)
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS businesses (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
            """
            )

            # Categorization rules, evaluated by priority then insertion order
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS category_rules (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL,
                    category_id INTEGER NOT NULL,
                    business_id INTEGER,
                    match_type TEXT NOT NULL,
                    field TEXT NOT NULL,
                    value TEXT NOT NULL,
                    priority INTEGER NOT NULL DEFAULT 0,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL,
                    FOREIGN KEY (category_id) REFERENCES categories(id) ON DELETE CASCADE,
                    FOREIGN KEY (business_id) REFERENCES businesses(id) ON DELETE SET NULL
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS user_settings (
                    user_id TEXT PRIMARY KEY,
                    usage_type TEXT NOT NULL DEFAULT 'personal',
                    country TEXT,
                    province TEXT,
                    currency TEXT,
                    updated_at TEXT NOT NULL
                )
            """
            )

            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_category_rules_user ON category_rules(user_id)"
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_businesses_user ON businesses(user_id)")

            # Set schema version
            conn.execute(
                "INSERT OR REPLACE INTO schema_version (version) VALUES (?)", (self.SCHEMA_VERSION,)
            )

    def _run_migrations(self) -> None:
        """Run pending database migrations."""
        from .migrations import MigrationRunner

        conn = self._get_connection()
        try:
            runner = MigrationRunner(conn)
            runner.run_pending()
        finally:
            conn.close()

    # Category methods

    def create_category(
        self,
        name: str,
        transaction_type: str = "expense",
        usage_scope: str = "both",
        user_id: str | None = None,
    ) -> int:
        """Create a category. User categories carry the owning user_id."""
        category_type = "user" if user_id else "system"
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO categories (name, type, user_id, transaction_type, usage_scope, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
            """,
                (name, category_type, user_id, transaction_type, usage_scope, utc_now()),
            )
            return cursor.lastrowid

    def upsert_system_category(self, name: str, transaction_type: str, usage_scope: str) -> bool:
        """
        Insert a system category unless it already exists.

        Returns:
            True if inserted, False if it already existed
        """
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO categories
                (name, type, user_id, transaction_type, usage_scope, created_at)
                VALUES (?, 'system', NULL, ?, ?, ?)
            """,
                (name, transaction_type, usage_scope, utc_now()),
            )
            return cursor.rowcount > 0

    def get_category(self, category_id: int) -> CategoryRecord | None:
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM categories WHERE id = ?", (category_id,)).fetchone()
            return CategoryRecord.from_row(row) if row else None

    def list_categories(self, user_id: str | None = None) -> list[CategoryRecord]:
        """System categories plus the given user's own categories."""
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT * FROM categories
                WHERE type = 'system' OR (type = 'user' AND user_id = ?)
                ORDER BY name
            """,
                (user_id,),
            ).fetchall()
            return [CategoryRecord.from_row(row) for row in rows]

    # Rule methods

    def add_category_rule(
        self,
        user_id: str,
        category_id: int,
        match_type: str,
        field: str,
        value: str,
        priority: int = 0,
        business_id: int | None = None,
    ) -> int:
        """Add a categorization rule. Returns the rule ID."""
        if match_type not in ("exact", "contains", "regex"):
            raise ValueError(f"Unknown match type: {match_type}")
        if field not in ("merchantName", "description"):
            raise ValueError(f"Unknown rule field: {field}")

        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO category_rules
                (user_id, category_id, business_id, match_type, field, value, priority, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
                (user_id, category_id, business_id, match_type, field, value, priority, utc_now()),
            )
            return cursor.lastrowid

    def list_category_rules(self, user_id: str) -> list[CategoryRuleRecord]:
        """Active rules in evaluation order (priority desc, then oldest first)."""
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT * FROM category_rules
                WHERE user_id = ? AND is_active = 1
                ORDER BY priority DESC, id ASC
            """,
                (user_id,),
            ).fetchall()
            return [CategoryRuleRecord.from_row(row) for row in rows]

    def set_rule_active(self, rule_id: int, active: bool) -> bool:
        with self._transaction() as conn:
            cursor = conn.execute(
                "UPDATE category_rules SET is_active = ? WHERE id = ?", (int(active), rule_id)
            )
            return cursor.rowcount > 0

    # Business methods

    def add_business(self, user_id: str, name: str) -> int:
        with self._transaction() as conn:
            cursor = conn.execute(
                "INSERT INTO businesses (user_id, name, created_at) VALUES (?, ?, ?)",
                (user_id, name, utc_now()),
            )
            return cursor.lastrowid

    def list_businesses(self, user_id: str) -> list[BusinessRecord]:
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM businesses WHERE user_id = ? ORDER BY id", (user_id,)
            ).fetchall()
            return [BusinessRecord.from_row(row) for row in rows]

    # User settings

    def set_user_settings(
        self,
        user_id: str,
        usage_type: str = "personal",
        country: str | None = None,
        province: str | None = None,
        currency: str | None = None,
    ) -> None:
        """Insert or replace a user's settings."""
        if usage_type not in ("personal", "business", "both"):
            raise ValueError(f"Unknown usage type: {usage_type}")
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO user_settings (user_id, usage_type, country, province, currency, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    usage_type = excluded.usage_type,
                    country = excluded.country,
                    province = excluded.province,
                    currency = excluded.currency,
                    updated_at = excluded.updated_at
            """,
                (user_id, usage_type, country, province, currency, utc_now()),
            )

    def get_user_settings(self, user_id: str) -> UserSettingsRecord | None:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM user_settings WHERE user_id = ?", (user_id,)
            ).fetchone()
            return UserSettingsRecord.from_row(row) if row else None

    # Batch methods

    def create_batch(
        self,
        user_id: str,
        import_type: str,
        files: Sequence[tuple[str, str, str]],
        source_format: str | None = None,
        max_retries: int = 3,
    ) -> tuple[int, list[BatchItemRecord]]:
        """
        Create a batch with one queued item per file.

        Args:
            user_id: Owner of the batch
            import_type: receipts, bank_statements, invoices or mixed
            files: (file_name, file_url, file_format) tuples, in upload order
            source_format: Optional statement type hint
            max_retries: Retry budget per item

        Returns:
            (batch_id, items)
        """
        now = utc_now()
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO import_batches
                (user_id, import_type, source_format, status, total_files, created_at)
                VALUES (?, ?, ?, 'queued', ?, ?)
            """,
                (user_id, import_type, source_format, len(files), now),
            )
            batch_id = cursor.lastrowid

            for order, (file_name, file_url, file_format) in enumerate(files):
                conn.execute(
                    """
                    INSERT INTO batch_items
                    (batch_id, file_name, file_url, file_format, item_order, status,
                     max_retries, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, 'queued', ?, ?, ?)
                """,
                    (batch_id, file_name, file_url, file_format, order, max_retries, now, now),
                )

            rows = conn.execute(
                "SELECT * FROM batch_items WHERE batch_id = ? ORDER BY item_order", (batch_id,)
            ).fetchall()
            return batch_id, [BatchItemRecord.from_row(row) for row in rows]

    def get_batch(self, batch_id: int) -> BatchRecord | None:
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM import_batches WHERE id = ?", (batch_id,)).fetchone()
            return BatchRecord.from_row(row) if row else None

    def update_batch_status(self, batch_id: int, status: str) -> None:
        """Set the stored batch status, stamping start/completion times once."""
        now = utc_now()
        with self._transaction() as conn:
            conn.execute(
                """
                UPDATE import_batches
                SET status = ?,
                    started_at = CASE WHEN ? = 'processing' THEN COALESCE(started_at, ?) ELSE started_at END,
                    completed_at = CASE WHEN ? IN ('completed', 'cancelled') THEN COALESCE(completed_at, ?) ELSE completed_at END
                WHERE id = ?
            """,
                (status, status, now, status, now, batch_id),
            )

    def cancel_batch(self, batch_id: int) -> bool:
        """
        Flag a batch as cancelled. Queued items are no longer dispatched.

        Returns:
            True if the batch existed and was not already cancelled
        """
        with self._transaction() as conn:
            cursor = conn.execute(
                "UPDATE import_batches SET cancelled = 1 WHERE id = ? AND cancelled = 0",
                (batch_id,),
            )
            return cursor.rowcount > 0

    def get_batch_item(self, item_id: int) -> BatchItemRecord | None:
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM batch_items WHERE id = ?", (item_id,)).fetchone()
            return BatchItemRecord.from_row(row) if row else None

    def list_batch_items(self, batch_id: int) -> list[BatchItemRecord]:
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM batch_items WHERE batch_id = ? ORDER BY item_order, id", (batch_id,)
            ).fetchall()
            return [BatchItemRecord.from_row(row) for row in rows]

    def get_due_items(
        self, batch_id: int, now: str | None = None, stale_before: str | None = None
    ) -> list[BatchItemRecord]:
        """
        Items ready to be dispatched.

        Queued items whose backoff (if any) has elapsed, plus processing
        items started before ``stale_before`` (abandoned by a dead worker).
        """
        now = now or utc_now()
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT * FROM batch_items
                WHERE batch_id = ?
                  AND ((status = 'queued' AND (next_attempt_at IS NULL OR next_attempt_at <= ?))
                       OR (status = 'processing' AND ? IS NOT NULL AND started_at < ?))
                ORDER BY item_order, id
            """,
                (batch_id, now, stale_before, stale_before),
            ).fetchall()
            return [BatchItemRecord.from_row(row) for row in rows]

    def count_items_by_status(self, batch_id: int) -> dict[str, int]:
        """Counts keyed by status, plus "duplicate" for duplicate outcomes."""
        counts = {status.value: 0 for status in ItemStatus}
        counts["duplicate"] = 0
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT status, outcome, COUNT(*) AS n FROM batch_items
                WHERE batch_id = ? GROUP BY status, outcome
            """,
                (batch_id,),
            ).fetchall()
        for row in rows:
            if row["outcome"] == ItemOutcome.DUPLICATE_DETECTED.value:
                counts["duplicate"] += row["n"]
            else:
                counts[row["status"]] += row["n"]
        return counts

    # Item state transitions

    def start_item(self, item_id: int, stale_before: str | None = None) -> bool:
        """
        Atomically move an item from queued to processing.

        Args:
            item_id: Batch item ID
            stale_before: When given, a processing item whose started_at is
                older than this timestamp is reclaimed as well

        Returns:
            True if this caller owns the item now
        """
        now = utc_now()
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE batch_items
                SET status = 'processing', started_at = ?, updated_at = ?, next_attempt_at = NULL
                WHERE id = ?
                  AND (status = 'queued'
                       OR (status = 'processing' AND ? IS NOT NULL AND started_at < ?))
            """,
                (now, now, item_id, stale_before, stale_before),
            )
            return cursor.rowcount > 0

    def set_item_file_hash(self, item_id: int, file_hash: str) -> None:
        with self._transaction() as conn:
            conn.execute(
                "UPDATE batch_items SET file_hash = ?, updated_at = ? WHERE id = ?",
                (file_hash, utc_now(), item_id),
            )

    def complete_item(
        self,
        item_id: int,
        outcome: ItemOutcome,
        document_id: int | None = None,
        duration_ms: int | None = None,
    ) -> bool:
        """Mark a processing item completed."""
        with self._transaction() as conn:
            return self._mark_completed(conn, item_id, outcome, document_id, duration_ms)

    def _mark_completed(
        self,
        conn: sqlite3.Connection,
        item_id: int,
        outcome: ItemOutcome,
        document_id: int | None,
        duration_ms: int | None,
    ) -> bool:
        now = utc_now()
        cursor = conn.execute(
            """
            UPDATE batch_items
            SET status = 'completed', outcome = ?, document_id = ?, completed_at = ?,
                duration_ms = ?, error_message = NULL, error_code = NULL, updated_at = ?
            WHERE id = ? AND status = 'processing'
        """,
            (outcome.value, document_id, now, duration_ms, now, item_id),
        )
        return cursor.rowcount > 0

    def fail_item(
        self,
        item_id: int,
        error_message: str,
        error_code: str,
        duration_ms: int | None = None,
    ) -> bool:
        """Mark a processing item as terminally failed."""
        now = utc_now()
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE batch_items
                SET status = 'failed', error_message = ?, error_code = ?, completed_at = ?,
                    duration_ms = ?, updated_at = ?
                WHERE id = ? AND status = 'processing'
            """,
                (error_message, error_code, now, duration_ms, now, item_id),
            )
            return cursor.rowcount > 0

    def requeue_item(
        self, item_id: int, error_message: str, error_code: str, next_attempt_at: str
    ) -> bool:
        """Return a processing item to the queue for a later retry."""
        now = utc_now()
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE batch_items
                SET status = 'queued', retry_count = retry_count + 1, next_attempt_at = ?,
                    error_message = ?, error_code = ?, started_at = NULL, updated_at = ?
                WHERE id = ? AND status = 'processing'
            """,
                (next_attempt_at, error_message, error_code, now, item_id),
            )
            return cursor.rowcount > 0

    # Activity log

    def log_activity(
        self,
        batch_id: int,
        activity_type: str,
        message: str,
        batch_item_id: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> int:
        """Append an activity log entry. Entries are never updated."""
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO batch_activity_logs
                (batch_id, batch_item_id, activity_type, message, details_json, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
            """,
                (
                    batch_id,
                    batch_item_id,
                    activity_type,
                    message,
                    json.dumps(details, default=str) if details else None,
                    utc_now(),
                ),
            )
            return cursor.lastrowid

    def get_activity_log(self, batch_id: int) -> list[ActivityRecord]:
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM batch_activity_logs WHERE batch_id = ? ORDER BY id", (batch_id,)
            ).fetchall()
            return [ActivityRecord.from_row(row) for row in rows]

    # File hash claims

    def claim_file_hash(self, user_id: str, file_hash: str, batch_item_id: int) -> int | None:
        """
        Claim a file hash for a batch item.

        Returns:
            None if the claim succeeded (or the item already held it),
            otherwise the ID of the item that owns the hash
        """
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT OR IGNORE INTO file_hashes (user_id, file_hash, batch_item_id, created_at)
                VALUES (?, ?, ?, ?)
            """,
                (user_id, file_hash, batch_item_id, utc_now()),
            )
            row = conn.execute(
                "SELECT batch_item_id FROM file_hashes WHERE user_id = ? AND file_hash = ?",
                (user_id, file_hash),
            ).fetchone()
            owner = row["batch_item_id"]
            return None if owner == batch_item_id else owner

    def release_file_hash(self, user_id: str, file_hash: str, batch_item_id: int) -> bool:
        """Release a claim so a later upload of the same file can be processed."""
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                DELETE FROM file_hashes
                WHERE user_id = ? AND file_hash = ? AND batch_item_id = ?
            """,
                (user_id, file_hash, batch_item_id),
            )
            return cursor.rowcount > 0

    # Documents and transactions

    def save_document(
        self,
        user_id: str,
        batch_item_id: int | None,
        document: ExtractedDocument,
        file_hash: str | None = None,
    ) -> int:
        """Persist an extracted receipt or invoice. Returns the document ID."""
        with self._transaction() as conn:
            return self._insert_document(conn, user_id, batch_item_id, document, file_hash)

    def complete_with_document(
        self,
        user_id: str,
        item_id: int,
        document: ExtractedDocument,
        file_hash: str | None = None,
        duration_ms: int | None = None,
    ) -> int | None:
        """
        Persist a document and complete its item in one transaction.

        Returns:
            The document ID, or None if the item was no longer processing
            (nothing is written in that case)
        """
        with self._transaction() as conn:
            document_id = self._insert_document(conn, user_id, item_id, document, file_hash)
            if not self._mark_completed(conn, item_id, ItemOutcome.PROCESSED, document_id, duration_ms):
                conn.rollback()
                return None
            return document_id

    def _insert_document(
        self,
        conn: sqlite3.Connection,
        user_id: str,
        batch_item_id: int | None,
        document: ExtractedDocument,
        file_hash: str | None,
    ) -> int:
        if document.date is None or document.total_amount is None:
            raise ValueError("Documents require a date and total amount")

        cursor = conn.execute(
            """
            INSERT INTO documents
            (user_id, batch_item_id, document_type, file_name, file_hash, date,
             total_amount, currency, merchant_name, category_id, business_id,
             needs_review, extraction_json, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
            (
                user_id,
                batch_item_id,
                document.document_type.value,
                document.file_name,
                file_hash,
                document.date,
                str(document.total_amount),
                document.currency,
                document.party_name,
                document.category_id,
                document.business_id,
                int(document.needs_review),
                json.dumps(document.to_dict()),
                utc_now(),
            ),
        )
        return cursor.lastrowid

    def get_document(self, document_id: int) -> dict[str, Any] | None:
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM documents WHERE id = ?", (document_id,)).fetchone()
            return dict(row) if row else None

    def save_transactions(
        self,
        user_id: str,
        batch_item_id: int | None,
        transactions: Sequence[NormalizedTransaction],
    ) -> list[int]:
        """Persist normalized bank transactions in one transaction. Returns row IDs."""
        with self._transaction() as conn:
            return self._insert_transactions(conn, user_id, batch_item_id, transactions)

    def complete_with_transactions(
        self,
        user_id: str,
        item_id: int,
        transactions: Sequence[NormalizedTransaction],
        duration_ms: int | None = None,
    ) -> list[int] | None:
        """
        Persist statement transactions and complete their item in one transaction.

        Returns:
            Row IDs, or None if the item was no longer processing
        """
        with self._transaction() as conn:
            ids = self._insert_transactions(conn, user_id, item_id, transactions)
            if not self._mark_completed(conn, item_id, ItemOutcome.PROCESSED, None, duration_ms):
                conn.rollback()
                return None
            return ids

    def _insert_transactions(
        self,
        conn: sqlite3.Connection,
        user_id: str,
        batch_item_id: int | None,
        transactions: Sequence[NormalizedTransaction],
    ) -> list[int]:
        now = utc_now()
        ids = []
        for txn in transactions:
            cursor = conn.execute(
                """
                INSERT INTO transactions
                (user_id, batch_item_id, transaction_date, posted_date, amount, description,
                 merchant_name, reference_number, payment_method, balance, currency,
                 category_id, business_id, is_business_expense, needs_review, row_index,
                 created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
                (
                    user_id,
                    batch_item_id,
                    txn.transaction_date.isoformat() if txn.transaction_date else None,
                    txn.posted_date.isoformat() if txn.posted_date else None,
                    str(txn.amount),
                    txn.description,
                    txn.merchant_name,
                    txn.reference_number,
                    txn.payment_method,
                    str(txn.balance) if txn.balance is not None else None,
                    txn.currency,
                    txn.category_id,
                    txn.business_id,
                    int(txn.is_business_expense),
                    int(txn.needs_review),
                    txn.row_index,
                    now,
                ),
            )
            ids.append(cursor.lastrowid)
        return ids

    def list_transactions(self, batch_item_id: int) -> list[dict[str, Any]]:
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM transactions WHERE batch_item_id = ? ORDER BY row_index, id",
                (batch_item_id,),
            ).fetchall()
            return [dict(row) for row in rows]

    def get_stats(self) -> dict[str, Any]:
        """Get statistics about the state store."""
        with self._transaction() as conn:
            stats = {
                "categories": conn.execute("SELECT COUNT(*) FROM categories").fetchone()[0],
                "batches": conn.execute("SELECT COUNT(*) FROM import_batches").fetchone()[0],
                "documents": conn.execute("SELECT COUNT(*) FROM documents").fetchone()[0],
                "transactions": conn.execute("SELECT COUNT(*) FROM transactions").fetchone()[0],
            }
            rows = conn.execute(
                "SELECT status, COUNT(*) AS n FROM batch_items GROUP BY status"
            ).fetchall()
            stats["items_by_status"] = {row["status"]: row["n"] for row in rows}
            return stats
