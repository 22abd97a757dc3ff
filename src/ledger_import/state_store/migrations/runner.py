"""
Migration runner for versioned database schema changes.

Migrations live next to this module as ``NNN_name.py`` files
(e.g. 001_import_batches.py) and each defines:
- VERSION: int
- NAME: str
- upgrade(conn: Connection) -> None
- downgrade(conn: Connection) -> None  # optional
"""

import importlib
import logging
import sqlite3
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

MIGRATIONS_PACKAGE = "ledger_import.state_store.migrations"


@dataclass
class Migration:
    """A single schema migration."""

    version: int
    name: str
    upgrade: Callable[[sqlite3.Connection], None]
    downgrade: Callable[[sqlite3.Connection], None] | None

    @property
    def label(self) -> str:
        return f"{self.version:03d}_{self.name}"


def get_all_migrations() -> list[Migration]:
    """
    Load all migrations from the migrations directory, sorted by version.

    Raises:
        RuntimeError: If two migrations share a version
    """
    migrations: dict[int, Migration] = {}
    migrations_dir = Path(__file__).parent

    for py_file in sorted(migrations_dir.glob("[0-9][0-9][0-9]_*.py")):
        module = importlib.import_module(f"{MIGRATIONS_PACKAGE}.{py_file.stem}")
        migration = Migration(
            version=module.VERSION,
            name=module.NAME,
            upgrade=module.upgrade,
            downgrade=getattr(module, "downgrade", None),
        )
        if migration.version in migrations:
            raise RuntimeError(
                f"Duplicate migration version {migration.version}: "
                f"{migrations[migration.version].name} and {migration.name}"
            )
        migrations[migration.version] = migration

    return [migrations[v] for v in sorted(migrations)]


class MigrationRunner:
    """
    Applies pending migrations in version order.

    Applied versions are recorded in the ``migrations`` table together with
    their timestamp; each migration commits on its own.
    """

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn
        self._ensure_migrations_table()

    def _ensure_migrations_table(self) -> None:
        self.conn.execute(
            """
            CREATE TABLE IF NOT EXISTS migrations (
                version INTEGER PRIMARY KEY,
                name TEXT NOT NULL,
                applied_at TEXT NOT NULL
            )
        """
        )
        self.conn.commit()

    def get_applied_versions(self) -> set[int]:
        cursor = self.conn.execute("SELECT version FROM migrations")
        return {row[0] for row in cursor.fetchall()}

    def get_current_version(self) -> int:
        """Highest applied version, 0 for a fresh database."""
        result = self.conn.execute("SELECT MAX(version) FROM migrations").fetchone()[0]
        return result if result is not None else 0

    def pending(self) -> list[Migration]:
        applied = self.get_applied_versions()
        return [m for m in get_all_migrations() if m.version not in applied]

    def apply_migration(self, migration: Migration) -> None:
        """Apply one migration and record it."""
        from ..sqlite_store import utc_now

        logger.info("Applying migration %s", migration.label)
        try:
            migration.upgrade(self.conn)
            self.conn.execute(
                "INSERT INTO migrations (version, name, applied_at) VALUES (?, ?, ?)",
                (migration.version, migration.name, utc_now()),
            )
            self.conn.commit()
        except Exception as e:
            self.conn.rollback()
            logger.error("Migration %s failed: %s", migration.label, e)
            raise

    def rollback_migration(self, migration: Migration) -> None:
        """Undo one migration and forget it."""
        if migration.downgrade is None:
            raise NotImplementedError(f"Migration {migration.label} does not support rollback")

        logger.info("Rolling back migration %s", migration.label)
        try:
            migration.downgrade(self.conn)
            self.conn.execute("DELETE FROM migrations WHERE version = ?", (migration.version,))
            self.conn.commit()
        except Exception as e:
            self.conn.rollback()
            logger.error("Rollback of %s failed: %s", migration.label, e)
            raise

    def run_pending(self) -> list[int]:
        """
        Run all pending migrations.

        Returns:
            Versions applied by this call
        """
        applied = []
        for migration in self.pending():
            self.apply_migration(migration)
            applied.append(migration.version)

        if applied:
            logger.info("Applied %d migrations: %s", len(applied), applied)
        else:
            logger.debug("No pending migrations")
        return applied

    def migrate_to(self, target_version: int) -> None:
        """Upgrade or downgrade to ``target_version``."""
        current = self.get_current_version()
        by_version = {m.version: m for m in get_all_migrations()}

        if target_version > current:
            for version in sorted(v for v in by_version if current < v <= target_version):
                self.apply_migration(by_version[version])
        elif target_version < current:
            for version in sorted((v for v in by_version if target_version < v <= current), reverse=True):
                self.rollback_migration(by_version[version])
