#!/usr/bin/env python3
"""Legal AI Database Migration Runner.

Lightweight migration framework on the stdlib sqlite3 driver. Brings any
database (empty, partially migrated, or current) to the current schema in
six gated phases:

    1. migration tracking table (schema_migrations)
    2. base schema (schema.sql, CREATE ... IF NOT EXISTS) + required tables
    3. pending migrations/*.sql, lexicographic order, one transaction each
    4. column evolution for columns the seed depends on
    5. seed data (seed.sql, optional)
    6. validation smoke queries

migrate() never raises: it returns False and records the error in
``self.report`` so callers can continue with the existing schema.
"""

import hashlib
import logging
import re
import sqlite3
import time
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

from legalai.compat.db_utils import resolve_db_path
from legalai.db.columns import add_column_if_missing, has_column
from legalai.resilience.errors import (
    LegalAIError,
    MigrationFileError,
    SchemaApplicationError,
)

logger = logging.getLogger("legalai.db.migration")

DB_DIR = Path(__file__).resolve().parent
SCHEMA_FILE = DB_DIR / "schema.sql"
SEED_FILE = DB_DIR / "seed.sql"
MIGRATIONS_DIR = DB_DIR / "migrations"

SCHEMA_MIGRATIONS_DDL = """
CREATE TABLE IF NOT EXISTS schema_migrations (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    filename TEXT NOT NULL UNIQUE,
    applied_at TEXT DEFAULT (datetime('now')),
    checksum TEXT NOT NULL,
    execution_time_ms INTEGER,
    applied_by TEXT DEFAULT 'legalai-migrate'
);
"""

REQUIRED_TABLES: Tuple[str, ...] = (
    "users",
    "models",
    "datasets",
    "training_sessions",
    "training_logs",
    "settings",
)

# Columns seed.sql writes to that databases created by older releases lack.
SEED_REQUIRED_COLUMNS: Tuple[Tuple[str, str], ...] = (
    ("datasets", "description TEXT"),
    ("datasets", "type TEXT"),
)

SMOKE_TABLES: Tuple[str, ...] = ("users", "models", "datasets")

_VERSION_PREFIX = re.compile(r"^(\d+)_")


@dataclass
class MigrationReport:
    """Outcome of one migrate() run."""
    db_path: str = ""
    success: bool = False
    phases_completed: List[str] = field(default_factory=list)
    applied: List[str] = field(default_factory=list)
    columns_added: List[str] = field(default_factory=list)
    seeded: bool = False
    validation: Dict[str, int] = field(default_factory=dict)
    error: Optional[str] = None
    duration_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class MigrationRunner:
    """Schema bootstrapper and forward-only migration runner.

    Works either on its own file connection (``db_path``) or on a live
    connection handed in by the caller (``conn``), which is the only way to
    migrate an in-memory database.
    """

    def __init__(
        self,
        db_path: Optional[Union[str, Path]] = None,
        migrations_dir: Optional[Union[str, Path]] = None,
        schema_file: Optional[Union[str, Path]] = None,
        seed_file: Optional[Union[str, Path]] = None,
        conn: Optional[sqlite3.Connection] = None,
    ):
        self.conn = conn
        if conn is not None:
            self.db_path = str(db_path) if db_path else _connection_path(conn)
        else:
            self.db_path = resolve_db_path(db_path)
        self.migrations_dir = Path(migrations_dir) if migrations_dir else MIGRATIONS_DIR
        self.schema_file = Path(schema_file) if schema_file else SCHEMA_FILE
        self.seed_file = Path(seed_file) if seed_file else SEED_FILE
        self.report = MigrationReport(db_path=self.db_path)
        self._active: Optional[sqlite3.Connection] = None

    # ------------------------------------------------------------------
    # Connection helpers
    # ------------------------------------------------------------------
    def _get_connection(self) -> sqlite3.Connection:
        """Get a SQLite connection with WAL mode and row factory."""
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        conn.execute("PRAGMA busy_timeout=30000")
        return conn

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        """Yield the caller's connection, the run's connection, or a fresh one."""
        if self.conn is not None:
            yield self.conn
        elif self._active is not None:
            yield self._active
        else:
            conn = self._get_connection()
            try:
                yield conn
            finally:
                conn.close()

    @contextmanager
    def _session(self) -> Iterator[None]:
        """Hold one connection open for every phase of a run."""
        if self.conn is not None or self._active is not None:
            yield
            return
        self._active = self._get_connection()
        try:
            yield
        finally:
            self._active.close()
            self._active = None

    @staticmethod
    def _run_script(conn: sqlite3.Connection, sql: str, commit: bool = True):
        """Run a multi-statement script inside an explicit transaction.

        executescript() commits any pending transaction first, so the BEGIN
        is part of the script. On failure the transaction is rolled back
        and the error re-raised.
        """
        script = f"BEGIN;\n{sql}\n;"
        if commit:
            script += "\nCOMMIT;"
        try:
            conn.executescript(script)
        except sqlite3.Error:
            if conn.in_transaction:
                conn.rollback()
            raise

    @staticmethod
    def _file_checksum(file_path: Path) -> str:
        """Compute SHA-256 checksum of a file."""
        h = hashlib.sha256()
        with open(file_path, "rb") as f:
            for chunk in iter(lambda: f.read(8192), b""):
                h.update(chunk)
        return h.hexdigest()[:16]

    # ------------------------------------------------------------------
    # Phase 1: tracking table
    # ------------------------------------------------------------------
    def ensure_migrations_table(self):
        """Create the schema_migrations table if it doesn't exist."""
        with self._connect() as conn:
            conn.executescript(SCHEMA_MIGRATIONS_DDL)
            conn.commit()

    def has_migrations_table(self) -> bool:
        """Check if the schema_migrations table exists."""
        if self.conn is None and self._active is None and not Path(self.db_path).exists():
            return False
        with self._connect() as conn:
            return _table_exists(conn, "schema_migrations")

    # ------------------------------------------------------------------
    # Phase 2: base schema
    # ------------------------------------------------------------------
    def apply_base_schema(self):
        """Apply schema.sql in one transaction and verify the required tables.

        Raises:
            SchemaApplicationError: file unreadable, DDL failed, or a
                required table is still missing afterwards.
        """
        try:
            sql = self.schema_file.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise SchemaApplicationError(f"Cannot read schema file {self.schema_file}: {exc}") from exc

        with self._connect() as conn:
            try:
                self._run_script(conn, sql)
            except sqlite3.Error as exc:
                raise SchemaApplicationError(f"Base schema failed: {exc}") from exc

            missing = [t for t in REQUIRED_TABLES if not _table_exists(conn, t)]
            if missing:
                raise SchemaApplicationError(f"Required tables missing after schema: {', '.join(missing)}")

            if not has_column(conn, "datasets", "description"):
                logger.warning("datasets.description is missing; it will be added before seeding")
        logger.info("Base schema applied (%d required tables present)", len(REQUIRED_TABLES))

    # ------------------------------------------------------------------
    # Phase 3: migration files
    # ------------------------------------------------------------------
    def discover_migrations(self) -> List[Dict[str, Any]]:
        """Discover all *.sql migration files, sorted by filename."""
        migrations = []
        if not self.migrations_dir.is_dir():
            return migrations

        for entry in sorted(self.migrations_dir.iterdir(), key=lambda p: p.name):
            if not entry.is_file() or entry.suffix != ".sql":
                continue
            migrations.append({
                "filename": entry.name,
                "path": entry,
                "checksum": self._file_checksum(entry),
            })
        return migrations

    def get_applied_migrations(self) -> List[Dict]:
        """Return the tracking rows, oldest filename first."""
        if not self.has_migrations_table():
            return []
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT filename, applied_at, checksum, execution_time_ms, applied_by "
                "FROM schema_migrations ORDER BY filename"
            ).fetchall()
            return [dict(r) for r in rows]

    def get_pending_migrations(self) -> List[Dict]:
        """Return list of migrations not yet applied."""
        applied = {m["filename"] for m in self.get_applied_migrations()}
        return [m for m in self.discover_migrations() if m["filename"] not in applied]

    def apply_migration(self, migration: Dict) -> Dict:
        """Apply one migration file and record it, atomically.

        The DDL and the tracking row share one transaction: on failure
        neither survives.

        Returns: {filename, success, execution_time_ms | error}
        """
        filename = migration["filename"]
        logger.info("Applying migration %s...", filename)

        try:
            sql = Path(migration["path"]).read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            logger.error("Migration %s unreadable: %s", filename, exc)
            return {"filename": filename, "success": False, "error": str(exc)}

        start = time.time()
        with self._connect() as conn:
            try:
                self._run_script(conn, sql, commit=False)
                elapsed_ms = int((time.time() - start) * 1000)
                conn.execute(
                    "INSERT INTO schema_migrations (filename, checksum, execution_time_ms) "
                    "VALUES (?, ?, ?)",
                    (filename, migration.get("checksum", ""), elapsed_ms),
                )
                conn.commit()
            except sqlite3.Error as exc:
                if conn.in_transaction:
                    conn.rollback()
                logger.error("Migration %s failed: %s", filename, exc)
                return {"filename": filename, "success": False, "error": str(exc)}

        logger.info("Migration %s applied in %dms", filename, elapsed_ms)
        return {"filename": filename, "success": True, "execution_time_ms": elapsed_ms}

    def migrate_up(self) -> List[Dict]:
        """Apply all pending migrations, stopping at the first failure."""
        self.ensure_migrations_table()
        pending = self.get_pending_migrations()
        if not pending:
            logger.info("No pending migrations.")
            return []

        results = []
        for migration in pending:
            result = self.apply_migration(migration)
            results.append(result)
            if not result["success"]:
                logger.error("Migration failed, stopping.")
                break
        return results

    # ------------------------------------------------------------------
    # Phase 4: column evolution
    # ------------------------------------------------------------------
    def evolve_columns(self) -> List[str]:
        """Add every column the seed depends on. Raises ColumnEvolutionError."""
        added = []
        with self._connect() as conn:
            for table, column_sql in SEED_REQUIRED_COLUMNS:
                if add_column_if_missing(conn, table, column_sql):
                    added.append(f"{table}.{column_sql.split()[0]}")
        return added

    # ------------------------------------------------------------------
    # Phase 5: seed
    # ------------------------------------------------------------------
    def apply_seed(self) -> bool:
        """Apply seed.sql in one transaction. A missing seed file is not an error."""
        if not self.seed_file.exists():
            logger.info("No seed file at %s, skipping", self.seed_file)
            return False
        try:
            sql = self.seed_file.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise SchemaApplicationError(f"Cannot read seed file {self.seed_file}: {exc}") from exc

        with self._connect() as conn:
            try:
                self._run_script(conn, sql)
            except sqlite3.Error as exc:
                raise SchemaApplicationError(f"Seed failed: {exc}") from exc
        logger.info("Seed data applied from %s", self.seed_file.name)
        return True

    # ------------------------------------------------------------------
    # Phase 6: validation
    # ------------------------------------------------------------------
    def validate(self) -> Dict[str, int]:
        """Smoke-test the migrated database. Returns row counts."""
        with self._connect() as conn:
            missing = [t for t in REQUIRED_TABLES if not _table_exists(conn, t)]
            if missing:
                raise SchemaApplicationError(f"Validation failed, missing tables: {', '.join(missing)}")
            if not has_column(conn, "datasets", "description"):
                raise SchemaApplicationError("Validation failed, datasets.description is missing")
            try:
                return {
                    table: conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
                    for table in SMOKE_TABLES
                }
            except sqlite3.Error as exc:
                raise SchemaApplicationError(f"Validation query failed: {exc}") from exc

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------
    def migrate(self) -> bool:
        """Run all six phases. Returns True on success, never raises."""
        self.report = MigrationReport(db_path=self.db_path)
        start = time.time()
        logger.info("Migrating database %s", self.db_path)

        try:
            with self._session():
                self.ensure_migrations_table()
                self.report.phases_completed.append("tracking_table")

                self.apply_base_schema()
                self.report.phases_completed.append("base_schema")

                for result in self.migrate_up():
                    if not result["success"]:
                        raise MigrationFileError(
                            f"Migration {result['filename']} failed: {result['error']}",
                            filename=result["filename"],
                        )
                    self.report.applied.append(result["filename"])
                self.report.phases_completed.append("migrations")

                self.report.columns_added = self.evolve_columns()
                self.report.phases_completed.append("column_evolution")

                self.report.seeded = self.apply_seed()
                self.report.phases_completed.append("seed")

                self.report.validation = self.validate()
                self.report.phases_completed.append("validation")
        except (LegalAIError, sqlite3.Error, OSError) as exc:
            self.report.error = str(exc)
            self.report.duration_ms = int((time.time() - start) * 1000)
            logger.error("Migration of %s failed: %s", self.db_path, exc)
            return False

        self.report.success = True
        self.report.duration_ms = int((time.time() - start) * 1000)
        logger.info(
            "Migration complete: %d applied, %d columns added, counts %s",
            len(self.report.applied), len(self.report.columns_added), self.report.validation,
        )
        return True

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------
    def validate_checksums(self) -> List[Dict]:
        """Validate that applied migration files haven't been modified."""
        discovered = {m["filename"]: m for m in self.discover_migrations()}
        issues = []

        for m in self.get_applied_migrations():
            filename = m["filename"]
            current = discovered.get(filename)
            if not current:
                issues.append({
                    "filename": filename,
                    "issue": "migration_file_missing",
                    "detail": f"Migration {filename} was applied but the file no longer exists",
                })
                continue
            # mark_applied() without a file records an empty checksum
            if m["checksum"] and current["checksum"] != m["checksum"]:
                issues.append({
                    "filename": filename,
                    "issue": "checksum_mismatch",
                    "detail": f"Expected {m['checksum']}, found {current['checksum']}",
                })
        return issues

    def get_status(self) -> Dict:
        """Get full migration status."""
        applied = self.get_applied_migrations()
        pending = self.get_pending_migrations()
        return {
            "db_path": self.db_path,
            "migrations_dir": str(self.migrations_dir),
            "has_migrations_table": self.has_migrations_table(),
            "applied_count": len(applied),
            "pending_count": len(pending),
            "applied": applied,
            "pending": [m["filename"] for m in pending],
            "issues": self.validate_checksums() if applied else [],
            "current": applied[-1]["filename"] if applied else None,
        }

    def create_migration(self, name: str) -> str:
        """Scaffold the next NNNN_slug.sql file. Returns its path."""
        self.migrations_dir.mkdir(parents=True, exist_ok=True)

        last = 0
        for m in self.discover_migrations():
            match = _VERSION_PREFIX.match(m["filename"])
            if match:
                last = max(last, int(match.group(1)))

        slug = re.sub(r"[^a-z0-9]+", "_", name.lower()).strip("_") or "migration"
        filename = f"{last + 1:04d}_{slug}.sql"
        path = self.migrations_dir / filename
        path.write_text(
            f"-- Migration: {filename}\n"
            f"-- Created: {datetime.now(timezone.utc).strftime('%Y-%m-%d')}\n\n"
            "-- Add your schema changes here\n",
            encoding="utf-8",
        )
        logger.info("Created migration scaffold: %s", path)
        return str(path)

    def mark_applied(self, filename: str) -> bool:
        """Record *filename* as applied without running it.

        Returns True if a tracking row was inserted, False if already present.
        """
        self.ensure_migrations_table()
        path = self.migrations_dir / filename
        checksum = self._file_checksum(path) if path.is_file() else ""
        with self._connect() as conn:
            cur = conn.execute(
                "INSERT OR IGNORE INTO schema_migrations (filename, checksum, execution_time_ms, applied_by) "
                "VALUES (?, ?, 0, 'mark-applied')",
                (filename, checksum),
            )
            conn.commit()
            inserted = cur.rowcount > 0
        if inserted:
            logger.info("Marked %s as applied", filename)
        return inserted


def _table_exists(conn: sqlite3.Connection, table: str) -> bool:
    row = conn.execute(
        "SELECT 1 FROM sqlite_master WHERE type='table' AND name=?", (table,)
    ).fetchone()
    return row is not None


def _connection_path(conn: sqlite3.Connection) -> str:
    """File behind *conn*'s main database, or ':memory:'."""
    for row in conn.execute("PRAGMA database_list").fetchall():
        if row[1] == "main":
            return row[2] or ":memory:"
    return ":memory:"
