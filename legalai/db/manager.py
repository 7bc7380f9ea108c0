#!/usr/bin/env python3
"""Legal AI Database Manager.

Owns the single process-wide SQLite connection and its lifecycle:

    UNINITIALIZED -> INITIALIZING -> READY
                                  -> READY (degraded, emergency in-memory DB)
                                  -> FAILED (engine binding broken)
    READY -> close() -> UNINITIALIZED

initialize() resolves the path, smoke-tests the sqlite3 binding, opens the
connection, applies pragmas and runs the health probe. Concurrent callers
wait for the in-flight attempt and share its outcome.

The manager is constructed by the composition root and passed to whoever
needs it; there is no module-level instance.

Usage:
    from legalai.db.manager import DatabaseManager

    manager = DatabaseManager()
    manager.initialize()
    conn = manager.get_connection()
"""

import enum
import json
import logging
import sqlite3
import threading
from typing import Any, Callable, Dict, Optional

from legalai.compat.db_utils import MEMORY_PATH, is_memory_path, is_production_mode, resolve_db_path
from legalai.config import load_config
from legalai.db.health import HEALTH_TABLE_DDL, run_health_probe
from legalai.db.migration_runner import MigrationRunner
from legalai.db.pragmas import apply_pragmas
from legalai.resilience.errors import (
    ConnectionFailureError,
    DatabaseNotInitializedError,
    EngineBindingError,
    LegalAIError,
)

logger = logging.getLogger("legalai.db.manager")

SYSTEM_LOGS_DDL = """
CREATE TABLE IF NOT EXISTS system_logs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    level TEXT NOT NULL CHECK (level IN ('info', 'warning', 'error', 'debug')),
    category TEXT,
    message TEXT NOT NULL,
    metadata TEXT,
    timestamp DATETIME DEFAULT CURRENT_TIMESTAMP
)
"""

KNOWN_TABLES = (
    "users",
    "models",
    "datasets",
    "training_sessions",
    "training_logs",
    "settings",
    "system_logs",
)

ConnectionFactory = Callable[[str], sqlite3.Connection]


class InitState(enum.Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    FAILED = "failed"


def default_connection_factory(path: str) -> sqlite3.Connection:
    """Open *path* for shared use across the dashboard's threads."""
    conn = sqlite3.connect(path, timeout=30, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    return conn


def verify_engine():
    """Prove the sqlite3 binding works with a throwaway in-memory database.

    Raises:
        EngineBindingError: the binding cannot open, write or read.
    """
    try:
        probe = sqlite3.connect(MEMORY_PATH)
        try:
            probe.execute("CREATE TABLE _connection_test (id INTEGER PRIMARY KEY, value TEXT)")
            probe.execute("INSERT INTO _connection_test (value) VALUES ('ok')")
            row = probe.execute("SELECT value FROM _connection_test").fetchone()
        finally:
            probe.close()
    except sqlite3.Error as exc:
        raise EngineBindingError(f"SQLite engine smoke test failed: {exc}") from exc
    if row is None or row[0] != "ok":
        raise EngineBindingError("SQLite engine smoke test returned unexpected data")
    logger.debug("SQLite engine %s verified", sqlite3.sqlite_version)


class DatabaseManager:
    """Single-connection guard for the dashboard database.

    Args:
        db_path: Explicit path (``":memory:"`` allowed); resolved via
            ``resolve_db_path`` when None.
        config: Loaded configuration; ``load_config()`` when None.
        production: Deployment mode; read from the environment when None.
        connection_factory: Opens a connection for a path. Tests inject a
            counting factory here.
    """

    def __init__(
        self,
        db_path: Optional[str] = None,
        config: Optional[dict] = None,
        production: Optional[bool] = None,
        connection_factory: Optional[ConnectionFactory] = None,
    ):
        self._requested_path = db_path
        self._config = config if config is not None else load_config()
        self._production = production
        self._factory = connection_factory or default_connection_factory

        self._cond = threading.Condition()
        self._write_lock = threading.RLock()
        self._state = InitState.UNINITIALIZED
        self._attempt = 0
        self._last_error: Optional[BaseException] = None

        self._conn: Optional[sqlite3.Connection] = None
        self._db_path: Optional[str] = None
        self._is_memory = False
        self._degraded = False
        self.connections_created = 0

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------
    @property
    def state(self) -> InitState:
        return self._state

    @property
    def db_path(self) -> Optional[str]:
        return self._db_path

    @property
    def is_memory_db(self) -> bool:
        return self._is_memory

    @property
    def degraded(self) -> bool:
        return self._degraded

    def is_ready(self) -> bool:
        return self._state is InitState.READY

    def _is_production(self) -> bool:
        return is_production_mode() if self._production is None else self._production

    # ------------------------------------------------------------------
    # Initialization
    # ------------------------------------------------------------------
    def initialize(self, path_override: Optional[str] = None) -> sqlite3.Connection:
        """Bring the manager to READY and return the connection.

        Raises:
            EngineBindingError: the sqlite3 binding is broken (state FAILED).
            LegalAIError / sqlite3.Error: initialization and the emergency
                fallback both failed (state UNINITIALIZED, retry allowed).
            Any other exception propagates with the state reset the same way.
        """
        with self._cond:
            if self._state is InitState.READY:
                return self._conn
            if self._state is InitState.INITIALIZING:
                attempt = self._attempt
                while self._state is InitState.INITIALIZING and self._attempt == attempt:
                    self._cond.wait()
                if self._state is InitState.READY:
                    return self._conn
                raise self._last_error or DatabaseNotInitializedError()
            self._state = InitState.INITIALIZING
            self._attempt += 1
            self._last_error = None

        try:
            conn, db_path, is_memory, degraded = self._run_initialization(path_override)
        except EngineBindingError as exc:
            logger.critical("Database engine unusable: %s", exc)
            self._finish(InitState.FAILED, error=exc)
            raise
        except BaseException as exc:
            # Any other failure, including KeyboardInterrupt, must release waiters.
            self._finish(InitState.UNINITIALIZED, error=exc)
            raise

        with self._cond:
            self._conn = conn
            self._db_path = db_path
            self._is_memory = is_memory
            self._degraded = degraded
        self._finish(InitState.READY)

        if degraded:
            logger.warning("Database running in DEGRADED mode (emergency in-memory fallback)")
        else:
            logger.info("Database initialized at %s%s", db_path, " (in-memory)" if is_memory else "")
        self.log_to_database("info", "database", "Database initialized", {
            "db_path": db_path, "in_memory": is_memory, "degraded": degraded,
        })
        return conn

    def _finish(self, state: InitState, error: Optional[BaseException] = None):
        with self._cond:
            self._state = state
            self._last_error = error
            self._cond.notify_all()

    def _open(self, path: str) -> sqlite3.Connection:
        conn = self._factory(path)
        self.connections_created += 1
        return conn

    def _run_initialization(self, path_override: Optional[str]):
        production = self._is_production()
        db_path = resolve_db_path(
            path_override or self._requested_path, production=production, config=self._config
        )
        verify_engine()

        conn = None
        try:
            conn, db_path, is_memory = self._open_primary(db_path, production)
            apply_pragmas(conn, self._config.get("pragmas"))
            run_health_probe(conn)
            return conn, db_path, is_memory, False
        except (LegalAIError, sqlite3.Error, OSError) as exc:
            logger.error("Database initialization failed: %s", exc)
            if conn is not None:
                conn.close()
            return self._emergency_fallback(exc)

    def _open_primary(self, db_path: str, production: bool):
        try:
            return self._open(db_path), db_path, is_memory_path(db_path)
        except (sqlite3.Error, OSError) as exc:
            if production:
                raise ConnectionFailureError(
                    f"Cannot open database {db_path}: {exc}", db_path=db_path
                ) from exc
            logger.warning("Cannot open %s (%s); falling back to in-memory database", db_path, exc)
            return self._open(MEMORY_PATH), MEMORY_PATH, True

    def _emergency_fallback(self, original: BaseException):
        """Bare in-memory DB holding only the logging and health tables."""
        logger.warning("Creating emergency in-memory database")
        try:
            conn = self._open(MEMORY_PATH)
            conn.execute(SYSTEM_LOGS_DDL)
            conn.execute(HEALTH_TABLE_DDL)
            conn.execute(
                "INSERT INTO system_logs (level, category, message, metadata) VALUES (?, ?, ?, ?)",
                ("error", "database", "Emergency fallback engaged",
                 json.dumps({"error": str(original)}, ensure_ascii=False)),
            )
            conn.commit()
        except (sqlite3.Error, OSError) as exc:
            logger.critical("Emergency database creation failed: %s", exc)
            raise original from exc
        return conn, MEMORY_PATH, True, True

    # ------------------------------------------------------------------
    # Access
    # ------------------------------------------------------------------
    def get_connection(self) -> sqlite3.Connection:
        """Return the live connection or raise DatabaseNotInitializedError."""
        if self._state is not InitState.READY or self._conn is None:
            raise DatabaseNotInitializedError()
        return self._conn

    def log_to_database(
        self,
        level: str,
        category: str,
        message: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Best-effort write to system_logs. Never raises."""
        try:
            conn = self.get_connection()
            with self._write_lock, conn:
                conn.execute(SYSTEM_LOGS_DDL)
                conn.execute(
                    "INSERT INTO system_logs (level, category, message, metadata) VALUES (?, ?, ?, ?)",
                    (level, category, message,
                     json.dumps(metadata, ensure_ascii=False, default=str) if metadata is not None else None),
                )
            return True
        except (LegalAIError, sqlite3.Error, TypeError, ValueError) as exc:
            logger.warning("Failed to write system log (%s/%s): %s", level, category, exc)
            return False

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------
    def get_stats(self) -> Dict[str, Any]:
        """Connection facts and per-table row counts (None if table absent).

        Before initialize() (or after close()) returns ``connected=False``
        with empty tables instead of raising.
        """
        stats: Dict[str, Any] = {
            "connected": self.is_ready(),
            "is_memory_db": self._is_memory,
            "degraded": self._degraded,
            "state": self._state.value,
            "db_path": self._db_path,
            "journal_mode": None,
            "wal_checkpoint": None,
            "tables": {},
        }
        if not stats["connected"] or self._conn is None:
            stats["connected"] = False
            return stats
        conn = self.get_connection()

        stats["journal_mode"] = conn.execute("PRAGMA journal_mode").fetchone()[0]
        if str(stats["journal_mode"]).lower() == "wal":
            busy, log_frames, checkpointed = conn.execute("PRAGMA wal_checkpoint(PASSIVE)").fetchone()
            stats["wal_checkpoint"] = {
                "busy": busy, "log_frames": log_frames, "checkpointed_frames": checkpointed,
            }

        existing = {
            row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'").fetchall()
        }
        for table in KNOWN_TABLES:
            if table in existing:
                stats["tables"][table] = conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
            else:
                stats["tables"][table] = None
        return stats

    def health_check(self) -> Dict[str, Any]:
        """Run the write+read probe. Never raises."""
        base = {"state": self._state.value, "degraded": self._degraded, "is_memory_db": self._is_memory}
        try:
            conn = self.get_connection()
            with self._write_lock:
                result = run_health_probe(conn)
        except (LegalAIError, sqlite3.Error) as exc:
            logger.warning("Health check failed: %s", exc)
            return {"healthy": False, "error": str(exc), **base}
        return {**result, **base}

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------
    def migrate(self, runner: Optional[MigrationRunner] = None) -> bool:
        """Run migrations against the live connection.

        The only way to migrate the in-memory fallback database.
        """
        conn = self.get_connection()
        if runner is None:
            paths = self._config.get("migrations", {})
            runner = MigrationRunner(
                db_path=self._db_path,
                migrations_dir=paths.get("migrations_dir"),
                schema_file=paths.get("schema_file"),
                seed_file=paths.get("seed_file"),
                conn=conn,
            )
        with self._write_lock:
            return runner.migrate()

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------
    def close(self):
        """Release the connection and return to UNINITIALIZED. Idempotent."""
        with self._cond:
            while self._state is InitState.INITIALIZING:
                self._cond.wait()
            conn = self._conn
            if conn is None:
                if self._state is InitState.FAILED:
                    self._state = InitState.UNINITIALIZED
                return

        self.log_to_database("info", "database", "Database connection closing")
        with self._write_lock:
            try:
                conn.close()
            except sqlite3.Error as exc:
                logger.warning("Error closing database: %s", exc)

        with self._cond:
            self._conn = None
            self._db_path = None
            self._is_memory = False
            self._degraded = False
            self._state = InitState.UNINITIALIZED
            self._cond.notify_all()
        logger.info("Database connection closed")
