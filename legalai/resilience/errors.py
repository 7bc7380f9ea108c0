#!/usr/bin/env python3
"""Legal AI Resilience: Structured Exception Hierarchy.

Every failure the database core can surface is categorized here so callers
can decide between "recover", "degrade" and "give up" without string
matching on messages.

Usage:
    from legalai.resilience.errors import DatabaseNotInitializedError

    try:
        conn = manager.get_connection()
    except DatabaseNotInitializedError:
        return jsonify({"error": "service unavailable"}), 503
"""


class LegalAIError(Exception):
    """Base exception for all Legal AI dashboard errors.

    Attributes:
        service: Name of the subsystem that raised (e.g. "database").
        retryable: Whether the caller should retry the operation.
    """

    def __init__(self, message: str, service: str = "", retryable: bool = False):
        super().__init__(message)
        self.service = service
        self.retryable = retryable


class LegalAITransientError(LegalAIError):
    """Transient error: the operation may succeed on retry."""

    def __init__(self, message: str, service: str = "", retryable: bool = True):
        super().__init__(message, service=service, retryable=retryable)


class LegalAIPermanentError(LegalAIError):
    """Permanent error: retrying will not help."""

    def __init__(self, message: str, service: str = "", retryable: bool = False):
        super().__init__(message, service=service, retryable=retryable)


class ConfigurationError(LegalAIPermanentError):
    """Configuration error: missing or invalid configuration."""

    def __init__(self, message: str, config_key: str = ""):
        super().__init__(message, service="config", retryable=False)
        self.config_key = config_key


# ---------------------------------------------------------------------------
# Database lifecycle
# ---------------------------------------------------------------------------

class DatabaseError(LegalAIError):
    """Base for database lifecycle errors."""

    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message, service="database", retryable=retryable)


class PathResolutionError(DatabaseError):
    """The database directory could not be created or is not writable.

    Never escapes the path resolver; it is logged and replaced by the
    working-directory fallback.
    """


class EngineBindingError(DatabaseError):
    """The SQLite binding failed its own in-memory smoke test. Fatal."""


class ConnectionFailureError(DatabaseError):
    """The database file could not be opened."""

    def __init__(self, message: str, db_path: str = ""):
        super().__init__(message, retryable=True)
        self.db_path = db_path


class DatabaseNotInitializedError(DatabaseError):
    """get_connection() was called before initialize() completed."""

    def __init__(self, message: str = "Database not initialized. Call initialize() first."):
        super().__init__(message, retryable=True)


class HealthProbeError(DatabaseError):
    """The write+read round trip against the health table did not match."""


# ---------------------------------------------------------------------------
# Schema / migration
# ---------------------------------------------------------------------------

class SchemaApplicationError(DatabaseError):
    """The base schema could not be applied or verified."""


class MigrationFileError(DatabaseError):
    """A migration file failed; its transaction was rolled back."""

    def __init__(self, message: str, filename: str = ""):
        super().__init__(message)
        self.filename = filename


class ColumnEvolutionError(DatabaseError):
    """A required column could not be added. Seeding must not proceed."""

    def __init__(self, message: str, table: str = "", column: str = ""):
        super().__init__(message)
        self.table = table
        self.column = column


# ---------------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------------

class AuditIsolationError(LegalAIPermanentError):
    """An audit run would overlap the production database or another run."""

    def __init__(self, message: str):
        super().__init__(message, service="audit", retryable=False)


# ---------------------------------------------------------------------------
# Backup
# ---------------------------------------------------------------------------

class BackupError(DatabaseError):
    """A backup could not be created, verified or restored."""

    def __init__(self, message: str, path: str = ""):
        super().__init__(message)
        self.path = path
