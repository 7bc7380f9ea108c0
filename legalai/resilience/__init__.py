#!/usr/bin/env python3
"""Legal AI Resilience Package: structured error hierarchy.

Shared by the database core, the migration tooling, the audit harness and
the dashboard so that every layer classifies failures the same way.
"""

from legalai.resilience.errors import (  # noqa: F401
    AuditIsolationError,
    BackupError,
    ColumnEvolutionError,
    ConfigurationError,
    ConnectionFailureError,
    DatabaseError,
    DatabaseNotInitializedError,
    EngineBindingError,
    HealthProbeError,
    LegalAIError,
    LegalAIPermanentError,
    LegalAITransientError,
    MigrationFileError,
    PathResolutionError,
    SchemaApplicationError,
)
