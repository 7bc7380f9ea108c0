#!/usr/bin/env python3
"""Shared pytest fixtures for the Legal AI database test suite.

Every test gets a clean database environment (no DATABASE_PATH, DB_PATH or
deployment-mode variables leaking in from the shell) and a configuration
whose directories all live under tmp_path.
"""

import sqlite3
import sys
from pathlib import Path

import pytest

# Ensure project root is on sys.path
BASE_DIR = Path(__file__).resolve().parent.parent
if str(BASE_DIR) not in sys.path:
    sys.path.insert(0, str(BASE_DIR))

from legalai.config import DEFAULTS, _deep_merge  # noqa: E402
from legalai.db.manager import DatabaseManager  # noqa: E402

DB_ENV_VARS = (
    "DATABASE_PATH",
    "DB_PATH",
    "LEGALAI_ENV",
    "APP_ENV",
    "LEGALAI_CONFIG",
    "LEGALAI_DATA_DIR",
    "PORT",
    "LEGALAI_DEBUG",
    "BACKUP_DIR",
)

# Row counts produced by legalai/db/seed.sql
SEED_COUNTS = {"users": 1, "models": 3, "datasets": 5, "settings": 6}


@pytest.fixture(autouse=True)
def clean_db_env(monkeypatch):
    """Strip database-related environment variables for every test."""
    for var in DB_ENV_VARS:
        monkeypatch.delenv(var, raising=False)


@pytest.fixture
def test_config(tmp_path):
    """Configuration with every directory redirected under tmp_path."""
    return _deep_merge(DEFAULTS, {
        "database": {
            "data_dir": str(tmp_path / "data"),
            "production_data_dir": str(tmp_path / "prod"),
        },
        "audit": {"output_dir": str(tmp_path / "audit")},
        "backup": {"backup_dir": str(tmp_path / "backups")},
    })


@pytest.fixture
def db_path(tmp_path):
    """Path for a not-yet-created database file."""
    return str(tmp_path / "data" / "legal_ai.db")


@pytest.fixture
def manager(test_config, db_path):
    """Uninitialized DatabaseManager pointed at a scratch file; closed afterwards."""
    mgr = DatabaseManager(db_path=db_path, config=test_config, production=False)
    yield mgr
    mgr.close()


@pytest.fixture
def memory_manager(test_config):
    """Initialized, migrated in-memory DatabaseManager."""
    mgr = DatabaseManager(db_path=":memory:", config=test_config, production=False)
    mgr.initialize()
    assert mgr.migrate()
    yield mgr
    mgr.close()


def table_names(path) -> set:
    """Names of all tables in the database file at *path*."""
    conn = sqlite3.connect(str(path))
    try:
        rows = conn.execute("SELECT name FROM sqlite_master WHERE type='table'").fetchall()
        return {r[0] for r in rows}
    finally:
        conn.close()
