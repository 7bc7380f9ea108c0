"""
Database core configuration.
Loads settings from args/db_config.yaml with environment variable overrides.

Usage:
    from legalai.config import load_config

    config = load_config()                      # args/db_config.yaml + env
    config = load_config("/etc/legalai.yaml")   # explicit file
    pragmas = config["pragmas"]
"""

import copy
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

from legalai.resilience.errors import ConfigurationError

logger = logging.getLogger("legalai.config")

# Base directory: project root (2 levels up from this file)
BASE_DIR = Path(__file__).resolve().parent.parent
PACKAGE_DIR = Path(__file__).resolve().parent
DEFAULT_CONFIG_PATH = BASE_DIR / "args" / "db_config.yaml"

DEFAULTS: Dict[str, Any] = {
    "database": {
        "filename": "legal_ai.db",
        "data_dir": str(BASE_DIR / "data"),
        "production_data_dir": "/var/lib/legalai",
        "dir_mode": 0o755,
    },
    "pragmas": {
        "journal_mode": "WAL",
        "synchronous": "NORMAL",
        "cache_size": -64000,
        "foreign_keys": "ON",
        "temp_store": "MEMORY",
        "mmap_size": 268435456,
        "busy_timeout": 30000,
        "wal_autocheckpoint": 1000,
        "journal_size_limit": 67108864,
    },
    "migrations": {
        "schema_file": str(PACKAGE_DIR / "db" / "schema.sql"),
        "seed_file": str(PACKAGE_DIR / "db" / "seed.sql"),
        "migrations_dir": str(PACKAGE_DIR / "db" / "migrations"),
    },
    "backup": {
        "backup_dir": str(BASE_DIR / "data" / "backups"),
        "keep": 10,
    },
    "audit": {
        "output_dir": str(BASE_DIR / "audit" / "db"),
    },
    "dashboard": {
        "host": "127.0.0.1",
        "port": 5000,
        "debug": False,
    },
}


def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge *override* into a copy of *base*."""
    merged = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _load_yaml(filepath: Path) -> dict:
    """Load a YAML mapping, raising ConfigurationError on malformed input."""
    try:
        with open(filepath, "r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh) or {}
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Invalid YAML in {filepath}: {exc}", config_key=str(filepath)) from exc
    if not isinstance(data, dict):
        raise ConfigurationError(
            f"Expected a mapping at the top of {filepath}, got {type(data).__name__}",
            config_key=str(filepath),
        )
    return data


def _apply_env_overrides(config: dict) -> dict:
    data_dir = os.environ.get("LEGALAI_DATA_DIR")
    if data_dir:
        config["database"]["production_data_dir"] = data_dir

    backup_dir = os.environ.get("BACKUP_DIR")
    if backup_dir:
        config["backup"]["backup_dir"] = backup_dir

    port = os.environ.get("PORT")
    if port:
        try:
            config["dashboard"]["port"] = int(port)
        except ValueError:
            logger.warning("Ignoring non-integer PORT=%r", port)

    if os.environ.get("LEGALAI_DEBUG", "").lower() in ("1", "true", "yes"):
        config["dashboard"]["debug"] = True
    return config


def load_config(path: Optional[Union[str, Path]] = None) -> dict:
    """Return the merged configuration.

    Fallback chain for the file:
        1. explicit *path* argument
        2. LEGALAI_CONFIG env var
        3. <project_root>/args/db_config.yaml (skipped if absent)
    """
    config_path = Path(path) if path else Path(os.environ.get("LEGALAI_CONFIG", DEFAULT_CONFIG_PATH))

    loaded: dict = {}
    if config_path.exists():
        loaded = _load_yaml(config_path)
    elif path:
        raise ConfigurationError(f"Config file not found: {config_path}", config_key=str(config_path))

    return _apply_env_overrides(_deep_merge(DEFAULTS, loaded))
