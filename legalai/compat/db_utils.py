#!/usr/bin/env python3
"""Centralized database path resolution for the Legal AI dashboard.

Decides where the SQLite file lives with a consistent fallback chain and
never raises: if the chosen directory cannot be created or written to, the
current working directory is used instead and a warning is logged.

Usage:
    from legalai.compat.db_utils import resolve_db_path

    db_path = resolve_db_path()                    # env var or mode default
    db_path = resolve_db_path("/custom/path.db")   # explicit override

Fallback chain:
    1. Explicit path argument (if provided)
    2. DATABASE_PATH environment variable
    3. DB_PATH environment variable
    4. Production mode: <production_data_dir>/legal_ai.db
       Otherwise:       <project_root>/data/legal_ai.db
    5. Directory missing or not writable: <cwd>/legal_ai.db

compute_db_path() applies steps 1-4 only and has no side effects.
"""

import logging
import os
import uuid
from pathlib import Path
from typing import Optional, Tuple, Union

from legalai.resilience.errors import PathResolutionError

logger = logging.getLogger("legalai.compat.db_utils")

# Project root: 3 levels up from legalai/compat/db_utils.py
_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent

DEFAULT_DB_NAME = "legal_ai.db"
DEFAULT_DIR_MODE = 0o755
MEMORY_PATH = ":memory:"

PATH_ENV_VARS = ("DATABASE_PATH", "DB_PATH")
MODE_ENV_VARS = ("LEGALAI_ENV", "APP_ENV")


def get_project_root() -> Path:
    """Return the project root directory."""
    return _PROJECT_ROOT


def is_production_mode() -> bool:
    """True when the deployment-mode flag selects production."""
    for var in MODE_ENV_VARS:
        value = os.environ.get(var)
        if value:
            return value.strip().lower() == "production"
    return False


def is_memory_path(path: Union[str, Path]) -> bool:
    return str(path) == MEMORY_PATH or str(path).startswith("file::memory:")


def ensure_writable_dir(directory: Path, mode: int = DEFAULT_DIR_MODE) -> Path:
    """Create *directory* if needed and prove it is writable with a real write.

    Raises:
        PathResolutionError: if the directory cannot be created or written.
    """
    try:
        if not directory.exists():
            directory.mkdir(parents=True, exist_ok=True)
            os.chmod(directory, mode)
            logger.info("Created database directory: %s", directory)
        if not directory.is_dir():
            raise PathResolutionError(f"Not a directory: {directory}")

        probe = directory / f".write_probe_{uuid.uuid4().hex[:8]}"
        with open(probe, "w", encoding="utf-8") as fh:
            fh.write("ok")
        probe.unlink()
    except PathResolutionError:
        raise
    except OSError as exc:
        raise PathResolutionError(f"Directory {directory} is not usable: {exc}") from exc
    return directory


def _mode_default_dir(production: bool, config: Optional[dict]) -> Path:
    db_cfg = (config or {}).get("database", {})
    if production:
        return Path(db_cfg.get("production_data_dir", "/var/lib/legalai"))
    return Path(db_cfg.get("data_dir", _PROJECT_ROOT / "data"))


def _parse_dir_mode(value) -> int:
    """Directory mode from config: an int, or an octal string like "755"/"0o755"."""
    if value is None:
        return DEFAULT_DIR_MODE
    if isinstance(value, bool):
        logger.warning("Invalid dir_mode %r; using %o", value, DEFAULT_DIR_MODE)
        return DEFAULT_DIR_MODE
    if isinstance(value, int):
        return value
    try:
        return int(str(value).strip(), 8)
    except ValueError:
        logger.warning("Invalid dir_mode %r; using %o", value, DEFAULT_DIR_MODE)
        return DEFAULT_DIR_MODE


def compute_db_path(
    explicit: Optional[Union[str, Path]] = None,
    production: Optional[bool] = None,
    config: Optional[dict] = None,
) -> Tuple[str, str]:
    """Pick the database path without touching the filesystem.

    Returns:
        ``(path, source)`` where source names the winning rule
        (``argument``, an env var name, or ``default``).
    """
    db_cfg = (config or {}).get("database", {})
    filename = db_cfg.get("filename", DEFAULT_DB_NAME)

    if explicit:
        return _normalize(explicit), "argument"
    for var in PATH_ENV_VARS:
        env_path = os.environ.get(var)
        if env_path:
            return _normalize(env_path), var
    if production is None:
        production = is_production_mode()
    return _normalize(_mode_default_dir(production, config) / filename), "default"


def _normalize(path: Union[str, Path]) -> str:
    if is_memory_path(path):
        return str(path)
    return str(Path(path).expanduser())


def resolve_db_path(
    explicit: Optional[Union[str, Path]] = None,
    production: Optional[bool] = None,
    config: Optional[dict] = None,
) -> str:
    """Resolve the database file path and make sure its directory is usable.

    Args:
        explicit: Optional explicit path override (highest priority).
        production: Deployment mode; read from LEGALAI_ENV/APP_ENV when None.
        config: Loaded configuration (``legalai.config.load_config()``).

    Returns:
        A usable path string. ``":memory:"`` is passed through untouched.
    """
    db_cfg = (config or {}).get("database", {})
    filename = db_cfg.get("filename", DEFAULT_DB_NAME)
    dir_mode = _parse_dir_mode(db_cfg.get("dir_mode"))

    path, source = compute_db_path(explicit, production=production, config=config)
    if is_memory_path(path):
        return path

    candidate = Path(path)
    try:
        ensure_writable_dir(candidate.parent, mode=dir_mode)
    except PathResolutionError as exc:
        fallback = Path.cwd() / filename
        logger.warning(
            "Database directory setup failed (%s from %s): %s; using fallback %s",
            candidate, source, exc, fallback,
        )
        return str(fallback)

    logger.debug("Resolved database path %s (from %s)", candidate, source)
    return str(candidate)
