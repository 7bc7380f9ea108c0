"""Legal AI compatibility helpers.

Centralizes filesystem decisions (where the database lives, whether a
directory is usable) so the rest of the package never hardcodes paths.
"""
from legalai.compat.db_utils import (  # noqa: F401
    DEFAULT_DB_NAME,
    ensure_writable_dir,
    get_project_root,
    is_memory_path,
    is_production_mode,
    resolve_db_path,
)
