"""SQLite tuning for container / multi-process deployment.

Pragmas are an optimization, not a correctness requirement: every failure
is logged as a warning and recorded in the returned report, and nothing
here raises.
"""

import logging
import sqlite3
from typing import Any, Dict, List, Optional, Tuple

logger = logging.getLogger("legalai.db.pragmas")

# Order matters: synchronous=NORMAL is only durable once WAL is active.
PRAGMA_ORDER: Tuple[str, ...] = (
    "journal_mode",
    "synchronous",
    "cache_size",
    "foreign_keys",
    "temp_store",
    "mmap_size",
    "busy_timeout",
    "wal_autocheckpoint",
    "journal_size_limit",
)

DEFAULT_PRAGMAS: Dict[str, Any] = {
    "journal_mode": "WAL",
    "synchronous": "NORMAL",
    "cache_size": -64000,           # negative => KiB, ~64 MB
    "foreign_keys": "ON",
    "temp_store": "MEMORY",
    "mmap_size": 268435456,         # 256 MiB
    "busy_timeout": 30000,          # ms
    "wal_autocheckpoint": 1000,     # pages
    "journal_size_limit": 67108864,  # 64 MiB
}

INSPECTED_PRAGMAS: Tuple[str, ...] = PRAGMA_ORDER + ("encoding", "page_size", "user_version")


def apply_pragmas(conn: sqlite3.Connection, settings: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Apply the tuning pragmas to *conn* in a fixed order.

    Returns:
        {"applied": {name: value reported by SQLite}, "failed": [{pragma, error}]}
    """
    values = dict(DEFAULT_PRAGMAS)
    if settings:
        values.update({k: v for k, v in settings.items() if k in DEFAULT_PRAGMAS})

    applied: Dict[str, Any] = {}
    failed: List[Dict[str, str]] = []

    for name in PRAGMA_ORDER:
        value = values[name]
        try:
            row = conn.execute(f"PRAGMA {name}={value}").fetchone()
            applied[name] = row[0] if row else value
        except sqlite3.Error as exc:
            logger.warning("Pragma %s=%s failed: %s", name, value, exc)
            failed.append({"pragma": f"{name}={value}", "error": str(exc)})

    # In-memory databases report "memory" and cannot switch to WAL.
    mode = str(applied.get("journal_mode", "")).lower()
    if mode and mode != str(values["journal_mode"]).lower():
        logger.warning("journal_mode is %s, expected %s", mode, values["journal_mode"])

    if failed:
        logger.warning("%d of %d pragmas failed", len(failed), len(PRAGMA_ORDER))
    else:
        logger.debug("Database optimizations applied: %s", applied)
    return {"applied": applied, "failed": failed}


def read_pragmas(conn: sqlite3.Connection, names: Tuple[str, ...] = INSPECTED_PRAGMAS) -> Dict[str, Any]:
    """Read back current pragma values (None where a pragma is unsupported)."""
    current: Dict[str, Any] = {}
    for name in names:
        try:
            row = conn.execute(f"PRAGMA {name}").fetchone()
            current[name] = row[0] if row else None
        except sqlite3.Error:
            current[name] = None
    return current
