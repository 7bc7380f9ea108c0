"""Write+read round trip against the sentinel health table.

Used during initialize() to catch a silently broken engine before the
application starts, and as the body of DatabaseManager.health_check().
"""

import platform
import sqlite3
import time
from datetime import datetime, timezone
from typing import Any, Dict

from legalai.resilience.errors import HealthProbeError

HEALTH_TABLE_DDL = """
CREATE TABLE IF NOT EXISTS health_check (
    id INTEGER PRIMARY KEY,
    timestamp TEXT,
    runtime_version TEXT,
    abi_version TEXT
)
"""

SENTINEL_ID = 1


def run_health_probe(conn: sqlite3.Connection) -> Dict[str, Any]:
    """Upsert the sentinel row, read it back and compare.

    Raises:
        HealthProbeError: the row could not be read back or does not match.
        sqlite3.Error: the engine rejected the write.
    """
    start = time.time()
    written = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "runtime_version": f"{platform.python_implementation()} {platform.python_version()}",
        "abi_version": sqlite3.sqlite_version,
    }

    with conn:
        conn.execute(HEALTH_TABLE_DDL)
        conn.execute(
            "INSERT OR REPLACE INTO health_check (id, timestamp, runtime_version, abi_version) "
            "VALUES (?, ?, ?, ?)",
            (SENTINEL_ID, written["timestamp"], written["runtime_version"], written["abi_version"]),
        )

    row = conn.execute(
        "SELECT timestamp, runtime_version, abi_version FROM health_check WHERE id = ?",
        (SENTINEL_ID,),
    ).fetchone()
    if row is None:
        raise HealthProbeError("Health probe row missing after write")
    if row[0] != written["timestamp"]:
        raise HealthProbeError(
            f"Health probe mismatch: wrote {written['timestamp']!r}, read {row[0]!r}"
        )

    return {
        "healthy": True,
        "timestamp": row[0],
        "runtime_version": row[1],
        "abi_version": row[2],
        "latency_ms": int((time.time() - start) * 1000),
    }
