"""Idempotent "add column if missing" for SQLite tables.

Only ever adds. Never drops, renames or retypes a column.
"""

import logging
import re
import sqlite3
from typing import Dict, List

from legalai.resilience.errors import ColumnEvolutionError

logger = logging.getLogger("legalai.db.columns")

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _check_identifier(name: str, kind: str) -> str:
    if not _IDENTIFIER.match(name or ""):
        raise ColumnEvolutionError(f"Invalid {kind} name: {name!r}")
    return name


def list_columns(conn: sqlite3.Connection, table: str) -> List[Dict[str, str]]:
    """Return [{table, name, type}] for *table* via PRAGMA table_info."""
    _check_identifier(table, "table")
    rows = conn.execute(f"PRAGMA table_info({table})").fetchall()
    return [{"table": table, "name": row[1], "type": row[2]} for row in rows]


def has_column(conn: sqlite3.Connection, table: str, column: str) -> bool:
    """Check if a column exists in a table."""
    return any(col["name"] == column for col in list_columns(conn, table))


def add_column_if_missing(conn: sqlite3.Connection, table: str, column_sql: str) -> bool:
    """Add ``column_sql`` (e.g. ``"description TEXT"``) to *table* if absent.

    Returns:
        True if the column was added, False if it already existed.

    Raises:
        ColumnEvolutionError: bad identifiers, ALTER failure, or the column is
            still missing after the ALTER.
    """
    _check_identifier(table, "table")
    tokens = column_sql.strip().split()
    if not tokens:
        raise ColumnEvolutionError("Empty column definition", table=table)
    column = _check_identifier(tokens[0], "column")

    if has_column(conn, table, column):
        logger.debug("Column %s.%s already exists", table, column)
        return False

    if not list_columns(conn, table):
        raise ColumnEvolutionError(f"Table {table} does not exist", table=table, column=column)

    logger.info("Adding column %s to table %s", column, table)
    try:
        conn.execute(f"ALTER TABLE {table} ADD COLUMN {column_sql.strip()}")
        conn.commit()
    except sqlite3.Error as exc:
        raise ColumnEvolutionError(
            f"Failed to add column {column} to {table}: {exc}", table=table, column=column
        ) from exc

    if not has_column(conn, table, column):
        raise ColumnEvolutionError(
            f"Column {column} was not added to table {table}", table=table, column=column
        )
    return True
