import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

"""Tests for legalai.db.pragmas and legalai.db.health."""

import sqlite3

import pytest

from legalai.db.health import run_health_probe
from legalai.db.pragmas import PRAGMA_ORDER, apply_pragmas, read_pragmas


@pytest.fixture
def file_conn(tmp_path):
    conn = sqlite3.connect(str(tmp_path / "tuned.db"))
    yield conn
    conn.close()


class TestApplyPragmas:
    """Tuning applied in order, failures recorded not raised."""

    def test_file_database_switches_to_wal(self, file_conn):
        result = apply_pragmas(file_conn)
        assert result["failed"] == []
        assert str(result["applied"]["journal_mode"]).lower() == "wal"

    def test_values_read_back(self, file_conn):
        apply_pragmas(file_conn)
        current = read_pragmas(file_conn)
        assert current["foreign_keys"] == 1
        assert current["busy_timeout"] == 30000
        assert current["cache_size"] == -64000
        assert current["synchronous"] == 1   # NORMAL
        assert current["temp_store"] == 2    # MEMORY

    def test_settings_override_defaults(self, file_conn):
        apply_pragmas(file_conn, {"cache_size": -2000, "not_a_pragma": 5})
        assert read_pragmas(file_conn)["cache_size"] == -2000

    def test_memory_database_keeps_memory_journal(self):
        conn = sqlite3.connect(":memory:")
        result = apply_pragmas(conn)
        conn.close()
        assert str(result["applied"]["journal_mode"]).lower() == "memory"

    def test_closed_connection_never_raises(self):
        conn = sqlite3.connect(":memory:")
        conn.close()
        result = apply_pragmas(conn)
        assert result["applied"] == {}
        assert len(result["failed"]) == len(PRAGMA_ORDER)


class TestHealthProbe:
    """Write+read round trip on the sentinel row."""

    def test_round_trip_returns_written_value(self):
        conn = sqlite3.connect(":memory:")
        result = run_health_probe(conn)
        stored = conn.execute("SELECT timestamp, abi_version FROM health_check WHERE id = 1").fetchone()
        conn.close()
        assert result["healthy"] is True
        assert result["timestamp"] == stored[0]
        assert result["abi_version"] == sqlite3.sqlite_version == stored[1]

    def test_repeated_check_keeps_single_row(self):
        conn = sqlite3.connect(":memory:")
        run_health_probe(conn)
        run_health_probe(conn)
        count = conn.execute("SELECT COUNT(*) FROM health_check").fetchone()[0]
        conn.close()
        assert count == 1

    def test_check_on_closed_connection_raises(self):
        conn = sqlite3.connect(":memory:")
        conn.close()
        with pytest.raises(sqlite3.Error):
            run_health_probe(conn)
