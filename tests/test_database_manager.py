import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

"""Tests for legalai.db.manager.DatabaseManager."""

import json
import logging
import sqlite3
import threading
import time

import pytest

from legalai.db import manager as manager_module
from legalai.db.manager import DatabaseManager, InitState, default_connection_factory
from legalai.resilience.errors import (
    ConnectionFailureError,
    DatabaseNotInitializedError,
    EngineBindingError,
    HealthProbeError,
)
from tests.conftest import SEED_COUNTS


def _file_open_fails(path):
    """Connection factory that cannot open files but can open :memory:."""
    if path == ":memory:":
        return default_connection_factory(path)
    raise sqlite3.OperationalError("unable to open database file")


def _always_fails(path):
    raise sqlite3.OperationalError("engine exhausted")


class TestBeforeInitialize:
    """Scenario: get_connection() before initialize()."""

    def test_get_connection_raises(self, manager):
        with pytest.raises(DatabaseNotInitializedError, match="not initialized"):
            manager.get_connection()

    def test_no_partial_state(self, manager, db_path):
        with pytest.raises(DatabaseNotInitializedError):
            manager.get_connection()
        assert manager.state is InitState.UNINITIALIZED
        assert manager.connections_created == 0
        assert not Path(db_path).exists()

    def test_get_stats_reports_disconnected(self, manager):
        stats = manager.get_stats()
        assert stats["connected"] is False
        assert stats["state"] == "uninitialized"
        assert stats["tables"] == {}
        assert stats["journal_mode"] is None

    def test_log_to_database_returns_false(self, manager):
        assert manager.log_to_database("info", "test", "dropped") is False


class TestInitialize:
    """Normal initialization against a file."""

    def test_fresh_filesystem_defaults(self, test_config, tmp_path):
        """Scenario: no overrides on a fresh filesystem."""
        mgr = DatabaseManager(config=test_config, production=False)
        try:
            mgr.initialize()
            stats = mgr.get_stats()
            assert stats["connected"] is True
            assert stats["is_memory_db"] is False
            assert mgr.db_path == str(tmp_path / "data" / "legal_ai.db")
            assert Path(mgr.db_path).exists()
        finally:
            mgr.close()

    def test_returns_ready_connection(self, manager):
        conn = manager.initialize()
        assert manager.state is InitState.READY
        assert manager.is_ready()
        assert manager.get_connection() is conn
        assert conn.execute("SELECT 1").fetchone()[0] == 1

    def test_second_call_returns_same_handle(self, manager):
        first = manager.initialize()
        assert manager.initialize() is first
        assert manager.connections_created == 1

    def test_pragmas_applied(self, manager):
        conn = manager.initialize()
        assert conn.execute("PRAGMA journal_mode").fetchone()[0].lower() == "wal"
        assert conn.execute("PRAGMA foreign_keys").fetchone()[0] == 1
        assert conn.execute("PRAGMA busy_timeout").fetchone()[0] == 30000

    def test_health_row_written(self, manager):
        conn = manager.initialize()
        assert conn.execute("SELECT COUNT(*) FROM health_check WHERE id = 1").fetchone()[0] == 1

    def test_path_override(self, manager, tmp_path):
        target = tmp_path / "override" / "other.db"
        manager.initialize(str(target))
        assert manager.db_path == str(target)

    def test_environment_path(self, test_config, tmp_path, monkeypatch):
        target = tmp_path / "env" / "from_env.db"
        monkeypatch.setenv("DATABASE_PATH", str(target))
        mgr = DatabaseManager(config=test_config, production=False)
        try:
            mgr.initialize()
            assert mgr.db_path == str(target)
        finally:
            mgr.close()

    def test_unwritable_directory_falls_back(self, test_config, tmp_path, monkeypatch, caplog):
        """Scenario: target directory unusable -> writable default, warning, READY."""
        blocker = tmp_path / "blocker"
        blocker.write_text("file, not dir", encoding="utf-8")
        workdir = tmp_path / "cwd"
        workdir.mkdir()
        monkeypatch.chdir(workdir)
        mgr = DatabaseManager(db_path=str(blocker / "sub" / "x.db"), config=test_config, production=False)
        try:
            with caplog.at_level(logging.WARNING):
                mgr.initialize()
            assert mgr.state is InitState.READY
            assert Path(mgr.db_path) == Path.cwd() / "legal_ai.db"
            assert mgr.is_memory_db is False
            assert any(r.levelno == logging.WARNING for r in caplog.records)
        finally:
            mgr.close()

    def test_explicit_memory_database(self, test_config):
        mgr = DatabaseManager(db_path=":memory:", config=test_config, production=False)
        try:
            mgr.initialize()
            assert mgr.is_memory_db is True
            assert mgr.degraded is False
        finally:
            mgr.close()


class TestConcurrentInitialize:
    """N concurrent initialize() calls create exactly one connection."""

    @pytest.mark.parametrize("n_threads", [1, 2, 8, 32])
    def test_single_connection_created(self, test_config, db_path, n_threads):
        created = []

        def slow_factory(path):
            time.sleep(0.05)
            conn = default_connection_factory(path)
            created.append(conn)
            return conn

        mgr = DatabaseManager(db_path=db_path, config=test_config, production=False,
                              connection_factory=slow_factory)
        barrier = threading.Barrier(n_threads)
        results, errors = [], []

        def worker():
            barrier.wait()
            try:
                results.append(mgr.initialize())
            except Exception as exc:  # collected for the assertion below
                errors.append(exc)

        threads = [threading.Thread(target=worker) for _ in range(n_threads)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        try:
            assert errors == []
            assert len(results) == n_threads
            assert mgr.connections_created == 1
            assert len(created) == 1
            assert all(conn is created[0] for conn in results)
        finally:
            mgr.close()

    def test_waiters_share_failure(self, test_config, db_path, monkeypatch):
        started = threading.Event()
        release = threading.Event()

        def blocked_engine():
            started.set()
            release.wait(timeout=10)
            raise EngineBindingError("binding broken")

        monkeypatch.setattr(manager_module, "verify_engine", blocked_engine)
        mgr = DatabaseManager(db_path=db_path, config=test_config, production=False)
        outcomes = []

        def first():
            try:
                mgr.initialize()
            except EngineBindingError as exc:
                outcomes.append(("first", exc))

        def waiter():
            try:
                mgr.initialize()
            except EngineBindingError as exc:
                outcomes.append(("waiter", exc))

        t1 = threading.Thread(target=first)
        t1.start()
        started.wait(timeout=10)
        t2 = threading.Thread(target=waiter)
        t2.start()
        time.sleep(0.2)
        release.set()
        t1.join(timeout=10)
        t2.join(timeout=10)

        assert sorted(name for name, _ in outcomes) == ["first", "waiter"]
        assert outcomes[0][1] is outcomes[1][1]
        assert mgr.state is InitState.FAILED


class TestFallbacks:
    """Connection failures, emergency fallback, fatal engine errors."""

    def test_file_open_failure_uses_memory_outside_production(self, test_config, db_path):
        mgr = DatabaseManager(db_path=db_path, config=test_config, production=False,
                              connection_factory=_file_open_fails)
        try:
            mgr.initialize()
            assert mgr.state is InitState.READY
            assert mgr.is_memory_db is True
            assert mgr.degraded is False
        finally:
            mgr.close()

    def test_production_failure_uses_emergency_database(self, test_config, db_path):
        mgr = DatabaseManager(db_path=db_path, config=test_config, production=True,
                              connection_factory=_file_open_fails)
        try:
            conn = mgr.initialize()
            assert mgr.state is InitState.READY
            assert mgr.degraded is True
            assert mgr.is_memory_db is True
            tables = {r[0] for r in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")}
            assert {"system_logs", "health_check"} <= tables
            assert "users" not in tables
            messages = [r[0] for r in conn.execute("SELECT message FROM system_logs")]
            assert "Emergency fallback engaged" in messages
            assert mgr.get_stats()["degraded"] is True
        finally:
            mgr.close()

    def test_health_check_failure_uses_emergency_database(self, manager, monkeypatch):
        def broken_probe(conn):
            raise HealthProbeError("mismatch")

        monkeypatch.setattr(manager_module, "run_health_probe", broken_probe)
        manager.initialize()
        assert manager.degraded is True

    def test_emergency_failure_propagates_original(self, test_config, db_path):
        mgr = DatabaseManager(db_path=db_path, config=test_config, production=True,
                              connection_factory=_always_fails)
        with pytest.raises(ConnectionFailureError):
            mgr.initialize()
        assert mgr.state is InitState.UNINITIALIZED
        with pytest.raises(DatabaseNotInitializedError):
            mgr.get_connection()

    def test_retry_after_emergency_failure(self, test_config, db_path):
        calls = {"n": 0}

        def flaky(path):
            calls["n"] += 1
            if calls["n"] <= 2:
                raise sqlite3.OperationalError("transient")
            return default_connection_factory(path)

        mgr = DatabaseManager(db_path=db_path, config=test_config, production=True, connection_factory=flaky)
        try:
            with pytest.raises(ConnectionFailureError):
                mgr.initialize()
            mgr.initialize()
            assert mgr.state is InitState.READY
            assert mgr.degraded is False
        finally:
            mgr.close()

    def test_engine_binding_failure_is_fatal(self, manager, monkeypatch):
        def broken_engine():
            raise EngineBindingError("binding broken")

        monkeypatch.setattr(manager_module, "verify_engine", broken_engine)
        with pytest.raises(EngineBindingError):
            manager.initialize()
        assert manager.state is InitState.FAILED
        assert manager.connections_created == 0

    def test_unexpected_factory_error_resets_state(self, test_config, db_path):
        calls = {"n": 0}

        def crashing(path):
            calls["n"] += 1
            if calls["n"] == 1:
                raise RuntimeError("driver crashed")
            return default_connection_factory(path)

        mgr = DatabaseManager(db_path=db_path, config=test_config, production=False, connection_factory=crashing)
        with pytest.raises(RuntimeError, match="driver crashed"):
            mgr.initialize()
        assert mgr.state is InitState.UNINITIALIZED

        result = {}

        def retry():
            result["conn"] = mgr.initialize()

        t = threading.Thread(target=retry)
        t.start()
        t.join(timeout=10)
        try:
            assert not t.is_alive()
            assert mgr.state is InitState.READY
            assert result["conn"] is mgr.get_connection()
        finally:
            mgr.close()

    def test_close_after_unexpected_error_does_not_block(self, test_config, db_path):
        def crashing(path):
            raise RuntimeError("driver crashed")

        mgr = DatabaseManager(db_path=db_path, config=test_config, production=False, connection_factory=crashing)
        with pytest.raises(RuntimeError):
            mgr.initialize()
        t = threading.Thread(target=mgr.close)
        t.start()
        t.join(timeout=10)
        assert not t.is_alive()
        assert mgr.state is InitState.UNINITIALIZED


class TestLogging:
    """log_to_database is best-effort."""

    def test_writes_row_with_metadata(self, manager):
        conn = manager.initialize()
        assert manager.log_to_database("warning", "training", "آموزش متوقف شد", {"model_id": 2}) is True
        row = conn.execute(
            "SELECT level, category, metadata FROM system_logs WHERE message = ?", ("آموزش متوقف شد",)
        ).fetchone()
        assert row["level"] == "warning"
        assert row["category"] == "training"
        assert json.loads(row["metadata"]) == {"model_id": 2}

    def test_constraint_violation_swallowed(self, manager, caplog):
        manager.initialize()
        with caplog.at_level(logging.WARNING, logger="legalai.db.manager"):
            assert manager.log_to_database("fatal", "test", "bad level") is False
        assert any("Failed to write system log" in r.getMessage() for r in caplog.records)

    def test_recreates_dropped_table(self, manager):
        conn = manager.initialize()
        conn.execute("DROP TABLE system_logs")
        conn.commit()
        assert manager.log_to_database("info", "test", "back again") is True


class TestIntrospection:
    """get_stats / health_check."""

    def test_stats_shape(self, manager):
        manager.initialize()
        stats = manager.get_stats()
        assert stats["state"] == "ready"
        assert stats["journal_mode"].lower() == "wal"
        assert set(stats["wal_checkpoint"]) == {"busy", "log_frames", "checkpointed_frames"}
        assert stats["tables"]["users"] is None
        assert stats["tables"]["system_logs"] >= 1

    def test_stats_after_migrate(self, memory_manager):
        tables = memory_manager.get_stats()["tables"]
        for table, expected in SEED_COUNTS.items():
            assert tables[table] == expected

    def test_health_check_round_trip(self, manager):
        conn = manager.initialize()
        result = manager.health_check()
        assert result["healthy"] is True
        stored = conn.execute("SELECT timestamp FROM health_check WHERE id = 1").fetchone()[0]
        assert result["timestamp"] == stored

    def test_health_check_never_raises(self, manager):
        result = manager.health_check()
        assert result["healthy"] is False
        assert "not initialized" in result["error"]


class TestClose:
    """close() releases the handle and permits re-initialization."""

    def test_close_resets_state(self, manager):
        manager.initialize()
        manager.close()
        assert manager.state is InitState.UNINITIALIZED
        with pytest.raises(DatabaseNotInitializedError):
            manager.get_connection()

    def test_close_is_idempotent(self, manager):
        manager.close()
        manager.initialize()
        manager.close()
        manager.close()
        assert manager.state is InitState.UNINITIALIZED

    def test_reinitialize_after_close(self, manager):
        first = manager.initialize()
        manager.close()
        second = manager.initialize()
        assert second is not first
        assert manager.connections_created == 2

    def test_shutdown_record_logged(self, manager, db_path):
        manager.initialize()
        manager.close()
        conn = sqlite3.connect(db_path)
        try:
            messages = [r[0] for r in conn.execute("SELECT message FROM system_logs")]
        finally:
            conn.close()
        assert "Database connection closing" in messages

    def test_close_clears_failed_state(self, manager, monkeypatch):
        def broken_engine():
            raise EngineBindingError("binding broken")

        monkeypatch.setattr(manager_module, "verify_engine", broken_engine)
        with pytest.raises(EngineBindingError):
            manager.initialize()
        manager.close()
        assert manager.state is InitState.UNINITIALIZED
