#!/usr/bin/env python3
"""Legal AI Dashboard: HTTP surface over the database core.

Exposes liveness and database statistics. The DatabaseManager is built
once in main() and injected into create_app().

Usage:
    legalai-dashboard [--config FILE] [--port 5000] [--debug]
"""

import argparse
import logging
import os
import sqlite3

from flask import Flask, jsonify

from legalai.compat.db_utils import resolve_db_path
from legalai.config import load_config
from legalai.db.manager import DatabaseManager
from legalai.db.migration_runner import MigrationRunner
from legalai.resilience.errors import DatabaseNotInitializedError, LegalAIError

logger = logging.getLogger("legalai.dashboard")

LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------


def create_app(manager: DatabaseManager, config: dict = None) -> Flask:
    app = Flask(__name__)
    app.config["LEGALAI"] = config or {}
    app.extensions["legalai_db"] = manager

    @app.errorhandler(DatabaseNotInitializedError)
    def _db_unavailable(exc):
        return jsonify({"error": "service unavailable", "detail": str(exc)}), 503

    @app.route("/api/health")
    def api_health():
        result = manager.health_check()
        return jsonify(result), 200 if result.get("healthy") else 503

    @app.route("/api/stats")
    def api_stats():
        stats = manager.get_stats()
        return jsonify(stats), 200 if stats["connected"] else 503

    return app


# ---------------------------------------------------------------------------
# Composition root
# ---------------------------------------------------------------------------


def main(argv=None):
    pre = argparse.ArgumentParser(add_help=False)
    pre.add_argument("--config", help="Config file (default: args/db_config.yaml)")
    known, _ = pre.parse_known_args(argv)
    config = load_config(known.config)
    dashboard_cfg = config["dashboard"]

    parser = argparse.ArgumentParser(description="Legal AI Dashboard", parents=[pre])
    parser.add_argument("--host", default=dashboard_cfg["host"], help="Interface to bind")
    parser.add_argument("--port", type=int, default=dashboard_cfg["port"], help="Port to run on")
    parser.add_argument("--debug", action="store_true", default=dashboard_cfg["debug"], help="Enable debug mode")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        format=LOG_FORMAT,
    )

    # Resolved once so the migration and the manager share one file.
    db_path = resolve_db_path(config=config)

    paths = config["migrations"]
    runner = MigrationRunner(
        db_path=db_path,
        migrations_dir=paths["migrations_dir"],
        schema_file=paths["schema_file"],
        seed_file=paths["seed_file"],
    )
    if not runner.migrate():
        logger.warning("Migration failed (%s); continuing with existing schema", runner.report.error)

    manager = DatabaseManager(db_path=db_path, config=config)
    try:
        manager.initialize()
    except (LegalAIError, sqlite3.Error) as exc:
        logger.critical("Database unavailable, refusing to start: %s", exc)
        raise SystemExit(1)

    if manager.is_memory_db:
        # The migration above ran against the file; the fallback needs its own.
        manager.migrate()

    app = create_app(manager, config)
    logger.info("Starting on http://%s:%d (database: %s)", args.host, args.port, manager.db_path)
    try:
        app.run(host=args.host, port=args.port, debug=args.debug)
    finally:
        manager.close()


if __name__ == "__main__":
    main()
