#!/usr/bin/env python3
"""Legal AI Database Migration CLI.

Usage:
    legalai-migrate --up [--json]
    legalai-migrate --status [--json]
    legalai-migrate --validate [--json]
    legalai-migrate --create "add_feature_table"
    legalai-migrate --mark-applied 0002_models_created_by.sql
    legalai-migrate --up --db-path /tmp/scratch.db
"""

import argparse
import json
import logging
import os
import sys

from legalai.compat.db_utils import resolve_db_path
from legalai.config import load_config
from legalai.db.migration_runner import MigrationRunner
from legalai.resilience.errors import ConfigurationError

LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"


def _format_status(status: dict) -> str:
    """Format migration status for human-readable output."""
    lines = [
        f"Database: {status['db_path']}",
        f"Migrations dir: {status['migrations_dir']}",
        f"Migrations table: {'exists' if status['has_migrations_table'] else 'missing'}",
        f"Current: {status['current'] or 'none'}",
        f"Applied: {status['applied_count']}  |  Pending: {status['pending_count']}",
    ]

    if status["applied"]:
        lines.append("\nApplied migrations:")
        for m in status["applied"]:
            lines.append(f"  {m['filename']} (applied {m['applied_at']})")

    if status["pending"]:
        lines.append("\nPending migrations:")
        for filename in status["pending"]:
            lines.append(f"  {filename}")

    if status["issues"]:
        lines.append("\nIssues:")
        for issue in status["issues"]:
            lines.append(f"  {issue['filename']} {issue['issue']}: {issue['detail']}")

    return "\n".join(lines)


def build_runner(db_path=None, config=None) -> MigrationRunner:
    config = config or load_config()
    paths = config.get("migrations", {})
    return MigrationRunner(
        db_path=resolve_db_path(db_path, config=config),
        migrations_dir=paths.get("migrations_dir"),
        schema_file=paths.get("schema_file"),
        seed_file=paths.get("seed_file"),
    )


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Legal AI Database Migration Tool")
    parser.add_argument("--db-path", help="Database file path (default: resolved from env/config)")
    parser.add_argument("--config", help="Config file (default: args/db_config.yaml)")
    parser.add_argument("--status", action="store_true", help="Show migration status")
    parser.add_argument("--up", action="store_true", help="Run schema, pending migrations and seed")
    parser.add_argument("--validate", action="store_true", help="Validate migration checksums")
    parser.add_argument("--create", metavar="NAME", help="Create new migration scaffold")
    parser.add_argument("--mark-applied", metavar="FILE", help="Mark migration file as applied")
    parser.add_argument("--json", action="store_true", help="JSON output")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        format=LOG_FORMAT,
    )

    try:
        runner = build_runner(args.db_path, load_config(args.config))
    except ConfigurationError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return 2

    # ---- Status ----
    if args.status:
        status = runner.get_status()
        if args.json:
            print(json.dumps(status, indent=2, default=str))
        else:
            print(_format_status(status))
        return 0

    # ---- Validate ----
    if args.validate:
        runner.ensure_migrations_table()
        issues = runner.validate_checksums()
        if args.json:
            print(json.dumps({"issues": issues, "valid": len(issues) == 0}, indent=2))
        elif issues:
            print("Validation FAILED:")
            for issue in issues:
                print(f"  {issue['filename']} {issue['issue']}: {issue['detail']}")
        else:
            print("All migration checksums valid.")
        return 1 if issues else 0

    # ---- Create ----
    if args.create:
        path = runner.create_migration(args.create)
        if args.json:
            print(json.dumps({"created": path}, indent=2))
        else:
            print(f"Created migration: {path}")
        return 0

    # ---- Mark Applied ----
    if args.mark_applied:
        inserted = runner.mark_applied(args.mark_applied)
        if args.json:
            print(json.dumps({"marked_applied": args.mark_applied, "inserted": inserted}))
        elif inserted:
            print(f"Marked migration {args.mark_applied} as applied.")
        else:
            print(f"Migration {args.mark_applied} was already recorded.")
        return 0

    # ---- Migrate Up ----
    if args.up:
        ok = runner.migrate()
        report = runner.report
        if args.json:
            print(json.dumps(report.to_dict(), indent=2, default=str))
        elif ok:
            print(f"[{report.db_path}] migrated in {report.duration_ms}ms")
            for filename in report.applied:
                print(f"  applied {filename}")
            for column in report.columns_added:
                print(f"  added column {column}")
            print(f"  row counts: {report.validation}")
        else:
            print(f"[{report.db_path}] FAILED after {report.phases_completed or ['start']}: {report.error}")
        return 0 if ok else 1

    parser.print_help()
    return 0


if __name__ == "__main__":
    sys.exit(main())
