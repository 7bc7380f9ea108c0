#!/usr/bin/env python3
"""Backup and restore for the Legal AI database.

Backups are taken with the sqlite3 online backup() API, so they are
consistent even while the dashboard holds the database open in WAL mode.
Each backup file gets two sidecars:

    legal_ai_<timestamp>.db.bak
    legal_ai_<timestamp>.db.bak.sha256      "<hex>  <name>"
    legal_ai_<timestamp>.db.bak.meta.json   source, size, checksum, tables

Restore first copies the current database to ``<db>.before-restore`` and
rolls back to it if the restored file fails its integrity check.

Usage:
    legalai-db-backup --backup [--db-path PATH] [--output-dir DIR] [--json]
    legalai-db-backup --verify --backup-file FILE [--json]
    legalai-db-backup --list [--backup-dir DIR] [--json]
    legalai-db-backup --cleanup [--keep 10] [--json]
    legalai-db-backup --restore --backup-file FILE [--db-path PATH] [--json]
"""

import argparse
import hashlib
import json
import logging
import os
import sqlite3
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Union

from legalai.compat.db_utils import compute_db_path, is_memory_path, resolve_db_path
from legalai.config import BASE_DIR, load_config
from legalai.persistence.safe_writer import safe_write_json
from legalai.resilience.errors import BackupError, LegalAIError

logger = logging.getLogger("legalai.db.backup")

LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"

BACKUP_SUFFIX = ".db.bak"
SHA_SUFFIX = ".sha256"
META_SUFFIX = ".meta.json"
PRE_RESTORE_SUFFIX = ".before-restore"

PathLike = Union[str, Path]


def _iso_timestamp() -> str:
    """Filename-safe UTC timestamp; microseconds keep rapid backups distinct."""
    return datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")


def _compute_sha256(file_path: Path) -> str:
    h = hashlib.sha256()
    with open(file_path, "rb") as f:
        for chunk in iter(lambda: f.read(8192), b""):
            h.update(chunk)
    return h.hexdigest()


def _sidecar(path: Path, suffix: str) -> Path:
    return path.with_name(path.name + suffix)


def _online_copy(src_path: Path, dst_path: Path):
    """Copy one SQLite database into another through the backup API."""
    src = sqlite3.connect(str(src_path))
    try:
        dst = sqlite3.connect(str(dst_path))
        try:
            src.backup(dst)
        finally:
            dst.close()
    finally:
        src.close()


def _inspect(db_path: Path) -> Dict:
    """integrity_check result plus per-table row counts."""
    conn = sqlite3.connect(str(db_path))
    try:
        integrity = conn.execute("PRAGMA integrity_check").fetchone()[0]
        names = [
            r[0] for r in conn.execute(
                "SELECT name FROM sqlite_master WHERE type='table' AND name NOT LIKE 'sqlite_%' ORDER BY name"
            ).fetchall()
        ]
        tables = {name: conn.execute(f'SELECT COUNT(*) FROM "{name}"').fetchone()[0] for name in names}
    finally:
        conn.close()
    return {"integrity_check": integrity, "tables": tables}


class BackupManager:
    """Create, verify, list, prune and restore database backups.

    Args:
        config: Loaded configuration; ``load_config()`` when None.
        db_path: Database to back up or restore into. Defaults to the path
            the dashboard would resolve.
        backup_dir: Where backups live; config ``backup.backup_dir``.
    """

    def __init__(
        self,
        config: Optional[dict] = None,
        db_path: Optional[PathLike] = None,
        backup_dir: Optional[PathLike] = None,
    ):
        self._config = config if config is not None else load_config()
        backup_cfg = self._config.get("backup", {})
        configured = Path(backup_cfg.get("backup_dir", "data/backups"))
        if not configured.is_absolute():
            configured = BASE_DIR / configured
        self.backup_dir = Path(backup_dir) if backup_dir else configured
        self.keep = int(backup_cfg.get("keep", 10))
        self._db_path = Path(db_path) if db_path else None

    @property
    def db_path(self) -> Path:
        if self._db_path is None:
            path, _ = compute_db_path(config=self._config)
            self._db_path = Path(path)
        return self._db_path

    # ------------------------------------------------------------------
    # Backup
    # ------------------------------------------------------------------
    def backup(self, output_dir: Optional[PathLike] = None) -> Dict:
        """Online backup of the database into *output_dir* (default backup_dir)."""
        source = self.db_path
        if is_memory_path(source):
            raise BackupError("Cannot back up an in-memory database", path=str(source))
        source = source.resolve()
        if not source.is_file():
            raise BackupError(f"Database not found: {source}", path=str(source))

        dest_dir = Path(output_dir) if output_dir else self.backup_dir
        dest_dir.mkdir(parents=True, exist_ok=True)
        backup_path = dest_dir / f"{source.stem}_{_iso_timestamp()}{BACKUP_SUFFIX}"

        logger.info("Backing up %s -> %s", source, backup_path)
        try:
            _online_copy(source, backup_path)
        except sqlite3.Error as exc:
            if backup_path.exists():
                backup_path.unlink()
            raise BackupError(f"Backup of {source} failed: {exc}", path=str(source)) from exc

        checksum = _compute_sha256(backup_path)
        _sidecar(backup_path, SHA_SUFFIX).write_text(f"{checksum}  {backup_path.name}\n", encoding="utf-8")
        meta = {
            "db_path": str(source),
            "backup_path": str(backup_path),
            "checksum_sha256": checksum,
            "size_bytes": backup_path.stat().st_size,
            "created_at": datetime.now(timezone.utc).isoformat(),
            "tables": _inspect(backup_path)["tables"],
        }
        safe_write_json(_sidecar(backup_path, META_SUFFIX), meta)
        logger.info("Backup created: %s (%d bytes)", backup_path.name, meta["size_bytes"])
        return meta

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------
    def verify(self, backup_path: PathLike) -> Dict:
        """Check the SHA-256 sidecar and run PRAGMA integrity_check."""
        backup_path = Path(backup_path).resolve()
        if not backup_path.is_file():
            raise BackupError(f"Backup file not found: {backup_path}", path=str(backup_path))

        result = {
            "backup_path": str(backup_path),
            "checksum_valid": None,
            "integrity_valid": None,
            "tables": {},
            "errors": [],
        }

        sha_file = _sidecar(backup_path, SHA_SUFFIX)
        if sha_file.exists():
            content = sha_file.read_text(encoding="utf-8").strip()
            expected = content.split()[0] if content else ""
            result["checksum_valid"] = _compute_sha256(backup_path) == expected
            if not result["checksum_valid"]:
                result["errors"].append("SHA-256 checksum mismatch")
        else:
            result["errors"].append("SHA-256 sidecar file not found")

        try:
            inspected = _inspect(backup_path)
            result["integrity_valid"] = inspected["integrity_check"] == "ok"
            result["tables"] = inspected["tables"]
            if not result["integrity_valid"]:
                result["errors"].append(f"SQLite integrity check failed: {inspected['integrity_check']}")
        except sqlite3.Error as exc:
            result["integrity_valid"] = False
            result["errors"].append(f"SQLite error: {exc}")

        result["valid"] = not result["errors"]
        return result

    # ------------------------------------------------------------------
    # Listing and cleanup
    # ------------------------------------------------------------------
    def list_backups(self, backup_dir: Optional[PathLike] = None) -> List[Dict]:
        """Backups in *backup_dir*, newest first."""
        scan_dir = Path(backup_dir) if backup_dir else self.backup_dir
        if not scan_dir.is_dir():
            return []

        records = []
        for path in scan_dir.glob(f"*{BACKUP_SUFFIX}"):
            meta_file = _sidecar(path, META_SUFFIX)
            record = {"backup_path": str(path), "size_bytes": path.stat().st_size}
            if meta_file.exists():
                try:
                    record.update(json.loads(meta_file.read_text(encoding="utf-8")))
                except (json.JSONDecodeError, OSError) as exc:
                    logger.warning("Unreadable backup metadata %s: %s", meta_file, exc)
            records.append(record)
        # Timestamped names sort chronologically.
        records.sort(key=lambda r: Path(r["backup_path"]).name, reverse=True)
        return records

    def cleanup(self, keep: Optional[int] = None, backup_dir: Optional[PathLike] = None) -> Dict:
        """Delete all but the newest *keep* backups along with their sidecars."""
        keep = self.keep if keep is None else keep
        if keep < 0:
            raise BackupError(f"keep must be >= 0, got {keep}")

        backups = self.list_backups(backup_dir)
        removed = []
        for record in backups[keep:]:
            path = Path(record["backup_path"])
            for target in (path, _sidecar(path, SHA_SUFFIX), _sidecar(path, META_SUFFIX)):
                if target.exists():
                    target.unlink()
            removed.append(path.name)
            logger.info("Deleted old backup %s", path.name)
        return {"kept": min(len(backups), keep), "removed": removed}

    # ------------------------------------------------------------------
    # Restore
    # ------------------------------------------------------------------
    def restore(self, backup_path: PathLike, db_path: Optional[PathLike] = None) -> Dict:
        """Replace the database with *backup_path*.

        The backup is verified first. The current database is saved to
        ``<db>.before-restore`` and put back if the restored file fails its
        integrity check.

        Raises:
            BackupError: the backup is invalid or the restore was rolled back.
        """
        check = self.verify(backup_path)
        if not check["valid"]:
            raise BackupError(
                f"Refusing to restore invalid backup: {'; '.join(check['errors'])}", path=str(backup_path)
            )

        target = Path(resolve_db_path(db_path or self.db_path, config=self._config))
        source = Path(check["backup_path"])

        pre_restore = None
        if target.exists():
            pre_restore = _sidecar(target, PRE_RESTORE_SUFFIX)
            _online_copy(target, pre_restore)
            logger.info("Created safety backup: %s", pre_restore)

        try:
            _online_copy(source, target)
            inspected = _inspect(target)
            if inspected["integrity_check"] != "ok":
                raise BackupError(f"Restored database failed integrity check: {inspected['integrity_check']}",
                                  path=str(target))
        except (BackupError, sqlite3.Error) as exc:
            logger.error("Restore of %s failed: %s", target, exc)
            if pre_restore is not None:
                _online_copy(pre_restore, target)
                logger.warning("Rolled back %s from %s", target, pre_restore)
            if isinstance(exc, BackupError):
                raise
            raise BackupError(f"Restore of {target} failed: {exc}", path=str(target)) from exc

        logger.info("Restored %s from %s", target, source.name)
        return {
            "backup_path": str(source),
            "db_path": str(target),
            "pre_restore_path": str(pre_restore) if pre_restore else None,
            "integrity_ok": True,
            "tables": inspected["tables"],
            "restored_at": datetime.now(timezone.utc).isoformat(),
        }


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def _print_output(data, as_json: bool, label: str = "Result"):
    if as_json:
        print(json.dumps(data, indent=2, default=str, ensure_ascii=False))
        return
    print(f"\n--- {label} ---")
    if isinstance(data, list):
        for i, item in enumerate(data, 1):
            print(f"  [{i}] {Path(item['backup_path']).name} ({item.get('size_bytes', 0)} bytes)")
        if not data:
            print("  (none)")
    else:
        for key, value in data.items():
            print(f"  {key}: {value}")
    print()


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Legal AI database backup/restore tool")
    ops = parser.add_mutually_exclusive_group(required=True)
    ops.add_argument("--backup", action="store_true", help="Create a backup")
    ops.add_argument("--verify", action="store_true", help="Verify a backup file")
    ops.add_argument("--list", action="store_true", help="List backups, newest first")
    ops.add_argument("--cleanup", action="store_true", help="Delete all but the newest --keep backups")
    ops.add_argument("--restore", action="store_true", help="Restore a backup over the database")

    parser.add_argument("--db-path", help="Database file (default: resolved like the dashboard)")
    parser.add_argument("--backup-file", help="Backup file for --verify/--restore")
    parser.add_argument("--backup-dir", help="Backup directory (default: config backup.backup_dir)")
    parser.add_argument("--output-dir", help="Directory for --backup (default: backup directory)")
    parser.add_argument("--keep", type=int, help="Backups to keep for --cleanup (default: config backup.keep)")
    parser.add_argument("--config", help="Config file (default: args/db_config.yaml)")
    parser.add_argument("--json", action="store_true", help="JSON output")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        format=LOG_FORMAT,
    )

    if (args.verify or args.restore) and not args.backup_file:
        _print_output({"error": "--backup-file is required"}, args.json, "Error")
        return 2

    try:
        manager = BackupManager(config=load_config(args.config), db_path=args.db_path, backup_dir=args.backup_dir)
        if args.backup:
            _print_output(manager.backup(output_dir=args.output_dir), args.json, "Backup Created")
        elif args.verify:
            result = manager.verify(args.backup_file)
            _print_output(result, args.json, "Verification Result")
            return 0 if result["valid"] else 1
        elif args.list:
            _print_output(manager.list_backups(), args.json, "Backups")
        elif args.cleanup:
            _print_output(manager.cleanup(keep=args.keep), args.json, "Cleanup Result")
        elif args.restore:
            _print_output(manager.restore(args.backup_file), args.json, "Restore Result")
    except (LegalAIError, sqlite3.Error, OSError) as exc:
        _print_output({"error": str(exc)}, args.json, "Error")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
