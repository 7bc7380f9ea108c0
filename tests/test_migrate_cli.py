import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

"""Tests for the legalai-migrate command line."""

import json

from legalai.db import migrate
from tests.conftest import table_names


class TestMigrateCli:
    def test_up_json(self, tmp_path, capsys):
        db = tmp_path / "cli.db"
        assert migrate.main(["--up", "--db-path", str(db), "--json"]) == 0
        report = json.loads(capsys.readouterr().out)
        assert report["success"] is True
        assert report["applied"] == ["0001_training_indexes.sql", "0002_models_created_by.sql"]
        assert "users" in table_names(db)

    def test_status_after_up(self, tmp_path, capsys):
        db = tmp_path / "cli.db"
        migrate.main(["--up", "--db-path", str(db)])
        capsys.readouterr()
        assert migrate.main(["--status", "--db-path", str(db), "--json"]) == 0
        status = json.loads(capsys.readouterr().out)
        assert status["pending_count"] == 0
        assert status["applied_count"] == 2

    def test_status_human(self, tmp_path, capsys):
        db = tmp_path / "cli.db"
        migrate.main(["--status", "--db-path", str(db)])
        out = capsys.readouterr().out
        assert "Migrations table: missing" in out
        assert "0001_training_indexes.sql" in out

    def test_validate_clean(self, tmp_path, capsys):
        db = tmp_path / "cli.db"
        migrate.main(["--up", "--db-path", str(db)])
        assert migrate.main(["--validate", "--db-path", str(db)]) == 0
        assert "All migration checksums valid." in capsys.readouterr().out

    def test_mark_applied(self, tmp_path, capsys):
        db = tmp_path / "cli.db"
        assert migrate.main(["--mark-applied", "0001_training_indexes.sql", "--db-path", str(db), "--json"]) == 0
        assert json.loads(capsys.readouterr().out)["inserted"] is True
        migrate.main(["--status", "--db-path", str(db), "--json"])
        assert json.loads(capsys.readouterr().out)["pending"] == ["0002_models_created_by.sql"]

    def test_failed_up_exit_code(self, tmp_path, capsys):
        config = tmp_path / "cfg.yaml"
        config.write_text(
            f"migrations:\n  schema_file: {tmp_path / 'absent.sql'}\n", encoding="utf-8"
        )
        code = migrate.main(["--up", "--db-path", str(tmp_path / "x.db"), "--config", str(config)])
        assert code == 1
        assert "FAILED" in capsys.readouterr().out

    def test_bad_config_exit_code(self, tmp_path):
        assert migrate.main(["--status", "--config", str(tmp_path / "missing.yaml")]) == 2
