"""
Tests for the nebula-cli commands.
"""

import json

import pytest
from typer.testing import CliRunner

import basecore.db
from nebula_core.cli import main as cli
from nebula_core.persistence.models import UpgradeNodeTemplate, UserUpgrade

runner = CliRunner()


@pytest.fixture
def cli_db(db, monkeypatch):
    """Point every command at the test session."""
    monkeypatch.setattr(cli, "get_db", lambda: db)
    return db


@pytest.fixture
def catalog_file(tmp_path, catalog_document):
    path = tmp_path / "catalog.json"
    path.write_text(json.dumps(catalog_document), encoding="utf-8")
    return path


class TestCli:
    """Tests for the CLI commands."""

    def test_init_db(self, engine, monkeypatch):
        monkeypatch.setattr(basecore.db, "get_engine", lambda: engine)

        result = runner.invoke(cli.app, ["init-db"])

        assert result.exit_code == 0
        assert "Tables created" in result.output

    def test_seed_and_advance(self, cli_db, catalog_file):
        seeded = runner.invoke(cli.app, ["seed-catalog", str(catalog_file)])
        initialized = runner.invoke(cli.app, ["init-tree", "1"])
        advanced = runner.invoke(cli.app, ["advance", "1", "stardust_production", "1000"])

        assert seeded.exit_code == 0
        assert "upgrades_created: 6" in seeded.output
        assert initialized.exit_code == 0
        assert advanced.exit_code == 0
        assert "Completed" in advanced.output
        assert cli_db.query(UpgradeNodeTemplate).count() == 6
        assert cli_db.query(UserUpgrade).filter(UserUpgrade.player_id == 1).count() == 5

    def test_engine_error_exits_nonzero(self, cli_db, catalog_file):
        runner.invoke(cli.app, ["seed-catalog", str(catalog_file)])

        result = runner.invoke(cli.app, ["advance", "1", "stardust_production", "10"])

        assert result.exit_code == 1
        assert "not_found" in result.output

    def test_malformed_catalog_exits_nonzero(self, cli_db, tmp_path):
        path = tmp_path / "bad.json"
        path.write_text(json.dumps({"upgrades": [{"slug": "a"}]}), encoding="utf-8")

        result = runner.invoke(cli.app, ["seed-catalog", str(path)])

        assert result.exit_code == 1
        assert "invalid_argument" in result.output

    def test_evaluate_and_show_player(self, cli_db, catalog_file):
        runner.invoke(cli.app, ["seed-catalog", str(catalog_file)])
        runner.invoke(cli.app, ["init-tree", "1"])

        evaluated = runner.invoke(cli.app, ["evaluate-events", "1"])
        shown = runner.invoke(cli.app, ["show-player", "1"])
        expired = runner.invoke(cli.app, ["expire-offers"])

        assert evaluated.exit_code == 0
        assert "Triggered: -" in evaluated.output
        assert shown.exit_code == 0
        assert "stardust_production" in shown.output
        assert expired.exit_code == 0
        assert "Expired 0 offers" in expired.output
