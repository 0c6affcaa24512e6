"""Tests for the maintenance CLI."""

import pytest
from typer.testing import CliRunner

from scanstore.cli import app
from scanstore.storage.factories import ScanResultFactory
from scanstore.storage.factory import open_store

runner = CliRunner()


@pytest.fixture
def db_url(tmp_path):
    return f"sqlite:///{tmp_path / 'cli.db'}"


def test_migrate(db_url):
    result = runner.invoke(app, ["migrate", "--backend", "sqlite", "--url", db_url])

    assert result.exit_code == 0, result.output
    assert "Schema ready (relational)" in result.output


def test_migrate_twice(db_url):
    runner.invoke(app, ["migrate", "--backend", "sqlite", "--url", db_url])
    result = runner.invoke(app, ["migrate", "--backend", "sqlite", "--url", db_url])

    assert result.exit_code == 0, result.output


def test_unknown_backend(db_url):
    result = runner.invoke(app, ["migrate", "--backend", "mongodb", "--url", db_url])

    assert result.exit_code == 1
    assert "Unknown backend" in result.output


def test_grades(db_url, sqlite_settings):
    sqlite_settings.relational.url = db_url
    with open_store(sqlite_settings, migrate=True) as store:
        site_id = store.ensure_site("example.com")
        for grade, score in (("B", 70), ("A+", 105), ("B", 72)):
            scan = store.insert_scan(site_id)
            store.insert_test_results(
                site_id, scan.id, ScanResultFactory(scan__grade=grade, scan__score=score)
            )

    result = runner.invoke(app, ["grades", "--backend", "sqlite", "--url", db_url])

    assert result.exit_code == 0, result.output
    # Log records, if any reach the runner, use " - " separators
    lines = [line.split() for line in result.output.splitlines() if " - " not in line]
    assert lines == [["A+", "1"], ["B", "2"]]


def test_grades_empty(db_url):
    runner.invoke(app, ["migrate", "--backend", "sqlite", "--url", db_url])
    result = runner.invoke(app, ["grades", "--backend", "sqlite", "--url", db_url])

    assert result.exit_code == 0
    assert "No finished scans." in result.output


def test_refresh_views(db_url):
    runner.invoke(app, ["migrate", "--backend", "sqlite", "--url", db_url])
    result = runner.invoke(app, ["refresh-views", "--backend", "sqlite", "--url", db_url])

    assert result.exit_code == 0
    assert "Views refreshed" in result.output


def test_migrate_unreachable_database(tmp_path):
    url = f"sqlite:///{tmp_path / 'missing' / 'cli.db'}"
    result = runner.invoke(app, ["migrate", "--backend", "sqlite", "--url", url])

    assert result.exit_code == 1
    assert "Error: Cannot reach relational backend" in result.output
