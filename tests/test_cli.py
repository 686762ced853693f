from __future__ import annotations

import csv
import json
import re
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner

from people_lookup import __version__
from people_lookup.main import people_lookup

pytestmark = [
    allure.epic("Operations"),
    allure.feature("CLI"),
]


@pytest.fixture()
def fixture_path(tmp_path: Path) -> Path:
    path = tmp_path / "provider.json"
    path.write_text(
        json.dumps(
            {
                "searches": {"Jane Doe": [["link-1", "link-2"]]},
                "details": {
                    "link-1": {
                        "name": "Jane Doe",
                        "age": 62,
                        "phone": "(512) 555-0100",
                        "report_year": 2025,
                    },
                    "link-2": {"name": "Jane Doe", "age": 35, "report_year": 2025},
                },
            },
        ),
        encoding="utf-8",
    )
    return path


@pytest.fixture()
def cli_env(monkeypatch) -> None:
    monkeypatch.setenv("PEOPLE_LOOKUP_USER_ID", "cli-user")
    monkeypatch.delenv("PEOPLE_LOOKUP_PROVIDER_FIXTURE", raising=False)
    monkeypatch.delenv("PEOPLE_LOOKUP_BILLING_POLICY", raising=False)


def _invoke(runner: CliRunner, *args: str):
    return runner.invoke(people_lookup, list(args))


def test_version_option() -> None:
    result = CliRunner().invoke(people_lookup, ["--version"])

    assert result.exit_code == 0
    assert __version__ in result.output


@pytest.mark.usefixtures("cli_env")
def test_cli_submit_inspect_and_export(tmp_path: Path, fixture_path: Path) -> None:
    runner = CliRunner()
    db = str(tmp_path / "cli.db")

    credited = _invoke(runner, "account", "credit", "50", "--db-path", db)
    assert credited.exit_code == 0, credited.output
    assert "Credited 50.0 to cli-user" in credited.output

    submitted = _invoke(
        runner,
        "search",
        "submit",
        "--db-path",
        db,
        "--name",
        "Jane Doe",
        "--provider-fixture",
        str(fixture_path),
    )
    assert submitted.exit_code == 0, submitted.output
    match = re.search(r"task_id=([0-9a-f]{32})", submitted.output)
    assert match is not None
    task_id = match.group(1)
    assert "Status: completed" in submitted.output
    assert "Results: 1 (filtered out 1)" in submitted.output
    assert "Credits used: 0.9" in submitted.output

    status = _invoke(runner, "search", "status", task_id, "--db-path", db)
    assert status.exit_code == 0, status.output
    assert "Filter age_range: 2 -> 1 (removed 1)" in status.output

    results = _invoke(runner, "search", "results", task_id, "--db-path", db)
    assert results.exit_code == 0, results.output
    assert "Results: 1 (page 1)" in results.output
    assert "link=link-1" in results.output

    listed = _invoke(runner, "search", "list", "--db-path", db)
    assert task_id in listed.output

    output_path = tmp_path / "export.csv"
    exported = _invoke(
        runner,
        "search",
        "export",
        task_id,
        "--db-path",
        db,
        "--output",
        str(output_path),
    )
    assert exported.exit_code == 0, exported.output
    with output_path.open(encoding="utf-8-sig", newline="") as handle:
        rows = list(csv.DictReader(handle))
    assert [(row["detail_link"], row["phone"], row["source"]) for row in rows] == [
        ("link-1", "15125550100", "live"),
    ]

    account = _invoke(runner, "account", "show", "--db-path", db)
    assert "Available: 49.1" in account.output
    assert "settle-refund" in account.output

    cache_stats = _invoke(runner, "cache", "stats", "--db-path", db)
    assert "Cache entries: 2 (live 2)" in cache_stats.output

    cancelled = _invoke(runner, "search", "cancel", task_id, "--db-path", db)
    assert cancelled.exit_code == 1


@pytest.mark.usefixtures("cli_env")
def test_cli_rejects_unfunded_postpaid_submission(tmp_path: Path, fixture_path: Path) -> None:
    result = _invoke(
        CliRunner(),
        "search",
        "submit",
        "--db-path",
        str(tmp_path / "cli.db"),
        "--name",
        "Jane Doe",
        "--policy",
        "postpaid_deduct",
        "--provider-fixture",
        str(fixture_path),
    )

    assert result.exit_code == 1
    assert "Insufficient credits" in result.output


@pytest.mark.usefixtures("cli_env")
def test_cli_submit_requires_provider(tmp_path: Path) -> None:
    result = _invoke(
        CliRunner(),
        "search",
        "submit",
        "--db-path",
        str(tmp_path / "cli.db"),
        "--name",
        "Jane Doe",
    )

    assert result.exit_code == 1
    assert "No lookup provider configured" in result.output


@pytest.mark.usefixtures("cli_env")
def test_cli_estimate_and_config_overrides(tmp_path: Path) -> None:
    runner = CliRunner()
    db = str(tmp_path / "cli.db")

    estimate = _invoke(
        runner,
        "search",
        "estimate",
        "--db-path",
        db,
        "--name",
        "Jane Doe",
        "--name",
        "John Roe",
    )
    assert estimate.exit_code == 0, estimate.output
    assert "Sub-tasks: 2" in estimate.output
    assert "Minimum cost: 0.6" in estimate.output
    assert "Maximum cost: 36.0" in estimate.output

    updated = _invoke(runner, "config", "set", "max_pages", "2", "--db-path", db)
    assert updated.exit_code == 0, updated.output
    shown = _invoke(runner, "config", "show", "--db-path", db)
    assert "max_pages = 2" in shown.output
    assert "Overrides: max_pages" in shown.output

    estimate = _invoke(runner, "search", "estimate", "--db-path", db, "--name", "Jane Doe")
    assert "Maximum cost: 15.6" in estimate.output

    rejected = _invoke(runner, "config", "set", "colour", "blue", "--db-path", db)
    assert rejected.exit_code == 1

    reset = _invoke(runner, "config", "unset", "max_pages", "--db-path", db)
    assert "Config max_pages reset" in reset.output

    purged = _invoke(runner, "cache", "purge", "--db-path", db)
    assert "Expired cache entries removed: 0" in purged.output
