"""CLI smoke tests (dry runs only, no network)."""

from __future__ import annotations

import argparse
import json
from pathlib import Path

import pytest

from github_agent_workflow import cli
from github_agent_workflow.workflow.report import ReportStore

INPUTS = ["--input", "owner=acme", "--input", "repo=core", "--input", "id=42"]


@pytest.fixture(autouse=True)
def cli_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Path:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(cli, "configure_logging", lambda level: None)
    monkeypatch.setattr(cli, "_interactive", lambda: False)
    monkeypatch.delenv("ORCHESTRATOR_GITHUB_TOKEN", raising=False)
    monkeypatch.delenv("LOG_LEVEL", raising=False)
    state = tmp_path / "state"
    monkeypatch.setenv("AGENT_STATE_PATH", str(state))
    return state


@pytest.fixture
def definition_file(tmp_path: Path, scenario_raw: dict[str, object]) -> Path:
    path = tmp_path / "triage.json"
    path.write_text(json.dumps(scenario_raw), encoding="utf-8")
    return path


def test_parse_input_decodes_json_values() -> None:
    assert cli._parse_input("id=42") == ("id", 42)
    assert cli._parse_input("flag=true") == ("flag", True)
    assert cli._parse_input("owner=acme") == ("owner", "acme")
    with pytest.raises(argparse.ArgumentTypeError):
        cli._parse_input("no-equals")


def test_validate(definition_file: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert cli.main(["validate", str(definition_file)]) == cli.EXIT_OK
    assert "OK: triage (3 steps)" in capsys.readouterr().out


def test_validate_rejects_bad_definition(tmp_path: Path) -> None:
    bad = tmp_path / "bad.yaml"
    bad.write_text("id: bad\nsteps:\n  - id: A\n    role: r\n    condition: ghost.status\n")

    assert cli.main(["validate", str(bad)]) == cli.EXIT_DEFINITION
    assert cli.main(["validate", str(tmp_path / "missing.yaml")]) == cli.EXIT_DEFINITION


def test_plan_lists_missing_inputs(
    definition_file: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    assert cli.main(["plan", str(definition_file), "--input", "owner=acme"]) == cli.EXIT_OK

    out = capsys.readouterr().out
    assert "owner (required): 'acme'" in out
    assert "Missing required inputs: repo, id" in out


def test_dry_run_completes_and_persists_report(
    definition_file: Path, cli_env: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    code = cli.main(["run", str(definition_file), "--dry-run", "--yes", *INPUTS])

    assert code == cli.EXIT_OK
    out = capsys.readouterr().out
    assert "### Workflow `triage`: completed" in out
    reports = ReportStore(cli_env / "runs.json").list()
    assert len(reports) == 1
    assert reports[0].sequence == [("A", "succeeded"), ("B", "skipped"), ("C", "succeeded")]


def test_runs_lists_persisted_reports(
    definition_file: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    assert cli.main(["runs"]) == cli.EXIT_OK
    assert "No runs recorded" in capsys.readouterr().out

    cli.main(["run", str(definition_file), "--dry-run", "--yes", *INPUTS])
    capsys.readouterr()

    assert cli.main(["runs"]) == cli.EXIT_OK
    line = capsys.readouterr().out.strip()
    assert "triage" in line
    assert line.endswith("completed")

    run_id = line.split()[0]
    assert cli.main(["runs", "--run-id", run_id]) == cli.EXIT_OK
    assert cli.main(["runs", "--run-id", "nope"]) == cli.EXIT_ERROR


def test_missing_required_input(definition_file: Path) -> None:
    code = cli.main(["run", str(definition_file), "--dry-run", "--yes", "--input", "owner=acme"])

    assert code == cli.EXIT_MISSING_INPUT


def test_unconfirmed_run_is_cancelled(definition_file: Path) -> None:
    assert cli.main(["run", str(definition_file), "--dry-run", *INPUTS]) == cli.EXIT_CANCELLED


def test_github_run_requires_target_and_token(definition_file: Path) -> None:
    assert cli.main(["run", str(definition_file), "--yes", *INPUTS]) == cli.EXIT_CONFIG
    assert (
        cli.main(
            ["run", str(definition_file), "--yes", "--repo", "o/r", "--issue-number", "1", *INPUTS]
        )
        == cli.EXIT_CONFIG
    )


def test_invalid_settings_are_a_config_error(
    definition_file: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("WORKFLOW_FANOUT_MAX_WORKERS", "0")

    assert cli.main(["validate", str(definition_file)]) == cli.EXIT_CONFIG
