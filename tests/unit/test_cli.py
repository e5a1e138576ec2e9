"""Tests for CLI commands using Click's CliRunner."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
import yaml
from click.testing import CliRunner

from guardsync.cli import main
from guardsync.policy.models import ReconcilePlan, ServiceKind, ServiceSignal
from guardsync.results import PassResult, PassStatus


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch, tmp_path: Path):
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path / "data"))
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "config"))
    # Signal handlers installed by commands must not leak into the test process
    monkeypatch.setattr("signal.signal", MagicMock())


def test_main_help():
    runner = CliRunner()
    result = runner.invoke(main, ["--help"])
    assert result.exit_code == 0
    assert "guardsync" in result.output
    for command in ("apply", "probe", "watch", "history"):
        assert command in result.output


def test_main_version():
    runner = CliRunner()
    result = runner.invoke(main, ["--version"])
    assert result.exit_code == 0
    assert "0.1.0" in result.output


def test_apply_help():
    runner = CliRunner()
    result = runner.invoke(main, ["apply", "--help"])
    assert result.exit_code == 0
    assert "--dry-run" in result.output
    assert "--parallel" in result.output


@patch("guardsync.cli.apply.build_runner")
def test_apply_dry_run_yaml(mock_build: MagicMock):
    mock_build.return_value.run.return_value = PassResult(
        status=PassStatus.PLANNED,
        dry_run=True,
        signals=(ServiceSignal(ServiceKind.WEB, "caddy"),),
        plan=ReconcilePlan(daemon_removes=("guardsync-old",)),
    )
    runner = CliRunner()
    result = runner.invoke(main, ["apply", "--dry-run", "--format", "yaml"])

    assert result.exit_code == 0
    data = yaml.safe_load(result.stdout)
    assert data["status"] == "planned"
    assert data["plan"]["daemon_removes"] == ["guardsync-old"]
    assert mock_build.call_args.kwargs["dry_run"] is True


@patch("guardsync.cli.apply.record_pass")
@patch("guardsync.cli.apply.build_runner")
def test_apply_exit_code_and_history(mock_build: MagicMock, mock_record: MagicMock):
    mock_build.return_value.run.return_value = PassResult(
        status=PassStatus.ABORTED, reason="Allow-list fetch failed: empty: no entries"
    )
    runner = CliRunner()
    result = runner.invoke(main, ["apply", "--url", "https://feed.test/ips"])

    assert result.exit_code == 2
    assert mock_build.call_args.kwargs["source_url"] == "https://feed.test/ips"
    mock_record.assert_called_once()


@patch("guardsync.cli.apply.build_runner")
def test_apply_bad_config(mock_build: MagicMock):
    mock_build.side_effect = ValueError("Unknown firewall backend: nftables")
    runner = CliRunner()
    result = runner.invoke(main, ["apply"])
    assert result.exit_code == 2
    assert "nftables" in result.output


def test_apply_empty_ports_is_config_error(monkeypatch):
    monkeypatch.setenv("GUARDSYNC_PORTS", ",")
    runner = CliRunner()
    result = runner.invoke(main, ["apply", "--dry-run"])
    assert result.exit_code == 2
    assert "Configuration error" in result.output


def test_rules_option_must_exist():
    runner = CliRunner()
    result = runner.invoke(main, ["--rules", "/nonexistent/rules.yaml", "apply"])
    assert result.exit_code != 0


@patch("guardsync.cli.probe.make_checker")
def test_probe(mock_make: MagicMock):
    checker = MagicMock()
    checker.authoritative = True
    checker.is_active.side_effect = lambda unit: unit == "caddy"
    mock_make.return_value = checker

    runner = CliRunner()
    result = runner.invoke(main, ["probe"])

    assert result.exit_code == 0
    assert "caddy" in result.output


def test_history_empty():
    runner = CliRunner()
    result = runner.invoke(main, ["history"])
    assert result.exit_code == 0
    assert "No passes recorded" in result.output


def test_history_after_record(tmp_path: Path):
    from guardsync.cli.common import record_pass

    db_path = tmp_path / "data" / "guardsync" / "guardsync.db"
    record_pass(db_path, PassResult(status=PassStatus.CONVERGED))

    runner = CliRunner()
    result = runner.invoke(main, ["history"])
    assert result.exit_code == 0
    assert "converged" in result.output


def test_watch_rejects_bad_interval():
    runner = CliRunner()
    result = runner.invoke(main, ["watch", "--interval", "0"])
    assert result.exit_code != 0
