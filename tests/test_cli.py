"""Tests for argument parsing and the Azure-free commands."""

import json

import pytest

from conftest import make_vault_record, violation
from kv_policy_harness.cli import COMMANDS, build_parser, main
from kv_policy_harness.snapshot import summarize_violations


def test_every_command_has_a_handler():
    parser = build_parser()
    subparsers = next(a for a in parser._actions if a.dest == 'command')
    assert set(subparsers.choices) == set(COMMANDS) | {'forecast'}


def test_run_options():
    args = build_parser().parse_args([
        "run", "--effect", "Deny", "--profile", "compliant", "--profile", "short-retention",
        "--skip-build", "--workflow-run-id", "20250101_120000", "--format", "html", "xlsx",
        "--max-attempts", "3",
    ])

    assert args.effect == "Deny"
    assert args.profiles == ["compliant", "short-retention"]
    assert args.skip_build is True
    assert args.skip_remediation is False
    assert args.workflow_run_id == "20250101_120000"
    assert args.formats == ["html", "xlsx"]
    assert args.max_attempts == 3


def test_rejects_unknown_effect_and_format():
    with pytest.raises(SystemExit):
        build_parser().parse_args(["assign-policies", "--effect", "Modify"])
    with pytest.raises(SystemExit):
        build_parser().parse_args(["snapshot", "--format", "pdf"])


def test_forecast_json(capsys):
    code = main(["forecast", "--year", "2025", "--month", "1", "--now", "2025-01-02T13:00:00",
                 "--used", "10", "--json"])

    forecast = json.loads(capsys.readouterr().out)
    assert code == 0
    assert forecast['workdays'] == 21
    assert forecast['elapsed_hours'] == 4.0
    assert forecast['projected_requests'] == pytest.approx(420.0)


def test_forecast_invalid_month(capsys):
    assert main(["forecast", "--month", "13"]) == 1
    assert "Invalid month" in capsys.readouterr().out


def test_policies_command(tmp_path, capsys):
    assert main(["policies", "--artifacts-dir", str(tmp_path)]) == 0
    assert "Key vaults should have deletion protection enabled" in capsys.readouterr().out


def test_missing_subscription(monkeypatch, tmp_path, capsys):
    monkeypatch.delenv("AZURE_SUBSCRIPTION_ID", raising=False)

    assert main(["snapshot", "--artifacts-dir", str(tmp_path)]) == 1
    assert "AZURE_SUBSCRIPTION_ID" in capsys.readouterr().out


def write_snapshot(path, label, vaults):
    path.write_text(json.dumps({
        'label': label, 'timestamp': '2025-01-01T00:00:00+00:00',
        'vaults': vaults, 'violation_summary': summarize_violations(vaults),
    }), encoding='utf-8')
    return str(path)


def test_diff_command(tmp_path):
    before = write_snapshot(tmp_path / "before.json", "baseline", [
        make_vault_record("kvh-np-1", violations=[violation("KV-002-purge-protection")])])
    after = write_snapshot(tmp_path / "after.json", "after", [make_vault_record("kvh-np-1")])
    artifacts = tmp_path / "artifacts"

    code = main(["diff", before, after, "--artifacts-dir", str(artifacts),
                 "--workflow-run-id", "run-1", "--format", "json"])

    assert code == 0
    comparisons = list((artifacts / "run-1" / "snapshots").glob("comparison-*.json"))
    assert len(comparisons) == 1
    with open(comparisons[0], encoding='utf-8') as f:
        assert json.load(f)['summary_delta']['total_violations'] == -1
    assert list((artifacts / "run-1" / "reports").glob("comparison-*.json"))


def test_diff_without_snapshots(tmp_path, capsys):
    assert main(["diff", "--artifacts-dir", str(tmp_path), "--workflow-run-id", "run-1"]) == 1
    assert "No 'baseline' snapshot" in capsys.readouterr().out


def test_forecast_month_follows_now(capsys):
    assert main(["forecast", "--now", "2025-01-15T12:00", "--used", "100", "--json"]) == 0

    forecast = json.loads(capsys.readouterr().out)
    assert (forecast['year'], forecast['month']) == (2025, 1)
    assert forecast['elapsed_hours'] > 0
    assert forecast['projected_requests'] > 100


def test_forecast_explicit_month_overrides_now(capsys):
    assert main(["forecast", "--year", "2025", "--month", "2", "--now", "2025-01-15T12:00", "--json"]) == 0
    forecast = json.loads(capsys.readouterr().out)
    assert (forecast['year'], forecast['month']) == (2025, 2)
    assert forecast['elapsed_hours'] == 0.0


def test_forecast_month_zero_is_rejected():
    assert main(["forecast", "--month", "0"]) == 1


def test_run_skip_build_needs_run_id(monkeypatch, tmp_path, capsys):
    monkeypatch.setenv("AZURE_SUBSCRIPTION_ID", "sub")
    monkeypatch.setattr("kv_policy_harness.cli.credential_from_environment",
                        lambda: pytest.fail("no Azure access expected"))

    assert main(["run", "--skip-build", "--artifacts-dir", str(tmp_path)]) == 1
    assert "--workflow-run-id" in capsys.readouterr().out
