from __future__ import annotations

import re
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner

from report_fanout.main import report_fanout
from report_fanout.orchestrator.models import ReportStatus
from report_fanout.orchestrator.repository import OrchestratorRepository

pytestmark = [
    allure.epic("Fan-out Orchestration"),
    allure.feature("CLI"),
]


@pytest.fixture()
def cli_env(tmp_path: Path, monkeypatch) -> Path:
    monkeypatch.setenv("REPORT_FANOUT_LAUNCHER_ENABLED", "false")
    monkeypatch.setenv("REPORT_FANOUT_WORK_ROOT", str(tmp_path / "work"))
    monkeypatch.setenv("REPORT_FANOUT_ARTIFACT_ROOT", str(tmp_path / "artifacts"))
    monkeypatch.setenv("REPORT_FANOUT_WORKER_REGISTRY_DIR", str(tmp_path / "workers"))
    monkeypatch.setenv("REPORT_FANOUT_WORKER_POLL_SECONDS", "0.5")
    monkeypatch.setenv("REPORT_FANOUT_FINALIZE_POLL_SECONDS", "1")
    monkeypatch.delenv("REPORT_FANOUT_ALERT_WEBHOOK_URL", raising=False)
    csv_path = tmp_path / "batch.csv"
    csv_path.write_text("client,amount\nacme,10\nglobex,20\n", "utf-8")
    return csv_path


def _submit(runner: CliRunner, csv_path: Path, db_path: Path) -> str:
    result = runner.invoke(
        report_fanout,
        ["submit", str(csv_path), "--format", "pdf", "--db-path", str(db_path)],
    )
    assert result.exit_code == 0, result.output
    assert "status=pending" in result.output
    match = re.search(r"report_id=(\S+)", result.output)
    assert match is not None
    return match.group(1)


def _token_for(db_path: Path, report_id: str) -> str:
    repo = OrchestratorRepository(db_path)
    try:
        report = repo.get_report(report_id)
    finally:
        repo.close()
    assert report is not None and report.token is not None
    return report.token


def _report_status(db_path: Path, report_id: str) -> ReportStatus:
    repo = OrchestratorRepository(db_path)
    try:
        report = repo.get_report(report_id)
    finally:
        repo.close()
    assert report is not None
    return report.status


def test_cli_submit_worker_and_inspect(cli_env: Path, tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    runner = CliRunner()
    report_id = _submit(runner, cli_env, db_path)

    worker = runner.invoke(
        report_fanout,
        ["worker", "--db-path", str(db_path), "--max-idle-polls", "4"],
    )
    assert worker.exit_code == 0, worker.output
    assert "Worker summary:" in worker.output
    assert "dead=0" in worker.output

    assert _report_status(db_path, report_id) is ReportStatus.COMPLETED
    token = _token_for(db_path, report_id)
    assert (tmp_path / "artifacts" / "reports" / f"{token}.zip").exists()

    status = runner.invoke(report_fanout, ["status", "--db-path", str(db_path)])
    assert status.exit_code == 0, status.output
    assert "No active workloads." in status.output
    assert "Recent reports: 1" in status.output
    assert f"{report_id} completed format=pdf rows=2 token={token} artifact=" in status.output

    failed = runner.invoke(
        report_fanout,
        ["status", "--db-path", str(db_path), "--report-status", "failed"],
    )
    assert failed.exit_code == 0, failed.output
    assert "Recent reports: 0" in failed.output

    show = runner.invoke(report_fanout, ["show", token, "--db-path", str(db_path)])
    assert show.exit_code == 0, show.output
    assert f"Token: {token}" in show.output
    assert "Workload: removed" in show.output
    assert f"Report: {report_id} status=completed" in show.output
    assert "finalized" in show.output


def test_cli_teardown_fails_report_and_clears_jobs(cli_env: Path, tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    runner = CliRunner()
    report_id = _submit(runner, cli_env, db_path)

    split = runner.invoke(report_fanout, ["worker", "--db-path", str(db_path), "--once"])
    assert split.exit_code == 0, split.output
    assert "succeeded=1" in split.output
    token = _token_for(db_path, report_id)

    status = runner.invoke(report_fanout, ["status", "--db-path", str(db_path)])
    assert status.exit_code == 0, status.output
    assert f"{token} 0/2" in status.output
    assert f"{report_id} processing format=" in status.output

    teardown = runner.invoke(
        report_fanout,
        ["teardown", token, "--reason", "client cancelled", "--db-path", str(db_path)],
    )
    assert teardown.exit_code == 0, teardown.output
    assert (
        f"Teardown {token}: worker_stopped=False jobs_cleared=3 "
        "report_failed=True status_removed=True"
    ) in teardown.output
    assert _report_status(db_path, report_id) is ReportStatus.FAILED

    again = runner.invoke(report_fanout, ["teardown", token, "--db-path", str(db_path)])
    assert again.exit_code == 0, again.output
    assert "jobs_cleared=0 report_failed=False status_removed=False" in again.output


def test_cli_show_unknown_token(cli_env: Path, tmp_path: Path) -> None:
    result = CliRunner().invoke(
        report_fanout,
        ["show", "no-such-token", "--db-path", str(tmp_path / "cli.db")],
    )

    assert result.exit_code == 0, result.output
    assert "Token not found: no-such-token" in result.output


def test_cli_monitors_run_once_reports_each_monitor(cli_env: Path, tmp_path: Path) -> None:
    result = CliRunner().invoke(
        report_fanout,
        ["monitors", "run", "--db-path", str(tmp_path / "cli.db")],
    )

    assert result.exit_code == 0, result.output
    for name in ("dead_letter", "idle", "force_shutdown"):
        assert f"Monitor {name}: inspected=0 acted=0 errors=0" in result.output


def test_cli_version() -> None:
    result = CliRunner().invoke(report_fanout, ["--version"])

    assert result.exit_code == 0
    assert "report-fanout" in result.output
