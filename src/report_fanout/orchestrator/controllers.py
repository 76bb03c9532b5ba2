"""Controllers for report fan-out CLI commands."""

from __future__ import annotations

import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from report_fanout.config import Settings
from report_fanout.orchestrator.launcher import WorkerLaunchError, WorkerThrottledError
from report_fanout.orchestrator.locks import LockTimeoutError
from report_fanout.orchestrator.models import (
    OutputFormat,
    ReportStatus,
    ReportView,
    WorkloadStatusView,
)
from report_fanout.orchestrator.monitors import run_monitors
from report_fanout.orchestrator.repository import OrchestratorRepository, WorkloadNotFoundError
from report_fanout.orchestrator.services import (
    OrchestratorRuntime,
    SubmitReport,
    build_runtime,
)
from report_fanout.orchestrator.worker import QueueWorker, default_worker_id


@dataclass(slots=True)
class SubmitCommand:
    """CLI input for batch submission."""

    db_path: Path | None
    csv_path: Path
    output_format: str


@dataclass(slots=True)
class StatusCommand:
    """CLI input for workload status listing."""

    db_path: Path | None
    limit: int
    report_status: str | None = None


@dataclass(slots=True)
class ShowCommand:
    """CLI input for one workload's details."""

    db_path: Path | None
    token: str


@dataclass(slots=True)
class WorkerCommand:
    """CLI input for queue worker execution."""

    db_path: Path | None
    queue_names: tuple[str, ...]
    once: bool
    max_jobs: int | None = None
    max_idle_polls: int | None = 1


@dataclass(slots=True)
class MonitorsCommand:
    """CLI input for recovery monitor sweeps."""

    db_path: Path | None
    loop: bool
    interval_seconds: int | None = None
    max_sweeps: int | None = None


@dataclass(slots=True)
class TokenCommand:
    """CLI input for operator actions on one token."""

    db_path: Path | None
    token: str
    reason: str = "operator request"
    force: bool = False


class ReportFanoutCliController:
    """Coordinates submission, workers, monitors and operator actions."""

    def submit(self, command: SubmitCommand) -> list[str]:
        csv_text = command.csv_path.read_text("utf-8-sig")
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            report = runtime.service.submit(
                SubmitReport(
                    csv_text=csv_text,
                    output_format=OutputFormat(command.output_format.lower()),
                ),
            )
        return [
            f"Report submitted: report_id={report.report_id} "
            f"format={report.output_format.value} status={report.status.value}",
        ]

    def status(self, command: StatusCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        report_status = (
            ReportStatus(command.report_status.lower()) if command.report_status else None
        )
        with _runtime(settings) as runtime:
            workloads = runtime.service.list_statuses(limit=command.limit)
            reports = runtime.service.list_reports(limit=command.limit, status=report_status)
        lines = [_status_line(workload) for workload in workloads] or ["No active workloads."]
        lines.append(f"Recent reports: {len(reports)}")
        lines.extend(f"  {_report_line(report)}" for report in reports)
        return lines

    def show(self, command: ShowCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            details = runtime.service.describe(command.token)
        if details.workload is None and details.report is None and not details.events:
            return [f"Token not found: {command.token}"]

        lines = [f"Token: {command.token}"]
        if details.workload is not None:
            workload = details.workload
            lines.extend(
                [
                    f"Queue: {workload.queue_name}",
                    f"Progress: {workload.done_count}/{workload.total_count} "
                    f"({workload.progress_ratio:.0%})",
                    f"Worker: {workload.worker_task_handle or '-'}",
                    f"Finalized: {_iso(workload.finalized_at)}",
                    f"Force shutdown: {_iso(workload.force_shutdown_at)}",
                    f"Pending jobs: {details.pending_jobs}",
                ],
            )
        else:
            lines.append("Workload: removed")
        if details.report is not None:
            report = details.report
            lines.extend(
                [
                    f"Report: {report.report_id} status={report.status.value}",
                    f"Artifact: {report.artifact_ref or '-'}",
                    f"Error: {report.error_summary or '-'}",
                ],
            )
        lines.append(f"Dead jobs: {len(details.dead_jobs)}")
        for job in details.dead_jobs:
            lines.append(f"  {job.job_id} {job.kind.value} {job.last_error or '-'}")
        lines.append(f"Events: {len(details.events)}")
        for event in details.events:
            lines.append(f"  {event.created_at.isoformat()} {event.event_type}")
        return lines

    def run_worker(self, command: WorkerCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            worker = QueueWorker(
                queue=runtime.queue,
                handlers=runtime.handlers,
                worker_id=default_worker_id(),
                queue_names=command.queue_names or None,
                poll_interval_seconds=settings.queue.poll_interval_seconds,
                retry_base_seconds=settings.queue.retry_base_seconds,
                retry_max_seconds=settings.queue.retry_max_seconds,
                stale_running_seconds=settings.queue.stale_running_seconds,
            )
            summary = (
                worker.run_once()
                if command.once
                else worker.run_loop(
                    max_jobs=command.max_jobs,
                    max_idle_polls=command.max_idle_polls,
                )
            )

        return [
            "Worker summary: "
            f"processed={summary.processed} succeeded={summary.succeeded} "
            f"retried={summary.retried} dead={summary.dead} "
            f"misrouted={summary.misrouted} idle_polls={summary.idle_polls}",
        ]

    def run_monitors(self, command: MonitorsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        interval = command.interval_seconds or settings.monitors.interval_seconds
        lines: list[str] = []
        with _runtime(settings) as runtime:
            sweeps = 0
            try:
                while True:
                    for summary in run_monitors(runtime.monitors):
                        lines.append(
                            f"Monitor {summary.name}: inspected={summary.inspected} "
                            f"acted={summary.acted} errors={summary.errors} "
                            f"pruned={summary.pruned}",
                        )
                    sweeps += 1
                    if not command.loop:
                        break
                    if command.max_sweeps is not None and sweeps >= command.max_sweeps:
                        break
                    time.sleep(interval)
            except KeyboardInterrupt:
                lines.append("Monitors interrupted.")
        return lines

    def launch(self, command: TokenCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            try:
                handle = runtime.launcher.launch(command.token)
            except WorkloadNotFoundError:
                return [f"Workload not found: {command.token}"]
            except (WorkerThrottledError, LockTimeoutError, WorkerLaunchError) as error:
                return [f"Launch failed for {command.token}: {error}"]
        return [f"Worker for {command.token}: {handle}"]

    def stop(self, command: TokenCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            stopped = runtime.launcher.stop(command.token, reason=command.reason)
            if not stopped and command.force:
                stopped = runtime.launcher.terminate(command.token, reason=command.reason)
        if stopped:
            return [f"Worker stopped for {command.token}"]
        return [f"No running worker stopped for {command.token}"]

    def teardown(self, command: TokenCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            result = runtime.teardown.teardown(
                command.token,
                reason=command.reason,
                force=command.force,
            )
        return [
            f"Teardown {result.token}: worker_stopped={result.worker_stopped} "
            f"jobs_cleared={result.jobs_cleared} report_failed={result.report_failed} "
            f"status_removed={result.status_removed}",
        ]


def _status_line(workload: WorkloadStatusView) -> str:
    return (
        f"{workload.token} {workload.done_count}/{workload.total_count} "
        f"({workload.progress_ratio:.0%}) queue={workload.queue_name} "
        f"worker={workload.worker_task_handle or '-'} "
        f"updated={workload.updated_at.isoformat()}"
    )


def _report_line(report: ReportView) -> str:
    return (
        f"{report.report_id} {report.status.value} format={report.output_format.value} "
        f"rows={report.row_count} token={report.token or '-'} "
        f"artifact={report.artifact_ref or '-'}"
    )


def _iso(value: datetime | None) -> str:
    return value.isoformat() if value is not None else "-"


@contextmanager
def _runtime(settings: Settings) -> Iterator[OrchestratorRuntime]:
    settings.validate()
    repository = OrchestratorRepository(db_path=settings.db_path)
    repository.init_schema()
    try:
        yield build_runtime(settings, repository=repository)
    finally:
        repository.close()
