from __future__ import annotations

import allure
import pytest
from sqlalchemy.exc import OperationalError

from report_fanout.orchestrator.launcher import WorkerLaunchError
from report_fanout.orchestrator.models import JobKind, JobState, OutputFormat, ReportStatus
from report_fanout.orchestrator.monitors import run_monitors
from report_fanout.orchestrator.repository import ReportNotFoundError
from report_fanout.orchestrator.routing import route
from report_fanout.orchestrator.services import SubmitReport
from report_fanout.orchestrator.splitter import parse_rows

pytestmark = [
    allure.epic("Fan-out Orchestration"),
    allure.feature("Work Splitter"),
]

CSV = "name,amount\nalpha,1\nbeta,2\n\ngamma,3\n"


def test_parse_rows_skips_blank_lines_and_bom() -> None:
    rows = parse_rows("\ufeff" + CSV)

    assert rows == [
        {"name": "alpha", "amount": "1"},
        {"name": "beta", "amount": "2"},
        {"name": "gamma", "amount": "3"},
    ]
    assert parse_rows("") == []
    assert parse_rows("name,amount\n") == []


def test_split_fans_rows_out_on_private_queue(runtime, provider, clock) -> None:
    report = runtime.repository.create_report(output_format=OutputFormat.XLSX)

    result = runtime.splitter.split(CSV, report.report_id)

    assert result.row_count == 3
    assert result.queue_name == route(result.token)
    assert result.worker_handle == "task-1"

    workload = runtime.repository.get_workload(result.token)
    assert workload.total_count == 3
    assert workload.done_count == 0
    assert workload.report_id == report.report_id
    assert workload.worker_task_handle == "task-1"

    stored = runtime.repository.get_report(report.report_id)
    assert stored.status is ReportStatus.PROCESSING
    assert stored.token == result.token

    jobs = runtime.queue.list_jobs(queue_name=result.queue_name)
    kinds = sorted(job.kind.value for job in jobs)
    assert kinds == ["finalize", "process_row", "process_row", "process_row"]
    finalize = next(job for job in jobs if job.kind is JobKind.FINALIZE)
    assert finalize.args["started_at"] == int(clock().timestamp())
    assert finalize.args["format"] == "xlsx"
    assert finalize.args["poll_interval"] == 10
    assert finalize.args["max_wait"] == 43_200
    assert all(job.args["token"] == result.token for job in jobs)

    spec = provider.launched[0]
    assert spec.environment["QUEUE"] == result.queue_name


def test_split_without_launcher_leaves_jobs_for_shared_worker(
    runtime,
    provider,
    settings,
) -> None:
    runtime.launcher.settings.enabled = False
    report = runtime.repository.create_report(output_format=OutputFormat.PDF)

    result = runtime.splitter.split(CSV, report.report_id)

    assert result.worker_handle is None
    assert provider.launch_calls == 0
    assert runtime.queue.size(result.queue_name) == 4


def test_throttled_launch_is_deferred_to_control_queue(runtime, provider) -> None:
    runtime.launcher.settings.max_concurrent = 1
    provider.running_override = 1
    report = runtime.repository.create_report(output_format=OutputFormat.PDF)

    result = runtime.splitter.split(CSV, report.report_id)

    assert result.worker_handle is None
    deferred = runtime.queue.list_jobs(queue_name="default")
    assert [job.kind for job in deferred] == [JobKind.LAUNCH_WORKER]
    assert deferred[0].args == {"token": result.token}
    assert runtime.repository.get_report(report.report_id).status is ReportStatus.PROCESSING


def test_fatal_launch_failure_tears_the_workload_down(runtime, provider) -> None:
    provider.launch_failures = 10
    report = runtime.repository.create_report(output_format=OutputFormat.PDF)

    with pytest.raises(WorkerLaunchError):
        runtime.splitter.split(CSV, report.report_id)

    stored = runtime.repository.get_report(report.report_id)
    assert stored.status is ReportStatus.FAILED
    assert "worker launch failed" in (stored.error_summary or "")
    assert runtime.repository.get_workload(stored.token) is None
    assert runtime.queue.list_jobs(states=(JobState.QUEUED, JobState.RETRY)) == []


def test_split_unknown_report(runtime) -> None:
    with pytest.raises(ReportNotFoundError):
        runtime.splitter.split(CSV, "missing")


def _fail_on_second_row(queue, monkeypatch) -> None:
    real_enqueue = queue.enqueue
    rows_seen = 0

    def _enqueue(queue_name, kind, args, **kwargs):
        nonlocal rows_seen
        if kind is JobKind.PROCESS_ROW:
            rows_seen += 1
            if rows_seen == 2:
                raise OperationalError("INSERT", {}, Exception("database is locked"))
        return real_enqueue(queue_name, kind, args, **kwargs)

    monkeypatch.setattr(queue, "enqueue", _enqueue)


def test_enqueue_failure_midway_tears_the_workload_down(runtime, provider, monkeypatch) -> None:
    report = runtime.repository.create_report(output_format=OutputFormat.PDF)
    _fail_on_second_row(runtime.queue, monkeypatch)

    with pytest.raises(OperationalError):
        runtime.splitter.split(CSV, report.report_id)

    stored = runtime.repository.get_report(report.report_id)
    assert stored.status is ReportStatus.FAILED
    assert "split failed" in (stored.error_summary or "")
    assert runtime.repository.get_workload(stored.token) is None
    assert runtime.queue.list_jobs(queue_name=route(stored.token)) == []
    assert provider.launch_calls == 0
    events = [event.event_type for event in runtime.repository.list_events(stored.token)]
    assert "teardown" in events


def test_retried_split_after_midway_failure_leaves_no_stuck_report(
    runtime,
    provider,
    clock,
    make_worker,
    monkeypatch,
) -> None:
    report = runtime.service.submit(SubmitReport(csv_text=CSV, output_format=OutputFormat.PDF))
    _fail_on_second_row(runtime.queue, monkeypatch)
    worker = make_worker(runtime, queue_names=["default"])

    first = worker.run_once()
    clock.advance(1)
    second = worker.run_once()
    for _ in range(3):
        clock.advance(3_600)
        run_monitors(runtime.monitors)

    assert first.retried == 1
    assert second.succeeded == 1
    stored = runtime.repository.get_report(report.report_id)
    assert stored.status is ReportStatus.FAILED
    assert runtime.repository.list_workloads() == []
    assert runtime.queue.list_jobs() == []
    assert provider.launch_calls == 0
