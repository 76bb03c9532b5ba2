from __future__ import annotations

import allure

from report_fanout.orchestrator.models import JobKind, OutputFormat, ReportStatus
from report_fanout.orchestrator.provider import ProviderError
from report_fanout.orchestrator.teardown import ShutdownStage

pytestmark = [
    allure.epic("Fan-out Orchestration"),
    allure.feature("Teardown & Cascading Shutdown"),
]

CSV = "name\nalpha\nbeta\n"


def _split(runtime) -> tuple[str, str]:
    report = runtime.repository.create_report(output_format=OutputFormat.PDF)
    result = runtime.splitter.split(CSV, report.report_id)
    return result.token, report.report_id


def test_teardown_releases_everything_and_is_idempotent(runtime, provider, settings) -> None:
    token, report_id = _split(runtime)
    workdir = settings.work.work_root / token
    workdir.mkdir(parents=True)
    (workdir / "row.txt").write_text("x", "utf-8")

    first = runtime.teardown.teardown(token, reason="operator request")

    assert first.worker_stopped
    assert first.jobs_cleared == 3
    assert first.report_failed
    assert first.status_removed
    assert provider.stopped == ["task-1"]
    assert not workdir.exists()
    assert runtime.repository.get_report(report_id).status is ReportStatus.FAILED

    second = runtime.teardown.teardown(token, reason="operator request")

    assert not second.worker_stopped
    assert second.jobs_cleared == 0
    assert not second.report_failed
    assert not second.status_removed
    assert provider.stopped == ["task-1"]


def test_teardown_never_fails_a_completed_report(runtime) -> None:
    token, report_id = _split(runtime)
    runtime.repository.complete_report(report_id=report_id, artifact_ref="x.zip", row_count=2)

    result = runtime.teardown.teardown(token, reason="late cleanup")

    assert not result.report_failed
    assert runtime.repository.get_report(report_id).status is ReportStatus.COMPLETED


def test_force_teardown_falls_back_to_terminate(runtime, provider) -> None:
    token, _ = _split(runtime)
    provider.stop_error = ProviderError("stop rejected", transient=True)

    result = runtime.teardown.force_teardown(token, reason="force shutdown required")

    assert result.worker_stopped
    assert provider.terminated == ["task-1"]


def test_cascading_shutdown_stops_directly(runtime, provider) -> None:
    token, _ = _split(runtime)

    assert runtime.teardown.cascading_shutdown(token, reason="done") is ShutdownStage.STOPPED
    assert provider.stopped == ["task-1"]


def test_cascading_shutdown_lets_busy_worker_drain(runtime, provider) -> None:
    token, _ = _split(runtime)
    provider.stop_error = ProviderError("stop rejected", transient=True)

    stage = runtime.teardown.cascading_shutdown(token, reason="finalize failed")

    assert stage is ShutdownStage.DRAINING
    assert runtime.queue.list_jobs(queue_name="default") == []


def test_cascading_shutdown_escalates_to_force_flag(runtime, provider, notifier, clock) -> None:
    token, _ = _split(runtime)
    runtime.queue.clear_all_for_token(token)
    provider.stop_error = ProviderError("stop rejected", transient=True)

    stage = runtime.teardown.cascading_shutdown(token, reason="finalize failed")

    assert stage is ShutdownStage.IDLE_SHUTDOWN_SCHEDULED
    scheduled = runtime.queue.list_jobs(queue_name="default")
    assert [job.kind for job in scheduled] == [JobKind.IDLE_SHUTDOWN]
    assert scheduled[0].args == {"token": token, "attempt": 0, "reason": "finalize failed"}
    assert runtime.queue.size("default") == 0

    clock.advance(30)
    assert runtime.queue.size("default") == 1

    stage = runtime.teardown.idle_shutdown(token, attempt=0, reason="finalize failed")

    assert stage is ShutdownStage.FORCE_FLAGGED
    assert runtime.repository.get_workload(token).force_shutdown_at is not None
    assert len(notifier.alerts) == 1
    assert notifier.alerts[0].token == token
    assert notifier.alerts[0].details["cause"] == "stop_failed"


def test_idle_shutdown_reschedules_until_cap(runtime, provider, notifier) -> None:
    token, _ = _split(runtime)
    provider.stop_error = ProviderError("stop rejected", transient=True)

    stage = runtime.teardown.idle_shutdown(token, attempt=3, reason="r")
    assert stage is ShutdownStage.IDLE_SHUTDOWN_SCHEDULED
    rescheduled = runtime.queue.list_jobs(queue_name="default")
    assert rescheduled[0].args["attempt"] == 4

    stage = runtime.teardown.idle_shutdown(
        token,
        attempt=runtime.teardown.idle_shutdown_max_reschedules,
        reason="r",
    )
    assert stage is ShutdownStage.FORCE_FLAGGED
    assert notifier.alerts[-1].details["cause"] == "queue_not_draining"


def test_idle_shutdown_after_worker_stopped_elsewhere(runtime, provider) -> None:
    token, _ = _split(runtime)
    runtime.queue.clear_all_for_token(token)

    stage = runtime.teardown.idle_shutdown(token, attempt=0, reason="r")

    assert stage is ShutdownStage.STOPPED
    assert provider.stopped == ["task-1"]
