from __future__ import annotations

import zipfile
from dataclasses import replace
from pathlib import Path

import allure

from report_fanout.orchestrator.models import OutputFormat, ReportStatus
from report_fanout.orchestrator.services import SubmitReport, build_runtime

pytestmark = [
    allure.epic("Fan-out Orchestration"),
    allure.feature("End-to-end Flow"),
]

CSV = "client,amount\nacme,10\nglobex,20\ninitech,30\n"


def test_three_row_batch_is_delivered_as_one_bundle(
    runtime,
    provider,
    clock,
    settings,
    make_worker,
) -> None:
    report = runtime.service.submit(SubmitReport(csv_text=CSV, output_format=OutputFormat.XLSX))
    assert report.status is ReportStatus.PENDING
    worker = make_worker(runtime)

    worker.run_loop(max_idle_polls=1)
    clock.advance(settings.finalize.poll_interval_seconds)
    worker.run_loop(max_idle_polls=1)

    stored = runtime.repository.get_report(report.report_id)
    assert stored.status is ReportStatus.COMPLETED
    assert stored.row_count == 3
    artifact = Path(stored.artifact_ref)
    assert artifact == settings.delivery.local_root / "reports" / f"{stored.token}.zip"
    with zipfile.ZipFile(artifact) as bundle:
        names = bundle.namelist()
        assert len(names) == 3
        contents = sorted(bundle.read(name).decode("utf-8") for name in names)
    assert all(content.startswith("format: xlsx\n") for content in contents)
    assert any("client: globex" in content for content in contents)

    assert len(provider.launched) == 1
    assert provider.stopped == ["task-1"]
    assert runtime.repository.get_workload(stored.token) is None
    assert not (settings.work.work_root / stored.token).exists()
    assert runtime.queue.list_jobs() == []

    events = [event.event_type for event in runtime.repository.list_events(stored.token)]
    assert events[0] == "workload_created"
    assert "worker_launched" in events
    assert "finalized" in events
    assert events[-1] == "workload_removed"


class StuckProcessor:
    def process(self, row, output_format, workdir: Path, *, token: str) -> Path:
        raise RuntimeError("renderer hung")


def test_stuck_rows_time_out_after_max_wait(
    settings,
    repository,
    provider,
    notifier,
    clock,
    make_worker,
) -> None:
    fanout = build_runtime(
        replace(
            settings,
            finalize=replace(settings.finalize, poll_interval_seconds=1, max_wait_seconds=5),
        ),
        repository=repository,
        provider=provider,
        notifier=notifier,
        row_processor=StuckProcessor(),
        clock=clock,
        sleep=lambda _: None,
    )
    report = fanout.service.submit(SubmitReport(csv_text=CSV, output_format=OutputFormat.PDF))
    worker = make_worker(fanout)

    polls = 0
    while polls < 10:
        worker.run_loop(max_idle_polls=1)
        token = fanout.repository.get_report(report.report_id).token
        if token is not None and fanout.repository.get_workload(token) is None:
            break
        clock.advance(1)
        polls += 1

    stored = fanout.repository.get_report(report.report_id)
    assert polls == 5
    assert stored.status is ReportStatus.FAILED
    assert "timed out after 5s with 0/3 rows done" in (stored.error_summary or "")
    assert fanout.repository.get_workload(stored.token) is None
    assert provider.stopped == ["task-1"]
