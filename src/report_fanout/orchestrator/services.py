"""Use-case services and component wiring for the report fan-out orchestrator."""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from report_fanout.config import Settings
from report_fanout.orchestrator.finalize import FinalizeJob
from report_fanout.orchestrator.jobs import JobHandlers
from report_fanout.orchestrator.launcher import WorkerLauncher
from report_fanout.orchestrator.models import (
    JobKind,
    OutputFormat,
    QueueJobView,
    ReportStatus,
    ReportView,
    WorkloadEventView,
    WorkloadStatusView,
)
from report_fanout.orchestrator.monitors import (
    DeadLetterMonitor,
    ForceShutdownMonitor,
    IdleMonitor,
    Monitor,
)
from report_fanout.orchestrator.notifications import Notifier, OperatorNotifier
from report_fanout.orchestrator.packaging import ArtifactPackager, ArtifactSink, build_sink
from report_fanout.orchestrator.provider import (
    ContainerTaskProvider,
    EcsTaskProvider,
    LocalProcessProvider,
)
from report_fanout.orchestrator.queue import JobQueue
from report_fanout.orchestrator.repository import OrchestratorRepository
from report_fanout.orchestrator.row_processing import DocumentRowProcessor, RowProcessor
from report_fanout.orchestrator.splitter import WorkSplitter
from report_fanout.orchestrator.teardown import WorkloadTeardown
from report_fanout.storage.common import utc_now


@dataclass(slots=True)
class SubmitReport:
    """High-level command to submit one batch."""

    csv_text: str
    output_format: OutputFormat


@dataclass(slots=True)
class WorkloadDetails:
    """Everything known about one token, for operator inspection."""

    workload: WorkloadStatusView | None
    report: ReportView | None
    pending_jobs: int
    dead_jobs: list[QueueJobView]
    events: list[WorkloadEventView]


class ReportService:
    """Accepts batches and answers status queries."""

    def __init__(
        self,
        *,
        repository: OrchestratorRepository,
        queue: JobQueue,
        control_queue: str,
        job_max_attempts: int = 3,
    ) -> None:
        self.repository = repository
        self.queue = queue
        self.control_queue = control_queue
        self.job_max_attempts = job_max_attempts

    def submit(self, command: SubmitReport) -> ReportView:
        """Create the report as pending and hand the split to a worker.

        Returns at once; the split, fan-out and delivery happen asynchronously.
        """

        report = self.repository.create_report(output_format=command.output_format)
        self.queue.enqueue(
            self.control_queue,
            JobKind.SPLIT_BATCH,
            {"report_id": report.report_id, "csv_text": command.csv_text},
            max_attempts=self.job_max_attempts,
        )
        return report

    def list_statuses(self, limit: int = 10) -> list[WorkloadStatusView]:
        return self.repository.list_workloads(limit=limit)

    def list_reports(
        self,
        limit: int = 10,
        *,
        status: ReportStatus | None = None,
    ) -> list[ReportView]:
        """Most recently created reports, including finished ones."""

        return self.repository.list_reports(status=status, limit=limit)

    def get_status(self, token: str) -> WorkloadStatusView | None:
        return self.repository.get_workload(token)

    def describe(self, token: str) -> WorkloadDetails:
        workload = self.repository.get_workload(token)
        report = self.repository.find_report_by_token(token)
        queue_name = workload.queue_name if workload is not None else None
        return WorkloadDetails(
            workload=workload,
            report=report,
            pending_jobs=self.queue.pending_count(queue_name) if queue_name else 0,
            dead_jobs=[job for job in self.queue.list_dead() if job.token == token],
            events=self.repository.list_events(token),
        )


@dataclass(slots=True)
class OrchestratorRuntime:
    """Fully wired components sharing one repository and queue."""

    repository: OrchestratorRepository
    queue: JobQueue
    launcher: WorkerLauncher
    teardown: WorkloadTeardown
    splitter: WorkSplitter
    finalize: FinalizeJob
    handlers: JobHandlers
    service: ReportService
    monitors: list[Monitor]


def build_provider(settings: Settings) -> ContainerTaskProvider:
    if settings.launcher.provider == "ecs":
        return EcsTaskProvider(
            cluster=settings.launcher.cluster,
            region=settings.launcher.region,
        )
    return LocalProcessProvider(settings.launcher.registry_dir)


def build_runtime(  # noqa: PLR0913
    settings: Settings,
    *,
    repository: OrchestratorRepository,
    provider: ContainerTaskProvider | None = None,
    notifier: Notifier | None = None,
    sink: ArtifactSink | None = None,
    row_processor: RowProcessor | None = None,
    clock: Callable[[], datetime] = utc_now,
    sleep: Callable[[float], None] = time.sleep,
) -> OrchestratorRuntime:
    """Wire every component from settings; tests pass fakes for the external edges."""

    queue = JobQueue(repository.engine, clock=clock)
    launcher = WorkerLauncher(
        repository=repository,
        provider=provider or build_provider(settings),
        settings=settings.launcher,
        sleep=sleep,
    )
    teardown = WorkloadTeardown(
        repository=repository,
        queue=queue,
        launcher=launcher,
        notifier=notifier or OperatorNotifier.from_settings(settings.notifications),
        control_queue=settings.queue.control_queue,
        work_root=settings.work.work_root,
        idle_shutdown_delay_seconds=settings.monitors.idle_shutdown_delay_seconds,
        idle_shutdown_max_reschedules=settings.monitors.idle_shutdown_max_reschedules,
    )
    splitter = WorkSplitter(
        repository=repository,
        queue=queue,
        launcher=launcher,
        teardown=teardown,
        work_root=settings.work.work_root,
        control_queue=settings.queue.control_queue,
        poll_interval_seconds=settings.finalize.poll_interval_seconds,
        max_wait_seconds=settings.finalize.max_wait_seconds,
        job_max_attempts=settings.queue.max_attempts,
        clock=clock,
    )
    finalize = FinalizeJob(
        repository=repository,
        queue=queue,
        launcher=launcher,
        teardown=teardown,
        packager=ArtifactPackager(),
        sink=sink or build_sink(settings.delivery),
        lock_timeout_seconds=settings.finalize.lock_timeout_seconds,
        job_max_attempts=settings.queue.max_attempts,
        clock=clock,
    )
    handlers = JobHandlers(
        repository=repository,
        splitter=splitter,
        finalize=finalize,
        launcher=launcher,
        teardown=teardown,
        row_processor=row_processor
        or DocumentRowProcessor(delay_seconds=settings.work.row_delay_seconds),
    )
    monitors: list[Monitor] = [
        DeadLetterMonitor(
            repository=repository,
            queue=queue,
            teardown=teardown,
            dead_row_threshold=settings.monitors.dead_row_threshold,
            dead_retention_seconds=settings.monitors.dead_retention_seconds,
            dead_max_jobs=settings.monitors.dead_max_jobs,
            clock=clock,
        ),
        IdleMonitor(
            repository=repository,
            queue=queue,
            launcher=launcher,
            idle_threshold_seconds=settings.monitors.idle_threshold_seconds,
            stale_threshold_seconds=settings.monitors.stale_threshold_seconds,
            residual_jobs=settings.monitors.idle_residual_jobs,
            clock=clock,
        ),
        ForceShutdownMonitor(repository=repository, teardown=teardown),
    ]
    return OrchestratorRuntime(
        repository=repository,
        queue=queue,
        launcher=launcher,
        teardown=teardown,
        splitter=splitter,
        finalize=finalize,
        handlers=handlers,
        service=ReportService(
            repository=repository,
            queue=queue,
            control_queue=settings.queue.control_queue,
            job_max_attempts=settings.queue.max_attempts,
        ),
        monitors=monitors,
    )
