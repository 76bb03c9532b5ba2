"""Job dispatch with the queue-routing assertion in front of every handler."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Any

from report_fanout.orchestrator.finalize import FinalizeArgs, FinalizeJob
from report_fanout.orchestrator.launcher import WorkerLauncher, WorkerLaunchError
from report_fanout.orchestrator.models import JobKind, OutputFormat, QueueJobView, ReportStatus
from report_fanout.orchestrator.repository import OrchestratorRepository
from report_fanout.orchestrator.routing import ensure_routed
from report_fanout.orchestrator.row_processing import RowProcessor
from report_fanout.orchestrator.splitter import WorkSplitter
from report_fanout.orchestrator.teardown import WorkloadTeardown

logger = logging.getLogger(__name__)

JobArgs = Mapping[str, Any]


class JobHandlers:
    """Map each job kind to the component that executes it."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: OrchestratorRepository,
        splitter: WorkSplitter,
        finalize: FinalizeJob,
        launcher: WorkerLauncher,
        teardown: WorkloadTeardown,
        row_processor: RowProcessor,
    ) -> None:
        self.repository = repository
        self.splitter = splitter
        self.finalize = finalize
        self.launcher = launcher
        self.teardown = teardown
        self.row_processor = row_processor
        self._handlers: dict[JobKind, Callable[[JobArgs], None]] = {
            JobKind.SPLIT_BATCH: self._split_batch,
            JobKind.PROCESS_ROW: self._process_row,
            JobKind.FINALIZE: self._finalize,
            JobKind.LAUNCH_WORKER: self._launch_worker,
            JobKind.IDLE_SHUTDOWN: self._idle_shutdown,
        }

    def dispatch(self, job: QueueJobView) -> None:
        """Execute one claimed job.

        Raises:
            QueueRoutingError: a token-scoped job was found on a foreign queue.
        """

        ensure_routed(job.kind, job.args, job.queue_name)
        self._handlers[job.kind](job.args)

    def _split_batch(self, args: JobArgs) -> None:
        report_id = str(args["report_id"])
        report = self.repository.get_report(report_id)
        if report is not None and report.status is not ReportStatus.PENDING:
            logger.info("Report %s already %s; split skipped", report_id, report.status.value)
            return
        try:
            self.splitter.split(str(args["csv_text"]), report_id)
        except WorkerLaunchError:
            # Report is already failed and the workload torn down.
            return

    def _process_row(self, args: JobArgs) -> None:
        token = str(args["token"])
        if self.repository.get_workload(token) is None:
            logger.info("Workload %s is gone; row job dropped", token)
            return
        row = args.get("row") or {}
        self.row_processor.process(
            {str(key): str(value) for key, value in row.items()},
            OutputFormat(args["format"]),
            Path(str(args["path"])),
            token=token,
        )
        self.repository.increment_done(token)

    def _finalize(self, args: JobArgs) -> None:
        outcome = self.finalize.run(FinalizeArgs.from_job_args(args))
        logger.debug("Finalize for %s: %s", args.get("token"), outcome.value)

    def _launch_worker(self, args: JobArgs) -> None:
        token = str(args["token"])
        if self.repository.get_workload(token) is None:
            logger.info("Workload %s is gone; deferred launch dropped", token)
            return
        self.launcher.launch(token)

    def _idle_shutdown(self, args: JobArgs) -> None:
        stage = self.teardown.idle_shutdown(
            str(args["token"]),
            attempt=int(args.get("attempt", 0)),
            reason=str(args.get("reason") or "idle shutdown"),
        )
        logger.info("Idle shutdown for %s: %s", args["token"], stage.value)
