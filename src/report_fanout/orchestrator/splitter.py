"""Split a tabular batch into per-row jobs on a private queue."""

from __future__ import annotations

import csv
import io
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from uuid import uuid4

from report_fanout.orchestrator.launcher import (
    WorkerLauncher,
    WorkerLaunchError,
    WorkerThrottledError,
)
from report_fanout.orchestrator.locks import LockTimeoutError
from report_fanout.orchestrator.models import JobKind, WorkloadCreate
from report_fanout.orchestrator.queue import JobQueue
from report_fanout.orchestrator.repository import OrchestratorRepository, ReportNotFoundError
from report_fanout.orchestrator.routing import route
from report_fanout.orchestrator.teardown import WorkloadTeardown
from report_fanout.storage.common import utc_now

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SplitResult:
    """Outcome of splitting one batch."""

    token: str
    queue_name: str
    row_count: int
    worker_handle: str | None


def parse_rows(csv_text: str) -> list[dict[str, str]]:
    """Parse CSV text with a header row into row mappings; blank lines are skipped."""

    reader = csv.DictReader(io.StringIO(csv_text.removeprefix("\ufeff")))
    if reader.fieldnames is None:
        return []
    rows: list[dict[str, str]] = []
    for raw in reader:
        row = {key: (value or "") for key, value in raw.items() if key is not None}
        if not any(value.strip() for value in row.values()):
            continue
        rows.append(row)
    return rows


class WorkSplitter:
    """Create a workload, fan rows out, enqueue the finalize poll and start a worker."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: OrchestratorRepository,
        queue: JobQueue,
        launcher: WorkerLauncher,
        teardown: WorkloadTeardown,
        work_root: Path,
        control_queue: str,
        poll_interval_seconds: int,
        max_wait_seconds: int,
        job_max_attempts: int,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.repository = repository
        self.queue = queue
        self.launcher = launcher
        self.teardown = teardown
        self.work_root = work_root
        self.control_queue = control_queue
        self.poll_interval_seconds = poll_interval_seconds
        self.max_wait_seconds = max_wait_seconds
        self.job_max_attempts = job_max_attempts
        self._clock = clock

    def split(self, csv_text: str, report_id: str) -> SplitResult:
        """Fan a batch out for ``report_id``.

        Raises:
            ReportNotFoundError: the report does not exist.
            WorkerLaunchError: the worker could not be started; the workload is
                torn down and the report marked failed before this propagates.
            SQLAlchemyError: fan-out failed midway; torn down the same way.
        """

        report = self.repository.get_report(report_id)
        if report is None:
            raise ReportNotFoundError(f"Report not found: {report_id}")

        rows = parse_rows(csv_text)
        token = str(uuid4())
        queue_name = route(token)
        workdir = self.work_root / token

        self.repository.create_workload(
            WorkloadCreate(
                token=token,
                total_count=len(rows),
                queue_name=queue_name,
                report_id=report_id,
            ),
        )
        try:
            self.repository.mark_report_processing(report_id=report_id, token=token)
            self._fan_out(
                token=token,
                queue_name=queue_name,
                rows=rows,
                report_id=report_id,
                output_format=report.output_format.value,
                workdir=workdir,
            )
        except Exception as error:
            logger.exception("Split of report %s failed after creating %s", report_id, token)
            self.teardown.teardown(token, reason=f"split failed: {error}")
            raise
        logger.info("Split report %s into %d row job(s) on %s", report_id, len(rows), queue_name)

        handle = self._launch(token)
        return SplitResult(
            token=token,
            queue_name=queue_name,
            row_count=len(rows),
            worker_handle=handle,
        )

    def _fan_out(  # noqa: PLR0913
        self,
        *,
        token: str,
        queue_name: str,
        rows: list[dict[str, str]],
        report_id: str,
        output_format: str,
        workdir: Path,
    ) -> None:
        for row in rows:
            self.queue.enqueue(
                queue_name,
                JobKind.PROCESS_ROW,
                {
                    "token": token,
                    "row": row,
                    "format": output_format,
                    "report_id": report_id,
                    "path": str(workdir),
                },
                max_attempts=self.job_max_attempts,
            )
        self.queue.enqueue(
            queue_name,
            JobKind.FINALIZE,
            {
                "token": token,
                "path": str(workdir),
                "format": output_format,
                "report_id": report_id,
                "poll_interval": self.poll_interval_seconds,
                "max_wait": self.max_wait_seconds,
                "started_at": int(self._clock().timestamp()),
            },
            max_attempts=self.job_max_attempts,
        )

    def _launch(self, token: str) -> str | None:
        if not self.launcher.enabled:
            return None
        try:
            return self.launcher.launch(token)
        except (WorkerThrottledError, LockTimeoutError) as error:
            logger.warning("Worker launch for %s deferred: %s", token, error)
            self.queue.enqueue(
                self.control_queue,
                JobKind.LAUNCH_WORKER,
                {"token": token},
                max_attempts=self.launcher.settings.max_attempts,
            )
            return None
        except WorkerLaunchError as error:
            logger.error("Worker launch for %s failed: %s", token, error)
            self.teardown.teardown(token, reason=f"worker launch failed: {error}")
            raise
