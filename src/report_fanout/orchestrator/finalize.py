"""Self-rescheduling finalize job: wait for row jobs, then deliver exactly once."""

from __future__ import annotations

import logging
import shutil
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any

from report_fanout.orchestrator.launcher import WorkerLauncher
from report_fanout.orchestrator.locks import LockTimeoutError, finalize_lock_key
from report_fanout.orchestrator.models import (
    JobKind,
    OutputFormat,
    ReportStatus,
    WorkloadStatusView,
)
from report_fanout.orchestrator.packaging import ArtifactPackager, ArtifactSink
from report_fanout.orchestrator.queue import JobQueue
from report_fanout.orchestrator.repository import OrchestratorRepository, ReportNotFoundError
from report_fanout.orchestrator.routing import route
from report_fanout.orchestrator.teardown import WorkloadTeardown
from report_fanout.storage.common import utc_now

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_SECONDS = 10
DEFAULT_MAX_WAIT_SECONDS = 43_200


class FinalizeOutcome(str, Enum):
    """Result of one finalize invocation."""

    SKIPPED = "skipped"
    MISSING_WORKLOAD = "missing_workload"
    RESCHEDULED = "rescheduled"
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"


@dataclass(slots=True)
class FinalizeArgs:
    """Arguments carried unchanged across every reschedule."""

    path: str
    format: OutputFormat
    report_id: str
    token: str
    started_at: int
    poll_interval: int = DEFAULT_POLL_INTERVAL_SECONDS
    max_wait: int = DEFAULT_MAX_WAIT_SECONDS

    @classmethod
    def from_job_args(cls, args: Mapping[str, Any]) -> FinalizeArgs:
        return cls(
            path=str(args["path"]),
            format=OutputFormat(args["format"]),
            report_id=str(args["report_id"]),
            token=str(args["token"]),
            started_at=int(args["started_at"]),
            poll_interval=int(args.get("poll_interval", DEFAULT_POLL_INTERVAL_SECONDS)),
            max_wait=int(args.get("max_wait", DEFAULT_MAX_WAIT_SECONDS)),
        )

    def to_job_args(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "format": self.format.value,
            "report_id": self.report_id,
            "token": self.token,
            "started_at": self.started_at,
            "poll_interval": self.poll_interval,
            "max_wait": self.max_wait,
        }


class FinalizeJob:
    """Poll workload progress and retire the workload once it is done or out of time."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: OrchestratorRepository,
        queue: JobQueue,
        launcher: WorkerLauncher,
        teardown: WorkloadTeardown,
        packager: ArtifactPackager,
        sink: ArtifactSink,
        lock_timeout_seconds: float = 10.0,
        job_max_attempts: int = 3,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.repository = repository
        self.queue = queue
        self.launcher = launcher
        self.teardown = teardown
        self.packager = packager
        self.sink = sink
        self.lock_timeout_seconds = lock_timeout_seconds
        self.job_max_attempts = job_max_attempts
        self.clock = clock

    def run(self, args: FinalizeArgs) -> FinalizeOutcome:
        """Run one step of the state machine.

        The wait is never blocking: an unfinished workload re-enqueues the same
        arguments ``poll_interval`` seconds ahead and returns.
        """

        workload = self.repository.get_workload(args.token)
        report = self.repository.get_report(args.report_id)
        if report is None:
            raise ReportNotFoundError(f"Report not found: {args.report_id}")
        if (workload is not None and workload.finalized_at is not None) or (
            report.status == ReportStatus.COMPLETED
        ):
            return FinalizeOutcome.SKIPPED

        if workload is None:
            self.repository.fail_report(
                report_id=args.report_id,
                error_summary="workload was torn down before completion",
            )
            logger.warning("Finalize for %s found no workload; report failed", args.token)
            return FinalizeOutcome.MISSING_WORKLOAD

        now = self.clock()
        elapsed = now.timestamp() - args.started_at
        if elapsed < args.max_wait and not workload.is_complete:
            self.queue.enqueue(
                workload.queue_name or route(args.token),
                JobKind.FINALIZE,
                args.to_job_args(),
                run_at=now + timedelta(seconds=args.poll_interval),
                max_attempts=self.job_max_attempts,
            )
            logger.debug(
                "Finalize for %s waiting: %d/%d done, next poll in %ss",
                args.token,
                workload.done_count,
                workload.total_count,
                args.poll_interval,
            )
            return FinalizeOutcome.RESCHEDULED

        try:
            outcome = self._terminal(args, timed_out=not workload.is_complete)
        except LockTimeoutError:
            raise
        except Exception:
            logger.exception("Finalize for %s failed", args.token)
            self.teardown.cascading_shutdown(args.token, reason="finalize failed")
            self.repository.fail_report(
                report_id=args.report_id,
                error_summary="finalize failed while packaging or delivering",
            )
            raise

        if outcome is FinalizeOutcome.SKIPPED:
            return outcome
        self._cleanup(args, outcome=outcome)
        return outcome

    def _terminal(self, args: FinalizeArgs, *, timed_out: bool) -> FinalizeOutcome:
        with self.repository.lock(
            finalize_lock_key(args.token),
            timeout_seconds=self.lock_timeout_seconds,
        ):
            current = self.repository.get_workload(args.token)
            if current is None or current.finalized_at is not None:
                return FinalizeOutcome.SKIPPED

            if timed_out:
                self._time_out(args, current)
                self.repository.mark_finalized(args.token)
                return FinalizeOutcome.TIMED_OUT

            artifact = self.packager.package(Path(args.path), args.format)
            artifact_ref = self.sink.deliver(artifact, token=args.token)
            self.repository.complete_report(
                report_id=args.report_id,
                artifact_ref=artifact_ref,
                row_count=artifact.count,
            )
            self.repository.mark_finalized(args.token)
            logger.info(
                "Report %s completed: %d file(s) delivered to %s",
                args.report_id,
                artifact.count,
                artifact_ref,
            )
            return FinalizeOutcome.COMPLETED

    def _time_out(self, args: FinalizeArgs, workload: WorkloadStatusView) -> None:
        summary = (
            f"timed out after {args.max_wait}s with "
            f"{workload.done_count}/{workload.total_count} rows done"
        )
        self.repository.fail_report(report_id=args.report_id, error_summary=summary)
        self.queue.clear_all_for_token(args.token)
        self.repository.add_event(token=args.token, event_type="finalize_timed_out")
        logger.warning("Report %s %s", args.report_id, summary)

    def _cleanup(self, args: FinalizeArgs, *, outcome: FinalizeOutcome) -> None:
        shutil.rmtree(args.path, ignore_errors=True)
        Path(f"{args.path}_{args.format.value}.zip").unlink(missing_ok=True)
        self.launcher.stop(args.token, reason=f"report {outcome.value}")
        self.repository.delete_workload(args.token)
