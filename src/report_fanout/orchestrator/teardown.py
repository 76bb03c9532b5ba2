"""Single idempotent teardown path and the cascading worker shutdown."""

from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from sqlalchemy.exc import SQLAlchemyError

from report_fanout.orchestrator.launcher import WorkerLauncher
from report_fanout.orchestrator.models import JobKind
from report_fanout.orchestrator.notifications import Notifier, OperatorAlert
from report_fanout.orchestrator.queue import JobQueue
from report_fanout.orchestrator.repository import OrchestratorRepository

logger = logging.getLogger(__name__)

DEFAULT_IDLE_SHUTDOWN_DELAY_SECONDS = 30
DEFAULT_IDLE_SHUTDOWN_MAX_RESCHEDULES = 10


class ShutdownStage(str, Enum):
    """Where the cascading shutdown ended."""

    STOPPED = "stopped"
    DRAINING = "draining"
    IDLE_SHUTDOWN_SCHEDULED = "idle_shutdown_scheduled"
    FORCE_FLAGGED = "force_flagged"


@dataclass(slots=True)
class TeardownResult:
    """What one teardown call changed."""

    token: str
    worker_stopped: bool
    jobs_cleared: int
    report_failed: bool
    status_removed: bool


class WorkloadTeardown:
    """Release every resource a workload holds."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: OrchestratorRepository,
        queue: JobQueue,
        launcher: WorkerLauncher,
        notifier: Notifier,
        control_queue: str,
        work_root: Path | None = None,
        idle_shutdown_delay_seconds: int = DEFAULT_IDLE_SHUTDOWN_DELAY_SECONDS,
        idle_shutdown_max_reschedules: int = DEFAULT_IDLE_SHUTDOWN_MAX_RESCHEDULES,
    ) -> None:
        self.repository = repository
        self.queue = queue
        self.launcher = launcher
        self.notifier = notifier
        self.control_queue = control_queue
        self.work_root = work_root
        self.idle_shutdown_delay_seconds = idle_shutdown_delay_seconds
        self.idle_shutdown_max_reschedules = idle_shutdown_max_reschedules

    def teardown(self, token: str, *, reason: str, force: bool = False) -> TeardownResult:
        """Stop the worker, clear queued jobs, fail the report and drop the status record.

        Every step tolerates having already happened, so concurrent or repeated
        calls converge on the same end state.
        """

        workload = self.repository.get_workload(token)
        report_id = workload.report_id if workload is not None else None
        if report_id is None:
            report = self.repository.find_report_by_token(token)
            report_id = report.report_id if report is not None else None

        stopped = self.launcher.stop(token, reason=reason)
        if not stopped and force:
            stopped = self.launcher.terminate(token, reason=reason)
        cleared = self.queue.clear_all_for_token(token)
        report_failed = (
            self.repository.fail_report(report_id=report_id, error_summary=reason)
            if report_id is not None
            else False
        )
        removed = self.repository.delete_workload(token)
        self._remove_workdir(token)

        result = TeardownResult(
            token=token,
            worker_stopped=stopped,
            jobs_cleared=cleared,
            report_failed=report_failed,
            status_removed=removed,
        )
        self.repository.add_event(
            token=token,
            event_type="teardown",
            details={
                "reason": reason,
                "force": force,
                "worker_stopped": stopped,
                "jobs_cleared": cleared,
                "report_failed": report_failed,
                "status_removed": removed,
            },
        )
        logger.info(
            "Teardown of %s (%s): stopped=%s cleared=%d failed=%s removed=%s",
            token,
            reason,
            stopped,
            cleared,
            report_failed,
            removed,
        )
        return result

    def force_teardown(self, token: str, *, reason: str) -> TeardownResult:
        """Teardown that falls back to terminate when a plain stop does not confirm."""

        return self.teardown(token, reason=reason, force=True)

    def cascading_shutdown(self, token: str, *, reason: str) -> ShutdownStage:
        """Escalate from a direct stop to a delayed re-check to an operator alert."""

        workload = self.repository.get_workload(token)
        if workload is None or not workload.worker_task_handle:
            return ShutdownStage.STOPPED
        if self.launcher.stop(token, reason=reason):
            return ShutdownStage.STOPPED

        remaining = self.queue.pending_count(workload.queue_name)
        if remaining > 0:
            logger.info("Worker for %s keeps draining %d job(s)", token, remaining)
            return ShutdownStage.DRAINING

        try:
            self.queue.enqueue_in(
                self.control_queue,
                JobKind.IDLE_SHUTDOWN,
                {"token": token, "attempt": 0, "reason": reason},
                delay_seconds=self.idle_shutdown_delay_seconds,
            )
        except SQLAlchemyError:
            logger.exception("Failed to schedule idle shutdown for %s", token)
            return self._escalate(token, reason=reason, cause="schedule_failed")
        logger.info(
            "Scheduled idle shutdown for %s in %ss",
            token,
            self.idle_shutdown_delay_seconds,
        )
        return ShutdownStage.IDLE_SHUTDOWN_SCHEDULED

    def idle_shutdown(self, token: str, *, attempt: int, reason: str) -> ShutdownStage:
        """Delayed re-check: stop once the private queue is empty."""

        workload = self.repository.get_workload(token)
        if workload is None or not workload.worker_task_handle:
            return ShutdownStage.STOPPED

        remaining = self.queue.pending_count(workload.queue_name)
        if remaining == 0:
            if self.launcher.stop(token, reason=reason):
                return ShutdownStage.STOPPED
            return self._escalate(token, reason=reason, cause="stop_failed")

        if attempt >= self.idle_shutdown_max_reschedules:
            return self._escalate(token, reason=reason, cause="queue_not_draining")

        self.queue.enqueue_in(
            self.control_queue,
            JobKind.IDLE_SHUTDOWN,
            {"token": token, "attempt": attempt + 1, "reason": reason},
            delay_seconds=self.idle_shutdown_delay_seconds,
        )
        logger.info(
            "Jobs still remaining (%d) for %s, idle shutdown rescheduled",
            remaining,
            token,
        )
        return ShutdownStage.IDLE_SHUTDOWN_SCHEDULED

    def _escalate(self, token: str, *, reason: str, cause: str) -> ShutdownStage:
        flagged = self.repository.flag_force_shutdown(token)
        self.notifier.notify(
            OperatorAlert(
                token=token,
                subject="Worker did not shut down; force shutdown flagged",
                details={"reason": reason, "cause": cause, "flagged": flagged},
            ),
        )
        return ShutdownStage.FORCE_FLAGGED

    def _remove_workdir(self, token: str) -> None:
        if self.work_root is None:
            return
        shutil.rmtree(self.work_root / token, ignore_errors=True)
