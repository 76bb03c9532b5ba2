"""Periodic sweeps that find stuck workloads and tear them down."""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Protocol

from sqlalchemy.exc import SQLAlchemyError

from report_fanout.orchestrator.launcher import WorkerLauncher
from report_fanout.orchestrator.models import JobKind, QueueJobView, WorkloadStatusView
from report_fanout.orchestrator.queue import JobQueue
from report_fanout.orchestrator.repository import OrchestratorRepository
from report_fanout.orchestrator.teardown import WorkloadTeardown
from report_fanout.storage.common import utc_now

logger = logging.getLogger(__name__)

DEFAULT_DEAD_ROW_THRESHOLD = 5
DEFAULT_IDLE_THRESHOLD_SECONDS = 1_800
DEFAULT_STALE_THRESHOLD_SECONDS = 600
DEFAULT_IDLE_RESIDUAL_JOBS = 2
DEFAULT_DEAD_RETENTION_SECONDS = 15_552_000
DEFAULT_DEAD_MAX_JOBS = 10_000

_SWEEP_ERRORS = (SQLAlchemyError, RuntimeError, OSError)


@dataclass(slots=True)
class MonitorSweepSummary:
    """Counters from one monitor pass."""

    name: str
    inspected: int = 0
    acted: int = 0
    errors: int = 0
    pruned: int = 0


class Monitor(Protocol):
    name: str

    def sweep(self) -> MonitorSweepSummary:
        """Inspect candidates once and act on the stuck ones."""


class DeadLetterMonitor:
    """React to jobs of this subsystem that exhausted their retries."""

    name = "dead_letter"

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: OrchestratorRepository,
        queue: JobQueue,
        teardown: WorkloadTeardown,
        dead_row_threshold: int = DEFAULT_DEAD_ROW_THRESHOLD,
        dead_retention_seconds: int = DEFAULT_DEAD_RETENTION_SECONDS,
        dead_max_jobs: int = DEFAULT_DEAD_MAX_JOBS,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.repository = repository
        self.queue = queue
        self.teardown = teardown
        self.dead_row_threshold = dead_row_threshold
        self.dead_retention = timedelta(seconds=dead_retention_seconds)
        self.dead_max_jobs = dead_max_jobs
        self.clock = clock

    def sweep(self) -> MonitorSweepSummary:
        summary = MonitorSweepSummary(name=self.name)
        dead_jobs = self.queue.list_dead(
            kinds=(JobKind.FINALIZE, JobKind.PROCESS_ROW, JobKind.LAUNCH_WORKER),
        )
        dead_rows: dict[str, list[QueueJobView]] = defaultdict(list)

        for job in dead_jobs:
            summary.inspected += 1
            token = job.token
            if token is None:
                logger.warning("Dead %s job %s carries no token", job.kind.value, job.job_id)
                continue
            if job.kind is JobKind.PROCESS_ROW:
                dead_rows[token].append(job)
                continue
            try:
                self._handle_dead_control_job(job, token)
                summary.acted += 1
            except _SWEEP_ERRORS:
                logger.exception("Dead-letter handling failed for job %s", job.job_id)
                summary.errors += 1

        for token, jobs in dead_rows.items():
            try:
                self._handle_dead_rows(token, jobs, summary)
            except _SWEEP_ERRORS:
                logger.exception("Dead-letter teardown failed for token %s", token)
                summary.errors += 1

        try:
            summary.pruned += self.queue.prune_dead(
                older_than=self.clock() - self.dead_retention,
                keep=self.dead_max_jobs,
            )
        except _SWEEP_ERRORS:
            logger.exception("Dead set pruning failed")
            summary.errors += 1
        return summary

    def _handle_dead_control_job(self, job: QueueJobView, token: str) -> None:
        logger.warning("Found dead %s job for token %s", job.kind.value, token)
        self.teardown.teardown(token, reason=f"dead letter job detected ({job.kind.value})")
        self.queue.delete_job(job.job_id)

    def _handle_dead_rows(
        self,
        token: str,
        jobs: list[QueueJobView],
        summary: MonitorSweepSummary,
    ) -> None:
        if self.repository.get_workload(token) is None:
            summary.pruned += self._discard_rows(token, jobs, reason="workload gone")
            return
        if len(jobs) < self.dead_row_threshold:
            return
        logger.warning(
            "Token %s has %d dead row job(s) (threshold %d)",
            token,
            len(jobs),
            self.dead_row_threshold,
        )
        reason = f"{len(jobs)} row jobs died"
        self.teardown.teardown(token, reason=reason)
        summary.acted += 1
        summary.pruned += self._discard_rows(token, jobs, reason=reason)

    def _discard_rows(self, token: str, jobs: list[QueueJobView], *, reason: str) -> int:
        # The event keeps the errors once the dead rows are gone.
        self.repository.add_event(
            token=token,
            event_type="dead_rows_discarded",
            details={
                "reason": reason,
                "count": len(jobs),
                "errors": sorted({job.last_error or "-" for job in jobs}),
            },
        )
        return self.queue.delete_dead_for_token(token, kinds=(JobKind.PROCESS_ROW,))


class IdleMonitor:
    """Stop workers that have been up long enough to be abandoned."""

    name = "idle"

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: OrchestratorRepository,
        queue: JobQueue,
        launcher: WorkerLauncher,
        idle_threshold_seconds: int = DEFAULT_IDLE_THRESHOLD_SECONDS,
        stale_threshold_seconds: int = DEFAULT_STALE_THRESHOLD_SECONDS,
        residual_jobs: int = DEFAULT_IDLE_RESIDUAL_JOBS,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.repository = repository
        self.queue = queue
        self.launcher = launcher
        self.idle_threshold = timedelta(seconds=idle_threshold_seconds)
        self.stale_threshold = timedelta(seconds=stale_threshold_seconds)
        self.residual_jobs = residual_jobs
        self.clock = clock

    def sweep(self) -> MonitorSweepSummary:
        summary = MonitorSweepSummary(name=self.name)
        now = self.clock()
        candidates = self.repository.list_idle_candidates(started_before=now - self.idle_threshold)
        for workload in candidates:
            summary.inspected += 1
            try:
                if not self._should_stop(workload, now=now):
                    continue
                if self._stop(workload):
                    summary.acted += 1
            except _SWEEP_ERRORS:
                logger.exception("Idle check failed for token %s", workload.token)
                summary.errors += 1
        return summary

    def _should_stop(self, workload: WorkloadStatusView, *, now: datetime) -> bool:
        try:
            remaining = self.queue.size(workload.queue_name)
        except SQLAlchemyError:
            logger.exception("Could not inspect queue for %s; stopping worker", workload.token)
            return True
        if remaining == 0:
            logger.info("No remaining jobs for idle token %s", workload.token)
            return True
        if remaining <= self.residual_jobs and workload.updated_at < now - self.stale_threshold:
            logger.info(
                "Only %d job(s) left and no activity since %s for token %s",
                remaining,
                workload.updated_at.isoformat(),
                workload.token,
            )
            return True
        return False

    def _stop(self, workload: WorkloadStatusView) -> bool:
        token = workload.token
        if not self.launcher.stop(token, reason="idle worker timeout"):
            logger.warning("Failed to stop idle worker for token %s", token)
            return False
        self.queue.clear_all_for_token(token)
        if workload.report_id is not None:
            self.repository.fail_report(
                report_id=workload.report_id,
                error_summary="worker idle timeout",
            )
        self.repository.delete_workload(token)
        logger.info("Stopped idle worker and removed status for token %s", token)
        return True


class ForceShutdownMonitor:
    """Consume the last-resort force-shutdown flag."""

    name = "force_shutdown"

    def __init__(
        self,
        *,
        repository: OrchestratorRepository,
        teardown: WorkloadTeardown,
    ) -> None:
        self.repository = repository
        self.teardown = teardown

    def sweep(self) -> MonitorSweepSummary:
        summary = MonitorSweepSummary(name=self.name)
        for workload in self.repository.list_force_shutdown_candidates():
            summary.inspected += 1
            logger.warning("Found force shutdown flag for token %s", workload.token)
            try:
                self.teardown.force_teardown(workload.token, reason="force shutdown required")
                summary.acted += 1
            except _SWEEP_ERRORS:
                logger.exception("Force shutdown failed for token %s", workload.token)
                summary.errors += 1
        return summary


def run_monitors(monitors: Iterable[Monitor]) -> list[MonitorSweepSummary]:
    """Run each monitor once; a failing monitor does not stop the others."""

    summaries: list[MonitorSweepSummary] = []
    for monitor in monitors:
        try:
            summaries.append(monitor.sweep())
        except _SWEEP_ERRORS:
            logger.exception("Monitor %s failed", monitor.name)
            summaries.append(MonitorSweepSummary(name=monitor.name, errors=1))
    return summaries
