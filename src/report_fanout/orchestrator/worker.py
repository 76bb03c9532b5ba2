"""Queue worker that drains private and control queues."""

from __future__ import annotations

import logging
import os
import random
import signal
import socket
import time
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta

from report_fanout.orchestrator.jobs import JobHandlers
from report_fanout.orchestrator.models import JobState, QueueJobView
from report_fanout.orchestrator.queue import JobQueue
from report_fanout.orchestrator.routing import QueueRoutingError

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    retried: int = 0
    dead: int = 0
    misrouted: int = 0
    idle_polls: int = 0


def default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


class QueueWorker:
    """Claims jobs and executes them through ``JobHandlers``."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        queue: JobQueue,
        handlers: JobHandlers,
        worker_id: str,
        queue_names: Sequence[str] | None = None,
        poll_interval_seconds: float = 1.0,
        retry_base_seconds: float = 15.0,
        retry_max_seconds: float = 600.0,
        stale_running_seconds: int = 1800,
        rng: random.Random | None = None,
    ) -> None:
        self.queue = queue
        self.handlers = handlers
        self.worker_id = worker_id
        self.queue_names = list(queue_names) if queue_names else None
        self.poll_interval_seconds = poll_interval_seconds
        self.retry_base_seconds = retry_base_seconds
        self.retry_max_seconds = retry_max_seconds
        self.stale_running_seconds = stale_running_seconds
        self._random = rng or random.Random()  # noqa: S311
        self._stop_requested = False
        self._stop_signal_name: str | None = None
        self._current_job_id: str | None = None

    def run_once(self) -> WorkerRunSummary:
        """Process at most one job."""

        summary = WorkerRunSummary()
        if self._stop_requested:
            summary.idle_polls = 1
            return summary

        job = self._claim_job()
        if job is None:
            summary.idle_polls = 1
            return summary

        summary.processed = 1
        self._current_job_id = job.job_id
        try:
            self.handlers.dispatch(job)
        except QueueRoutingError as error:
            logger.error("Misrouted job %s (%s): %s", job.job_id, job.kind.value, error)
            self.queue.bury(job.job_id, error=str(error))
            summary.misrouted = 1
            summary.dead = 1
            return summary
        except Exception as error:  # noqa: BLE001
            logger.exception(
                "Job %s (%s) failed on attempt %d/%d",
                job.job_id,
                job.kind.value,
                job.attempt,
                job.max_attempts,
            )
            self._handle_failure(job=job, error=error, summary=summary)
            return summary
        finally:
            self._current_job_id = None

        self.queue.complete(job.job_id)
        summary.succeeded = 1
        return summary

    def run_loop(
        self,
        *,
        max_jobs: int | None = None,
        max_idle_polls: int | None = 1,
    ) -> WorkerRunSummary:
        """Run worker loop until the queues are idle or max_jobs reached.

        Args:
            max_jobs: Stop after processing this many jobs (None = unlimited).
            max_idle_polls: How many consecutive empty polls before exiting
                (None = keep polling until stopped by a signal).
        """

        aggregate = WorkerRunSummary()
        consecutive_idle = 0
        with self._signal_handlers():
            while True:
                if self._stop_requested:
                    return aggregate
                if max_jobs is not None and aggregate.processed >= max_jobs:
                    return aggregate

                summary = self.run_once()
                aggregate.processed += summary.processed
                aggregate.succeeded += summary.succeeded
                aggregate.retried += summary.retried
                aggregate.dead += summary.dead
                aggregate.misrouted += summary.misrouted
                aggregate.idle_polls += summary.idle_polls

                if summary.processed == 0:
                    consecutive_idle += 1
                    if max_idle_polls is not None and consecutive_idle >= max_idle_polls:
                        return aggregate
                    self._sleep_with_stop(self.poll_interval_seconds)
                    continue

                consecutive_idle = 0

    def _claim_job(self) -> QueueJobView | None:
        self._recover_stale_jobs()
        if self._stop_requested:
            return None
        return self.queue.claim_next(worker_id=self.worker_id, queue_names=self.queue_names)

    def _recover_stale_jobs(self) -> None:
        if self.stale_running_seconds <= 0:
            return
        self.queue.recover_stale_running(
            stale_after=timedelta(seconds=self.stale_running_seconds),
        )

    def _handle_failure(
        self,
        *,
        job: QueueJobView,
        error: Exception,
        summary: WorkerRunSummary,
    ) -> None:
        state = self.queue.fail(
            job.job_id,
            error=f"{type(error).__name__}: {error}",
            retry_delay_seconds=self._compute_retry_delay(retry_number=job.attempt),
        )
        if state is JobState.RETRY:
            summary.retried = 1
        elif state is JobState.DEAD:
            logger.error(
                "Job %s (%s) died after %d attempt(s)",
                job.job_id,
                job.kind.value,
                job.attempt,
            )
            summary.dead = 1

    def _compute_retry_delay(self, *, retry_number: int) -> float:
        max_delay = min(
            self.retry_max_seconds,
            self.retry_base_seconds * (2 ** max(retry_number - 1, 0)),
        )
        return self._random.uniform(0, max_delay)

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self._request_stop(signal_name=name)

        installed = False
        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
            installed = True
        except ValueError:
            # Signal handlers can only be installed in main thread.
            pass
        try:
            yield
        finally:
            if installed:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)

    def _request_stop(self, *, signal_name: str) -> None:
        self._stop_requested = True
        self._stop_signal_name = signal_name
        logger.info(
            "Worker %s received %s; stopping after job %s",
            self.worker_id,
            signal_name,
            self._current_job_id or "-",
        )
