"""Domain models for report fan-out workloads, private queues and reports."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class ReportStatus(str, Enum):
    """Delivery lifecycle of a user-submitted batch."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class OutputFormat(str, Enum):
    """Requested output document format."""

    XLSX = "xlsx"
    PDF = "pdf"


class JobKind(str, Enum):
    """Job types understood by the queue worker."""

    SPLIT_BATCH = "split_batch"
    PROCESS_ROW = "process_row"
    FINALIZE = "finalize"
    LAUNCH_WORKER = "launch_worker"
    IDLE_SHUTDOWN = "idle_shutdown"


class JobState(str, Enum):
    """Durable job states in the queue backend."""

    QUEUED = "queued"
    RUNNING = "running"
    RETRY = "retry"
    DEAD = "dead"


@dataclass(slots=True)
class ReportView:
    """Readable report record."""

    report_id: str
    output_format: OutputFormat
    status: ReportStatus
    token: str | None
    artifact_ref: str | None
    row_count: int
    error_summary: str | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class WorkloadStatusView:
    """Readable workload status record."""

    token: str
    report_id: str | None
    total_count: int
    done_count: int
    queue_name: str
    worker_started_at: datetime | None
    worker_task_handle: str | None
    finalized_at: datetime | None
    force_shutdown_at: datetime | None
    created_at: datetime
    updated_at: datetime

    @property
    def progress_ratio(self) -> float:
        if self.total_count == 0:
            return 0.0
        return round(self.done_count / self.total_count, 2)

    @property
    def is_complete(self) -> bool:
        # Redelivered row jobs may push done_count past total_count.
        return self.done_count >= self.total_count


@dataclass(slots=True)
class WorkloadCreate:
    """Input payload for persisting a new workload."""

    token: str
    total_count: int
    queue_name: str
    report_id: str | None = None


@dataclass(slots=True)
class QueueJobView:
    """Readable queue job."""

    job_id: str
    queue_name: str
    kind: JobKind
    args: dict[str, Any]
    state: JobState
    attempt: int
    max_attempts: int
    run_at: datetime
    enqueued_at: datetime
    started_at: datetime | None
    worker_id: str | None
    last_error: str | None
    died_at: datetime | None

    @property
    def token(self) -> str | None:
        value = self.args.get("token")
        return value if isinstance(value, str) else None


@dataclass(slots=True)
class WorkloadEventView:
    """Audit trail entry for one workload."""

    event_id: int
    token: str
    event_type: str
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)
