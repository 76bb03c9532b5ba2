"""SQLModel ORM tables for report fan-out storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, Index, Text
from sqlmodel import Field, SQLModel


class ClientReport(SQLModel, table=True):
    __tablename__ = "client_reports"  # type: ignore[bad-override]

    report_id: str = Field(primary_key=True)
    output_format: str
    status: str = Field(index=True)
    token: str | None = Field(default=None, index=True)
    artifact_ref: str | None = None
    row_count: int = 0
    error_summary: str | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class WorkloadStatus(SQLModel, table=True):
    __tablename__ = "workload_statuses"  # type: ignore[bad-override]

    token: str = Field(primary_key=True)
    report_id: str | None = Field(default=None, index=True)
    total_count: int = 0
    done_count: int = 0
    queue_name: str
    worker_started_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True, index=True),
    )
    worker_task_handle: str | None = None
    finalized_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    force_shutdown_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class QueueJob(SQLModel, table=True):
    __tablename__ = "queue_jobs"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_queue_jobs_claim", "queue_name", "state", "run_at"),
        Index("idx_queue_jobs_state_kind", "state", "kind"),
    )

    job_id: str = Field(primary_key=True)
    queue_name: str
    kind: str
    args_json: str = Field(sa_column=Column(Text, nullable=False))
    state: str
    attempt: int = 0
    max_attempts: int = 3
    run_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    enqueued_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    worker_id: str | None = None
    last_error: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    died_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class NamedLock(SQLModel, table=True):
    __tablename__ = "named_locks"  # type: ignore[bad-override]

    lock_key: str = Field(primary_key=True)
    owner: str
    acquired_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    expires_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class WorkloadEvent(SQLModel, table=True):
    __tablename__ = "workload_events"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    token: str = Field(index=True)
    event_type: str
    details_json: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
