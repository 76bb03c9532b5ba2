"""Persistence facade for reports, workload statuses and their audit trail."""

from __future__ import annotations

import json
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from uuid import uuid4

from sqlalchemy import delete as sa_delete
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from report_fanout.orchestrator.locks import named_lock
from report_fanout.orchestrator.models import (
    OutputFormat,
    ReportStatus,
    ReportView,
    WorkloadCreate,
    WorkloadEventView,
    WorkloadStatusView,
)
from report_fanout.storage.alembic_runner import upgrade_head
from report_fanout.storage.common import (
    DEFAULT_BUSY_TIMEOUT_MS,
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware,
    to_utc_aware_or_none,
    utc_now,
)
from report_fanout.storage.sqlmodel_models import ClientReport, WorkloadEvent, WorkloadStatus

_TERMINAL_REPORT_STATUSES = (ReportStatus.COMPLETED.value, ReportStatus.FAILED.value)


class WorkloadExistsError(RuntimeError):
    """A workload with the same token is already persisted."""


class WorkloadNotFoundError(LookupError):
    """No workload status exists for the token."""


class ReportNotFoundError(LookupError):
    """No report exists for the identifier."""


class OrchestratorRepository:
    """Report and workload persistence backed by SQLModel + SQLite."""

    def __init__(
        self,
        db_path: Path,
        *,
        busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.db_path = db_path
        self.clock = clock
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations up to head."""

        upgrade_head(self.db_path)

    @contextmanager
    def lock(self, key: str, *, timeout_seconds: float) -> Iterator[str]:
        """Hold the cluster-wide named lock ``key``."""

        with named_lock(self.engine, key, timeout_seconds=timeout_seconds) as owner:
            yield owner

    # -- reports ---------------------------------------------------------

    def create_report(self, *, output_format: OutputFormat) -> ReportView:
        """Create a pending report record."""

        now = self._now()
        with Session(self.engine) as session:
            row = ClientReport(
                report_id=str(uuid4()),
                output_format=output_format.value,
                status=ReportStatus.PENDING.value,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_report_view(row)

    def get_report(self, report_id: str) -> ReportView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(ClientReport).where(ClientReport.report_id == report_id),
            ).one_or_none()
        return _to_report_view(row) if row is not None else None

    def find_report_by_token(self, token: str) -> ReportView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(ClientReport)
                .where(ClientReport.token == token)
                .order_by(col(ClientReport.created_at).desc())
                .limit(1),
            ).one_or_none()
        return _to_report_view(row) if row is not None else None

    def list_reports(
        self,
        *,
        status: ReportStatus | None = None,
        limit: int = 50,
    ) -> list[ReportView]:
        """List recent reports, optionally filtered by status."""

        with Session(self.engine) as session:
            statement = (
                select(ClientReport).order_by(col(ClientReport.created_at).desc()).limit(limit)
            )
            if status is not None:
                statement = statement.where(ClientReport.status == status.value)
            rows = session.exec(statement).all()
        return [_to_report_view(row) for row in rows]

    def mark_report_processing(self, *, report_id: str, token: str) -> None:
        """Link a report to its workload token and mark it processing."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(ClientReport)
                .where(col(ClientReport.report_id) == report_id)
                .values(
                    status=ReportStatus.PROCESSING.value,
                    token=token,
                    updated_at=self._now(),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise ReportNotFoundError(f"Report not found: {report_id}")
            session.commit()

    def complete_report(self, *, report_id: str, artifact_ref: str, row_count: int) -> bool:
        """Mark a report completed with its delivered artifact."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(ClientReport)
                .where(
                    col(ClientReport.report_id) == report_id,
                    col(ClientReport.status) != ReportStatus.COMPLETED.value,
                )
                .values(
                    status=ReportStatus.COMPLETED.value,
                    artifact_ref=artifact_ref,
                    row_count=row_count,
                    error_summary=None,
                    updated_at=self._now(),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def fail_report(self, *, report_id: str, error_summary: str) -> bool:
        """Mark a report failed unless it already reached a terminal status."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(ClientReport)
                .where(
                    col(ClientReport.report_id) == report_id,
                    col(ClientReport.status).not_in(_TERMINAL_REPORT_STATUSES),
                )
                .values(
                    status=ReportStatus.FAILED.value,
                    error_summary=error_summary,
                    updated_at=self._now(),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    # -- workloads -------------------------------------------------------

    def create_workload(self, payload: WorkloadCreate) -> WorkloadStatusView:
        """Persist a new workload; a second create for the same token fails."""

        if payload.total_count < 0:
            raise ValueError("total_count must be >= 0")
        now = self._now()
        with Session(self.engine) as session:
            row = WorkloadStatus(
                token=payload.token,
                report_id=payload.report_id,
                total_count=payload.total_count,
                done_count=0,
                queue_name=payload.queue_name,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            try:
                session.commit()
            except IntegrityError as error:
                session.rollback()
                raise WorkloadExistsError(
                    f"Workload already exists for token={payload.token}",
                ) from error
            session.refresh(row)
            view = _to_workload_view(row)
        self.add_event(
            token=payload.token,
            event_type="workload_created",
            details={
                "total_count": payload.total_count,
                "queue_name": payload.queue_name,
                "report_id": payload.report_id,
            },
        )
        return view

    def get_workload(self, token: str) -> WorkloadStatusView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(WorkloadStatus).where(WorkloadStatus.token == token),
            ).one_or_none()
        return _to_workload_view(row) if row is not None else None

    def list_workloads(self, *, limit: int = 10) -> list[WorkloadStatusView]:
        """List most recently created workloads."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(WorkloadStatus)
                .order_by(col(WorkloadStatus.created_at).desc())
                .limit(limit),
            ).all()
        return [_to_workload_view(row) for row in rows]

    def increment_done(self, token: str) -> bool:
        """Atomically count one completed row job."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(WorkloadStatus)
                .where(col(WorkloadStatus.token) == token)
                .values(
                    done_count=WorkloadStatus.done_count + 1,
                    updated_at=self._now(),
                ),
            )
            session.commit()
            return result.rowcount == 1

    def record_worker_launch(self, *, token: str, handle: str) -> bool:
        """Persist the launched worker handle once; later calls lose."""

        now = self._now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(WorkloadStatus)
                .where(
                    col(WorkloadStatus.token) == token,
                    col(WorkloadStatus.worker_started_at).is_(None),
                )
                .values(
                    worker_started_at=now,
                    worker_task_handle=handle,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
        self.add_event(token=token, event_type="worker_launched", details={"handle": handle})
        return True

    def mark_finalized(self, token: str) -> bool:
        """Set ``finalized_at`` once; returns False if already finalized or missing."""

        now = self._now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(WorkloadStatus)
                .where(
                    col(WorkloadStatus.token) == token,
                    col(WorkloadStatus.finalized_at).is_(None),
                )
                .values(finalized_at=now, updated_at=now),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
        self.add_event(token=token, event_type="finalized")
        return True

    def flag_force_shutdown(self, token: str) -> bool:
        """Raise the last-resort force-shutdown flag on an unfinalized workload."""

        now = self._now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(WorkloadStatus)
                .where(
                    col(WorkloadStatus.token) == token,
                    col(WorkloadStatus.finalized_at).is_(None),
                    col(WorkloadStatus.force_shutdown_at).is_(None),
                )
                .values(force_shutdown_at=now, updated_at=now),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
        self.add_event(token=token, event_type="force_shutdown_flagged")
        return True

    def delete_workload(self, token: str) -> bool:
        """Remove the status record; False when it was already gone."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_delete(WorkloadStatus).where(col(WorkloadStatus.token) == token),
            )
            session.commit()
        if result.rowcount != 1:
            return False
        self.add_event(token=token, event_type="workload_removed")
        return True

    def list_idle_candidates(self, *, started_before: datetime) -> list[WorkloadStatusView]:
        """Workloads whose worker started before the cutoff and never finalized."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(WorkloadStatus)
                .where(
                    col(WorkloadStatus.worker_started_at).is_not(None),
                    col(WorkloadStatus.worker_started_at) < to_db_datetime(started_before),
                    col(WorkloadStatus.finalized_at).is_(None),
                    col(WorkloadStatus.worker_task_handle).is_not(None),
                )
                .order_by(col(WorkloadStatus.worker_started_at).asc()),
            ).all()
        return [_to_workload_view(row) for row in rows]

    def list_force_shutdown_candidates(self) -> list[WorkloadStatusView]:
        """Flagged, unfinalized workloads that still hold a worker handle."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(WorkloadStatus)
                .where(
                    col(WorkloadStatus.force_shutdown_at).is_not(None),
                    col(WorkloadStatus.finalized_at).is_(None),
                    col(WorkloadStatus.worker_task_handle).is_not(None),
                )
                .order_by(col(WorkloadStatus.force_shutdown_at).asc()),
            ).all()
        return [_to_workload_view(row) for row in rows]

    # -- audit trail -----------------------------------------------------

    def add_event(
        self,
        *,
        token: str,
        event_type: str,
        details: dict[str, object] | None = None,
    ) -> None:
        """Append one workload audit event."""

        with Session(self.engine) as session:
            session.add(
                WorkloadEvent(
                    token=token,
                    event_type=event_type,
                    details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
                    if details
                    else None,
                    created_at=self._now(),
                ),
            )
            session.commit()

    def list_events(self, token: str) -> list[WorkloadEventView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(WorkloadEvent)
                .where(WorkloadEvent.token == token)
                .order_by(col(WorkloadEvent.id).asc()),
            ).all()

        events: list[WorkloadEventView] = []
        for row in rows:
            details = {}
            if row.details_json:
                parsed = json.loads(row.details_json)
                if isinstance(parsed, dict):
                    details = parsed
            events.append(
                WorkloadEventView(
                    event_id=row.id or 0,
                    token=row.token,
                    event_type=row.event_type,
                    created_at=to_utc_aware(row.created_at),
                    details=details,
                ),
            )
        return events

    def _now(self) -> datetime:
        return to_db_datetime(self.clock())


def _to_report_view(row: ClientReport) -> ReportView:
    return ReportView(
        report_id=row.report_id,
        output_format=OutputFormat(row.output_format),
        status=ReportStatus(row.status),
        token=row.token,
        artifact_ref=row.artifact_ref,
        row_count=row.row_count,
        error_summary=row.error_summary,
        created_at=to_utc_aware(row.created_at),
        updated_at=to_utc_aware(row.updated_at),
    )


def _to_workload_view(row: WorkloadStatus) -> WorkloadStatusView:
    return WorkloadStatusView(
        token=row.token,
        report_id=row.report_id,
        total_count=row.total_count,
        done_count=row.done_count,
        queue_name=row.queue_name,
        worker_started_at=to_utc_aware_or_none(row.worker_started_at),
        worker_task_handle=row.worker_task_handle,
        finalized_at=to_utc_aware_or_none(row.finalized_at),
        force_shutdown_at=to_utc_aware_or_none(row.force_shutdown_at),
        created_at=to_utc_aware(row.created_at),
        updated_at=to_utc_aware(row.updated_at),
    )
