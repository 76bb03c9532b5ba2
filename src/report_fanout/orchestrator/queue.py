"""Durable private-queue backend: ready queue, scheduled set, retry set, dead set."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Iterable, Mapping, Sequence
from datetime import datetime, timedelta
from typing import Any
from uuid import uuid4

from sqlalchemy import delete as sa_delete
from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlalchemy.engine import Engine
from sqlmodel import Session, col, select

from report_fanout.orchestrator.models import JobKind, JobState, QueueJobView
from report_fanout.orchestrator.routing import ensure_routed, job_belongs_to_token, route
from report_fanout.storage.common import (
    to_db_datetime,
    to_utc_aware,
    to_utc_aware_or_none,
    utc_now,
)
from report_fanout.storage.sqlmodel_models import QueueJob

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3

JobPredicate = Callable[[QueueJobView], bool]


class JobQueue:
    """Named queues stored as rows in the shared database.

    A job is *ready* when it is queued and its ``run_at`` has passed, *scheduled*
    while queued with a future ``run_at``, *retrying* after a failed attempt and
    *dead* once its attempts are spent. Completed jobs are deleted.
    """

    def __init__(self, engine: Engine, *, clock: Callable[[], datetime] = utc_now) -> None:
        self.engine = engine
        self.clock = clock

    def enqueue(
        self,
        queue_name: str,
        kind: JobKind,
        args: Mapping[str, Any],
        *,
        run_at: datetime | None = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> QueueJobView:
        """Append a job; token-scoped kinds must target their own private queue."""

        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        ensure_routed(kind, args, queue_name)

        now = self._now()
        with Session(self.engine) as session:
            row = QueueJob(
                job_id=str(uuid4()),
                queue_name=queue_name,
                kind=kind.value,
                args_json=json.dumps(dict(args), ensure_ascii=False, sort_keys=True),
                state=JobState.QUEUED.value,
                attempt=0,
                max_attempts=max_attempts,
                run_at=to_db_datetime(run_at) if run_at is not None else now,
                enqueued_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            view = _to_job_view(row)
        logger.debug("Enqueued %s job %s on %s", kind.value, view.job_id, queue_name)
        return view

    def enqueue_in(
        self,
        queue_name: str,
        kind: JobKind,
        args: Mapping[str, Any],
        *,
        delay_seconds: float,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> QueueJobView:
        """Schedule a job ``delay_seconds`` from now."""

        return self.enqueue(
            queue_name,
            kind,
            args,
            run_at=self.clock() + timedelta(seconds=delay_seconds),
            max_attempts=max_attempts,
        )

    def get_job(self, job_id: str) -> QueueJobView | None:
        with Session(self.engine) as session:
            row = session.exec(select(QueueJob).where(QueueJob.job_id == job_id)).one_or_none()
        return _to_job_view(row) if row is not None else None

    def size(self, queue_name: str) -> int:
        """Number of jobs ready to run now on ``queue_name``."""

        with Session(self.engine) as session:
            return session.exec(
                select(func.count())
                .select_from(QueueJob)
                .where(
                    QueueJob.queue_name == queue_name,
                    QueueJob.state == JobState.QUEUED.value,
                    col(QueueJob.run_at) <= self._now(),
                ),
            ).one()

    def pending_count(self, queue_name: str) -> int:
        """Ready, scheduled and retrying jobs on ``queue_name``."""

        with Session(self.engine) as session:
            return session.exec(
                select(func.count())
                .select_from(QueueJob)
                .where(
                    QueueJob.queue_name == queue_name,
                    col(QueueJob.state).in_((JobState.QUEUED.value, JobState.RETRY.value)),
                ),
            ).one()

    def list_jobs(
        self,
        *,
        queue_name: str | None = None,
        states: Iterable[JobState] | None = None,
        kinds: Iterable[JobKind] | None = None,
    ) -> list[QueueJobView]:
        with Session(self.engine) as session:
            statement = select(QueueJob).order_by(
                col(QueueJob.run_at).asc(),
                col(QueueJob.enqueued_at).asc(),
            )
            if queue_name is not None:
                statement = statement.where(QueueJob.queue_name == queue_name)
            if states is not None:
                statement = statement.where(col(QueueJob.state).in_([s.value for s in states]))
            if kinds is not None:
                statement = statement.where(col(QueueJob.kind).in_([k.value for k in kinds]))
            rows = session.exec(statement).all()
        return [_to_job_view(row) for row in rows]

    def claim_next(
        self,
        *,
        worker_id: str,
        queue_names: Sequence[str] | None = None,
    ) -> QueueJobView | None:
        """Atomically claim the oldest due job; ``queue_names=None`` means every queue."""

        while True:
            now = self._now()
            with Session(self.engine) as session:
                statement = (
                    select(QueueJob)
                    .where(
                        col(QueueJob.state).in_((JobState.QUEUED.value, JobState.RETRY.value)),
                        col(QueueJob.run_at) <= now,
                    )
                    .order_by(col(QueueJob.run_at).asc(), col(QueueJob.enqueued_at).asc())
                    .limit(1)
                )
                if queue_names is not None:
                    statement = statement.where(col(QueueJob.queue_name).in_(list(queue_names)))
                candidate = session.exec(statement).one_or_none()
                if candidate is None:
                    return None

                job_id = candidate.job_id
                result = session.exec(
                    sa_update(QueueJob)
                    .where(
                        col(QueueJob.job_id) == job_id,
                        col(QueueJob.state) == candidate.state,
                        col(QueueJob.attempt) == candidate.attempt,
                    )
                    .values(
                        state=JobState.RUNNING.value,
                        attempt=candidate.attempt + 1,
                        started_at=now,
                        worker_id=worker_id,
                        updated_at=now,
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue
                session.commit()

                claimed = session.exec(
                    select(QueueJob).where(QueueJob.job_id == job_id),
                ).one()
                return _to_job_view(claimed)

    def complete(self, job_id: str) -> bool:
        """Remove a finished job."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_delete(QueueJob).where(
                    col(QueueJob.job_id) == job_id,
                    col(QueueJob.state) == JobState.RUNNING.value,
                ),
            )
            session.commit()
            return result.rowcount == 1

    def fail(self, job_id: str, *, error: str, retry_delay_seconds: float) -> JobState | None:
        """Move a running job to the retry set, or to the dead set when attempts are spent.

        Returns the new state, or None when the job was no longer running.
        """

        now = self._now()
        with Session(self.engine) as session:
            row = session.exec(
                select(QueueJob).where(
                    QueueJob.job_id == job_id,
                    QueueJob.state == JobState.RUNNING.value,
                ),
            ).one_or_none()
            if row is None:
                return None

            if row.attempt < row.max_attempts:
                values: dict[str, Any] = {
                    "state": JobState.RETRY.value,
                    "run_at": to_db_datetime(now + timedelta(seconds=retry_delay_seconds)),
                }
            else:
                values = {"state": JobState.DEAD.value, "died_at": now}
            result = session.exec(
                sa_update(QueueJob)
                .where(
                    col(QueueJob.job_id) == job_id,
                    col(QueueJob.state) == JobState.RUNNING.value,
                )
                .values(
                    last_error=error,
                    worker_id=None,
                    updated_at=now,
                    **values,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return None
            session.commit()
        return JobState(values["state"])

    def bury(self, job_id: str, *, error: str) -> bool:
        """Send a job straight to the dead set regardless of remaining attempts."""

        now = self._now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(QueueJob)
                .where(
                    col(QueueJob.job_id) == job_id,
                    col(QueueJob.state) != JobState.DEAD.value,
                )
                .values(
                    state=JobState.DEAD.value,
                    last_error=error,
                    worker_id=None,
                    died_at=now,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def clear_ready(self, queue_name: str, predicate: JobPredicate) -> int:
        """Delete ready jobs on ``queue_name`` matching ``predicate``."""

        now = self._now()
        return self._delete_matching(
            predicate,
            QueueJob.queue_name == queue_name,
            QueueJob.state == JobState.QUEUED.value,
            col(QueueJob.run_at) <= now,
        )

    def clear_scheduled(self, predicate: JobPredicate) -> int:
        """Delete future-dated jobs on any queue matching ``predicate``."""

        now = self._now()
        return self._delete_matching(
            predicate,
            QueueJob.state == JobState.QUEUED.value,
            col(QueueJob.run_at) > now,
        )

    def clear_retrying(self, predicate: JobPredicate) -> int:
        """Delete retry-pending jobs on any queue matching ``predicate``."""

        return self._delete_matching(predicate, QueueJob.state == JobState.RETRY.value)

    def clear_all_for_token(self, token: str) -> int:
        """Drop every not-yet-running job scoped to ``token``.

        Covers the private queue's ready jobs, plus scheduled and retrying jobs on
        any queue (control-queue jobs carry the token too). Running jobs are left to
        finish; dead jobs stay for inspection.
        """

        def belongs(job: QueueJobView) -> bool:
            return job_belongs_to_token(job.args, token)

        removed = self.clear_ready(route(token), belongs)
        removed += self.clear_scheduled(belongs)
        removed += self.clear_retrying(belongs)
        if removed:
            logger.info("Cleared %d queued job(s) for token %s", removed, token)
        return removed

    def list_dead(self, *, kinds: Iterable[JobKind] | None = None) -> list[QueueJobView]:
        return self.list_jobs(states=(JobState.DEAD,), kinds=kinds)

    def count_dead_for_token(self, token: str, *, kind: JobKind | None = None) -> int:
        kinds = (kind,) if kind is not None else None
        return sum(1 for job in self.list_dead(kinds=kinds) if job.token == token)

    def delete_dead_for_token(
        self,
        token: str,
        *,
        kinds: Iterable[JobKind] | None = None,
    ) -> int:
        """Drop dead jobs scoped to ``token``, optionally only of ``kinds``."""

        conditions: list[Any] = [QueueJob.state == JobState.DEAD.value]
        if kinds is not None:
            conditions.append(col(QueueJob.kind).in_([kind.value for kind in kinds]))
        return self._delete_matching(
            lambda job: job_belongs_to_token(job.args, token),
            *conditions,
        )

    def prune_dead(self, *, older_than: datetime, keep: int) -> int:
        """Expire dead jobs that died before ``older_than``, then cap the set at ``keep``.

        The newest dead jobs survive the cap.
        """

        if keep < 0:
            raise ValueError("keep must be >= 0")
        cutoff = to_db_datetime(older_than)
        with Session(self.engine) as session:
            expired = session.exec(
                sa_delete(QueueJob).where(
                    col(QueueJob.state) == JobState.DEAD.value,
                    col(QueueJob.died_at) < cutoff,
                ),
            ).rowcount
            overflow = session.exec(
                select(QueueJob.job_id)
                .where(QueueJob.state == JobState.DEAD.value)
                .order_by(col(QueueJob.died_at).desc(), col(QueueJob.updated_at).desc())
                .offset(keep),
            ).all()
            trimmed = 0
            if overflow:
                trimmed = session.exec(
                    sa_delete(QueueJob).where(col(QueueJob.job_id).in_(list(overflow))),
                ).rowcount
            session.commit()
        removed = expired + trimmed
        if removed:
            logger.info("Pruned %d dead job(s) (expired=%d over_cap=%d)", removed, expired, trimmed)
        return removed

    def delete_job(self, job_id: str) -> bool:
        with Session(self.engine) as session:
            result = session.exec(sa_delete(QueueJob).where(col(QueueJob.job_id) == job_id))
            session.commit()
            return result.rowcount == 1

    def recover_stale_running(self, *, stale_after: timedelta) -> int:
        """Return running jobs whose worker went silent to the retry set."""

        now = self._now()
        cutoff = to_db_datetime(self.clock() - stale_after)
        recovered = 0
        with Session(self.engine) as session:
            rows = session.exec(
                select(QueueJob).where(
                    QueueJob.state == JobState.RUNNING.value,
                    col(QueueJob.started_at) < cutoff,
                ),
            ).all()
            stale = [(row.job_id, row.attempt, row.max_attempts, row.worker_id) for row in rows]

        for job_id, attempt, max_attempts, worker_id in stale:
            exhausted = attempt >= max_attempts
            with Session(self.engine) as session:
                result = session.exec(
                    sa_update(QueueJob)
                    .where(
                        col(QueueJob.job_id) == job_id,
                        col(QueueJob.state) == JobState.RUNNING.value,
                        col(QueueJob.attempt) == attempt,
                    )
                    .values(
                        state=JobState.DEAD.value if exhausted else JobState.RETRY.value,
                        run_at=now,
                        died_at=now if exhausted else None,
                        worker_id=None,
                        last_error=f"stale running job (worker={worker_id})",
                        updated_at=now,
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue
                session.commit()
            recovered += 1
            logger.warning("Recovered stale running job %s from worker %s", job_id, worker_id)
        return recovered

    def _delete_matching(self, predicate: JobPredicate, *conditions: Any) -> int:
        with Session(self.engine) as session:
            rows = session.exec(select(QueueJob).where(*conditions)).all()
            doomed = [row.job_id for row in rows if predicate(_to_job_view(row))]
            if not doomed:
                return 0
            result = session.exec(
                sa_delete(QueueJob).where(col(QueueJob.job_id).in_(doomed), *conditions),
            )
            session.commit()
            return result.rowcount

    def _now(self) -> datetime:
        return to_db_datetime(self.clock())


def _to_job_view(row: QueueJob) -> QueueJobView:
    args = json.loads(row.args_json) if row.args_json else {}
    return QueueJobView(
        job_id=row.job_id,
        queue_name=row.queue_name,
        kind=JobKind(row.kind),
        args=args if isinstance(args, dict) else {},
        state=JobState(row.state),
        attempt=row.attempt,
        max_attempts=row.max_attempts,
        run_at=to_utc_aware(row.run_at),
        enqueued_at=to_utc_aware(row.enqueued_at),
        started_at=to_utc_aware_or_none(row.started_at),
        worker_id=row.worker_id,
        last_error=row.last_error,
        died_at=to_utc_aware_or_none(row.died_at),
    )
