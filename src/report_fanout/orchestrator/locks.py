"""Cluster-wide named locks backed by a unique row in the shared database."""

from __future__ import annotations

import logging
import os
import socket
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import timedelta
from uuid import uuid4

from sqlalchemy import delete as sa_delete
from sqlalchemy import update as sa_update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, col

from report_fanout.storage.common import to_db_datetime, utc_now
from report_fanout.storage.sqlmodel_models import NamedLock

logger = logging.getLogger(__name__)

DEFAULT_LEASE_SECONDS = 300.0
DEFAULT_POLL_SECONDS = 0.05


class LockTimeoutError(TimeoutError):
    """Lock could not be acquired within the allowed wait."""


def launcher_lock_key(token: str) -> str:
    return f"report:launcher:{token}"


def finalize_lock_key(token: str) -> str:
    return f"report:finalize:{token}"


def default_lock_owner() -> str:
    """Identity of the current holder: host, process, thread and a nonce."""

    return f"{socket.gethostname()}:{os.getpid()}:{threading.get_ident()}:{uuid4().hex[:8]}"


@contextmanager
def named_lock(
    engine: Engine,
    key: str,
    *,
    timeout_seconds: float,
    lease_seconds: float = DEFAULT_LEASE_SECONDS,
    owner: str | None = None,
    poll_seconds: float = DEFAULT_POLL_SECONDS,
) -> Iterator[str]:
    """Hold an exclusive lock on ``key`` for the duration of the block.

    While the block runs a heartbeat thread pushes the lease forward every
    third of ``lease_seconds``, so a long holder keeps the lock. A holder
    that dies stops renewing and keeps the lock only until its lease
    expires; after that the next caller reclaims it. Release happens on
    every exit path, exceptions included.
    """

    if timeout_seconds < 0:
        raise ValueError("timeout_seconds must be >= 0")
    if lease_seconds <= 0:
        raise ValueError("lease_seconds must be > 0")

    holder = owner or default_lock_owner()
    _acquire(
        engine,
        key=key,
        owner=holder,
        timeout_seconds=timeout_seconds,
        lease_seconds=lease_seconds,
        poll_seconds=poll_seconds,
    )
    stop = threading.Event()
    heartbeat = threading.Thread(
        target=_keep_alive,
        kwargs={
            "engine": engine,
            "key": key,
            "owner": holder,
            "lease_seconds": lease_seconds,
            "stop": stop,
        },
        name=f"lock-heartbeat-{key}",
        daemon=True,
    )
    heartbeat.start()
    try:
        yield holder
    finally:
        stop.set()
        heartbeat.join()
        _release(engine, key=key, owner=holder)


def renew_lock(engine: Engine, *, key: str, owner: str, lease_seconds: float) -> bool:
    """Extend the lease of a lock still held by ``owner``; False once it was lost."""

    expires_at = to_db_datetime(utc_now() + timedelta(seconds=lease_seconds))
    with Session(engine) as session:
        result = session.exec(
            sa_update(NamedLock)
            .where(
                col(NamedLock.lock_key) == key,
                col(NamedLock.owner) == owner,
            )
            .values(expires_at=expires_at),
        )
        session.commit()
    return result.rowcount == 1


def _keep_alive(
    *,
    engine: Engine,
    key: str,
    owner: str,
    lease_seconds: float,
    stop: threading.Event,
) -> None:
    while not stop.wait(lease_seconds / 3):
        try:
            if not renew_lock(engine, key=key, owner=owner, lease_seconds=lease_seconds):
                logger.warning("Lock %s was lost by %s before renewal", key, owner)
                return
        except SQLAlchemyError:
            logger.warning("Could not renew lock %s; retrying", key, exc_info=True)


def _acquire(  # noqa: PLR0913
    engine: Engine,
    *,
    key: str,
    owner: str,
    timeout_seconds: float,
    lease_seconds: float,
    poll_seconds: float,
) -> None:
    deadline = time.monotonic() + timeout_seconds
    while True:
        _reclaim_expired(engine, key=key)
        now = utc_now()
        with Session(engine) as session:
            session.add(
                NamedLock(
                    lock_key=key,
                    owner=owner,
                    acquired_at=to_db_datetime(now),
                    expires_at=to_db_datetime(now + timedelta(seconds=lease_seconds)),
                ),
            )
            try:
                session.commit()
                return
            except IntegrityError:
                session.rollback()

        if time.monotonic() >= deadline:
            raise LockTimeoutError(
                f"Timed out after {timeout_seconds:.1f}s waiting for lock {key!r}",
            )
        time.sleep(poll_seconds)


def _reclaim_expired(engine: Engine, *, key: str) -> None:
    now = to_db_datetime(utc_now())
    with Session(engine) as session:
        result = session.exec(
            sa_delete(NamedLock).where(
                col(NamedLock.lock_key) == key,
                col(NamedLock.expires_at) < now,
            ),
        )
        session.commit()
    if result.rowcount:
        logger.warning("Reclaimed expired lock %s", key)


def _release(engine: Engine, *, key: str, owner: str) -> None:
    with Session(engine) as session:
        result = session.exec(
            sa_delete(NamedLock).where(
                col(NamedLock.lock_key) == key,
                col(NamedLock.owner) == owner,
            ),
        )
        session.commit()
    if result.rowcount != 1:
        logger.warning("Lock %s was no longer held by %s at release", key, owner)
