from __future__ import annotations

import threading
import time
from datetime import timedelta

import allure
import pytest
from sqlmodel import Session

from report_fanout.orchestrator.locks import (
    LockTimeoutError,
    finalize_lock_key,
    launcher_lock_key,
    named_lock,
    renew_lock,
)
from report_fanout.orchestrator.repository import OrchestratorRepository
from report_fanout.storage.common import to_db_datetime, utc_now
from report_fanout.storage.sqlmodel_models import NamedLock

pytestmark = [
    allure.epic("Fan-out Orchestration"),
    allure.feature("Distributed Locks"),
]


def test_lock_keys_are_scoped_per_token() -> None:
    assert launcher_lock_key("t1") == "report:launcher:t1"
    assert finalize_lock_key("t1") == "report:finalize:t1"
    assert launcher_lock_key("t1") != launcher_lock_key("t2")


def test_second_holder_times_out_while_lock_is_held(
    repository: OrchestratorRepository,
) -> None:
    with named_lock(repository.engine, "k", timeout_seconds=1.0, owner="first"):
        with pytest.raises(LockTimeoutError):
            with named_lock(repository.engine, "k", timeout_seconds=0.1, owner="second"):
                pass

    with named_lock(repository.engine, "k", timeout_seconds=0.1, owner="third") as owner:
        assert owner == "third"


def test_lock_is_released_when_block_raises(repository: OrchestratorRepository) -> None:
    with pytest.raises(RuntimeError):
        with named_lock(repository.engine, "k", timeout_seconds=1.0):
            raise RuntimeError("boom")

    with named_lock(repository.engine, "k", timeout_seconds=0.1):
        pass


def test_expired_lease_of_a_dead_holder_is_reclaimed(
    repository: OrchestratorRepository,
) -> None:
    past = utc_now() - timedelta(seconds=5)
    with Session(repository.engine) as session:
        session.add(
            NamedLock(
                lock_key="k",
                owner="crashed",
                acquired_at=to_db_datetime(past - timedelta(seconds=60)),
                expires_at=to_db_datetime(past),
            ),
        )
        session.commit()

    with named_lock(repository.engine, "k", timeout_seconds=1.0, owner="next") as owner:
        assert owner == "next"
        assert not renew_lock(repository.engine, key="k", owner="crashed", lease_seconds=60)


def test_live_holder_keeps_lock_past_its_lease(repository: OrchestratorRepository) -> None:
    with named_lock(repository.engine, "k", timeout_seconds=1.0, lease_seconds=0.3, owner="slow"):
        time.sleep(1.0)
        with pytest.raises(LockTimeoutError):
            with named_lock(repository.engine, "k", timeout_seconds=0.05, owner="eager"):
                pass

    with named_lock(repository.engine, "k", timeout_seconds=0.1, owner="after") as owner:
        assert owner == "after"


def test_lock_serializes_critical_sections(repository: OrchestratorRepository) -> None:
    inside = 0
    overlaps = 0
    guard = threading.Lock()

    def _critical() -> None:
        nonlocal inside, overlaps
        with repository.lock("shared", timeout_seconds=10.0):
            with guard:
                inside += 1
                if inside > 1:
                    overlaps += 1
            time.sleep(0.01)
            with guard:
                inside -= 1

    threads = [threading.Thread(target=_critical) for _ in range(6)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert overlaps == 0
