from __future__ import annotations

import hashlib
from uuid import uuid4

import allure
import pytest

from report_fanout.orchestrator.models import JobKind
from report_fanout.orchestrator.routing import (
    QueueRoutingError,
    ensure_routed,
    is_private_queue,
    job_belongs_to_token,
    route,
    started_by_for,
)

pytestmark = [
    allure.epic("Fan-out Orchestration"),
    allure.feature("Queue Routing"),
]


def test_route_is_prefixed_truncated_sha1() -> None:
    token = "3f2a7c1e-0000-4000-8000-000000000001"
    expected = "report-" + hashlib.sha1(token.encode()).hexdigest()[:16]  # noqa: S324

    assert route(token) == expected
    assert route(token) == route(token)
    assert len(route(token)) == len("report-") + 16
    assert token not in route(token)


def test_distinct_tokens_get_distinct_queues() -> None:
    names = {route(str(uuid4())) for _ in range(200)}

    assert len(names) == 200
    assert all(is_private_queue(name) for name in names)
    assert not is_private_queue("default")


def test_started_by_marker_fits_provider_limit() -> None:
    short = started_by_for("abc")
    long = started_by_for(str(uuid4()))

    assert short == "report-abc"
    assert len(long) <= 36
    assert long.startswith("report-")


def test_ensure_routed_accepts_own_queue_and_unrouted_kinds() -> None:
    token = str(uuid4())

    ensure_routed(JobKind.PROCESS_ROW, {"token": token}, route(token))
    ensure_routed(JobKind.FINALIZE, {"token": token}, route(token))
    ensure_routed(JobKind.SPLIT_BATCH, {"report_id": "r1"}, "default")
    ensure_routed(JobKind.LAUNCH_WORKER, {"token": token}, "default")


def test_ensure_routed_rejects_foreign_queue() -> None:
    token = str(uuid4())
    other = str(uuid4())

    with pytest.raises(QueueRoutingError, match="Wrong queue"):
        ensure_routed(JobKind.PROCESS_ROW, {"token": token}, route(other))
    with pytest.raises(QueueRoutingError, match="no token"):
        ensure_routed(JobKind.FINALIZE, {}, route(token))


def test_job_belongs_to_token() -> None:
    assert job_belongs_to_token({"token": "t1", "row": {}}, "t1")
    assert not job_belongs_to_token({"token": "t2"}, "t1")
    assert not job_belongs_to_token({"token": ""}, "")
