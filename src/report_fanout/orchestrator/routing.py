"""Token-isolated queue naming and routing checks."""

from __future__ import annotations

import hashlib
from collections.abc import Mapping
from typing import Any

from report_fanout.orchestrator.models import JobKind

QUEUE_PREFIX = "report-"
QUEUE_DIGEST_CHARS = 16
STARTED_BY_MAX_CHARS = 36
STARTED_BY_DIGEST_CHARS = 28

ROUTED_JOB_KINDS = frozenset({JobKind.PROCESS_ROW, JobKind.FINALIZE})


class QueueRoutingError(RuntimeError):
    """A token-scoped job is (or would be) on a queue other than its own."""


def route(token: str) -> str:
    """Return the private queue name for a workload token.

    The name is a truncated one-way digest, so the raw token never appears in
    queue listings and the same token always lands on the same queue.
    """

    digest = hashlib.sha1(token.encode("utf-8")).hexdigest()  # noqa: S324
    return f"{QUEUE_PREFIX}{digest[:QUEUE_DIGEST_CHARS]}"


def started_by_for(token: str) -> str:
    """Return the provider-side started-by marker for a token (max 36 chars)."""

    base = f"{QUEUE_PREFIX}{token}"
    if len(base) <= STARTED_BY_MAX_CHARS:
        return base
    digest = hashlib.sha1(token.encode("utf-8")).hexdigest()  # noqa: S324
    return f"{QUEUE_PREFIX}{digest[:STARTED_BY_DIGEST_CHARS]}"


def is_private_queue(queue_name: str) -> bool:
    suffix = queue_name.removeprefix(QUEUE_PREFIX)
    return queue_name.startswith(QUEUE_PREFIX) and len(suffix) == QUEUE_DIGEST_CHARS


def ensure_routed(kind: JobKind, args: Mapping[str, Any], queue_name: str) -> None:
    """Raise ``QueueRoutingError`` when a routed job sits on the wrong queue."""

    if kind not in ROUTED_JOB_KINDS:
        return
    token = args.get("token")
    if not isinstance(token, str) or not token:
        raise QueueRoutingError(f"Job {kind.value} has no token; cannot verify queue={queue_name}")
    expected = route(token)
    if queue_name != expected:
        raise QueueRoutingError(
            f"Wrong queue={queue_name}, expected={expected} ({kind.value})",
        )


def job_belongs_to_token(args: Mapping[str, Any], token: str) -> bool:
    """Return True when job arguments are scoped to the given token."""

    if not token:
        return False
    return args.get("token") == token
