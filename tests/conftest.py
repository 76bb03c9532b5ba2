"""Shared test fixtures."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import replace
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from report_fanout.config import Settings
from report_fanout.orchestrator.notifications import OperatorAlert
from report_fanout.orchestrator.packaging import PackagedArtifact
from report_fanout.orchestrator.provider import LaunchSpec, ProviderError
from report_fanout.orchestrator.queue import JobQueue
from report_fanout.orchestrator.repository import OrchestratorRepository
from report_fanout.orchestrator.services import OrchestratorRuntime, build_runtime
from report_fanout.orchestrator.worker import QueueWorker


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 10, 19, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class FakeProvider:
    """In-memory container provider with scripted failures."""

    def __init__(self, *, launch_delay: float = 0.0) -> None:
        self.launch_delay = launch_delay
        self.launch_calls = 0
        self.launched: list[LaunchSpec] = []
        self.in_flight: dict[str, LaunchSpec] = {}
        self.stopped: list[str] = []
        self.terminated: list[str] = []
        self.launch_failures = 0
        self.ghost_on_failure = False
        self.running_override: int | None = None
        self.stop_error: ProviderError | None = None
        self.terminate_error: ProviderError | None = None
        self._guard = threading.Lock()

    def launch(self, spec: LaunchSpec) -> str:
        with self._guard:
            self.launch_calls += 1
            if self.launch_failures > 0:
                self.launch_failures -= 1
                if self.ghost_on_failure:
                    self.in_flight[f"ghost-{self.launch_calls}"] = spec
                raise ProviderError("capacity unavailable", transient=True)
        if self.launch_delay:
            time.sleep(self.launch_delay)
        with self._guard:
            handle = f"task-{len(self.launched) + 1}"
            self.launched.append(spec)
            self.in_flight[handle] = spec
            return handle

    def list_in_flight(self, started_by: str) -> list[str]:
        with self._guard:
            return [
                handle for handle, spec in self.in_flight.items() if spec.started_by == started_by
            ]

    def count_in_flight(self, *, tag_key: str, tag_value: str) -> int:
        if self.running_override is not None:
            return self.running_override
        with self._guard:
            return sum(
                1 for spec in self.in_flight.values() if spec.tags.get(tag_key) == tag_value
            )

    def stop(self, handle: str, *, reason: str) -> None:
        if self.stop_error is not None:
            raise self.stop_error
        with self._guard:
            self.stopped.append(handle)
            self.in_flight.pop(handle, None)

    def terminate(self, handle: str, *, reason: str) -> None:
        if self.terminate_error is not None:
            raise self.terminate_error
        with self._guard:
            self.terminated.append(handle)
            self.in_flight.pop(handle, None)


class RecordingNotifier:
    def __init__(self) -> None:
        self.alerts: list[OperatorAlert] = []

    def notify(self, alert: OperatorAlert) -> bool:
        self.alerts.append(alert)
        return True


class RecordingSink:
    """Counts deliveries; ``delay`` widens race windows in concurrency tests."""

    def __init__(self, *, delay: float = 0.0) -> None:
        self.delay = delay
        self.delivered: list[tuple[str, int]] = []
        self._guard = threading.Lock()

    def deliver(self, artifact: PackagedArtifact, *, token: str) -> str:
        if self.delay:
            time.sleep(self.delay)
        with self._guard:
            self.delivered.append((token, artifact.count))
        return f"memory://{token}.zip"


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def repository(tmp_path: Path, clock: FakeClock):
    repo = OrchestratorRepository(tmp_path / "fanout.db", clock=clock)
    repo.init_schema()
    yield repo
    repo.close()


@pytest.fixture()
def queue(repository: OrchestratorRepository, clock: FakeClock) -> JobQueue:
    return JobQueue(repository.engine, clock=clock)


@pytest.fixture()
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture()
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture()
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    base = Settings(db_path=tmp_path / "fanout.db")
    return replace(
        base,
        work=replace(base.work, work_root=tmp_path / "work"),
        launcher=replace(
            base.launcher,
            enabled=True,
            lock_timeout_seconds=10.0,
            registry_dir=tmp_path / "workers",
        ),
        delivery=replace(base.delivery, local_root=tmp_path / "artifacts"),
    )


@pytest.fixture()
def runtime(
    settings: Settings,
    repository: OrchestratorRepository,
    provider: FakeProvider,
    notifier: RecordingNotifier,
    clock: FakeClock,
) -> OrchestratorRuntime:
    return build_runtime(
        settings,
        repository=repository,
        provider=provider,
        notifier=notifier,
        clock=clock,
        sleep=lambda _: None,
    )


def _build_worker(
    runtime: OrchestratorRuntime,
    *,
    queue_names: list[str] | None = None,
) -> QueueWorker:
    return QueueWorker(
        queue=runtime.queue,
        handlers=runtime.handlers,
        worker_id="test-worker",
        queue_names=queue_names,
        poll_interval_seconds=0.0,
        retry_base_seconds=0.0,
        retry_max_seconds=0.0,
        stale_running_seconds=0,
    )


@pytest.fixture()
def make_worker() -> Callable[..., QueueWorker]:
    """Factory for a worker with zero poll and retry delays bound to a runtime."""

    return _build_worker
