"""Launch at most one ephemeral worker per workload token."""

from __future__ import annotations

import logging
import random
import shlex
import time
from collections.abc import Callable

from report_fanout.config import LauncherSettings
from report_fanout.orchestrator.locks import launcher_lock_key
from report_fanout.orchestrator.provider import (
    ContainerTaskProvider,
    LaunchSpec,
    ProviderError,
    TaskNotFoundError,
)
from report_fanout.orchestrator.repository import OrchestratorRepository, WorkloadNotFoundError
from report_fanout.orchestrator.routing import started_by_for

logger = logging.getLogger(__name__)

THROTTLE_TAG_KEY = "App"


class WorkerLaunchError(RuntimeError):
    """Launch attempts exhausted; the workload cannot get a worker."""


class WorkerThrottledError(RuntimeError):
    """Too many workers already running cluster-wide; try again later."""


class WorkerLauncher:
    """Idempotent worker launch guarded by lock, persisted record and provider scan."""

    def __init__(
        self,
        *,
        repository: OrchestratorRepository,
        provider: ContainerTaskProvider,
        settings: LauncherSettings,
        sleep: Callable[[float], None] = time.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self.repository = repository
        self.provider = provider
        self.settings = settings
        self._sleep = sleep
        self._random = rng or random.Random()  # noqa: S311

    @property
    def enabled(self) -> bool:
        return self.settings.enabled

    def launch(self, token: str) -> str:
        """Return the worker handle for ``token``, starting a worker only if none exists.

        Raises:
            WorkloadNotFoundError: no status record for the token.
            LockTimeoutError: another caller held the launch lock too long.
            WorkerThrottledError: the concurrency cap was still reached after retries.
            WorkerLaunchError: the provider kept failing.
        """

        with self.repository.lock(
            launcher_lock_key(token),
            timeout_seconds=self.settings.lock_timeout_seconds,
        ):
            workload = self.repository.get_workload(token)
            if workload is None:
                raise WorkloadNotFoundError(f"No workload status for token={token}")
            if workload.worker_started_at is not None and workload.worker_task_handle:
                return workload.worker_task_handle

            handle = self._start(token=token, queue_name=workload.queue_name)
            if not self.repository.record_worker_launch(token=token, handle=handle):
                current = self.repository.get_workload(token)
                if current is None or not current.worker_task_handle:
                    raise WorkerLaunchError(f"Workload {token} vanished during launch")
                logger.warning(
                    "Launch record for %s already set to %s; keeping it",
                    token,
                    current.worker_task_handle,
                )
                return current.worker_task_handle
            return handle

    def build_spec(self, token: str, queue_name: str) -> LaunchSpec:
        """Worker bound to the token's private queue and tagged for lookup."""

        return LaunchSpec(
            template=self.settings.task_definition,
            container_name=self.settings.container_name,
            command=shlex.split(self.settings.command_template.format(queue=queue_name)),
            started_by=started_by_for(token),
            environment={"TOKEN": token, "QUEUE": queue_name},
            tags={
                THROTTLE_TAG_KEY: self.settings.app_tag,
                "Token": token,
                "Env": self.settings.environment_name,
            },
            subnets=self.settings.subnets,
            security_groups=self.settings.security_groups,
            assign_public_ip=self.settings.assign_public_ip,
            capacity_providers=self.settings.capacity_providers,
        )

    def stop(self, token: str, *, reason: str) -> bool:
        """Ask the recorded worker to stop; False when there is none or the call failed."""

        return self._halt(token, reason=reason, force=False)

    def terminate(self, token: str, *, reason: str) -> bool:
        """Lower-level kill of the recorded worker."""

        return self._halt(token, reason=reason, force=True)

    def _start(self, *, token: str, queue_name: str) -> str:
        started_by = started_by_for(token)
        spec = self.build_spec(token, queue_name)
        max_attempts = max(1, self.settings.max_attempts)
        last_error: Exception | None = None

        for attempt in range(1, max_attempts + 1):
            try:
                existing = self.provider.list_in_flight(started_by)
                if existing:
                    logger.info("Adopting in-flight worker %s for token %s", existing[0], token)
                    return existing[0]
                self._check_throttle()
                handle = self.provider.launch(spec)
                logger.info("Launched worker %s for token %s (attempt %d)", handle, token, attempt)
                return handle
            except (ProviderError, WorkerThrottledError) as error:
                last_error = error
                if attempt >= max_attempts:
                    break
                delay = self._backoff_delay(attempt)
                logger.warning(
                    "Worker launch attempt %d/%d for %s failed: %s; retrying in %.2fs",
                    attempt,
                    max_attempts,
                    token,
                    error,
                    delay,
                )
                self._sleep(delay)

        if isinstance(last_error, WorkerThrottledError):
            raise last_error
        raise WorkerLaunchError(
            f"Worker launch for {token} failed after {max_attempts} attempts: {last_error}",
        ) from last_error

    def _check_throttle(self) -> None:
        if self.settings.max_concurrent <= 0:
            return
        running = self.provider.count_in_flight(
            tag_key=THROTTLE_TAG_KEY,
            tag_value=self.settings.app_tag,
        )
        if running >= self.settings.max_concurrent:
            raise WorkerThrottledError(
                f"Worker launch throttled: running={running} >= "
                f"max_concurrent={self.settings.max_concurrent}",
            )

    def _backoff_delay(self, attempt: int) -> float:
        base = self.settings.backoff_base_seconds * (2 ** (attempt - 1))
        return base + self._random.uniform(0, self.settings.backoff_jitter_seconds)

    def _halt(self, token: str, *, reason: str, force: bool) -> bool:
        workload = self.repository.get_workload(token)
        if workload is None or not workload.worker_task_handle:
            return False
        handle = workload.worker_task_handle
        action = self.provider.terminate if force else self.provider.stop
        try:
            action(handle, reason=reason)
        except TaskNotFoundError:
            logger.info("Worker %s for %s already gone", handle, token)
        except ProviderError as error:
            logger.error("Failed to %s worker %s for %s: %s", _verb(force), handle, token, error)
            return False
        self.repository.add_event(
            token=token,
            event_type="worker_terminated" if force else "worker_stopped",
            details={"handle": handle, "reason": reason},
        )
        return True


def _verb(force: bool) -> str:
    return "terminate" if force else "stop"
