"""Runtime configuration for the report fan-out orchestrator."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

PROVIDER_KINDS = frozenset({"local", "ecs"})
SINK_KINDS = frozenset({"local", "s3"})


@dataclass(slots=True)
class QueueSettings:
    """Queue backend and worker retry policy."""

    control_queue: str = "default"
    max_attempts: int = 3
    retry_base_seconds: float = 15.0
    retry_max_seconds: float = 600.0
    stale_running_seconds: int = 1_800
    poll_interval_seconds: float = 1.0


@dataclass(slots=True)
class WorkSettings:
    """Where row jobs write their output and how they behave."""

    work_root: Path = Path(".report_fanout/work")
    row_delay_seconds: float = 0.0


@dataclass(slots=True)
class LauncherSettings:
    """Ephemeral worker provisioning."""

    enabled: bool = False
    provider: str = "local"
    cluster: str = "report-cluster"
    task_definition: str = "report-worker"
    container_name: str = "worker"
    subnets: tuple[str, ...] = ()
    security_groups: tuple[str, ...] = ()
    assign_public_ip: bool = False
    capacity_providers: tuple[str, ...] = ()
    region: str | None = None
    command_template: str = "report-fanout worker --queue {queue}"
    app_tag: str = "report"
    environment_name: str = "development"
    max_concurrent: int = 0
    lock_timeout_seconds: float = 10.0
    max_attempts: int = 4
    backoff_base_seconds: float = 0.5
    backoff_jitter_seconds: float = 0.2
    registry_dir: Path = Path(".report_fanout/workers")


@dataclass(slots=True)
class FinalizeSettings:
    """Finalize/poll job defaults."""

    poll_interval_seconds: int = 10
    max_wait_seconds: int = 43_200
    lock_timeout_seconds: float = 10.0


@dataclass(slots=True)
class MonitorSettings:
    """Recovery monitor thresholds."""

    dead_row_threshold: int = 5
    idle_threshold_seconds: int = 1_800
    stale_threshold_seconds: int = 600
    idle_residual_jobs: int = 2
    idle_shutdown_delay_seconds: int = 30
    idle_shutdown_max_reschedules: int = 10
    interval_seconds: int = 60
    dead_retention_seconds: int = 15_552_000
    dead_max_jobs: int = 10_000


@dataclass(slots=True)
class DeliverySettings:
    """Final artifact delivery sink."""

    sink: str = "local"
    local_root: Path = Path(".report_fanout/artifacts")
    s3_bucket: str = ""
    s3_prefix: str = "reports/"


@dataclass(slots=True)
class NotificationSettings:
    """Operator alert channel."""

    webhook_url: str = ""
    timeout_seconds: float = 10.0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".report_fanout.db")
    queue: QueueSettings = field(default_factory=QueueSettings)
    work: WorkSettings = field(default_factory=WorkSettings)
    launcher: LauncherSettings = field(default_factory=LauncherSettings)
    finalize: FinalizeSettings = field(default_factory=FinalizeSettings)
    monitors: MonitorSettings = field(default_factory=MonitorSettings)
    delivery: DeliverySettings = field(default_factory=DeliverySettings)
    notifications: NotificationSettings = field(default_factory=NotificationSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("REPORT_FANOUT_DB_PATH", ".report_fanout.db")),
            queue=QueueSettings(
                control_queue=os.getenv("REPORT_FANOUT_CONTROL_QUEUE", "default"),
                max_attempts=int(os.getenv("REPORT_FANOUT_JOB_MAX_ATTEMPTS", "3")),
                retry_base_seconds=float(os.getenv("REPORT_FANOUT_RETRY_BASE_SECONDS", "15")),
                retry_max_seconds=float(os.getenv("REPORT_FANOUT_RETRY_MAX_SECONDS", "600")),
                stale_running_seconds=int(
                    os.getenv("REPORT_FANOUT_STALE_RUNNING_SECONDS", "1800"),
                ),
                poll_interval_seconds=float(
                    os.getenv("REPORT_FANOUT_WORKER_POLL_SECONDS", "1.0"),
                ),
            ),
            work=WorkSettings(
                work_root=Path(os.getenv("REPORT_FANOUT_WORK_ROOT", ".report_fanout/work")),
                row_delay_seconds=float(os.getenv("REPORT_FANOUT_ROW_DELAY_SECONDS", "0")),
            ),
            launcher=LauncherSettings(
                enabled=_env_bool("REPORT_FANOUT_LAUNCHER_ENABLED", default=False),
                provider=os.getenv("REPORT_FANOUT_LAUNCHER_PROVIDER", "local").strip().lower(),
                cluster=os.getenv("REPORT_FANOUT_ECS_CLUSTER", "report-cluster"),
                task_definition=os.getenv("REPORT_FANOUT_ECS_TASK_DEFINITION", "report-worker"),
                container_name=os.getenv("REPORT_FANOUT_ECS_CONTAINER_NAME", "worker"),
                subnets=_env_csv("REPORT_FANOUT_ECS_SUBNETS"),
                security_groups=_env_csv("REPORT_FANOUT_ECS_SECURITY_GROUPS"),
                assign_public_ip=_env_bool("REPORT_FANOUT_ECS_ASSIGN_PUBLIC_IP", default=False),
                capacity_providers=_env_csv("REPORT_FANOUT_ECS_CAPACITY_PROVIDERS"),
                region=os.getenv("REPORT_FANOUT_AWS_REGION") or None,
                command_template=os.getenv(
                    "REPORT_FANOUT_WORKER_COMMAND",
                    "report-fanout worker --queue {queue}",
                ),
                app_tag=os.getenv("REPORT_FANOUT_APP_TAG", "report"),
                environment_name=os.getenv("REPORT_FANOUT_ENV", "development"),
                max_concurrent=int(os.getenv("REPORT_FANOUT_MAX_CONCURRENT_WORKERS", "0")),
                lock_timeout_seconds=float(
                    os.getenv("REPORT_FANOUT_LAUNCH_LOCK_TIMEOUT_SECONDS", "10"),
                ),
                max_attempts=int(os.getenv("REPORT_FANOUT_LAUNCH_MAX_ATTEMPTS", "4")),
                backoff_base_seconds=float(
                    os.getenv("REPORT_FANOUT_LAUNCH_BACKOFF_BASE_SECONDS", "0.5"),
                ),
                backoff_jitter_seconds=float(
                    os.getenv("REPORT_FANOUT_LAUNCH_BACKOFF_JITTER_SECONDS", "0.2"),
                ),
                registry_dir=Path(
                    os.getenv("REPORT_FANOUT_WORKER_REGISTRY_DIR", ".report_fanout/workers"),
                ),
            ),
            finalize=FinalizeSettings(
                poll_interval_seconds=int(
                    os.getenv("REPORT_FANOUT_FINALIZE_POLL_SECONDS", "10"),
                ),
                max_wait_seconds=int(os.getenv("REPORT_FANOUT_FINALIZE_MAX_WAIT_SECONDS", "43200")),
                lock_timeout_seconds=float(
                    os.getenv("REPORT_FANOUT_FINALIZE_LOCK_TIMEOUT_SECONDS", "10"),
                ),
            ),
            monitors=MonitorSettings(
                dead_row_threshold=int(os.getenv("REPORT_FANOUT_DEAD_ROW_THRESHOLD", "5")),
                idle_threshold_seconds=int(
                    os.getenv("REPORT_FANOUT_IDLE_THRESHOLD_SECONDS", "1800"),
                ),
                stale_threshold_seconds=int(
                    os.getenv("REPORT_FANOUT_STALE_THRESHOLD_SECONDS", "600"),
                ),
                idle_residual_jobs=int(os.getenv("REPORT_FANOUT_IDLE_RESIDUAL_JOBS", "2")),
                idle_shutdown_delay_seconds=int(
                    os.getenv("REPORT_FANOUT_IDLE_SHUTDOWN_DELAY_SECONDS", "30"),
                ),
                idle_shutdown_max_reschedules=int(
                    os.getenv("REPORT_FANOUT_IDLE_SHUTDOWN_MAX_RESCHEDULES", "10"),
                ),
                interval_seconds=int(os.getenv("REPORT_FANOUT_MONITOR_INTERVAL_SECONDS", "60")),
                dead_retention_seconds=int(
                    os.getenv("REPORT_FANOUT_DEAD_RETENTION_SECONDS", "15552000"),
                ),
                dead_max_jobs=int(os.getenv("REPORT_FANOUT_DEAD_MAX_JOBS", "10000")),
            ),
            delivery=DeliverySettings(
                sink=os.getenv("REPORT_FANOUT_DELIVERY_SINK", "local").strip().lower(),
                local_root=Path(
                    os.getenv("REPORT_FANOUT_ARTIFACT_ROOT", ".report_fanout/artifacts"),
                ),
                s3_bucket=os.getenv("REPORT_FANOUT_S3_BUCKET", ""),
                s3_prefix=os.getenv("REPORT_FANOUT_S3_PREFIX", "reports/"),
            ),
            notifications=NotificationSettings(
                webhook_url=os.getenv("REPORT_FANOUT_ALERT_WEBHOOK_URL", "").strip(),
                timeout_seconds=float(os.getenv("REPORT_FANOUT_ALERT_TIMEOUT_SECONDS", "10")),
            ),
        )

    def validate(self) -> None:  # noqa: C901, PLR0912
        """Raise configuration error on inconsistent settings."""

        if not self.queue.control_queue.strip():
            raise ValueError("REPORT_FANOUT_CONTROL_QUEUE must not be empty.")
        if self.queue.max_attempts < 1:
            raise ValueError("REPORT_FANOUT_JOB_MAX_ATTEMPTS must be >= 1.")
        if self.queue.retry_base_seconds < 0 or self.queue.retry_max_seconds < 0:
            raise ValueError("REPORT_FANOUT_RETRY_*_SECONDS must be >= 0.")
        if self.launcher.provider not in PROVIDER_KINDS:
            raise ValueError(
                "REPORT_FANOUT_LAUNCHER_PROVIDER must be one of "
                f"{sorted(PROVIDER_KINDS)}, got {self.launcher.provider!r}.",
            )
        if "{queue}" not in self.launcher.command_template:
            raise ValueError("REPORT_FANOUT_WORKER_COMMAND must contain the {queue} placeholder.")
        if self.launcher.enabled and self.launcher.provider == "ecs" and not self.launcher.subnets:
            raise ValueError("REPORT_FANOUT_ECS_SUBNETS is required for the ecs provider.")
        if self.launcher.max_concurrent < 0:
            raise ValueError("REPORT_FANOUT_MAX_CONCURRENT_WORKERS must be >= 0.")
        if self.launcher.max_attempts < 1:
            raise ValueError("REPORT_FANOUT_LAUNCH_MAX_ATTEMPTS must be >= 1.")
        if self.launcher.lock_timeout_seconds <= 0:
            raise ValueError("REPORT_FANOUT_LAUNCH_LOCK_TIMEOUT_SECONDS must be > 0.")
        if self.finalize.poll_interval_seconds <= 0:
            raise ValueError("REPORT_FANOUT_FINALIZE_POLL_SECONDS must be > 0.")
        if self.finalize.max_wait_seconds <= 0:
            raise ValueError("REPORT_FANOUT_FINALIZE_MAX_WAIT_SECONDS must be > 0.")
        if self.monitors.dead_row_threshold < 1:
            raise ValueError("REPORT_FANOUT_DEAD_ROW_THRESHOLD must be >= 1.")
        if self.monitors.idle_threshold_seconds <= 0:
            raise ValueError("REPORT_FANOUT_IDLE_THRESHOLD_SECONDS must be > 0.")
        if self.monitors.idle_residual_jobs < 0:
            raise ValueError("REPORT_FANOUT_IDLE_RESIDUAL_JOBS must be >= 0.")
        if self.monitors.dead_retention_seconds <= 0:
            raise ValueError("REPORT_FANOUT_DEAD_RETENTION_SECONDS must be > 0.")
        if self.monitors.dead_max_jobs < 0:
            raise ValueError("REPORT_FANOUT_DEAD_MAX_JOBS must be >= 0.")
        if self.delivery.sink not in SINK_KINDS:
            raise ValueError(
                "REPORT_FANOUT_DELIVERY_SINK must be one of "
                f"{sorted(SINK_KINDS)}, got {self.delivery.sink!r}.",
            )
        if self.delivery.sink == "s3" and not self.delivery.s3_bucket:
            raise ValueError("REPORT_FANOUT_S3_BUCKET is required for the s3 delivery sink.")
        if self.notifications.webhook_url:
            _validate_webhook_url(self.notifications.webhook_url)


def _env_csv(name: str) -> tuple[str, ...]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return ()
    return tuple(part.strip() for part in raw.split(",") if part.strip())


def _validate_webhook_url(value: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(
            "Invalid REPORT_FANOUT_ALERT_WEBHOOK_URL: "
            f"{value!r}. Expected an absolute URL with http:// or https:// scheme.",
        )


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
