"""AWS ECS provider: one Fargate (or capacity-provider) task per workload."""

from __future__ import annotations

import logging
import subprocess
from typing import Any

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from report_fanout.orchestrator.provider.base import LaunchSpec, ProviderError, TaskNotFoundError

logger = logging.getLogger(__name__)

_IN_FLIGHT_STATUSES = ("PENDING", "RUNNING")
_DESCRIBE_BATCH = 100
_TRANSIENT_CODES = frozenset(
    {
        "ThrottlingException",
        "ServerException",
        "ServiceUnavailableException",
        "RequestLimitExceeded",
    },
)
_CLI_TIMEOUT_SECONDS = 30


class EcsTaskProvider:
    """Launch, find and stop worker tasks through the ECS API."""

    def __init__(
        self,
        *,
        cluster: str,
        region: str | None = None,
        client: Any | None = None,
    ) -> None:
        self.cluster = cluster
        self.region = region
        self._client = client

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = boto3.client("ecs", region_name=self.region)
        return self._client

    def launch(self, spec: LaunchSpec) -> str:
        params: dict[str, Any] = {
            "cluster": self.cluster,
            "taskDefinition": spec.template,
            "enableECSManagedTags": True,
            "startedBy": spec.started_by,
            "networkConfiguration": {
                "awsvpcConfiguration": {
                    "subnets": list(spec.subnets),
                    "securityGroups": list(spec.security_groups),
                    "assignPublicIp": "ENABLED" if spec.assign_public_ip else "DISABLED",
                },
            },
            "overrides": {
                "containerOverrides": [
                    {
                        "name": spec.container_name,
                        "environment": [
                            {"name": key, "value": str(value)}
                            for key, value in spec.environment.items()
                        ],
                        "command": list(spec.command),
                    },
                ],
            },
            "tags": [{"key": key, "value": str(value)} for key, value in spec.tags.items()],
        }
        if spec.capacity_providers:
            params["capacityProviderStrategy"] = [
                {"capacityProvider": name, "weight": 1} for name in spec.capacity_providers
            ]
        else:
            params["launchType"] = "FARGATE"

        response = self._call("run_task", **params)
        failures = response.get("failures") or []
        if failures:
            reasons = ", ".join(
                f"{failure.get('arn') or '-'}: {failure.get('reason')}" for failure in failures
            )
            raise ProviderError(f"ECS RunTask failures: {reasons}", transient=True)
        tasks = response.get("tasks") or []
        if not tasks or not tasks[0].get("taskArn"):
            raise ProviderError("ECS RunTask returned no task", transient=True)
        task_arn = tasks[0]["taskArn"]
        logger.info("Started ECS task %s (startedBy=%s)", task_arn, spec.started_by)
        return task_arn

    def list_in_flight(self, started_by: str) -> list[str]:
        arns: list[str] = []
        for status in _IN_FLIGHT_STATUSES:
            arns.extend(self._list_task_arns(desiredStatus=status, startedBy=started_by))
        return arns

    def count_in_flight(self, *, tag_key: str, tag_value: str) -> int:
        arns = self._list_task_arns(desiredStatus="RUNNING")
        count = 0
        for start in range(0, len(arns), _DESCRIBE_BATCH):
            response = self._call(
                "describe_tasks",
                cluster=self.cluster,
                tasks=arns[start : start + _DESCRIBE_BATCH],
                include=["TAGS"],
            )
            for task in response.get("tasks") or []:
                tags = task.get("tags") or []
                if any(tag.get("key") == tag_key and tag.get("value") == tag_value for tag in tags):
                    count += 1
        return count

    def stop(self, handle: str, *, reason: str) -> None:
        try:
            self.client.stop_task(cluster=self.cluster, task=handle, reason=reason)
        except ClientError as error:
            message = str(error)
            if "not found" in message.lower():
                raise TaskNotFoundError(f"ECS task {handle} not found") from error
            raise _provider_error("stop_task", error) from error
        except BotoCoreError as error:
            raise _provider_error("stop_task", error) from error
        logger.info("Stopped ECS task %s: %s", handle, reason)

    def terminate(self, handle: str, *, reason: str) -> None:
        """Stop the task through the AWS CLI, bypassing the SDK client."""

        command = [
            "aws",
            "ecs",
            "stop-task",
            "--cluster",
            self.cluster,
            "--task",
            handle,
            "--reason",
            reason,
        ]
        if self.region:
            command.extend(["--region", self.region])
        try:
            completed = subprocess.run(  # noqa: S603
                command,
                capture_output=True,
                text=True,
                timeout=_CLI_TIMEOUT_SECONDS,
                check=False,
            )
        except FileNotFoundError as error:
            raise ProviderError("aws CLI is not installed", transient=False) from error
        except subprocess.TimeoutExpired as error:
            raise ProviderError("aws ecs stop-task timed out", transient=True) from error
        if completed.returncode != 0:
            stderr = completed.stderr.strip()
            if "not found" in stderr.lower():
                raise TaskNotFoundError(f"ECS task {handle} not found")
            raise ProviderError(
                f"aws ecs stop-task exited with {completed.returncode}: {stderr}",
                transient=True,
            )
        logger.warning("Force-stopped ECS task %s via CLI: %s", handle, reason)

    def _list_task_arns(self, **filters: str) -> list[str]:
        arns: list[str] = []
        try:
            paginator = self.client.get_paginator("list_tasks")
            for page in paginator.paginate(cluster=self.cluster, **filters):
                arns.extend(page.get("taskArns") or [])
        except (ClientError, BotoCoreError) as error:
            raise _provider_error("list_tasks", error) from error
        return arns

    def _call(self, operation: str, **params: Any) -> dict[str, Any]:
        try:
            return getattr(self.client, operation)(**params)
        except (ClientError, BotoCoreError) as error:
            raise _provider_error(operation, error) from error


def _provider_error(operation: str, error: Exception) -> ProviderError:
    transient = True
    if isinstance(error, ClientError):
        code = error.response.get("Error", {}).get("Code", "")
        transient = code in _TRANSIENT_CODES
    return ProviderError(f"ECS {operation} failed: {error}", transient=transient)
