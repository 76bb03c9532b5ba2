"""Container task providers for ephemeral workers."""

from report_fanout.orchestrator.provider.base import (
    ContainerTaskProvider,
    LaunchSpec,
    ProviderError,
    TaskNotFoundError,
)
from report_fanout.orchestrator.provider.ecs import EcsTaskProvider
from report_fanout.orchestrator.provider.local import LocalProcessProvider

__all__ = [
    "ContainerTaskProvider",
    "EcsTaskProvider",
    "LaunchSpec",
    "LocalProcessProvider",
    "ProviderError",
    "TaskNotFoundError",
]
