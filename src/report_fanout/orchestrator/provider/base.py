"""Container task provider interface used by the worker launcher."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol


class ProviderError(RuntimeError):
    """Provider call failed, with retryability hint."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


class TaskNotFoundError(ProviderError):
    """The task is already gone; stopping it again is a no-op."""

    def __init__(self, message: str) -> None:
        super().__init__(message, transient=False)


@dataclass(slots=True)
class LaunchSpec:
    """Everything the provider needs to start one ephemeral worker."""

    template: str
    container_name: str
    command: list[str]
    started_by: str
    environment: dict[str, str] = field(default_factory=dict)
    tags: dict[str, str] = field(default_factory=dict)
    subnets: tuple[str, ...] = ()
    security_groups: tuple[str, ...] = ()
    assign_public_ip: bool = False
    capacity_providers: tuple[str, ...] = ()


class ContainerTaskProvider(Protocol):
    """Protocol implemented by compute providers."""

    def launch(self, spec: LaunchSpec) -> str:
        """Start one task and return its handle."""

    def list_in_flight(self, started_by: str) -> list[str]:
        """Handles of pending or running tasks carrying the started-by marker."""

    def count_in_flight(self, *, tag_key: str, tag_value: str) -> int:
        """Number of running tasks tagged ``tag_key=tag_value``."""

    def stop(self, handle: str, *, reason: str) -> None:
        """Ask the task to stop."""

    def terminate(self, handle: str, *, reason: str) -> None:
        """Lower-level kill used when ``stop`` did not confirm."""
