"""Per-row document generation."""

from __future__ import annotations

import secrets
import time
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Protocol

from report_fanout.orchestrator.models import OutputFormat


class RowProcessor(Protocol):
    """Protocol implemented by row document generators."""

    def process(
        self,
        row: Mapping[str, str],
        output_format: OutputFormat,
        workdir: Path,
        *,
        token: str,
    ) -> Path:
        """Write the row's output into ``workdir`` and return the produced file."""


class DocumentRowProcessor:
    """Write one plain-text document per row.

    ``delay_seconds`` simulates slow generation for load tests.
    """

    def __init__(
        self,
        *,
        delay_seconds: float = 0.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.delay_seconds = delay_seconds
        self._sleep = sleep

    def process(
        self,
        row: Mapping[str, str],
        output_format: OutputFormat,
        workdir: Path,
        *,
        token: str,
    ) -> Path:
        workdir.mkdir(parents=True, exist_ok=True)
        if self.delay_seconds > 0:
            self._sleep(self.delay_seconds)

        path = workdir / f"row_{token}_{secrets.token_hex(8)}.txt"
        lines = [f"format: {output_format.value}"]
        lines.extend(f"{key}: {value}" for key, value in row.items())
        path.write_text("\n".join(lines) + "\n", "utf-8")
        return path
