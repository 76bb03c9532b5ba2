"""Subprocess-backed provider for running ephemeral workers on the local host."""

from __future__ import annotations

import json
import logging
import os
import signal
import subprocess
import threading
from pathlib import Path
from typing import Any
from uuid import uuid4

from report_fanout.orchestrator.provider.base import LaunchSpec, ProviderError, TaskNotFoundError
from report_fanout.storage.common import utc_now

logger = logging.getLogger(__name__)

_STOP_WAIT_SECONDS = 2.0


class LocalProcessProvider:
    """Run each worker as a detached child process.

    Task metadata is kept as one JSON file per handle under ``registry_dir`` so
    separate CLI processes see the same in-flight set.
    """

    def __init__(self, registry_dir: Path) -> None:
        self.registry_dir = registry_dir
        self._processes: dict[str, subprocess.Popen[bytes]] = {}
        self._guard = threading.Lock()

    def launch(self, spec: LaunchSpec) -> str:
        self.registry_dir.mkdir(parents=True, exist_ok=True)
        handle = f"local-{uuid4().hex}"
        env = os.environ.copy()
        env.update(spec.environment)
        log_path = self.registry_dir / f"{handle}.log"
        try:
            with log_path.open("wb") as log_handle:
                process = subprocess.Popen(  # noqa: S603
                    spec.command,
                    env=env,
                    stdout=log_handle,
                    stderr=subprocess.STDOUT,
                    start_new_session=True,
                )
        except FileNotFoundError as error:
            raise ProviderError(
                f"Worker command not found: {spec.command[:1]}",
                transient=False,
            ) from error
        except OSError as error:
            raise ProviderError(f"Worker failed to start: {error}", transient=True) from error

        with self._guard:
            self._processes[handle] = process
        self._write_record(
            handle,
            {
                "handle": handle,
                "pid": process.pid,
                "started_by": spec.started_by,
                "tags": spec.tags,
                "template": spec.template,
                "started_at": utc_now().isoformat(),
            },
        )
        logger.info("Started local worker %s (pid=%s)", handle, process.pid)
        return handle

    def list_in_flight(self, started_by: str) -> list[str]:
        return [
            record["handle"]
            for record in self._records()
            if record.get("started_by") == started_by and self._is_alive(record)
        ]

    def count_in_flight(self, *, tag_key: str, tag_value: str) -> int:
        return sum(
            1
            for record in self._records()
            if (record.get("tags") or {}).get(tag_key) == tag_value and self._is_alive(record)
        )

    def stop(self, handle: str, *, reason: str) -> None:
        self._signal(handle, signal.SIGTERM, reason=reason)

    def terminate(self, handle: str, *, reason: str) -> None:
        self._signal(handle, getattr(signal, "SIGKILL", signal.SIGTERM), reason=reason)

    def _signal(self, handle: str, signum: int, *, reason: str) -> None:
        record = self._read_record(handle)
        if record is None or not self._is_alive(record):
            raise TaskNotFoundError(f"Local worker {handle} is not running")
        try:
            os.kill(int(record["pid"]), signum)
        except ProcessLookupError as error:
            raise TaskNotFoundError(f"Local worker {handle} is not running") from error
        except OSError as error:
            raise ProviderError(f"Failed to signal {handle}: {error}", transient=True) from error

        with self._guard:
            process = self._processes.get(handle)
        if process is not None:
            try:
                process.wait(timeout=_STOP_WAIT_SECONDS)
            except subprocess.TimeoutExpired:
                logger.warning("Local worker %s did not exit after signal %s", handle, signum)

        record["stop_reason"] = reason
        record["stopped_at"] = utc_now().isoformat()
        self._write_record(handle, record)
        logger.info("Signalled local worker %s (%s): %s", handle, signum, reason)

    def _is_alive(self, record: dict[str, Any]) -> bool:
        with self._guard:
            process = self._processes.get(record.get("handle", ""))
        if process is not None:
            return process.poll() is None
        pid = record.get("pid")
        if not isinstance(pid, int):
            return False
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            return True
        return True

    def _records(self) -> list[dict[str, Any]]:
        if not self.registry_dir.exists():
            return []
        records: list[dict[str, Any]] = []
        for path in sorted(self.registry_dir.glob("local-*.json")):
            record = self._load(path)
            if record is not None:
                records.append(record)
        return records

    def _read_record(self, handle: str) -> dict[str, Any] | None:
        path = self.registry_dir / f"{handle}.json"
        if not path.exists():
            return None
        return self._load(path)

    def _write_record(self, handle: str, record: dict[str, Any]) -> None:
        path = self.registry_dir / f"{handle}.json"
        tmp_path = path.with_suffix(".json.tmp")
        tmp_path.write_text(json.dumps(record, ensure_ascii=False, sort_keys=True), "utf-8")
        tmp_path.replace(path)

    def _load(self, path: Path) -> dict[str, Any] | None:
        try:
            payload = json.loads(path.read_text("utf-8"))
        except (OSError, ValueError):
            logger.warning("Skipping unreadable worker record %s", path)
            return None
        return payload if isinstance(payload, dict) else None
