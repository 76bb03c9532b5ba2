"""Bundle a workload's output directory and hand it to a delivery sink."""

from __future__ import annotations

import logging
import shutil
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from report_fanout.config import DeliverySettings
from report_fanout.orchestrator.models import OutputFormat

logger = logging.getLogger(__name__)


class ArtifactDeliveryError(RuntimeError):
    """The bundle could not be stored."""


@dataclass(slots=True)
class PackagedArtifact:
    """A zip bundle on local disk."""

    path: Path
    count: int


class ArtifactPackager:
    """Zip every file of a working directory into ``<workdir>_<format>.zip``."""

    def package(self, workdir: Path, output_format: OutputFormat) -> PackagedArtifact:
        workdir.mkdir(parents=True, exist_ok=True)
        archive_path = workdir.with_name(f"{workdir.name}_{output_format.value}.zip")
        files = sorted(path for path in workdir.iterdir() if path.is_file())
        with zipfile.ZipFile(archive_path, "w", compression=zipfile.ZIP_DEFLATED) as archive:
            for path in files:
                archive.write(path, arcname=path.name)
        logger.info("Packaged %d file(s) into %s", len(files), archive_path)
        return PackagedArtifact(path=archive_path, count=len(files))


class ArtifactSink(Protocol):
    """Protocol implemented by delivery targets."""

    def deliver(self, artifact: PackagedArtifact, *, token: str) -> str:
        """Store the bundle and return a reference to it."""


class LocalArtifactSink:
    """Copy bundles under ``root/reports``."""

    def __init__(self, root: Path) -> None:
        self.root = root

    def deliver(self, artifact: PackagedArtifact, *, token: str) -> str:
        target = self.root / "reports" / f"{token}.zip"
        target.parent.mkdir(parents=True, exist_ok=True)
        try:
            shutil.copy2(artifact.path, target)
        except OSError as error:
            raise ArtifactDeliveryError(f"Failed to copy {artifact.path}: {error}") from error
        return str(target)


class S3ArtifactSink:
    """Upload bundles to an S3 bucket; the reference is the object key."""

    def __init__(self, *, bucket: str, prefix: str = "", client: Any | None = None) -> None:
        self.bucket = bucket
        self.prefix = prefix
        self.s3 = client or boto3.client("s3")

    def deliver(self, artifact: PackagedArtifact, *, token: str) -> str:
        key = f"{self.prefix}{token}.zip"
        try:
            self.s3.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=artifact.path.read_bytes(),
                ContentType="application/zip",
            )
        except (BotoCoreError, ClientError) as error:
            raise ArtifactDeliveryError(
                f"Failed to upload s3://{self.bucket}/{key}: {error}",
            ) from error
        return key


def build_sink(settings: DeliverySettings) -> ArtifactSink:
    if settings.sink == "s3":
        return S3ArtifactSink(bucket=settings.s3_bucket, prefix=settings.s3_prefix)
    return LocalArtifactSink(settings.local_root)
