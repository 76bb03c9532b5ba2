from __future__ import annotations

import zipfile
from pathlib import Path

import allure
import boto3
import pytest
from botocore.stub import ANY, Stubber

from report_fanout.config import DeliverySettings
from report_fanout.orchestrator.models import OutputFormat
from report_fanout.orchestrator.packaging import (
    ArtifactDeliveryError,
    ArtifactPackager,
    LocalArtifactSink,
    PackagedArtifact,
    S3ArtifactSink,
    build_sink,
)
from report_fanout.orchestrator.row_processing import DocumentRowProcessor

pytestmark = [
    allure.epic("Fan-out Orchestration"),
    allure.feature("Packaging & Delivery"),
]


def _s3_client():
    return boto3.client(
        "s3",
        region_name="us-east-1",
        aws_access_key_id="testing",
        aws_secret_access_key="testing",  # noqa: S106
    )


def test_row_processor_writes_one_document_per_row(tmp_path: Path) -> None:
    delays: list[float] = []
    processor = DocumentRowProcessor(delay_seconds=0.5, sleep=delays.append)

    first = processor.process({"name": "acme"}, OutputFormat.PDF, tmp_path / "w", token="tok")
    second = processor.process({"name": "acme"}, OutputFormat.PDF, tmp_path / "w", token="tok")

    assert first != second
    assert first.name.startswith("row_tok_")
    assert first.read_text("utf-8") == "format: pdf\nname: acme\n"
    assert delays == [0.5, 0.5]


def test_package_zips_flat_files_next_to_workdir(tmp_path: Path) -> None:
    workdir = tmp_path / "tok"
    workdir.mkdir()
    (workdir / "b.txt").write_text("b", "utf-8")
    (workdir / "a.txt").write_text("a", "utf-8")
    (workdir / "nested").mkdir()

    artifact = ArtifactPackager().package(workdir, OutputFormat.XLSX)

    assert artifact.path == tmp_path / "tok_xlsx.zip"
    assert artifact.count == 2
    with zipfile.ZipFile(artifact.path) as bundle:
        assert bundle.namelist() == ["a.txt", "b.txt"]


def test_package_creates_missing_workdir(tmp_path: Path) -> None:
    artifact = ArtifactPackager().package(tmp_path / "empty", OutputFormat.PDF)

    assert artifact.count == 0
    assert (tmp_path / "empty").is_dir()
    with zipfile.ZipFile(artifact.path) as bundle:
        assert bundle.namelist() == []


def test_local_sink_copies_bundle(tmp_path: Path) -> None:
    source = tmp_path / "bundle.zip"
    source.write_bytes(b"PK")

    ref = LocalArtifactSink(tmp_path / "out").deliver(
        PackagedArtifact(path=source, count=1),
        token="tok",
    )

    assert Path(ref) == tmp_path / "out" / "reports" / "tok.zip"
    assert Path(ref).read_bytes() == b"PK"


def test_s3_sink_uploads_under_prefix(tmp_path: Path) -> None:
    source = tmp_path / "bundle.zip"
    source.write_bytes(b"PK")
    client = _s3_client()
    sink = S3ArtifactSink(bucket="reports-bucket", prefix="reports/", client=client)

    with Stubber(client) as stubber:
        stubber.add_response(
            "put_object",
            {},
            {
                "Bucket": "reports-bucket",
                "Key": "reports/tok.zip",
                "Body": ANY,
                "ContentType": "application/zip",
            },
        )
        ref = sink.deliver(PackagedArtifact(path=source, count=1), token="tok")
        stubber.assert_no_pending_responses()

    assert ref == "reports/tok.zip"


def test_s3_sink_wraps_client_errors(tmp_path: Path) -> None:
    source = tmp_path / "bundle.zip"
    source.write_bytes(b"PK")
    client = _s3_client()
    sink = S3ArtifactSink(bucket="reports-bucket", client=client)

    with Stubber(client) as stubber:
        stubber.add_client_error("put_object", service_error_code="AccessDenied")
        with pytest.raises(ArtifactDeliveryError, match="s3://reports-bucket/tok.zip"):
            sink.deliver(PackagedArtifact(path=source, count=1), token="tok")


def test_build_sink_selects_local_by_default(tmp_path: Path) -> None:
    sink = build_sink(DeliverySettings(local_root=tmp_path))

    assert isinstance(sink, LocalArtifactSink)
