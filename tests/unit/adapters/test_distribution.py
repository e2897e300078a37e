"""Unit tests for container-image and archive distributions."""

from __future__ import annotations

import io
import tarfile
from pathlib import Path

import httpx
import pytest

from keycloak_migrator.adapters.distribution import (
    RELEASE_URL,
    ArchiveDistribution,
    ContainerImageDistribution,
    archive_name,
    extract_release,
)
from keycloak_migrator.domain.errors import PermanentOperationError, TransientOperationError
from tests.fakes import RecordingExecutor


def _tarball(version: str) -> bytes:
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as bundle:
        for name, content in (
            ("bin/kc.sh", b"#!/bin/sh\n"),
            ("conf/keycloak.conf", b"db=postgres\n"),
        ):
            info = tarfile.TarInfo(f"keycloak-{version}/{name}")
            info.size = len(content)
            bundle.addfile(info, io.BytesIO(content))
    return buffer.getvalue()


def _distribution(
    tmp_path: Path,
    *,
    allow_download: bool = True,
    transport: httpx.AsyncBaseTransport | None = None,
    executor: RecordingExecutor | None = None,
) -> ArchiveDistribution:
    return ArchiveDistribution(
        tmp_path / "archives",
        executor or RecordingExecutor(),
        allow_download=allow_download,
        transport=transport,
    )


async def test_container_distribution_builds_image_reference(tmp_path: Path) -> None:
    distribution = ContainerImageDistribution("quay.io/", "keycloak/keycloak")

    artifact = await distribution.install("25.0.6", tmp_path)
    await distribution.build("25.0.6", artifact)

    assert artifact == "quay.io/keycloak/keycloak:25.0.6"
    assert list(tmp_path.iterdir()) == []


async def test_predownloaded_archive_is_extracted(tmp_path: Path) -> None:
    archives = tmp_path / "archives"
    archives.mkdir()
    (archives / archive_name("22.0.5")).write_bytes(_tarball("22.0.5"))
    dest = tmp_path / "installs" / "22.0.5"

    artifact = await _distribution(tmp_path, allow_download=False).install("22.0.5", dest)

    assert artifact == str(dest)
    assert (dest / "bin" / "kc.sh").read_bytes() == b"#!/bin/sh\n"
    assert not (tmp_path / "installs" / ".22.0.5.partial").exists()


async def test_installed_release_is_reused(tmp_path: Path) -> None:
    dest = tmp_path / "installs" / "22.0.5"
    (dest / "bin").mkdir(parents=True)

    artifact = await _distribution(tmp_path, allow_download=False).install("22.0.5", dest)

    assert artifact == str(dest)


async def test_airgapped_install_without_archive_fails(tmp_path: Path) -> None:
    with pytest.raises(PermanentOperationError, match="downloads are disabled"):
        await _distribution(tmp_path, allow_download=False).install(
            "25.0.6", tmp_path / "installs" / "25.0.6"
        )


async def test_download_streams_to_the_archive_dir(tmp_path: Path) -> None:
    requested: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requested.append(str(request.url))
        return httpx.Response(200, content=_tarball("26.0.7"))

    distribution = _distribution(tmp_path, transport=httpx.MockTransport(handler))
    dest = tmp_path / "installs" / "26.0.7"

    await distribution.install("26.0.7", dest)

    assert requested == [RELEASE_URL.format(version="26.0.7")]
    assert (tmp_path / "archives" / "keycloak-26.0.7.tar.gz").is_file()
    assert not (tmp_path / "archives" / "keycloak-26.0.7.tar.gz.partial").exists()
    assert (dest / "conf" / "keycloak.conf").is_file()


@pytest.mark.parametrize(
    ("status", "error"),
    [(503, TransientOperationError), (404, PermanentOperationError)],
)
async def test_download_http_errors(
    tmp_path: Path, status: int, error: type[Exception]
) -> None:
    transport = httpx.MockTransport(lambda request: httpx.Response(status))
    archive = tmp_path / "archives" / archive_name("26.0.7")

    with pytest.raises(error, match=f"answered {status}"):
        await _distribution(tmp_path, transport=transport).download("26.0.7", archive)

    assert not archive.exists()
    assert not archive.with_name(archive.name + ".partial").exists()


async def test_download_connection_error_is_transient(tmp_path: Path) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("name resolution failed", request=request)

    with pytest.raises(TransientOperationError, match="name resolution failed"):
        await _distribution(tmp_path, transport=httpx.MockTransport(handler)).download(
            "26.0.7", tmp_path / "archives" / archive_name("26.0.7")
        )


async def test_build_runs_kc_sh(tmp_path: Path) -> None:
    release = tmp_path / "installs" / "25.0.6"
    (release / "bin").mkdir(parents=True)
    (release / "bin" / "kc.sh").write_text("#!/bin/sh\n", encoding="utf-8")
    executor = RecordingExecutor()

    await _distribution(tmp_path, executor=executor).build("25.0.6", str(release))

    (spec,) = executor.specs
    assert spec.argv == (str(release / "bin" / "kc.sh"), "build")
    assert spec.cwd == str(release)


async def test_build_failures(tmp_path: Path) -> None:
    with pytest.raises(PermanentOperationError, match="kc.sh not found"):
        await _distribution(tmp_path).build("25.0.6", str(tmp_path / "missing"))

    release = tmp_path / "installs" / "25.0.6"
    (release / "bin").mkdir(parents=True)
    (release / "bin" / "kc.sh").write_text("#!/bin/sh\n", encoding="utf-8")
    executor = RecordingExecutor()
    executor.respond("build", exit_code=1, stderr="ERROR: Failed to run 'build' command.")

    with pytest.raises(PermanentOperationError, match="Failed to run 'build' command"):
        await _distribution(tmp_path, executor=executor).build("25.0.6", str(release))


def test_extract_rejects_corrupt_archives(tmp_path: Path) -> None:
    archive = tmp_path / "broken.tar.gz"
    archive.write_bytes(b"not a tarball")

    with pytest.raises(PermanentOperationError, match="cannot extract"):
        extract_release(archive, tmp_path / "out")

    assert not (tmp_path / "out").exists()
    assert not (tmp_path / ".out.partial").exists()
