"""
keycloak-migrator — Keycloak distributions

File: src/keycloak_migrator/adapters/distribution.py

Purpose
- Make a Keycloak version available to the deployment adapter.

What should be included in this file
- ``ContainerImageDistribution``: the artifact is an image reference; nothing to build.
- ``ArchiveDistribution``: release tarballs downloaded with ``httpx`` (or taken from the
  archive directory when predownloaded or airgapped), extracted safely, then built with
  ``bin/kc.sh build`` for Quarkus releases.

Functional requirements
- Installing is idempotent: an existing extracted release is reused.
- Downloads and extractions land under a temporary name and are renamed into place.
- Airgapped installs never touch the network.
"""

from __future__ import annotations

import asyncio
import os
import shutil
import tarfile
from pathlib import Path
from typing import TYPE_CHECKING, Any, Final

import httpx
import structlog

from keycloak_migrator.adapters.process import CommandSpec, raise_for_result
from keycloak_migrator.domain.errors import PermanentOperationError, TransientOperationError

if TYPE_CHECKING:
    from keycloak_migrator.adapters.process import CommandExecutor

RELEASE_URL: Final[str] = (
    "https://github.com/keycloak/keycloak/releases/download/{version}/keycloak-{version}.tar.gz"
)
_CHUNK_SIZE: Final[int] = 1024 * 1024


def archive_name(version: str) -> str:
    return f"keycloak-{version}.tar.gz"


class ContainerImageDistribution:
    def __init__(self, registry: str, image: str, *, logger: Any | None = None) -> None:
        self._registry = registry.rstrip("/")
        self._image = image
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    async def install(self, version: str, dest: Path) -> str:
        reference = f"{self._registry}/{self._image}:{version}"
        self._logger.info("image_selected", version=version, image=reference)
        return reference

    async def build(self, version: str, artifact: str) -> None:
        self._logger.debug("image_build_not_needed", version=version, image=artifact)


class ArchiveDistribution:
    def __init__(
        self,
        archive_dir: Path,
        executor: CommandExecutor,
        *,
        allow_download: bool = True,
        download_timeout_seconds: float = 600.0,
        build_timeout_seconds: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        logger: Any | None = None,
    ) -> None:
        self._archive_dir = archive_dir
        self._executor = executor
        self._allow_download = allow_download
        self._download_timeout = download_timeout_seconds
        self._build_timeout = build_timeout_seconds
        self._transport = transport
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    async def install(self, version: str, dest: Path) -> str:
        if (dest / "bin").is_dir():
            self._logger.info("release_already_installed", version=version, release=str(dest))
            return str(dest)
        archive = self._archive_dir / archive_name(version)
        if not archive.is_file():
            if not self._allow_download:
                raise PermanentOperationError(
                    f"{archive} is missing and downloads are disabled", operation="install"
                )
            await self.download(version, archive)
        await asyncio.to_thread(extract_release, archive, dest)
        self._logger.info("release_installed", version=version, release=str(dest))
        return str(dest)

    async def build(self, version: str, artifact: str) -> None:
        kc = Path(artifact) / "bin" / "kc.sh"
        if not kc.is_file():
            raise PermanentOperationError(f"{kc} not found", operation="kc_build")
        result = await self._executor.run(
            CommandSpec((str(kc), "build"), cwd=artifact, timeout_seconds=self._build_timeout)
        )
        raise_for_result(result, operation="kc_build")
        self._logger.info("release_built", version=version, release=artifact)

    async def download(self, version: str, archive: Path) -> Path:
        url = RELEASE_URL.format(version=version)
        archive.parent.mkdir(parents=True, exist_ok=True)
        partial = archive.with_name(archive.name + ".partial")
        self._logger.info("release_download_started", version=version, url=url)
        try:
            async with httpx.AsyncClient(
                timeout=self._download_timeout,
                transport=self._transport,
                follow_redirects=True,
            ) as client:
                async with client.stream("GET", url) as response:
                    if response.status_code >= 500:
                        raise TransientOperationError(
                            f"{url} answered {response.status_code}", operation="download"
                        )
                    if not response.is_success:
                        raise PermanentOperationError(
                            f"{url} answered {response.status_code}", operation="download"
                        )
                    with partial.open("wb") as handle:
                        async for chunk in response.aiter_bytes(_CHUNK_SIZE):
                            handle.write(chunk)
        except httpx.HTTPError as exc:
            partial.unlink(missing_ok=True)
            raise TransientOperationError(
                f"download of {url} failed: {exc}", operation="download"
            ) from exc
        except BaseException:
            partial.unlink(missing_ok=True)
            raise
        os.replace(partial, archive)
        self._logger.info(
            "release_downloaded", version=version, archive=str(archive), size=archive.stat().st_size
        )
        return archive


def extract_release(archive: Path, dest: Path) -> Path:
    """Extract ``archive`` so its single top-level directory becomes ``dest``."""

    staging = dest.with_name(f".{dest.name}.partial")
    if staging.exists():
        shutil.rmtree(staging)
    staging.mkdir(parents=True)
    try:
        with tarfile.open(archive, "r:*") as bundle:
            bundle.extractall(staging, filter="data")
        entries = list(staging.iterdir())
        root = entries[0] if len(entries) == 1 and entries[0].is_dir() else staging
        if dest.exists():
            shutil.rmtree(dest)
        if root is staging:
            os.replace(staging, dest)
        else:
            os.replace(root, dest)
    except (OSError, tarfile.TarError) as exc:
        raise PermanentOperationError(
            f"cannot extract {archive}: {exc}", operation="extract"
        ) from exc
    finally:
        if staging.exists():
            shutil.rmtree(staging)
    return dest


__all__ = [
    "RELEASE_URL",
    "ArchiveDistribution",
    "ContainerImageDistribution",
    "archive_name",
    "extract_release",
]
