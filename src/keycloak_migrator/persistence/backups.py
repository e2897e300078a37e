"""
Backup file naming, discovery and retention.

Backups are named ``backup_before_<version>_<YYYYmmdd_HHMMSS>.dump`` so the transition they
precede can be recovered from the file name alone. Rotation considers only files following
that convention and never deletes a protected path (the backup referenced by a live
checkpoint).
"""

from __future__ import annotations

import re
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Final

import structlog

from keycloak_migrator.constants import (
    BACKUP_PREFIX,
    BACKUP_SUFFIX,
    BACKUP_TIMESTAMP_FORMAT,
    SAFETY_BACKUP_PREFIX,
)
from keycloak_migrator.utils.fs import delete_within

if TYPE_CHECKING:
    from keycloak_migrator.config.settings import BackupSettings

_BACKUP_NAME_RE: Final[re.Pattern[str]] = re.compile(
    rf"^{re.escape(BACKUP_PREFIX)}(\d+\.\d+\.\d+)_(\d{{8}}_\d{{6}}){re.escape(BACKUP_SUFFIX)}$"
)
_SECONDS_PER_DAY: Final[int] = 86_400


class RotationKind(StrEnum):
    NONE = "none"
    KEEP_LAST = "keep_last"
    MAX_AGE = "max_age"
    COMBINED = "combined"


@dataclass(frozen=True, slots=True)
class RotationPolicy:
    kind: RotationKind = RotationKind.KEEP_LAST
    keep_last: int = 5
    max_age_days: int = 30

    def __post_init__(self) -> None:
        if self.keep_last < 1:
            raise ValueError("keep_last must be >= 1")
        if self.max_age_days < 1:
            raise ValueError("max_age_days must be >= 1")

    @classmethod
    def from_settings(cls, settings: BackupSettings) -> RotationPolicy:
        return cls(
            kind=RotationKind(settings.rotation),
            keep_last=settings.keep_last,
            max_age_days=settings.max_age_days,
        )


@dataclass(frozen=True, slots=True)
class BackupFile:
    path: Path
    version: str
    modified_at: float
    size_bytes: int


class BackupCatalog:
    """View over ``paths.backup_dir``."""

    def __init__(
        self,
        backup_dir: Path | str,
        *,
        clock: Callable[[], float] = time.time,
        logger: Any | None = None,
    ) -> None:
        self.backup_dir = Path(backup_dir)
        self._clock = clock
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def path_for(self, version: str, *, at: datetime | None = None) -> Path:
        stamp = (at or datetime.now(tz=UTC)).strftime(BACKUP_TIMESTAMP_FORMAT)
        return self.backup_dir / f"{BACKUP_PREFIX}{version}_{stamp}{BACKUP_SUFFIX}"

    def safety_path(self, *, at: datetime | None = None) -> Path:
        stamp = (at or datetime.now(tz=UTC)).strftime(BACKUP_TIMESTAMP_FORMAT)
        return self.backup_dir / f"{SAFETY_BACKUP_PREFIX}{stamp}{BACKUP_SUFFIX}"

    @staticmethod
    def version_of(path: Path | str) -> str | None:
        match = _BACKUP_NAME_RE.fullmatch(Path(path).name)
        return match.group(1) if match else None

    def backups(self) -> list[BackupFile]:
        """Conventionally named backups, newest first."""

        if not self.backup_dir.is_dir():
            return []
        found: list[BackupFile] = []
        for candidate in self.backup_dir.iterdir():
            version = self.version_of(candidate)
            if version is None or not candidate.is_file():
                continue
            stat = candidate.stat()
            found.append(
                BackupFile(
                    path=candidate,
                    version=version,
                    modified_at=stat.st_mtime,
                    size_bytes=stat.st_size,
                )
            )
        found.sort(key=lambda item: (item.modified_at, item.path.name), reverse=True)
        return found

    def latest(self) -> BackupFile | None:
        entries = self.backups()
        return entries[0] if entries else None

    def rotate(
        self, policy: RotationPolicy, *, protect: Iterable[Path | str] = ()
    ) -> tuple[Path, ...]:
        """Delete backups outside the retention policy; returns the deleted paths."""

        if policy.kind is RotationKind.NONE:
            return ()
        entries = self.backups()
        protected = {Path(item).resolve() for item in protect}
        doomed: dict[Path, BackupFile] = {}

        if policy.kind in {RotationKind.KEEP_LAST, RotationKind.COMBINED}:
            for entry in entries[policy.keep_last :]:
                doomed[entry.path] = entry
        if policy.kind in {RotationKind.MAX_AGE, RotationKind.COMBINED}:
            cutoff = self._clock() - policy.max_age_days * _SECONDS_PER_DAY
            for entry in entries:
                if entry.modified_at < cutoff:
                    doomed[entry.path] = entry

        deleted: list[Path] = []
        freed = 0
        for path, entry in doomed.items():
            if path.resolve() in protected:
                self._logger.info("backup_rotation_protected", backup_path=str(path))
                continue
            delete_within(path, self.backup_dir)
            deleted.append(path)
            freed += entry.size_bytes
        if deleted:
            self._logger.info(
                "backup_rotation_completed",
                policy=policy.kind.value,
                deleted=len(deleted),
                freed_bytes=freed,
                remaining=len(entries) - len(deleted),
            )
        return tuple(sorted(deleted))


__all__ = ["BackupCatalog", "BackupFile", "RotationKind", "RotationPolicy"]
