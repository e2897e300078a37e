"""
keycloak-migrator — preflight checks

File: src/keycloak_migrator/engine/preflight.py

Purpose
- Verify the environment before the first mutation of a migration.

What should be included in this file
- Disk space, platform tools, Java runtime, distribution/airgap consistency, database
  connectivity.
- A ``.preflight_passed`` marker written atomically on success.

Functional requirements
- Every check runs; the error lists all failed checks at once.
- Warnings are logged and never block.
- Connectivity goes through the resilience controller like every other database call.
"""

from __future__ import annotations

import re
import shutil
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Final

import structlog

from keycloak_migrator.adapters.distribution import archive_name
from keycloak_migrator.adapters.process import CommandSpec
from keycloak_migrator.constants import PREFLIGHT_MARKER
from keycloak_migrator.domain.errors import CircuitOpenError, OperationError, PreconditionError
from keycloak_migrator.domain.models import DistributionMode
from keycloak_migrator.observability.audit import AuditEvent
from keycloak_migrator.utils.fs import atomic_write_json

if TYPE_CHECKING:
    from keycloak_migrator.adapters.process import CommandExecutor
    from keycloak_migrator.config.settings import MigrationSettings
    from keycloak_migrator.domain.profile import ConfigProfile
    from keycloak_migrator.domain.versions import VersionSpec
    from keycloak_migrator.engine.protocols import Collaborators
    from keycloak_migrator.observability.audit import AuditSink
    from keycloak_migrator.resilience.controller import ResilienceController

_GIB: Final[int] = 1024**3
_JAVA_VERSION_RE: Final[re.Pattern[str]] = re.compile(r'version "(\d+)(?:\.(\d+))?')


class Severity(StrEnum):
    ERROR = "error"
    WARNING = "warning"


@dataclass(frozen=True, slots=True)
class PreflightCheck:
    name: str
    passed: bool
    detail: str
    severity: Severity = Severity.ERROR

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "passed": self.passed,
            "detail": self.detail,
            "severity": self.severity.value,
        }


def parse_java_major(output: str) -> int | None:
    """``java -version`` prints ``version "17.0.2"`` (or ``"1.8.0_372"`` for Java 8)."""

    match = _JAVA_VERSION_RE.search(output)
    if match is None:
        return None
    major = int(match.group(1))
    if major == 1 and match.group(2) is not None:
        return int(match.group(2))
    return major


class PreflightRunner:
    def __init__(
        self,
        profile: ConfigProfile,
        settings: MigrationSettings,
        collaborators: Collaborators,
        controller: ResilienceController,
        executor: CommandExecutor,
        audit: AuditSink,
        *,
        workspace: Path,
        which: Callable[[str], str | None] = shutil.which,
        disk_usage: Callable[[Path], Any] = shutil.disk_usage,
        logger: Any | None = None,
    ) -> None:
        self._profile = profile
        self._settings = settings
        self._collaborators = collaborators
        self._controller = controller
        self._executor = executor
        self._audit = audit
        self._workspace = workspace
        self._which = which
        self._disk_usage = disk_usage
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def marker_path(self) -> Path:
        return self._workspace / PREFLIGHT_MARKER

    async def run(self, path: Sequence[VersionSpec]) -> tuple[PreflightCheck, ...]:
        checks: list[PreflightCheck] = [self._disk_space()]
        checks.extend(self._tools())
        checks.append(await self._java(path))
        checks.append(self._distribution_mode())
        checks.extend(self._airgap_archives(path))
        checks.append(await self._database())
        result = tuple(checks)

        failed = [check for check in result if not check.passed]
        for check in failed:
            log = self._logger.error if check.severity is Severity.ERROR else self._logger.warning
            log("preflight_check_failed", check=check.name, detail=check.detail)
        blocking = [check for check in failed if check.severity is Severity.ERROR]
        self._audit.emit(
            AuditEvent.PREFLIGHT,
            status="failed" if blocking else "passed",
            failed_checks=[check.name for check in failed],
        )
        if blocking:
            listing = "; ".join(f"{check.name}: {check.detail}" for check in blocking)
            raise PreconditionError(f"preflight failed ({len(blocking)} checks): {listing}")

        atomic_write_json(
            self.marker_path,
            {
                "passed_at": datetime.now(tz=UTC).isoformat(timespec="seconds"),
                "profile": self._profile.label,
                "checks": [check.to_dict() for check in result],
            },
        )
        self._logger.info("preflight_passed", checks=len(result), warnings=len(failed))
        return result

    def _disk_space(self) -> PreflightCheck:
        backup_dir = self._settings.paths.backup_dir
        probe = backup_dir
        while not probe.exists() and probe != probe.parent:
            probe = probe.parent
        required = self._settings.preflight.min_free_disk_gb
        try:
            free_gb = self._disk_usage(probe).free / _GIB
        except OSError as exc:
            return PreflightCheck("disk_space", False, f"cannot stat {probe}: {exc}")
        return PreflightCheck(
            "disk_space",
            free_gb >= required,
            f"{free_gb:.1f} GiB free in {backup_dir} (need {required} GiB)",
        )

    def _tools(self) -> list[PreflightCheck]:
        checks = []
        for tool in self._collaborators.required_tools:
            found = self._which(tool)
            checks.append(
                PreflightCheck(
                    f"tool:{tool}",
                    found is not None,
                    found or f"{tool} not found on PATH",
                )
            )
        return checks

    async def _java(self, path: Sequence[VersionSpec]) -> PreflightCheck:
        needed = max((spec.java_major for spec in path), default=0)
        if (
            not self._settings.preflight.require_java
            or self._profile.distribution_mode is DistributionMode.CONTAINER
        ):
            return PreflightCheck("java", True, "not required for this distribution")
        result = await self._executor.run(
            CommandSpec(
                ("java", "-version"), timeout_seconds=self._settings.timeouts.command_seconds
            )
        )
        found = parse_java_major(result.stderr + result.stdout) if result.exit_code == 0 else None
        if found is None:
            return PreflightCheck("java", False, f"java {needed}+ required but not detected")
        return PreflightCheck(
            "java", found >= needed, f"java {found} detected, path needs java {needed}"
        )

    def _distribution_mode(self) -> PreflightCheck:
        mode = self._profile.distribution_mode
        conflict = self._profile.airgap and mode is DistributionMode.DOWNLOAD
        return PreflightCheck(
            "airgap_distribution",
            not conflict,
            "download mode cannot run airgapped" if conflict else "consistent",
        )

    def _airgap_archives(self, path: Sequence[VersionSpec]) -> list[PreflightCheck]:
        mode = self._profile.distribution_mode
        if mode is DistributionMode.CONTAINER:
            return []
        if not (self._profile.airgap or mode is DistributionMode.PREDOWNLOADED):
            return []
        archive_dir = self._settings.paths.archive_dir
        missing = [
            str(spec)
            for spec in path
            if not (archive_dir / archive_name(str(spec))).is_file()
        ]
        return [
            PreflightCheck(
                "archives",
                not missing,
                f"missing in {archive_dir}: {', '.join(missing)}" if missing else "all present",
            )
        ]

    async def _database(self) -> PreflightCheck:
        database = self._collaborators.database
        try:
            reachable = await self._controller.execute(
                database.test_connection, name="database.test_connection"
            )
        except (OperationError, CircuitOpenError) as exc:
            return PreflightCheck("database", False, str(exc))
        target = self._profile.database.display
        detail = f"{target} reachable" if reachable else f"{target} unreachable"
        return PreflightCheck("database", bool(reachable), detail)


__all__ = ["PreflightCheck", "PreflightRunner", "Severity", "parse_java_major"]
