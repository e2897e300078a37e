"""Restore the database from a backup and bring the previous version back up."""

from __future__ import annotations

import time
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import TYPE_CHECKING, Any, TypeVar

import structlog

from keycloak_migrator.domain.errors import (
    CircuitOpenError,
    IrrecoverableError,
    OperationError,
    OperationTimeoutError,
)
from keycloak_migrator.health.probes import HealthEndpoint
from keycloak_migrator.observability.audit import AuditEvent
from keycloak_migrator.utils.concurrency import run_with_timeout

if TYPE_CHECKING:
    from keycloak_migrator.config.settings import MigrationSettings
    from keycloak_migrator.domain.models import BackupReference
    from keycloak_migrator.domain.profile import ConfigProfile
    from keycloak_migrator.domain.versions import VersionTable
    from keycloak_migrator.engine.protocols import Collaborators
    from keycloak_migrator.health.gate import HealthGate
    from keycloak_migrator.observability.audit import AuditSink
    from keycloak_migrator.persistence.backups import BackupCatalog
    from keycloak_migrator.resilience.controller import ResilienceController
    from keycloak_migrator.utils.concurrency import CancellationToken

T = TypeVar("T")


class RollbackExecutor:
    """
    Sequence: safety backup (best effort), stop, restore, reinstall the version that ran
    before the backup's transition, start, health wait. Any failure after the safety
    backup is irrecoverable: the instance is in an unknown state and automation stops.
    """

    def __init__(
        self,
        profile: ConfigProfile,
        settings: MigrationSettings,
        collaborators: Collaborators,
        controller: ResilienceController,
        gate: HealthGate,
        catalog: BackupCatalog,
        versions: VersionTable,
        audit: AuditSink,
        *,
        cancel_token: CancellationToken | None = None,
        clock: Callable[[], float] = time.monotonic,
        logger: Any | None = None,
    ) -> None:
        self._profile = profile
        self._settings = settings
        self._collaborators = collaborators
        self._controller = controller
        self._gate = gate
        self._catalog = catalog
        self._versions = versions
        self._audit = audit
        self._cancel_token = cancel_token
        self._clock = clock
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    async def run(
        self, backup: BackupReference, *, reason: str, deployment: str | None = None
    ) -> str:
        """Roll back to the state captured by ``backup``; returns the restored version.

        ``deployment`` names the deployment serving traffic when a blue-green run
        already handed over from the profile's deployment.
        """

        previous = self._versions.predecessor(backup.version)
        if previous is None:
            raise IrrecoverableError(
                f"no version precedes {backup.version}; cannot determine what to reinstall"
            )
        restored = str(previous)
        started = self._clock()
        self._logger.warning(
            "rollback_started", version=backup.version, restore_to=restored, backup=backup.path
        )
        self._audit.emit(
            AuditEvent.ROLLBACK, version=backup.version, status="started", reason=reason
        )

        await self._safety_backup()
        try:
            await self._restore(backup, restored, previous.requires_build, deployment)
        except Exception as exc:
            self._logger.error(
                "rollback_failed",
                version=backup.version,
                error=str(exc),
                error_kind=type(exc).__name__,
            )
            self._audit.emit(
                AuditEvent.ROLLBACK,
                version=backup.version,
                status="irrecoverable",
                reason=reason,
                error=str(exc),
            )
            raise IrrecoverableError(
                f"rollback to {restored} from {backup.path} failed: {exc}; "
                "manual intervention required"
            ) from exc

        self._logger.info(
            "rollback_completed", version=restored, duration_s=round(self._clock() - started, 3)
        )
        self._audit.emit(
            AuditEvent.ROLLBACK,
            version=backup.version,
            status="rolled_back",
            reason=reason,
            restored_version=restored,
        )
        return restored

    async def _safety_backup(self) -> None:
        database = self._collaborators.database
        dest = self._catalog.safety_path()
        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            await self._controller.execute(
                lambda: database.backup(dest), name="database.safety_backup"
            )
        except (OperationError, CircuitOpenError, OSError) as exc:
            self._logger.warning("safety_backup_skipped", error=str(exc))
            return
        self._audit.emit(AuditEvent.BACKUP_CREATED, version="rollback", path=str(dest))

    async def _restore(
        self,
        backup: BackupReference,
        version: str,
        requires_build: bool,
        deployment: str | None,
    ) -> None:
        collaborators = self._collaborators
        target = self._profile.deployment
        if deployment:
            target = target.renamed(deployment)
        timeouts = self._settings.timeouts
        health = self._settings.health

        await self._timed(
            lambda: collaborators.deployment.stop(target), "stop", timeouts.command_seconds
        )
        await self._controller.execute(
            lambda: collaborators.database.restore(Path(backup.path)), name="database.restore"
        )
        dest = self._settings.paths.install_root / version
        artifact = await self._timed(
            lambda: collaborators.distribution.install(version, dest),
            "install",
            timeouts.build_seconds,
        )
        if requires_build:
            await self._timed(
                lambda: collaborators.distribution.build(version, artifact),
                "build",
                timeouts.build_seconds,
            )
        await self._timed(
            lambda: collaborators.deployment.start(target, artifact=artifact),
            "start",
            timeouts.command_seconds,
        )
        base_url = target.base_url or health.base_url
        healthy = await self._gate.wait_healthy(
            HealthEndpoint.from_settings(health, base_url),
            health.retries,
            health.interval_seconds,
            version=version,
        )
        if not healthy:
            raise OperationTimeoutError(
                f"{base_url} did not become healthy after rollback", operation="health_check"
            )

    async def _timed(self, call: Callable[[], Awaitable[T]], operation: str, timeout: float) -> T:
        try:
            return await run_with_timeout(call(), timeout, self._cancel_token)
        except TimeoutError as exc:
            if isinstance(exc, OperationTimeoutError):
                raise
            raise OperationTimeoutError(
                f"timed out after {timeout:g}s", operation=operation, timeout_seconds=timeout
            ) from exc


__all__ = ["RollbackExecutor"]
