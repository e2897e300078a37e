"""
keycloak-migrator — rollout strategies

File: src/keycloak_migrator/engine/strategies.py

Purpose
- Execute one version transition with the in-place, rolling-update or blue-green algorithm.

What should be included in this file
- ``StrategyExecutor`` base holding the shared phase vocabulary (backup, install, build,
  schema-migration wait, replica fan-out validation, smoke tests).
- ``InPlaceStrategy``, ``RollingUpdateStrategy``, ``BlueGreenStrategy``.
- ``select_strategy`` with fallback to in-place when the platform lacks a control surface.

Functional requirements
- Every phase goes through the ``StepExecutor`` so resume skips completed phases.
- Database calls go through the resilience controller; platform calls carry a timeout.
- Rolling update trusts no platform "rollout succeeded": every replica is checked.
  A rollout that misses its deadline is reverted with the platform's own undo.
- Blue-green touches the blue deployment only once green has passed its checks. Failure
  before the switch deletes green; failure after the switch re-points the router to blue.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, ClassVar, Final, TypeVar

import structlog

from keycloak_migrator.constants import BLUE_LABEL_KEY, BLUE_LABEL_VALUE, GREEN_LABEL_VALUE
from keycloak_migrator.domain.errors import (
    ConfigError,
    OperationError,
    OperationTimeoutError,
    PermanentOperationError,
    PhaseFailedError,
)
from keycloak_migrator.domain.models import (
    REPLICA_CAPABLE_MODES,
    BackupReference,
    Phase,
    StrategyName,
)
from keycloak_migrator.engine.decisions import DecisionKind, DecisionPrompt
from keycloak_migrator.engine.protocols import BlueGreenPlatform
from keycloak_migrator.health.probes import HealthEndpoint
from keycloak_migrator.observability.audit import AuditEvent
from keycloak_migrator.utils.concurrency import WorkerPool, run_with_timeout

if TYPE_CHECKING:
    from keycloak_migrator.config.settings import MigrationSettings
    from keycloak_migrator.domain.models import ReplicaHandle
    from keycloak_migrator.domain.profile import ConfigProfile, DeploymentTarget
    from keycloak_migrator.domain.versions import VersionSpec
    from keycloak_migrator.engine.decisions import Decision
    from keycloak_migrator.engine.migration_watch import SchemaMigrationWatcher
    from keycloak_migrator.engine.protocols import Collaborators, DeploymentAdapter
    from keycloak_migrator.engine.steps import StepExecutor
    from keycloak_migrator.health.gate import HealthGate
    from keycloak_migrator.observability.audit import AuditSink
    from keycloak_migrator.persistence.backups import BackupCatalog
    from keycloak_migrator.resilience.controller import ResilienceController
    from keycloak_migrator.utils.concurrency import CancellationToken

T = TypeVar("T")

SHARED_SCHEMA_PRECONDITION: Final[str] = (
    "blue and green run different Keycloak versions against one database; "
    "the old version must tolerate the migrated schema for as long as blue is retained"
)


@dataclass(frozen=True, slots=True)
class StrategySelection:
    requested: StrategyName
    effective: StrategyName
    reason: str | None = None

    @property
    def fell_back(self) -> bool:
        return self.requested is not self.effective


def select_strategy(
    requested: StrategyName,
    deployment: DeploymentTarget,
    *,
    adapter: DeploymentAdapter | None = None,
    allow_fallback: bool = True,
) -> StrategySelection:
    """Pick the executable strategy for ``deployment``.

    Rolling update needs replica enumeration; blue-green additionally needs a traffic
    router. Without them the request degrades to in-place unless fallback is disabled.
    """

    if requested is StrategyName.INPLACE:
        return StrategySelection(requested, requested)
    missing = _missing_surface(requested, deployment, adapter)
    if missing is None:
        return StrategySelection(requested, requested)
    if not allow_fallback:
        raise ConfigError(f"strategy {requested.value} is not available: {missing}")
    return StrategySelection(requested, StrategyName.INPLACE, missing)


def _missing_surface(
    requested: StrategyName,
    deployment: DeploymentTarget,
    adapter: DeploymentAdapter | None,
) -> str | None:
    if deployment.mode not in REPLICA_CAPABLE_MODES:
        return f"deployment mode {deployment.mode.value} cannot enumerate replicas"
    if adapter is not None and not adapter.supports_replicas:
        return f"{type(adapter).__name__} does not manage replicas"
    if requested is StrategyName.BLUE_GREEN:
        if not deployment.service:
            return "no traffic router (service) configured for the deployment"
        if adapter is not None and (
            not adapter.supports_traffic_routing or not isinstance(adapter, BlueGreenPlatform)
        ):
            return f"{type(adapter).__name__} cannot route traffic between deployments"
    return None


@dataclass(slots=True)
class StrategyContext:
    """Everything a strategy needs for one run; shared by all versions of the path."""

    profile: ConfigProfile
    settings: MigrationSettings
    collaborators: Collaborators
    controller: ResilienceController
    steps: StepExecutor
    gate: HealthGate
    watcher: SchemaMigrationWatcher
    catalog: BackupCatalog
    decision: Decision
    audit: AuditSink
    skip_tests: bool = False
    cancel_token: CancellationToken | None = None
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep


class StrategyExecutor(ABC):
    name: ClassVar[StrategyName]

    def __init__(self, context: StrategyContext, *, logger: Any | None = None) -> None:
        self.ctx = context
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @abstractmethod
    async def execute(self, spec: VersionSpec) -> None:
        """Drive ``spec`` from its first incomplete phase to ``tests_ok``."""

    @property
    def target(self) -> DeploymentTarget:
        return self.ctx.profile.deployment

    @property
    def base_url(self) -> str:
        return self.ctx.profile.deployment.base_url or self.ctx.settings.health.base_url

    @property
    def smoke_tests_enabled(self) -> bool:
        return self.ctx.profile.run_smoke_tests and not self.ctx.skip_tests

    async def _backup(self, version: str) -> None:
        database = self.ctx.collaborators.database

        async def action() -> None:
            dest = self.ctx.catalog.path_for(version)
            dest.parent.mkdir(parents=True, exist_ok=True)
            path = await self.ctx.controller.execute(
                lambda: database.backup(dest), name="database.backup"
            )
            size = path.stat().st_size if path.exists() else None
            self.ctx.steps.tracker.record_backup(
                BackupReference(
                    path=str(path),
                    version=version,
                    created_at=datetime.now(tz=UTC),
                    size_bytes=size,
                )
            )
            self.ctx.audit.emit(
                AuditEvent.BACKUP_CREATED, version=version, path=str(path), size_bytes=size
            )

        await self.ctx.steps.run_phase(version, Phase.BACKUP_DONE, action)

    async def _install(self, version: str) -> None:
        distribution = self.ctx.collaborators.distribution
        dest = self.ctx.settings.paths.install_root / version

        async def action() -> None:
            artifact = await self._platform(
                lambda: distribution.install(version, dest),
                operation="install",
                timeout=self.ctx.settings.timeouts.build_seconds,
            )
            self.ctx.steps.tracker.record_artifact(artifact)

        await self.ctx.steps.run_phase(version, Phase.DOWNLOADED, action)

    async def _build(self, spec: VersionSpec) -> None:
        version = str(spec)
        if not spec.requires_build:
            self.ctx.steps.skip_phase(version, Phase.BUILT, "version runs without a build step")
            return
        distribution = self.ctx.collaborators.distribution

        async def action() -> None:
            artifact = self._artifact()
            await self._platform(
                lambda: distribution.build(version, artifact),
                operation="build",
                timeout=self.ctx.settings.timeouts.build_seconds,
            )

        await self.ctx.steps.run_phase(version, Phase.BUILT, action)

    async def _await_migration(self, version: str, target: DeploymentTarget) -> None:
        await self.ctx.steps.run_phase(
            version, Phase.MIGRATED, lambda: self.ctx.watcher.wait(target)
        )

    async def _smoke_tests(self, version: str) -> None:
        if not self.smoke_tests_enabled:
            self.ctx.steps.skip_phase(version, Phase.TESTS_OK, "smoke tests disabled")
            return
        await self.ctx.steps.run_phase(
            version, Phase.TESTS_OK, lambda: self._check_smoke(version, self.base_url)
        )

    async def _check_smoke(self, version: str, base_url: str) -> None:
        result = await self.ctx.gate.run_smoke_tests(
            self.ctx.collaborators.smoke_tests, base_url, version
        )
        if result.passed:
            return
        accepted = await self.ctx.decision.confirm(
            DecisionPrompt(
                DecisionKind.ACCEPT_FAILED_SMOKE_TESTS,
                f"Smoke tests failed for {version} at {base_url}. Continue anyway?",
                {"detail": result.detail},
            )
        )
        if not accepted:
            raise PermanentOperationError(
                result.detail or "smoke tests failed", operation="smoke_tests"
            )
        self._logger.warning("smoke_tests_failure_accepted", version=version, detail=result.detail)

    async def _wait_healthy(self, version: str, base_url: str) -> None:
        health = self.ctx.settings.health
        endpoint = HealthEndpoint.from_settings(health, base_url)
        healthy = await self.ctx.gate.wait_healthy(
            endpoint, health.retries, health.interval_seconds, version=version
        )
        if not healthy:
            raise OperationTimeoutError(
                f"{base_url} not live and ready after {health.retries} attempts",
                operation="health_check",
                timeout_seconds=health.retries * health.interval_seconds,
            )

    async def _validate_replicas(self, version: str, target: DeploymentTarget) -> None:
        """Check every replica individually; one unhealthy replica fails the fan-out."""

        deployment = self.ctx.collaborators.deployment
        health = self.ctx.settings.health
        replicas = await self._platform(
            lambda: deployment.list_replicas(target), operation="list_replicas"
        )
        if not replicas:
            raise PermanentOperationError(
                f"{target.name} reports no replicas", operation="replica_validation"
            )

        async def check(replica: ReplicaHandle) -> str:
            healthy = await self.ctx.gate.poll(
                lambda: self._platform(
                    lambda: deployment.health_check(replica), operation="replica_health"
                ),
                health.retries,
                health.interval_seconds,
                target=replica.name,
                version=version,
            )
            if not healthy:
                raise PermanentOperationError(
                    f"replica {replica.name} failed its health check",
                    operation="replica_validation",
                )
            return replica.name

        parallelism = max(1, min(self.ctx.settings.strategy.replica_parallelism, len(replicas)))
        pool: WorkerPool[str] = WorkerPool(parallelism, self.ctx.cancel_token)
        validated = await pool.collect(check(replica) for replica in replicas)
        self._logger.info(
            "replicas_validated", version=version, target=target.name, replicas=validated
        )

    async def _platform(
        self,
        call: Callable[[], Awaitable[T]],
        *,
        operation: str,
        timeout: float | None = None,
    ) -> T:
        limit = timeout if timeout is not None else self.ctx.settings.timeouts.command_seconds
        try:
            return await run_with_timeout(call(), limit, self.ctx.cancel_token)
        except TimeoutError as exc:
            if isinstance(exc, OperationTimeoutError):
                raise
            raise OperationTimeoutError(
                f"timed out after {limit:g}s", operation=operation, timeout_seconds=limit
            ) from exc

    def _artifact(self) -> str:
        artifact = self.ctx.steps.tracker.artifact
        if artifact is None:
            raise PermanentOperationError(
                "no installed artifact recorded for this run", operation="artifact"
            )
        return artifact


class InPlaceStrategy(StrategyExecutor):
    """Full stop, swap, start on a single instance."""

    name = StrategyName.INPLACE

    async def execute(self, spec: VersionSpec) -> None:
        version = str(spec)
        steps = self.ctx.steps
        deployment = self.ctx.collaborators.deployment
        target = self.target

        await self._backup(version)
        await steps.run_phase(
            version,
            Phase.STOPPED,
            lambda: self._platform(lambda: deployment.stop(target), operation="stop"),
        )
        await self._install(version)
        await self._build(spec)

        async def start() -> None:
            artifact = self._artifact()
            await self._platform(
                lambda: deployment.start(target, artifact=artifact), operation="start"
            )

        await steps.run_phase(version, Phase.STARTED, start)
        await self._await_migration(version, target)
        await steps.run_phase(
            version, Phase.HEALTH_OK, lambda: self._wait_healthy(version, self.base_url)
        )
        await self._smoke_tests(version)


class RollingUpdateStrategy(StrategyExecutor):
    """Platform-native rollout of the replica template, then per-replica validation."""

    name = StrategyName.ROLLING_UPDATE

    async def execute(self, spec: VersionSpec) -> None:
        version = str(spec)
        steps = self.ctx.steps

        await self._backup(version)
        steps.skip_phase(version, Phase.STOPPED, "replicas keep serving during a rolling update")
        await self._install(version)
        steps.skip_phase(version, Phase.BUILT, "replica images are built before rollout")
        await steps.run_phase(version, Phase.STARTED, lambda: self._rollout(version))
        await self._await_migration(version, self.target)
        await steps.run_phase(
            version, Phase.HEALTH_OK, lambda: self._validate_replicas(version, self.target)
        )
        await self._smoke_tests(version)

    async def _rollout(self, version: str) -> None:
        deployment = self.ctx.collaborators.deployment
        timeouts = self.ctx.settings.timeouts
        target = self.target
        artifact = self._artifact()

        await self._platform(
            lambda: deployment.update_replica_image(target, artifact),
            operation="update_replica_image",
        )
        try:
            await self._platform(
                lambda: deployment.rollout_status(target, timeouts.rollout_seconds),
                operation="rollout_status",
                timeout=timeouts.rollout_seconds + timeouts.command_seconds,
            )
        except TimeoutError:
            self._logger.warning(
                "rollout_timeout_reverting",
                version=version,
                target=target.name,
                timeout_s=timeouts.rollout_seconds,
            )
            await self._platform(lambda: deployment.undo_rollout(target), operation="undo_rollout")
            raise


class BlueGreenStrategy(StrategyExecutor):
    """Parallel green deployment, validated through a direct channel, then an atomic switch."""

    name = StrategyName.BLUE_GREEN

    @property
    def platform(self) -> BlueGreenPlatform:
        deployment = self.ctx.collaborators.deployment
        if not isinstance(deployment, BlueGreenPlatform):
            raise ConfigError(f"{type(deployment).__name__} cannot run blue-green deployments")
        return deployment

    @property
    def blue(self) -> DeploymentTarget:
        """The deployment serving traffic now; earlier versions may have handed it over."""

        live = self.ctx.steps.tracker.live_deployment
        return self.target.renamed(live) if live else self.target

    def green_for(self, version: str) -> DeploymentTarget:
        suffix = self.ctx.settings.strategy.green_suffix
        return self.target.renamed(f"{self.target.name}{suffix}-{version.replace('.', '-')}")

    async def execute(self, spec: VersionSpec) -> None:
        version = str(spec)
        steps = self.ctx.steps
        platform = self.platform
        green = self.green_for(version)

        await self._backup(version)
        steps.skip_phase(version, Phase.STOPPED, "blue keeps serving until the switch")
        await self._install(version)
        steps.skip_phase(version, Phase.BUILT, "green images are built before provisioning")

        async def provision() -> None:
            artifact = self._artifact()
            blue = self.blue
            await self._platform(
                lambda: platform.create_parallel(blue, green, artifact),
                operation="create_green",
            )
            rollout = self.ctx.settings.timeouts.rollout_seconds
            await self._platform(
                lambda: platform.wait_ready(green, rollout),
                operation="wait_green_ready",
                timeout=rollout + self.ctx.settings.timeouts.command_seconds,
            )

        try:
            await steps.run_phase(version, Phase.STARTED, provision)
            await self._await_migration(version, green)
            await steps.run_phase(
                version, Phase.HEALTH_OK, lambda: self._validate_replicas(version, green)
            )
        except PhaseFailedError:
            await self._discard_green(version, green)
            raise

        await steps.run_phase(version, Phase.TESTS_OK, lambda: self._cutover(version, green))

    async def _cutover(self, version: str, green: DeploymentTarget) -> None:
        platform = self.platform
        blue = self.blue
        if blue.name == green.name:
            # Resumed after the handover; only the promotion is left.
            await self._platform(
                lambda: platform.promote(green, self.target), operation="promote_green"
            )
            return

        try:
            if self.smoke_tests_enabled:
                port = self.ctx.settings.strategy.direct_port
                async with platform.open_direct_channel(green, port) as direct_url:
                    await self._check_smoke(version, direct_url)
            else:
                self._logger.info("green_smoke_tests_skipped", version=version)
            await self._platform(
                lambda: platform.label_deployment(blue, BLUE_LABEL_KEY, BLUE_LABEL_VALUE),
                operation="label_blue",
            )
            await self._platform(
                lambda: platform.label_deployment(green, BLUE_LABEL_KEY, GREEN_LABEL_VALUE),
                operation="label_green",
            )
        except Exception:
            await self._discard_green(version, green)
            raise

        await self._platform(
            lambda: platform.route_traffic(blue, green), operation="route_to_green"
        )
        self._logger.info("traffic_switched", version=version, router=blue.service, to=green.name)

        blue_deleted = False
        try:
            await self.ctx.sleep(self.ctx.settings.strategy.drain_seconds)
            blue_deleted = await self._retire_blue(version, blue)
            if blue_deleted:
                self.ctx.steps.tracker.record_live_deployment(green.name)
            await self._platform(
                lambda: platform.promote(green, self.target), operation="promote_green"
            )
            if not blue_deleted:
                self.ctx.steps.tracker.record_live_deployment(green.name)
        except Exception as exc:
            if blue_deleted:
                self._logger.error(
                    "green_promotion_failed_blue_gone", version=version, error=str(exc)
                )
                raise
            self._logger.error("cutover_failed_rerouting_to_blue", version=version, error=str(exc))
            await self._platform(
                lambda: platform.route_traffic(blue, blue), operation="route_to_blue"
            )
            raise

    async def _retire_blue(self, version: str, blue: DeploymentTarget) -> bool:
        delete = await self.ctx.decision.confirm(
            DecisionPrompt(
                DecisionKind.DELETE_BLUE,
                f"Traffic now served by {version}. Delete the previous deployment {blue.name}?",
                {"blue": blue.name},
            )
        )
        if delete:
            await self._platform(
                lambda: self.platform.delete_deployment(blue), operation="delete_blue"
            )
            return True
        self._logger.warning(
            "blue_retained",
            version=version,
            blue=blue.name,
            precondition=SHARED_SCHEMA_PRECONDITION,
        )
        self.ctx.audit.emit(
            AuditEvent.BLUE_RETAINED,
            version=version,
            blue=blue.name,
            status="declined",
            precondition=SHARED_SCHEMA_PRECONDITION,
        )
        return False

    async def _discard_green(self, version: str, green: DeploymentTarget) -> None:
        try:
            await self._platform(
                lambda: self.platform.delete_deployment(green), operation="delete_green"
            )
        except OperationError as exc:
            self._logger.warning("green_cleanup_failed", version=version, error=str(exc))
        self.ctx.steps.tracker.rewind(version, Phase.BUILT)


STRATEGIES: Final[dict[StrategyName, type[StrategyExecutor]]] = {
    StrategyName.INPLACE: InPlaceStrategy,
    StrategyName.ROLLING_UPDATE: RollingUpdateStrategy,
    StrategyName.BLUE_GREEN: BlueGreenStrategy,
}


def build_strategy(
    name: StrategyName, context: StrategyContext, *, logger: Any | None = None
) -> StrategyExecutor:
    return STRATEGIES[name](context, logger=logger)


__all__ = [
    "SHARED_SCHEMA_PRECONDITION",
    "STRATEGIES",
    "BlueGreenStrategy",
    "InPlaceStrategy",
    "RollingUpdateStrategy",
    "StrategyContext",
    "StrategyExecutor",
    "StrategySelection",
    "build_strategy",
    "select_strategy",
]
