"""
keycloak-migrator — collaborator factory

File: src/keycloak_migrator/adapters/factory.py

Purpose
- Turn a resolved profile plus runtime settings into the ``Collaborators`` bundle.

Functional requirements
- Built-ins are chosen by database type, deployment mode and distribution mode.
- ``adapters.factory = "package.module:callable"`` replaces the built-ins wholesale; the
  callable receives ``(profile, settings)`` and must return ``Collaborators``.
- ``required_tools`` lists the executables the chosen built-ins shell out to.
"""

from __future__ import annotations

import importlib
from collections.abc import Callable
from typing import TYPE_CHECKING, Any, Final

from keycloak_migrator.adapters.distribution import ArchiveDistribution, ContainerImageDistribution
from keycloak_migrator.adapters.docker import ComposeDeploymentAdapter, DockerDeploymentAdapter
from keycloak_migrator.adapters.kubernetes import KubectlDeploymentAdapter
from keycloak_migrator.adapters.mysql import MysqlDatabaseAdapter
from keycloak_migrator.adapters.postgres import PostgresDatabaseAdapter
from keycloak_migrator.adapters.process import LocalSubprocessExecutor
from keycloak_migrator.adapters.systemd import SystemdDeploymentAdapter
from keycloak_migrator.domain.errors import ConfigError
from keycloak_migrator.domain.models import DatabaseKind, DeploymentMode, DistributionMode
from keycloak_migrator.engine.protocols import Collaborators
from keycloak_migrator.health.probes import HttpHealthProbe
from keycloak_migrator.health.smoke import CommandSmokeTestRunner, HttpSmokeTestRunner

if TYPE_CHECKING:
    from keycloak_migrator.adapters.process import CommandExecutor
    from keycloak_migrator.config.settings import MigrationSettings
    from keycloak_migrator.domain.profile import ConfigProfile
    from keycloak_migrator.health.smoke import SmokeTestRunner

CollaboratorFactory = Callable[["ConfigProfile", "MigrationSettings"], Collaborators]

DATABASE_TOOLS: Final[dict[DatabaseKind, tuple[str, ...]]] = {
    DatabaseKind.POSTGRESQL: ("pg_dump", "pg_restore", "pg_isready", "psql"),
    DatabaseKind.MYSQL: ("mysqldump", "mysql", "mysqladmin"),
    DatabaseKind.MARIADB: ("mysqldump", "mysql", "mysqladmin"),
}
DEPLOYMENT_TOOLS: Final[dict[DeploymentMode, tuple[str, ...]]] = {
    DeploymentMode.STANDALONE: ("systemctl", "journalctl"),
    DeploymentMode.DOCKER: ("docker",),
    DeploymentMode.DOCKER_COMPOSE: ("docker",),
    DeploymentMode.KUBERNETES: ("kubectl",),
    DeploymentMode.DECKHOUSE: ("kubectl",),
}


def build_collaborators(
    profile: ConfigProfile,
    settings: MigrationSettings,
    *,
    executor: CommandExecutor | None = None,
    logger: Any | None = None,
) -> Collaborators:
    if settings.adapter_factory:
        return _custom(settings.adapter_factory, profile, settings)

    timeouts = settings.timeouts
    if executor is None:
        executor = LocalSubprocessExecutor(default_timeout_seconds=timeouts.command_seconds)

    target = profile.database
    if target.kind is DatabaseKind.POSTGRESQL:
        database: PostgresDatabaseAdapter | MysqlDatabaseAdapter = PostgresDatabaseAdapter(
            target,
            executor,
            timeout_seconds=settings.resilience.operation_timeout_seconds,
            logger=logger,
        )
    else:
        database = MysqlDatabaseAdapter(
            target,
            executor,
            timeout_seconds=settings.resilience.operation_timeout_seconds,
            logger=logger,
        )

    mode = profile.deployment.mode
    deployment: Any
    if mode in {DeploymentMode.KUBERNETES, DeploymentMode.DECKHOUSE}:
        deployment = KubectlDeploymentAdapter(
            executor,
            namespace=profile.deployment.namespace,
            timeout_seconds=timeouts.command_seconds,
            logger=logger,
        )
    elif mode is DeploymentMode.DOCKER:
        deployment = DockerDeploymentAdapter(
            executor, timeout_seconds=timeouts.command_seconds, logger=logger
        )
    elif mode is DeploymentMode.DOCKER_COMPOSE:
        deployment = ComposeDeploymentAdapter(
            executor, timeout_seconds=timeouts.command_seconds, logger=logger
        )
    else:
        deployment = SystemdDeploymentAdapter(
            executor, timeout_seconds=timeouts.command_seconds, logger=logger
        )

    distribution: ContainerImageDistribution | ArchiveDistribution
    if profile.distribution_mode is DistributionMode.CONTAINER:
        distribution = ContainerImageDistribution(
            profile.container_registry, profile.container_image, logger=logger
        )
    else:
        distribution = ArchiveDistribution(
            settings.paths.archive_dir,
            executor,
            allow_download=(
                profile.distribution_mode is DistributionMode.DOWNLOAD and not profile.airgap
            ),
            download_timeout_seconds=timeouts.build_seconds,
            build_timeout_seconds=timeouts.build_seconds,
            logger=logger,
        )

    health = settings.health
    smoke_tests: SmokeTestRunner
    if health.smoke_test_command:
        smoke_tests = CommandSmokeTestRunner(
            health.smoke_test_command,
            executor,
            timeout_seconds=health.smoke_test_timeout_seconds,
            logger=logger,
        )
    else:
        smoke_tests = HttpSmokeTestRunner(
            timeout_seconds=health.request_timeout_seconds, logger=logger
        )

    return Collaborators(
        database=database,
        deployment=deployment,
        distribution=distribution,
        probe=HttpHealthProbe(health.request_timeout_seconds, logger=logger),
        smoke_tests=smoke_tests,
        required_tools=DATABASE_TOOLS[target.kind] + DEPLOYMENT_TOOLS[mode],
        load_sampler=database,
        executor=executor,
    )


def load_factory(dotted_path: str) -> CollaboratorFactory:
    """Resolve ``package.module:callable``."""

    module_name, sep, attribute = dotted_path.partition(":")
    if not sep or not module_name or not attribute:
        raise ConfigError(
            f"adapters.factory must look like 'package.module:callable', got {dotted_path!r}"
        )
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise ConfigError(f"cannot import adapter factory module {module_name!r}: {exc}") from exc
    factory = getattr(module, attribute, None)
    if not callable(factory):
        raise ConfigError(f"{dotted_path} is not callable")
    return factory


def _custom(dotted_path: str, profile: ConfigProfile, settings: MigrationSettings) -> Collaborators:
    collaborators = load_factory(dotted_path)(profile, settings)
    if not isinstance(collaborators, Collaborators):
        raise ConfigError(
            f"{dotted_path} returned {type(collaborators).__name__}, expected Collaborators"
        )
    return collaborators


__all__ = [
    "DATABASE_TOOLS",
    "DEPLOYMENT_TOOLS",
    "CollaboratorFactory",
    "build_collaborators",
    "load_factory",
]
