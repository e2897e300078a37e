"""Resolved, pre-validated description of one migration target."""

from __future__ import annotations

from dataclasses import dataclass, replace

from keycloak_migrator.domain.models import (
    DatabaseKind,
    DeploymentMode,
    DistributionMode,
    StrategyName,
)
from keycloak_migrator.utils.hashing import sha256_json


@dataclass(frozen=True, slots=True)
class DatabaseTarget:
    """Connection details; the password is only ever referenced by env var name or file path."""

    kind: DatabaseKind
    host: str
    port: int
    name: str
    user: str
    password_env: str | None = None
    password_file: str | None = None

    def __post_init__(self) -> None:
        if not 0 < self.port < 65536:
            raise ValueError("database port must be in 1..65535")
        if self.password_env is not None and self.password_file is not None:
            raise ValueError("password_env and password_file are mutually exclusive")

    @property
    def display(self) -> str:
        return f"{self.kind.value}://{self.user}@{self.host}:{self.port}/{self.name}"


@dataclass(frozen=True, slots=True)
class DeploymentTarget:
    """Where the service runs. ``name`` is the deployment, container or unit name."""

    mode: DeploymentMode
    name: str
    namespace: str | None = None
    service: str | None = None
    container: str | None = None
    compose_file: str | None = None
    home_dir: str | None = None
    replicas: int = 1
    base_url: str | None = None

    def __post_init__(self) -> None:
        if not self.name.strip():
            raise ValueError("deployment name must not be empty")
        if self.replicas < 0:
            raise ValueError("replicas must be >= 0")

    def renamed(self, name: str) -> DeploymentTarget:
        return replace(self, name=name)


@dataclass(frozen=True, slots=True)
class TenantProfile:
    """Per-tenant overrides applied on top of the shared profile."""

    name: str
    database_host: str | None = None
    database_name: str | None = None
    namespace: str | None = None
    deployment: str | None = None
    base_url: str | None = None
    current_version: str | None = None


@dataclass(frozen=True, slots=True)
class ConfigProfile:
    name: str
    current_version: str
    target_version: str
    strategy: StrategyName
    database: DatabaseTarget
    deployment: DeploymentTarget
    distribution_mode: DistributionMode = DistributionMode.CONTAINER
    container_image: str = "keycloak/keycloak"
    container_registry: str = "quay.io"
    run_smoke_tests: bool = True
    auto_rollback: bool = False
    airgap: bool = False
    tenant: str | None = None
    tenants: tuple[TenantProfile, ...] = ()

    @property
    def label(self) -> str:
        return self.name if self.tenant is None else f"{self.name}/{self.tenant}"

    def run_key(self) -> str:
        """Stable identity of "this migration"; a checkpoint only resumes a matching key."""

        return sha256_json(
            {
                "profile": self.name,
                "tenant": self.tenant,
                "from": self.current_version,
                "to": self.target_version,
                "strategy": self.strategy.value,
                "deployment": [
                    self.deployment.mode.value,
                    self.deployment.namespace,
                    self.deployment.name,
                ],
                "database": [self.database.host, self.database.port, self.database.name],
            }
        )

    def for_tenant(self, tenant: TenantProfile) -> ConfigProfile:
        database = self.database
        if tenant.database_host is not None:
            database = replace(database, host=tenant.database_host)
        if tenant.database_name is not None:
            database = replace(database, name=tenant.database_name)
        deployment = self.deployment
        if tenant.namespace is not None:
            deployment = replace(deployment, namespace=tenant.namespace)
        if tenant.deployment is not None:
            deployment = replace(deployment, name=tenant.deployment)
        if tenant.base_url is not None:
            deployment = replace(deployment, base_url=tenant.base_url)
        return replace(
            self,
            current_version=tenant.current_version or self.current_version,
            database=database,
            deployment=deployment,
            tenant=tenant.name,
            tenants=(),
        )

    def with_flags(
        self,
        *,
        auto_rollback: bool | None = None,
        run_smoke_tests: bool | None = None,
        airgap: bool | None = None,
    ) -> ConfigProfile:
        return replace(
            self,
            auto_rollback=self.auto_rollback if auto_rollback is None else auto_rollback,
            run_smoke_tests=self.run_smoke_tests if run_smoke_tests is None else run_smoke_tests,
            airgap=self.airgap if airgap is None else airgap,
        )


__all__ = ["ConfigProfile", "DatabaseTarget", "DeploymentTarget", "TenantProfile"]
