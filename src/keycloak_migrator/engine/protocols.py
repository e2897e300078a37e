"""
keycloak-migrator — collaborator contracts

File: src/keycloak_migrator/engine/protocols.py

Purpose
- The seams between the migration engine and the platform-specific world.

What should be included in this file
- Database, deployment, blue-green platform and distribution protocols.
- The ``Collaborators`` bundle handed to the orchestrator.

Functional requirements
- Collaborators raise the typed ``OperationError`` family so the resilience controller can
  tell transient failures from permanent ones.
- Deployment adapters advertise their control surface through ``supports_replicas`` and
  ``supports_traffic_routing``; strategies never probe by trial and error.
"""

from __future__ import annotations

from collections.abc import Sequence
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from keycloak_migrator.adapters.process import CommandExecutor
    from keycloak_migrator.domain.models import ReplicaHandle
    from keycloak_migrator.domain.profile import DeploymentTarget
    from keycloak_migrator.health.probes import HealthProbe
    from keycloak_migrator.health.smoke import SmokeTestRunner
    from keycloak_migrator.resilience.rate_limiter import LoadSampler


@runtime_checkable
class DatabaseAdapter(Protocol):
    """Backup/restore of the shared database. Called only through the resilience controller."""

    async def backup(self, dest: Path) -> Path: ...

    async def restore(self, backup: Path) -> None: ...

    async def test_connection(self) -> bool: ...


@runtime_checkable
class DeploymentAdapter(Protocol):
    supports_replicas: bool
    supports_traffic_routing: bool

    async def start(self, target: DeploymentTarget, *, artifact: str | None = None) -> None: ...

    async def stop(self, target: DeploymentTarget) -> None: ...

    async def status(self, target: DeploymentTarget) -> bool: ...

    async def logs(self, target: DeploymentTarget) -> str: ...

    async def update_replica_image(self, target: DeploymentTarget, artifact: str) -> None: ...

    async def rollout_status(self, target: DeploymentTarget, timeout: float) -> None: ...

    async def undo_rollout(self, target: DeploymentTarget) -> None: ...

    async def list_replicas(self, target: DeploymentTarget) -> list[ReplicaHandle]: ...

    async def health_check(self, replica: ReplicaHandle) -> bool: ...


@runtime_checkable
class BlueGreenPlatform(Protocol):
    """Extra surface needed to run two deployments side by side behind one router."""

    async def label_deployment(self, target: DeploymentTarget, key: str, value: str) -> None: ...

    async def create_parallel(
        self, source: DeploymentTarget, green: DeploymentTarget, artifact: str
    ) -> None: ...

    async def wait_ready(self, target: DeploymentTarget, timeout: float) -> None: ...

    def open_direct_channel(
        self, target: DeploymentTarget, port: int
    ) -> AbstractAsyncContextManager[str]: ...

    async def route_traffic(self, router: DeploymentTarget, to: DeploymentTarget) -> None: ...

    async def delete_deployment(self, target: DeploymentTarget) -> None: ...

    async def promote(self, green: DeploymentTarget, canonical: DeploymentTarget) -> None: ...


@runtime_checkable
class DistributionHandler(Protocol):
    async def install(self, version: str, dest: Path) -> str:
        """Make ``version`` available and return the artifact reference (image or directory)."""
        ...

    async def build(self, version: str, artifact: str) -> None: ...


@dataclass(frozen=True, slots=True)
class Collaborators:
    database: DatabaseAdapter
    deployment: DeploymentAdapter
    distribution: DistributionHandler
    probe: HealthProbe
    smoke_tests: SmokeTestRunner
    required_tools: Sequence[str] = ()
    load_sampler: LoadSampler | None = None
    executor: CommandExecutor | None = None


__all__ = [
    "BlueGreenPlatform",
    "Collaborators",
    "DatabaseAdapter",
    "DeploymentAdapter",
    "DistributionHandler",
]
