"""Shared surface for deployment adapters that manage exactly one instance."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any

import structlog

from keycloak_migrator.adapters.process import CommandSpec, raise_for_result
from keycloak_migrator.domain.errors import PermanentOperationError
from keycloak_migrator.domain.models import ReplicaHandle

if TYPE_CHECKING:
    from keycloak_migrator.adapters.process import CommandExecutor, CommandResult
    from keycloak_migrator.domain.profile import DeploymentTarget


class SingleInstanceDeployment(ABC):
    """
    In-place only: no replica template and no traffic router.

    ``list_replicas`` reports the single instance so per-replica validation still has
    something to check if it is ever invoked.
    """

    supports_replicas = False
    supports_traffic_routing = False

    def __init__(
        self,
        executor: CommandExecutor,
        *,
        timeout_seconds: float | None = None,
        logger: Any | None = None,
    ) -> None:
        self._executor = executor
        self._timeout = timeout_seconds
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._targets: dict[str, DeploymentTarget] = {}

    @abstractmethod
    async def start(self, target: DeploymentTarget, *, artifact: str | None = None) -> None: ...

    @abstractmethod
    async def stop(self, target: DeploymentTarget) -> None: ...

    @abstractmethod
    async def status(self, target: DeploymentTarget) -> bool: ...

    @abstractmethod
    async def logs(self, target: DeploymentTarget) -> str: ...

    async def update_replica_image(self, target: DeploymentTarget, artifact: str) -> None:
        raise self._unsupported("update_replica_image")

    async def rollout_status(self, target: DeploymentTarget, timeout: float) -> None:
        raise self._unsupported("rollout_status")

    async def undo_rollout(self, target: DeploymentTarget) -> None:
        raise self._unsupported("undo_rollout")

    async def list_replicas(self, target: DeploymentTarget) -> list[ReplicaHandle]:
        self._targets[target.name] = target
        return [ReplicaHandle(name=target.name, address=target.base_url)]

    async def health_check(self, replica: ReplicaHandle) -> bool:
        target = self._targets.get(replica.name)
        if target is None:
            return False
        return await self.status(target)

    def _unsupported(self, operation: str) -> PermanentOperationError:
        return PermanentOperationError(
            f"{type(self).__name__} manages a single instance and has no {operation}",
            operation=operation,
        )

    async def _run(self, operation: str, *argv: str, **spec: Any) -> CommandResult:
        spec.setdefault("timeout_seconds", self._timeout)
        result = await self._executor.run(CommandSpec(argv, **spec))
        return raise_for_result(result, operation=operation)


__all__ = ["SingleInstanceDeployment"]
