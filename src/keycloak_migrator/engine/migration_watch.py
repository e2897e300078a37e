"""Waits for the database schema migration that a new Keycloak version runs on first start."""

from __future__ import annotations

import asyncio
import re
import time
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any, Final

import structlog

from keycloak_migrator.domain.errors import (
    OperationTimeoutError,
    PermanentOperationError,
    TransientOperationError,
)

if TYPE_CHECKING:
    from keycloak_migrator.domain.profile import DeploymentTarget
    from keycloak_migrator.engine.protocols import DeploymentAdapter

SUCCESS_MARKERS: Final[tuple[re.Pattern[str], ...]] = (
    re.compile(r"Liquibase command 'update' was executed successfully"),
    re.compile(r"Migration successful"),
    re.compile(r"Keycloak .* started"),
)
ERROR_MARKERS: Final[tuple[re.Pattern[str], ...]] = (
    re.compile(r"Migration failed"),
    re.compile(r"LiquibaseException"),
    re.compile(r"ERROR .*migration", re.IGNORECASE),
)


def classify_migration_log(text: str) -> bool | None:
    """``False`` on an error marker, ``True`` on a success marker, ``None`` when undecided."""

    for marker in ERROR_MARKERS:
        if marker.search(text):
            return False
    for marker in SUCCESS_MARKERS:
        if marker.search(text):
            return True
    return None


class SchemaMigrationWatcher:
    def __init__(
        self,
        deployment: DeploymentAdapter,
        *,
        timeout_seconds: float = 900.0,
        poll_seconds: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        logger: Any | None = None,
    ) -> None:
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        if poll_seconds <= 0:
            raise ValueError("poll_seconds must be > 0")
        self._deployment = deployment
        self._timeout = timeout_seconds
        self._poll = poll_seconds
        self._clock = clock
        self._sleep = sleep
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    async def wait(self, target: DeploymentTarget) -> None:
        deadline = self._clock() + self._timeout
        polls = 0
        while True:
            polls += 1
            try:
                text = await self._deployment.logs(target)
            except (TransientOperationError, OperationTimeoutError) as exc:
                self._logger.debug("migration_logs_unavailable", target=target.name, error=str(exc))
                text = ""
            verdict = classify_migration_log(text)
            if verdict is False:
                raise PermanentOperationError(
                    f"schema migration failed on {target.name}: {_matching_line(text)}",
                    operation="await_migration",
                )
            if verdict is True:
                self._logger.info("schema_migration_completed", target=target.name, polls=polls)
                return

            remaining = deadline - self._clock()
            if remaining <= 0:
                raise OperationTimeoutError(
                    f"no migration outcome in logs of {target.name} after {self._timeout:g}s",
                    operation="await_migration",
                    timeout_seconds=self._timeout,
                )
            await self._sleep(min(self._poll, remaining))


def _matching_line(text: str) -> str:
    for line in text.splitlines():
        if any(marker.search(line) for marker in ERROR_MARKERS):
            return line.strip()[:500]
    return "error marker found"


__all__ = ["ERROR_MARKERS", "SUCCESS_MARKERS", "SchemaMigrationWatcher", "classify_migration_log"]
