"""
keycloak-migrator — PostgreSQL database adapter

File: src/keycloak_migrator/adapters/postgres.py

Purpose
- Backup, restore and connectivity for PostgreSQL through the client tools.

What should be included in this file
- ``pg_dump -Fc`` backups written to a temporary name and renamed into place.
- ``pg_restore --clean --if-exists`` restores after terminating other sessions.
- ``pg_isready`` connectivity and a ``pg_stat_activity`` load sample for the adaptive limiter.

Functional requirements
- The password is read from the profile's ``password_env`` variable or ``password_file`` and
  handed to the tools only through ``PGPASSWORD``; it never appears in argv.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path
from typing import TYPE_CHECKING, Any, Final

import structlog

from keycloak_migrator.adapters.credentials import resolve_password
from keycloak_migrator.adapters.process import CommandSpec, raise_for_result
from keycloak_migrator.domain.errors import PermanentOperationError

if TYPE_CHECKING:
    from keycloak_migrator.adapters.process import CommandExecutor, CommandResult
    from keycloak_migrator.domain.profile import DatabaseTarget

_LOAD_QUERY: Final[str] = (
    "SELECT round(100.0 * count(*) / current_setting('max_connections')::int, 2) "
    "FROM pg_stat_activity"
)
_TERMINATE_QUERY: Final[str] = (
    "SELECT pg_terminate_backend(pid) FROM pg_stat_activity "
    "WHERE datname = current_database() AND pid <> pg_backend_pid()"
)


class PostgresDatabaseAdapter:
    def __init__(
        self,
        target: DatabaseTarget,
        executor: CommandExecutor,
        *,
        timeout_seconds: float | None = None,
        environ: Mapping[str, str] | None = None,
        logger: Any | None = None,
    ) -> None:
        self._target = target
        self._executor = executor
        self._timeout = timeout_seconds
        self._environ = environ if environ is not None else os.environ
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    async def backup(self, dest: Path) -> Path:
        dest.parent.mkdir(parents=True, exist_ok=True)
        partial = dest.with_name(dest.name + ".partial")
        await self._run(
            "pg_dump",
            "pg_dump",
            *self._connection_args(),
            "--format=custom",
            "--file",
            str(partial),
            self._target.name,
        )
        os.replace(partial, dest)
        self._logger.info("postgres_backup_written", backup_path=str(dest))
        return dest

    async def restore(self, backup: Path) -> None:
        if not backup.is_file():
            raise PermanentOperationError(f"backup {backup} does not exist", operation="pg_restore")
        await self._run(
            "pg_terminate_sessions",
            "psql",
            *self._connection_args(),
            "--dbname",
            self._target.name,
            "--no-psqlrc",
            "--command",
            _TERMINATE_QUERY,
        )
        await self._run(
            "pg_restore",
            "pg_restore",
            *self._connection_args(),
            "--dbname",
            self._target.name,
            "--clean",
            "--if-exists",
            "--no-owner",
            str(backup),
        )
        self._logger.info("postgres_restore_completed", backup_path=str(backup))

    async def test_connection(self) -> bool:
        result = await self._executor.run(
            self._spec(
                "pg_isready", *self._connection_args(), "--dbname", self._target.name
            )
        )
        return result.ok

    async def sample_load(self) -> float:
        """Connections in use as a percentage of ``max_connections``."""

        result = await self._run(
            "pg_load_sample",
            "psql",
            *self._connection_args(),
            "--dbname",
            self._target.name,
            "--no-psqlrc",
            "--tuples-only",
            "--no-align",
            "--command",
            _LOAD_QUERY,
        )
        try:
            return float(result.stdout.strip())
        except ValueError as exc:
            raise PermanentOperationError(
                f"unexpected load sample {result.stdout.strip()!r}", operation="pg_load_sample"
            ) from exc

    def _connection_args(self) -> tuple[str, ...]:
        target = self._target
        return ("--host", target.host, "--port", str(target.port), "--username", target.user)

    def _spec(self, *argv: str) -> CommandSpec:
        return CommandSpec(argv, env=self._credentials(), timeout_seconds=self._timeout)

    def _credentials(self) -> dict[str, str]:
        password = resolve_password(self._target, self._environ, logger=self._logger)
        return {} if password is None else {"PGPASSWORD": password}

    async def _run(self, operation: str, *argv: str) -> CommandResult:
        return raise_for_result(await self._executor.run(self._spec(*argv)), operation=operation)


__all__ = ["PostgresDatabaseAdapter"]
