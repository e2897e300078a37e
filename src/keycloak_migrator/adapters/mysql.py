"""MySQL/MariaDB database adapter built on ``mysqldump``/``mysql``/``mysqladmin``."""

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
    "SELECT ROUND(100 * VARIABLE_VALUE / @@max_connections, 2) "
    "FROM performance_schema.global_status WHERE VARIABLE_NAME = 'Threads_connected'"
)


class MysqlDatabaseAdapter:
    """Logical dumps with ``--single-transaction``; the password travels in ``MYSQL_PWD``."""

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
            "mysqldump",
            "mysqldump",
            *self._connection_args(),
            "--single-transaction",
            "--routines",
            "--triggers",
            "--events",
            f"--result-file={partial}",
            self._target.name,
        )
        os.replace(partial, dest)
        self._logger.info("mysql_backup_written", backup_path=str(dest))
        return dest

    async def restore(self, backup: Path) -> None:
        if not backup.is_file():
            raise PermanentOperationError(
                f"backup {backup} does not exist", operation="mysql_restore"
            )
        await self._run(
            "mysql_restore",
            "mysql",
            *self._connection_args(),
            self._target.name,
            "--execute",
            f"source {backup}",
        )
        self._logger.info("mysql_restore_completed", backup_path=str(backup))

    async def test_connection(self) -> bool:
        result = await self._executor.run(
            self._spec("mysqladmin", *self._connection_args(), "ping")
        )
        return result.ok

    async def sample_load(self) -> float:
        result = await self._run(
            "mysql_load_sample",
            "mysql",
            *self._connection_args(),
            "--batch",
            "--skip-column-names",
            "--execute",
            _LOAD_QUERY,
        )
        try:
            return float(result.stdout.strip())
        except ValueError as exc:
            raise PermanentOperationError(
                f"unexpected load sample {result.stdout.strip()!r}", operation="mysql_load_sample"
            ) from exc

    def _connection_args(self) -> tuple[str, ...]:
        target = self._target
        return (f"--host={target.host}", f"--port={target.port}", f"--user={target.user}")

    def _spec(self, *argv: str) -> CommandSpec:
        env: dict[str, str] = {}
        password = resolve_password(self._target, self._environ, logger=self._logger)
        if password is not None:
            env["MYSQL_PWD"] = password
        return CommandSpec(argv, env=env, timeout_seconds=self._timeout)

    async def _run(self, operation: str, *argv: str) -> CommandResult:
        return raise_for_result(await self._executor.run(self._spec(*argv)), operation=operation)


__all__ = ["MysqlDatabaseAdapter"]
