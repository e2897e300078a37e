"""
keycloak-migrator — unit tests for database adapters

File: tests/unit/adapters/test_databases.py

Purpose
- Validate the client-tool command lines behind backup, restore, connectivity and load.

What this test file should cover
- Passwords travel through the tool's environment variable, never argv.
- Dumps land under a partial name and are renamed into place.
- Restores refuse missing files before running anything.
- Load samples parse the query output.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from keycloak_migrator.adapters.mysql import MysqlDatabaseAdapter
from keycloak_migrator.adapters.postgres import PostgresDatabaseAdapter
from keycloak_migrator.adapters.process import CommandSpec
from keycloak_migrator.domain.errors import PermanentOperationError, TransientOperationError
from keycloak_migrator.domain.models import DatabaseKind
from keycloak_migrator.domain.profile import DatabaseTarget
from tests.fakes import RecordingExecutor

PG = DatabaseTarget(
    kind=DatabaseKind.POSTGRESQL,
    host="db.internal",
    port=5432,
    name="keycloak",
    user="kc",
    password_env="KC_DB_PASSWORD",
)
MYSQL = DatabaseTarget(
    kind=DatabaseKind.MYSQL,
    host="mysql.internal",
    port=3306,
    name="keycloak",
    user="kc",
    password_env="KC_DB_PASSWORD",
)
ENVIRON = {"KC_DB_PASSWORD": "s3cret"}


def _write_dump(spec: CommandSpec) -> None:
    for index, part in enumerate(spec.argv):
        if part == "--file":
            Path(spec.argv[index + 1]).write_bytes(b"PGDMP")
        elif part.startswith("--result-file="):
            Path(part.split("=", 1)[1]).write_text("-- dump", encoding="utf-8")


def _executor() -> RecordingExecutor:
    executor = RecordingExecutor()
    executor.hooks.append(_write_dump)
    return executor


async def test_pg_backup_renames_the_partial_dump(tmp_path: Path) -> None:
    executor = _executor()
    adapter = PostgresDatabaseAdapter(PG, executor, environ=ENVIRON)
    dest = tmp_path / "backups" / "backup_before_17.0.1_20260101_000000.dump"

    written = await adapter.backup(dest)

    assert written == dest
    assert dest.read_bytes() == b"PGDMP"
    assert not dest.with_name(dest.name + ".partial").exists()
    (spec,) = executor.specs
    assert spec.argv[0] == "pg_dump"
    assert "--format=custom" in spec.argv
    assert spec.argv[-1] == "keycloak"
    assert spec.env == {"PGPASSWORD": "s3cret"}
    assert all("s3cret" not in part for part in spec.argv)


async def test_pg_restore_terminates_sessions_first(tmp_path: Path) -> None:
    dump = tmp_path / "backup.dump"
    dump.write_bytes(b"PGDMP")
    executor = _executor()

    await PostgresDatabaseAdapter(PG, executor, environ=ENVIRON).restore(dump)

    assert [argv[0] for argv in executor.argvs] == ["psql", "pg_restore"]
    assert "pg_terminate_backend" in executor.argvs[0][-1]
    assert executor.argvs[1][-4:] == ("--clean", "--if-exists", "--no-owner", str(dump))


async def test_pg_restore_of_missing_file_runs_nothing(tmp_path: Path) -> None:
    executor = _executor()

    with pytest.raises(PermanentOperationError, match="does not exist"):
        await PostgresDatabaseAdapter(PG, executor, environ=ENVIRON).restore(
            tmp_path / "missing.dump"
        )

    assert executor.specs == []


async def test_pg_connection_and_load() -> None:
    executor = RecordingExecutor()
    executor.respond("pg_isready", exit_code=2, stderr="no response")
    executor.respond("psql", stdout=" 42.50\n")
    adapter = PostgresDatabaseAdapter(PG, executor, environ=ENVIRON)

    assert await adapter.test_connection() is False
    assert await adapter.sample_load() == 42.5


async def test_pg_unparseable_load_sample() -> None:
    executor = RecordingExecutor()
    executor.respond("psql", stdout="ERROR")

    with pytest.raises(PermanentOperationError, match="unexpected load sample"):
        await PostgresDatabaseAdapter(PG, executor, environ=ENVIRON).sample_load()


async def test_pg_transient_dump_failure(tmp_path: Path) -> None:
    executor = RecordingExecutor()
    executor.respond("pg_dump", exit_code=1, stderr="could not connect to server")

    with pytest.raises(TransientOperationError):
        await PostgresDatabaseAdapter(PG, executor, environ=ENVIRON).backup(
            tmp_path / "out.dump"
        )


async def test_missing_password_variable(tmp_path: Path) -> None:
    with pytest.raises(PermanentOperationError, match="KC_DB_PASSWORD is not set"):
        await PostgresDatabaseAdapter(PG, _executor(), environ={}).backup(tmp_path / "x.dump")
    with pytest.raises(PermanentOperationError, match="KC_DB_PASSWORD is not set"):
        await MysqlDatabaseAdapter(MYSQL, _executor(), environ={}).test_connection()


async def test_mysql_backup_and_restore(tmp_path: Path) -> None:
    executor = _executor()
    adapter = MysqlDatabaseAdapter(MYSQL, executor, environ=ENVIRON)
    dest = tmp_path / "backup_before_22.0.5_20260101_000000.dump"

    await adapter.backup(dest)
    await adapter.restore(dest)

    dump, restore = executor.specs
    assert dump.argv[:4] == (
        "mysqldump",
        "--host=mysql.internal",
        "--port=3306",
        "--user=kc",
    )
    assert "--single-transaction" in dump.argv
    assert dump.env == {"MYSQL_PWD": "s3cret"}
    assert dest.read_text(encoding="utf-8") == "-- dump"
    assert restore.argv[-2:] == ("--execute", f"source {dest}")


async def test_mysql_ping_and_load() -> None:
    executor = RecordingExecutor()
    executor.respond("mysql", "--batch", stdout="17.25\n")
    adapter = MysqlDatabaseAdapter(MYSQL, executor, environ=ENVIRON)

    assert await adapter.test_connection() is True
    assert await adapter.sample_load() == 17.25
    assert executor.argvs[0][-1] == "ping"
