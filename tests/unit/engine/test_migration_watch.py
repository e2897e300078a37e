"""Unit tests for schema migration log watching."""

from __future__ import annotations

import pytest

from keycloak_migrator.domain.errors import (
    OperationTimeoutError,
    PermanentOperationError,
    TransientOperationError,
)
from keycloak_migrator.engine.migration_watch import (
    SchemaMigrationWatcher,
    classify_migration_log,
)
from tests.fakes import (
    FAILED_MIGRATION_LOG,
    MIGRATED_LOG,
    FakeClock,
    RecordingDeployment,
    make_profile,
)


@pytest.mark.parametrize(
    ("text", "verdict"),
    [
        (MIGRATED_LOG, True),
        (FAILED_MIGRATION_LOG, False),
        ("INFO Migration successful\n", True),
        ("INFO Updating the configuration and installing your custom providers\n", None),
        ("", None),
        (MIGRATED_LOG + FAILED_MIGRATION_LOG, False),
    ],
)
def test_classify_migration_log(text: str, verdict: bool | None) -> None:
    assert classify_migration_log(text) is verdict


async def test_wait_returns_on_success_marker() -> None:
    clock = FakeClock()
    deployment = RecordingDeployment(log_text="INFO starting\n")

    async def progress(seconds: float) -> None:
        await clock.sleep(seconds)
        deployment.log_text = MIGRATED_LOG

    watcher = SchemaMigrationWatcher(
        deployment, timeout_seconds=30.0, poll_seconds=5.0, clock=clock, sleep=progress
    )
    await watcher.wait(make_profile().deployment)

    assert clock.sleeps == [5.0]
    assert len(deployment.calls_to("logs")) == 2


async def test_error_marker_fails_permanently_with_the_line() -> None:
    clock = FakeClock()
    watcher = SchemaMigrationWatcher(
        RecordingDeployment(log_text=FAILED_MIGRATION_LOG), clock=clock, sleep=clock.sleep
    )

    with pytest.raises(PermanentOperationError, match="checksum mismatch") as excinfo:
        await watcher.wait(make_profile().deployment)

    assert excinfo.value.operation == "await_migration"
    assert clock.sleeps == []


async def test_no_outcome_times_out() -> None:
    clock = FakeClock()
    watcher = SchemaMigrationWatcher(
        RecordingDeployment(log_text=""),
        timeout_seconds=12.0,
        poll_seconds=5.0,
        clock=clock,
        sleep=clock.sleep,
    )

    with pytest.raises(OperationTimeoutError, match="after 12s") as excinfo:
        await watcher.wait(make_profile().deployment)

    assert excinfo.value.timeout_seconds == 12.0
    assert clock.sleeps == [5.0, 5.0, 2.0]


async def test_transient_log_errors_keep_polling() -> None:
    clock = FakeClock()
    deployment = RecordingDeployment()
    deployment.fail("logs", TransientOperationError("pod not ready"), times=2)
    watcher = SchemaMigrationWatcher(
        deployment, poll_seconds=1.0, clock=clock, sleep=clock.sleep
    )

    await watcher.wait(make_profile().deployment)

    assert clock.sleeps == [1.0, 1.0]


def test_rejects_non_positive_bounds() -> None:
    with pytest.raises(ValueError, match="timeout_seconds"):
        SchemaMigrationWatcher(RecordingDeployment(), timeout_seconds=0)
    with pytest.raises(ValueError, match="poll_seconds"):
        SchemaMigrationWatcher(RecordingDeployment(), poll_seconds=0)
