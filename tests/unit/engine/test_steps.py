"""
keycloak-migrator — unit tests for checkpointed phase execution

File: tests/unit/engine/test_steps.py

Purpose
- Validate skip/run/checkpoint semantics of ``StepExecutor`` and the tracker's resume view.

What this test file should cover
- A phase recorded in the checkpoint is never re-run.
- The checkpoint advances only after the action returned.
- Failures are wrapped in ``PhaseFailedError`` with the cause chained and audited.
"""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from keycloak_migrator.domain.errors import PhaseFailedError, TransientOperationError
from keycloak_migrator.domain.models import Checkpoint, CheckpointRecord, Phase
from keycloak_migrator.engine.steps import StepExecutor
from keycloak_migrator.engine.tracker import CheckpointTracker
from keycloak_migrator.observability.audit import AuditEvent, AuditTrail
from keycloak_migrator.persistence.checkpoint_store import CheckpointStore
from tests.fakes import FakeClock

PATH = ("17.0.1", "22.0.5", "25.0.6", "26.0.7")


def _tracker(tmp_path: Path, checkpoint: Checkpoint | None = None) -> CheckpointTracker:
    record = CheckpointRecord(
        run_key="k" * 64,
        profile="test",
        from_version="16.1.1",
        to_version="26.0.7",
        strategy="inplace",
        checkpoint=checkpoint,
    )
    return CheckpointTracker(CheckpointStore(tmp_path), record, PATH)


def _statuses(audit: AuditTrail) -> list[tuple[str, str, str]]:
    return [
        (record.fields["version"], record.fields["phase"], record.fields["status"])
        for record in audit.history(AuditEvent.MIGRATION_STEP)
    ]


def test_tracker_treats_earlier_versions_as_done(tmp_path: Path) -> None:
    tracker = _tracker(tmp_path, Checkpoint("22.0.5", Phase.STOPPED))

    assert tracker.is_done("17.0.1", Phase.TESTS_OK)
    assert tracker.version_complete("17.0.1")
    assert tracker.is_done("22.0.5", Phase.BACKUP_DONE)
    assert tracker.is_done("22.0.5", Phase.STOPPED)
    assert not tracker.is_done("22.0.5", Phase.DOWNLOADED)
    assert not tracker.is_done("25.0.6", Phase.BACKUP_DONE)


def test_tracker_ignores_checkpoint_outside_the_path(tmp_path: Path) -> None:
    tracker = _tracker(tmp_path, Checkpoint("16.1.1", Phase.TESTS_OK))

    assert not tracker.is_done("17.0.1", Phase.BACKUP_DONE)


def test_tracker_rewind_only_moves_back(tmp_path: Path) -> None:
    tracker = _tracker(tmp_path, Checkpoint("22.0.5", Phase.HEALTH_OK))

    tracker.rewind("22.0.5", Phase.BUILT)
    assert tracker.checkpoint == Checkpoint("22.0.5", Phase.BUILT)
    assert tracker.record.last_successful_step == "22.0.5:built"

    tracker.rewind("22.0.5", Phase.TESTS_OK)
    tracker.rewind("17.0.1", Phase.BACKUP_DONE)
    assert tracker.checkpoint == Checkpoint("22.0.5", Phase.BUILT)

    stored = CheckpointStore(tmp_path).load()
    assert stored is not None
    assert stored.checkpoint == Checkpoint("22.0.5", Phase.BUILT)


async def test_run_phase_checkpoints_after_the_action(tmp_path: Path) -> None:
    tracker = _tracker(tmp_path)
    audit = AuditTrail()
    executor = StepExecutor(tracker, audit, clock=FakeClock())
    observed: list[bool] = []

    async def action() -> None:
        observed.append(tracker.is_done("17.0.1", Phase.BACKUP_DONE))

    ran = await executor.run_phase("17.0.1", Phase.BACKUP_DONE, action)

    assert ran
    assert observed == [False]
    assert tracker.is_done("17.0.1", Phase.BACKUP_DONE)
    assert _statuses(audit) == [
        ("17.0.1", "backup_done", "started"),
        ("17.0.1", "backup_done", "ok"),
    ]


async def test_checkpointed_phase_is_skipped(tmp_path: Path) -> None:
    executor = StepExecutor(_tracker(tmp_path, Checkpoint("17.0.1", Phase.MIGRATED)), AuditTrail())
    calls: list[str] = []

    async def action() -> None:
        calls.append("ran")

    assert not await executor.run_phase("17.0.1", Phase.STARTED, action)
    assert await executor.run_phase("17.0.1", Phase.HEALTH_OK, action)
    assert calls == ["ran"]


async def test_failure_is_wrapped_and_checkpoint_unchanged(tmp_path: Path) -> None:
    tracker = _tracker(tmp_path, Checkpoint("17.0.1", Phase.BUILT))
    audit = AuditTrail()
    executor = StepExecutor(tracker, audit)
    cause = TransientOperationError("connection refused", operation="start")

    async def action() -> None:
        raise cause

    with pytest.raises(PhaseFailedError) as excinfo:
        await executor.run_phase("17.0.1", Phase.STARTED, action)

    assert excinfo.value.version == "17.0.1"
    assert excinfo.value.phase is Phase.STARTED
    assert excinfo.value.cause is cause
    assert excinfo.value.__cause__ is cause
    assert tracker.checkpoint == Checkpoint("17.0.1", Phase.BUILT)
    failed = audit.history(AuditEvent.MIGRATION_STEP)[-1]
    assert failed.level == "ERROR"
    assert failed.fields["error"] == "start: connection refused"


async def test_nested_phase_failure_is_not_rewrapped(tmp_path: Path) -> None:
    executor = StepExecutor(_tracker(tmp_path), AuditTrail())
    inner = PhaseFailedError("17.0.1", Phase.MIGRATED, RuntimeError("boom"))

    async def action() -> None:
        raise inner

    with pytest.raises(PhaseFailedError) as excinfo:
        await executor.run_phase("17.0.1", Phase.STARTED, action)

    assert excinfo.value is inner


async def test_cancellation_is_not_wrapped(tmp_path: Path) -> None:
    tracker = _tracker(tmp_path)
    executor = StepExecutor(tracker, AuditTrail())

    async def action() -> None:
        raise asyncio.CancelledError

    with pytest.raises(asyncio.CancelledError):
        await executor.run_phase("17.0.1", Phase.BACKUP_DONE, action)

    assert tracker.checkpoint is None


def test_skip_phase_advances_once(tmp_path: Path) -> None:
    tracker = _tracker(tmp_path, Checkpoint("17.0.1", Phase.DOWNLOADED))
    audit = AuditTrail()
    executor = StepExecutor(tracker, audit)

    executor.skip_phase("17.0.1", Phase.BUILT, "no build step")
    executor.skip_phase("17.0.1", Phase.BUILT, "no build step")

    assert tracker.checkpoint == Checkpoint("17.0.1", Phase.BUILT)
    (record,) = audit.history(AuditEvent.MIGRATION_STEP)
    assert record.fields["status"] == "skipped"
    assert record.level == "WARNING"
    assert record.fields["reason"] == "no build step"
