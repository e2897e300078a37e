"""
keycloak-migrator — step executor

File: src/keycloak_migrator/engine/steps.py

Purpose
- Run one checkpointed phase of a version transition.

What should be included in this file
- Skip-if-checkpointed, run, checkpoint-on-success for a single phase.
- Explicit "not applicable" phases that still advance the checkpoint.
- Audit ``migration_step`` events for started/ok/skipped/failed.
- Checkpoint status and duration metrics for the same transitions, when a metrics sink is set.

Functional requirements
- The checkpoint is written only after the phase action returned; an interrupted or failed
  action leaves the previous checkpoint in place.
- Every collaborator failure is wrapped in ``PhaseFailedError`` with the cause chained.
  Cancellation is never wrapped.
"""

from __future__ import annotations

import time
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any

import structlog

from keycloak_migrator.domain.errors import PhaseFailedError
from keycloak_migrator.observability.audit import AuditEvent
from keycloak_migrator.observability.logging import correlation_scope

if TYPE_CHECKING:
    from keycloak_migrator.domain.models import Phase
    from keycloak_migrator.engine.tracker import CheckpointTracker
    from keycloak_migrator.observability.audit import AuditSink
    from keycloak_migrator.observability.metrics import MigrationMetrics

PhaseAction = Callable[[], Awaitable[None]]


class StepExecutor:
    def __init__(
        self,
        tracker: CheckpointTracker,
        audit: AuditSink,
        *,
        clock: Callable[[], float] = time.monotonic,
        metrics: MigrationMetrics | None = None,
        logger: Any | None = None,
    ) -> None:
        self.tracker = tracker
        self._audit = audit
        self._metrics = metrics
        self._clock = clock
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def is_done(self, version: str, phase: Phase) -> bool:
        return self.tracker.is_done(version, phase)

    async def run_phase(self, version: str, phase: Phase, action: PhaseAction) -> bool:
        """Run ``action`` unless ``phase`` is checkpointed; returns whether it ran."""

        if self.tracker.is_done(version, phase):
            self._logger.info("phase_resumed_skip", version=version, phase=phase.value)
            if self._metrics is not None:
                self._metrics.phase_completed(version, phase)
            return False

        with correlation_scope(version=version, phase=phase.value):
            self._emit(version, phase, "started")
            if self._metrics is not None:
                self._metrics.phase_started(version, phase)
            started = self._clock()
            try:
                await action()
            except PhaseFailedError as exc:
                self._failed(version, phase, started, exc.cause)
                raise
            except Exception as exc:
                self._failed(version, phase, started, exc)
                raise PhaseFailedError(version, phase, exc) from exc

            self.tracker.advance(version, phase)
            duration = self._clock() - started
            self._logger.info(
                "phase_completed", version=version, phase=phase.value, duration_s=round(duration, 3)
            )
            self._emit(version, phase, "ok", duration)
            if self._metrics is not None:
                self._metrics.phase_completed(version, phase, duration)
        return True

    def skip_phase(self, version: str, phase: Phase, reason: str) -> None:
        """Record a phase that does not apply to this strategy as completed."""

        if self.tracker.is_done(version, phase):
            return
        self.tracker.advance(version, phase)
        self._logger.info("phase_not_applicable", version=version, phase=phase.value, reason=reason)
        self._emit(version, phase, "skipped", reason=reason)
        if self._metrics is not None:
            self._metrics.phase_completed(version, phase)

    def _failed(self, version: str, phase: Phase, started: float, cause: BaseException) -> None:
        duration = self._clock() - started
        self._logger.error(
            "phase_failed",
            version=version,
            phase=phase.value,
            error=str(cause),
            error_kind=type(cause).__name__,
            duration_s=round(duration, 3),
        )
        self._emit(version, phase, "failed", duration, error=str(cause))
        if self._metrics is not None:
            self._metrics.phase_failed(version, phase, type(cause).__name__)

    def _emit(
        self,
        version: str,
        phase: Phase,
        status: str,
        duration: float | None = None,
        **extra: Any,
    ) -> None:
        fields: dict[str, Any] = {"version": version, "phase": phase.value, "status": status}
        if duration is not None:
            fields["duration_s"] = round(duration, 3)
        fields.update(extra)
        self._audit.emit(AuditEvent.MIGRATION_STEP, **fields)


__all__ = ["PhaseAction", "StepExecutor"]
