"""
keycloak-migrator — migration orchestrator

File: src/keycloak_migrator/engine/orchestrator.py

Purpose
- Drive one profile from its current to its target version and own every
  abort/resume/rollback decision.

What should be included in this file
- ``MigrationOrchestrator`` with ``plan``, ``migrate``, ``rollback`` and ``status``.
- ``MigrationPlan`` and ``StatusReport`` value types consumed by the CLI renderer.

Functional requirements
- The version path is computed once per invocation from the version table.
- A dry run performs no mutation, takes no lock and writes no file.
- A run holds the per-run advisory lock for its whole duration.
- A stored checkpoint resumes only a run with the same run key; phases already recorded
  are never repeated.
- Phase failures become a resumable result, an automatic rollback, or (when the rollback
  itself fails) an irrecoverable result that marks the checkpoint unsafe.
- Full success clears the checkpoint and applies backup rotation.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog

from keycloak_migrator.adapters.process import LocalSubprocessExecutor
from keycloak_migrator.constants import CLI_NAME
from keycloak_migrator.domain.errors import IrrecoverableError, PhaseFailedError, PreconditionError
from keycloak_migrator.domain.ids import generate_run_id
from keycloak_migrator.domain.models import (
    BackupReference,
    CheckpointRecord,
    MigrationResult,
    MigrationRun,
    RunStatus,
)
from keycloak_migrator.domain.versions import KEYCLOAK_VERSIONS
from keycloak_migrator.engine.decisions import DecisionKind, DecisionPrompt, NonInteractiveDecision
from keycloak_migrator.engine.migration_watch import SchemaMigrationWatcher
from keycloak_migrator.engine.preflight import PreflightRunner
from keycloak_migrator.engine.rollback import RollbackExecutor
from keycloak_migrator.engine.steps import StepExecutor
from keycloak_migrator.engine.strategies import StrategyContext, build_strategy, select_strategy
from keycloak_migrator.engine.tracker import CheckpointTracker
from keycloak_migrator.health.gate import HealthGate
from keycloak_migrator.observability.audit import AuditEvent
from keycloak_migrator.observability.logging import correlation_scope
from keycloak_migrator.observability.metrics import MigrationMetrics
from keycloak_migrator.persistence.backups import BackupCatalog, RotationPolicy
from keycloak_migrator.persistence.checkpoint_store import CheckpointStore
from keycloak_migrator.persistence.lock import RunLock
from keycloak_migrator.resilience.circuit_breaker import CircuitState
from keycloak_migrator.resilience.controller import build_resilience_controller

if TYPE_CHECKING:
    from keycloak_migrator.config.settings import MigrationSettings
    from keycloak_migrator.domain.profile import ConfigProfile
    from keycloak_migrator.domain.versions import VersionSpec, VersionTable
    from keycloak_migrator.engine.decisions import Decision
    from keycloak_migrator.engine.protocols import Collaborators
    from keycloak_migrator.engine.strategies import StrategySelection
    from keycloak_migrator.observability.audit import AuditSink
    from keycloak_migrator.resilience.controller import ResilienceController
    from keycloak_migrator.utils.concurrency import CancellationToken


@dataclass(frozen=True, slots=True)
class MigrationPlan:
    profile: str
    from_version: str
    to_version: str
    path: tuple[VersionSpec, ...]
    selection: StrategySelection
    required_java: int
    run_key: str

    @property
    def versions(self) -> tuple[str, ...]:
        return tuple(str(spec) for spec in self.path)

    def to_dict(self) -> dict[str, Any]:
        return {
            "profile": self.profile,
            "from_version": self.from_version,
            "to_version": self.to_version,
            "path": [
                {
                    "version": str(spec),
                    "java_major": spec.java_major,
                    "requires_build": spec.requires_build,
                }
                for spec in self.path
            ],
            "requested_strategy": self.selection.requested.value,
            "strategy": self.selection.effective.value,
            "fallback_reason": self.selection.reason,
            "required_java": self.required_java,
            "run_key": self.run_key,
        }


@dataclass(frozen=True, slots=True)
class StatusReport:
    profile: str
    checkpoint_path: str
    record: CheckpointRecord | None
    matches_profile: bool | None
    resume_command: str
    rollback_command: str | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "profile": self.profile,
            "checkpoint_path": self.checkpoint_path,
            "checkpoint": self.record.to_dict() if self.record is not None else None,
            "matches_profile": self.matches_profile,
            "resume_command": self.resume_command,
            "rollback_command": self.rollback_command,
        }


class MigrationOrchestrator:
    """Owns one profile's migration; a tenant-scoped profile gets its own workspace."""

    def __init__(
        self,
        profile: ConfigProfile,
        settings: MigrationSettings,
        collaborators: Collaborators,
        *,
        audit: AuditSink,
        versions: VersionTable = KEYCLOAK_VERSIONS,
        decision: Decision | None = None,
        workspace: Path | None = None,
        profile_ref: str | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        cancel_token: CancellationToken | None = None,
        run_id: str | None = None,
        metrics: MigrationMetrics | None = None,
        logger: Any | None = None,
    ) -> None:
        self._profile = profile
        self._settings = settings
        self._collaborators = collaborators
        self._audit = audit
        self._versions = versions
        self._decision = decision if decision is not None else NonInteractiveDecision()
        self._profile_ref = profile_ref or profile.name
        self._clock = clock
        self._sleep = sleep
        self._cancel_token = cancel_token
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self.run_id = run_id or generate_run_id()

        paths = settings.paths
        if workspace is not None:
            self.workspace = Path(workspace)
        elif profile.tenant is not None:
            self.workspace = paths.tenant_workspace(profile.tenant)
        else:
            self.workspace = paths.workspace_root
        backup_dir = paths.backup_dir
        if profile.tenant is not None:
            backup_dir = backup_dir / profile.tenant
        self.store = CheckpointStore(self.workspace, logger=logger)
        self.catalog = BackupCatalog(backup_dir, logger=logger)
        self._lock = RunLock(self.workspace, clock=clock, sleep=sleep, logger=logger)
        if metrics is None:
            metrics_file = settings.observability.metrics_file
            if self.workspace != paths.workspace_root:
                metrics_file = self.workspace / metrics_file.name
            metrics = MigrationMetrics.from_settings(
                profile, settings.observability, path=metrics_file, logger=logger
            )
        self.metrics = metrics

    def plan(self) -> MigrationPlan:
        """Resolve the version path and effective strategy; raises ``ConfigError`` family."""

        profile = self._profile
        path = self._versions.compute_path(profile.current_version, profile.target_version)
        selection = select_strategy(
            profile.strategy,
            profile.deployment,
            adapter=self._collaborators.deployment,
            allow_fallback=self._settings.strategy.allow_fallback,
        )
        return MigrationPlan(
            profile=profile.label,
            from_version=profile.current_version,
            to_version=profile.target_version,
            path=path,
            selection=selection,
            required_java=self._versions.required_java(path),
            run_key=profile.run_key(),
        )

    async def migrate(
        self,
        *,
        dry_run: bool = False,
        skip_tests: bool = False,
        skip_preflight: bool = False,
    ) -> MigrationResult:
        started = self._clock()
        plan = self.plan()
        if dry_run:
            return self._dry_run(plan, started)

        with correlation_scope(run_id=self.run_id, tenant=self._profile.tenant):
            async with self._lock.acquire(
                plan.run_key, timeout=self._settings.timeouts.lock_seconds
            ):
                return await self._migrate_locked(
                    plan, started, skip_tests=skip_tests, skip_preflight=skip_preflight
                )

    async def rollback(
        self, *, force: bool = False, backup_path: Path | str | None = None
    ) -> MigrationResult:
        started = self._clock()
        run_key = self._profile.run_key()
        with correlation_scope(run_id=self.run_id, tenant=self._profile.tenant):
            async with self._lock.acquire(run_key, timeout=self._settings.timeouts.lock_seconds):
                record = self.store.load()
                backup = self._resolve_backup(record, backup_path)
                if not force:
                    confirmed = await self._decision.confirm(
                        DecisionPrompt(
                            DecisionKind.CONFIRM_ROLLBACK,
                            f"Restore {self._profile.database.display} from {backup.path} "
                            f"and reinstall the version preceding {backup.version}?",
                            {"backup": backup.path, "version": backup.version},
                        )
                    )
                    if not confirmed:
                        raise PreconditionError(
                            "rollback was not confirmed; pass --force to run it unattended"
                        )

                executor = self._rollback_executor(self._controller())
                try:
                    restored = await executor.run(
                        backup,
                        reason="operator request",
                        deployment=record.live_deployment if record is not None else None,
                    )
                except IrrecoverableError:
                    self.store.mark_unsafe(record or self._new_record(run_key))
                    self._end(RunStatus.IRRECOVERABLE, started)
                    raise
                self.store.clear()
                duration = self._end(RunStatus.ROLLED_BACK, started)
                return MigrationResult(
                    status=RunStatus.ROLLED_BACK,
                    duration_seconds=duration,
                    notes=(f"restored {restored} from {backup.path}",),
                )

    def status(self) -> StatusReport:
        record = self.store.load()
        backup = record.last_backup if record is not None else None
        if backup is None:
            latest = self.catalog.latest()
            backup_path = str(latest.path) if latest is not None else None
        else:
            backup_path = backup.path
        return StatusReport(
            profile=self._profile.label,
            checkpoint_path=str(self.store.path),
            record=record,
            matches_profile=(
                record.run_key == self._profile.run_key() if record is not None else None
            ),
            resume_command=self._command("migrate"),
            rollback_command=self._rollback_command(backup_path),
        )

    def _dry_run(self, plan: MigrationPlan, started: float) -> MigrationResult:
        notes = [
            f"{spec}: java {spec.java_major}" + (", build" if spec.requires_build else "")
            for spec in plan.path
        ]
        if plan.selection.fell_back:
            notes.append(
                f"strategy {plan.selection.requested} falls back to "
                f"{plan.selection.effective}: {plan.selection.reason}"
            )
        record = self.store.load()
        if record is not None and record.run_key == plan.run_key and record.checkpoint:
            notes.append(
                f"would resume after {record.checkpoint.version}:{record.checkpoint.phase}"
            )
        self._logger.info("migration_dry_run", path=list(plan.versions))
        return MigrationResult(
            status=RunStatus.DRY_RUN,
            path=plan.versions,
            strategy=plan.selection.effective.value,
            duration_seconds=self._clock() - started,
            notes=tuple(notes),
        )

    async def _migrate_locked(
        self,
        plan: MigrationPlan,
        started: float,
        *,
        skip_tests: bool,
        skip_preflight: bool,
    ) -> MigrationResult:
        record = self.store.load_for(plan.run_key)
        resumed = record is not None
        if record is not None and not record.resume_safe:
            raise PreconditionError(
                f"checkpoint {self.store.path} was left by a failed rollback; "
                "verify the instance by hand, then remove the checkpoint"
            )

        controller = self._controller()
        if not skip_preflight:
            await self._preflight(controller).run(plan.path)
        if record is None:
            record = self._new_record(plan.run_key, strategy=plan.selection.effective.value)
            self.store.save(record)

        run = MigrationRun(
            run_id=self.run_id,
            run_key=plan.run_key,
            path=plan.path,
            strategy=plan.selection.effective,
            started_at=started,
            resumed=resumed,
        )
        self._logger.info(
            "migration_started",
            profile=plan.profile,
            path=list(plan.versions),
            strategy=run.strategy.value,
            resumed=resumed,
        )
        self._audit.emit(
            AuditEvent.MIGRATION_START,
            profile=plan.profile,
            from_version=plan.from_version,
            to_version=plan.to_version,
            strategy=run.strategy.value,
            resumed=resumed,
        )
        if plan.selection.fell_back:
            self._logger.warning(
                "strategy_fallback",
                requested=plan.selection.requested.value,
                effective=plan.selection.effective.value,
                reason=plan.selection.reason,
            )
            self._audit.emit(
                AuditEvent.STRATEGY_FALLBACK,
                requested=plan.selection.requested.value,
                effective=plan.selection.effective.value,
                reason=plan.selection.reason,
            )

        tracker = CheckpointTracker(self.store, record, plan.versions)
        self.metrics.plan(plan.versions)
        gate = self._gate()
        context = StrategyContext(
            profile=self._profile,
            settings=self._settings,
            collaborators=self._collaborators,
            controller=controller,
            steps=StepExecutor(
                tracker, self._audit, clock=self._clock, metrics=self.metrics, logger=self._logger
            ),
            gate=gate,
            watcher=SchemaMigrationWatcher(
                self._collaborators.deployment,
                timeout_seconds=self._settings.timeouts.migrate_seconds,
                poll_seconds=self._settings.timeouts.migrate_poll_seconds,
                clock=self._clock,
                sleep=self._sleep,
                logger=self._logger,
            ),
            catalog=self.catalog,
            decision=self._decision,
            audit=self._audit,
            skip_tests=skip_tests,
            cancel_token=self._cancel_token,
            sleep=self._sleep,
        )
        strategy = build_strategy(run.strategy, context, logger=self._logger)

        completed: list[str] = []
        try:
            for index, spec in enumerate(plan.path):
                run.current_index = index
                version = str(spec)
                if tracker.version_complete(version):
                    self._logger.info("version_already_complete", version=version)
                    self.metrics.version_completed(version)
                    completed.append(version)
                    continue
                await strategy.execute(spec)
                completed.append(version)
                self._logger.info(
                    "version_completed", version=version, index=index + 1, total=len(plan.path)
                )
        except PhaseFailedError as exc:
            return await self._handle_failure(exc, plan, tracker, controller, completed, started)

        notes: list[str] = []
        live = tracker.live_deployment
        if live and live != self._profile.deployment.name:
            self._logger.warning(
                "live_deployment_renamed", profile=self._profile.deployment.name, live=live
            )
            notes.append(
                f"traffic is served by {live}; set keycloak.deployment to {live} in the profile"
            )
        self.store.clear()
        self._rotate_backups(tracker.last_backup)
        duration = self._end(RunStatus.SUCCESS, started)
        return MigrationResult(
            status=RunStatus.SUCCESS,
            path=plan.versions,
            completed=tuple(completed),
            strategy=run.strategy.value,
            duration_seconds=duration,
            notes=tuple(notes),
        )

    async def _handle_failure(
        self,
        exc: PhaseFailedError,
        plan: MigrationPlan,
        tracker: CheckpointTracker,
        controller: ResilienceController,
        completed: list[str],
        started: float,
    ) -> MigrationResult:
        checkpoint = tracker.checkpoint
        reached = f"{checkpoint.version}:{checkpoint.phase}" if checkpoint is not None else None
        backup = tracker.last_backup
        self._logger.error(
            "migration_step_failed",
            version=exc.version,
            phase=str(exc.phase),
            phase_reached=reached,
            error=str(exc.cause),
            error_kind=type(exc.cause).__name__,
        )
        result_fields: dict[str, Any] = {
            "path": plan.versions,
            "completed": tuple(completed),
            "strategy": plan.selection.effective.value,
            "failed_version": exc.version,
            "phase_reached": reached,
        }

        if backup is not None and await self._wants_rollback(exc, backup):
            try:
                restored = await self._rollback_executor(controller).run(
                    backup,
                    reason=f"{exc.version} failed during {exc.phase}",
                    deployment=tracker.live_deployment,
                )
            except IrrecoverableError as rollback_exc:
                tracker.mark_unsafe()
                duration = self._end(RunStatus.IRRECOVERABLE, started)
                return MigrationResult(
                    status=RunStatus.IRRECOVERABLE,
                    error=str(rollback_exc),
                    duration_seconds=duration,
                    notes=(f"checkpoint {self.store.path} is marked unsafe to resume",),
                    **result_fields,
                )
            self.store.clear()
            duration = self._end(RunStatus.ROLLED_BACK, started)
            return MigrationResult(
                status=RunStatus.ROLLED_BACK,
                error=str(exc),
                duration_seconds=duration,
                notes=(f"restored {restored} from {backup.path}",),
                **result_fields,
            )

        duration = self._end(RunStatus.FAILED, started)
        return MigrationResult(
            status=RunStatus.FAILED,
            error=str(exc),
            duration_seconds=duration,
            resume_command=self._command("migrate"),
            rollback_command=self._rollback_command(backup.path if backup else None),
            **result_fields,
        )

    async def _wants_rollback(self, exc: PhaseFailedError, backup: BackupReference) -> bool:
        if self._profile.auto_rollback:
            return True
        kind = "timed out" if exc.is_timeout else "failed"
        return await self._decision.confirm(
            DecisionPrompt(
                DecisionKind.ROLLBACK_AFTER_FAILURE,
                f"{exc.version} {kind} during {exc.phase}. Roll back from {backup.path}?",
                {"error": str(exc.cause), "backup": backup.path},
            )
        )

    def _resolve_backup(
        self, record: CheckpointRecord | None, backup_path: Path | str | None
    ) -> BackupReference:
        if backup_path is not None:
            path = Path(backup_path)
            if not path.is_file():
                raise PreconditionError(f"backup {path} does not exist")
            version = BackupCatalog.version_of(path)
            if version is None:
                raise PreconditionError(
                    f"cannot tell which transition {path.name} precedes; expected a "
                    "backup_before_<version>_<timestamp>.dump name"
                )
            stat = path.stat()
            return BackupReference(
                path=str(path),
                version=version,
                created_at=datetime.fromtimestamp(stat.st_mtime, tz=UTC),
                size_bytes=stat.st_size,
            )
        if record is not None and record.last_backup is not None:
            return record.last_backup
        latest = self.catalog.latest()
        if latest is None:
            raise PreconditionError(f"no backup found in {self.catalog.backup_dir}")
        return BackupReference(
            path=str(latest.path),
            version=latest.version,
            created_at=datetime.fromtimestamp(latest.modified_at, tz=UTC),
            size_bytes=latest.size_bytes,
        )

    def _rotate_backups(self, keep: BackupReference | None) -> None:
        policy = RotationPolicy.from_settings(self._settings.backups)
        protect = (Path(keep.path),) if keep is not None else ()
        try:
            self.catalog.rotate(policy, protect=protect)
        except OSError as exc:
            self._logger.warning("backup_rotation_failed", error=str(exc))

    def _controller(self) -> ResilienceController:
        controller = build_resilience_controller(
            self._settings.resilience,
            sampler=self._collaborators.load_sampler,
            clock=self._clock,
            sleep=self._sleep,
            cancel_token=self._cancel_token,
            on_state_change=self.metrics.circuit_state,
            logger=self._logger,
        )
        self.metrics.circuit_state(controller.breaker.name, CircuitState.CLOSED)
        return controller

    def _gate(self) -> HealthGate:
        return HealthGate(
            self._collaborators.probe,
            audit=self._audit,
            clock=self._clock,
            sleep=self._sleep,
            logger=self._logger,
        )

    def _preflight(self, controller: ResilienceController) -> PreflightRunner:
        executor = self._collaborators.executor or LocalSubprocessExecutor(
            default_timeout_seconds=self._settings.timeouts.command_seconds
        )
        return PreflightRunner(
            self._profile,
            self._settings,
            self._collaborators,
            controller,
            executor,
            self._audit,
            workspace=self.workspace,
            logger=self._logger,
        )

    def _rollback_executor(self, controller: ResilienceController) -> RollbackExecutor:
        return RollbackExecutor(
            self._profile,
            self._settings,
            self._collaborators,
            controller,
            self._gate(),
            self.catalog,
            self._versions,
            self._audit,
            cancel_token=self._cancel_token,
            clock=self._clock,
            logger=self._logger,
        )

    def _new_record(self, run_key: str, *, strategy: str | None = None) -> CheckpointRecord:
        profile = self._profile
        return CheckpointRecord(
            run_key=run_key,
            profile=profile.label,
            from_version=profile.current_version,
            to_version=profile.target_version,
            strategy=strategy or profile.strategy.value,
        )

    def _end(self, status: RunStatus, started: float) -> float:
        duration = self._clock() - started
        log = self._logger.info if status is RunStatus.SUCCESS else self._logger.warning
        log("migration_finished", status=status.value, duration_s=round(duration, 3))
        self._audit.emit(
            AuditEvent.MIGRATION_END,
            profile=self._profile.label,
            status=status.value,
            duration_s=round(duration, 3),
        )
        self.metrics.run_finished(status.value, duration)
        return duration

    def _command(self, verb: str) -> str:
        command = f"{CLI_NAME} {verb} --profile {self._profile_ref}"
        if self._profile.tenant is not None:
            command += f" --tenant {self._profile.tenant}"
        return command

    def _rollback_command(self, backup_path: str | None) -> str | None:
        if backup_path is None:
            return None
        return f"{self._command('rollback')} --backup {backup_path}"


__all__ = ["MigrationOrchestrator", "MigrationPlan", "StatusReport"]
