"""Run one isolated migration per tenant with bounded parallelism."""

from __future__ import annotations

import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import structlog

from keycloak_migrator.constants import TENANTS_SUMMARY_FILE
from keycloak_migrator.domain.errors import MigrationError, NoPathNeededError
from keycloak_migrator.domain.models import MigrationResult, RunStatus
from keycloak_migrator.observability.audit import AuditEvent
from keycloak_migrator.observability.logging import correlation_scope
from keycloak_migrator.utils.concurrency import WorkerPool
from keycloak_migrator.utils.fs import atomic_write_json

if TYPE_CHECKING:
    from pathlib import Path

    from keycloak_migrator.domain.profile import ConfigProfile
    from keycloak_migrator.engine.orchestrator import MigrationOrchestrator
    from keycloak_migrator.observability.audit import AuditSink
    from keycloak_migrator.utils.concurrency import CancellationToken

OrchestratorFactory = Callable[["ConfigProfile"], "MigrationOrchestrator"]
MigrateCall = Callable[["MigrationOrchestrator"], Awaitable[MigrationResult]]


@dataclass(frozen=True, slots=True)
class TenantOutcome:
    tenant: str
    status: RunStatus
    result: MigrationResult | None = None
    error: str | None = None
    error_kind: str | None = None
    exception: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.status in {RunStatus.SUCCESS, RunStatus.DRY_RUN, RunStatus.NO_OP}

    def to_dict(self) -> dict[str, Any]:
        return {
            "tenant": self.tenant,
            "status": self.status.value,
            "result": self.result.to_dict() if self.result is not None else None,
            "error": self.error,
            "error_kind": self.error_kind,
        }


class TenantRunner:
    """
    Fans ``migrate`` out over the profile's tenants.

    Every tenant gets a fresh orchestrator from ``factory`` and therefore its own workspace,
    checkpoint, lock and resilience controller. Errors are captured per tenant; one tenant
    failing never cancels the others.
    """

    def __init__(
        self,
        profile: ConfigProfile,
        factory: OrchestratorFactory,
        audit: AuditSink,
        *,
        max_concurrency: int,
        summary_dir: Path,
        cancel_token: CancellationToken | None = None,
        clock: Callable[[], float] = time.monotonic,
        logger: Any | None = None,
    ) -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        self._profile = profile
        self._factory = factory
        self._audit = audit
        self._max_concurrency = max_concurrency
        self._summary_dir = summary_dir
        self._cancel_token = cancel_token
        self._clock = clock
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def summary_path(self) -> Path:
        return self._summary_dir / TENANTS_SUMMARY_FILE

    async def run(self, migrate: MigrateCall) -> list[TenantOutcome]:
        tenants = self._profile.tenants
        if not tenants:
            raise MigrationError(f"profile {self._profile.name} defines no tenants")
        started = self._clock()
        profiles = [self._profile.for_tenant(tenant) for tenant in tenants]
        parallelism = min(self._max_concurrency, len(profiles))
        self._logger.info("tenants_started", tenants=len(profiles), max_concurrency=parallelism)

        pool: WorkerPool[TenantOutcome] = WorkerPool(parallelism, self._cancel_token)
        outcomes = await pool.collect(self._run_one(profile, migrate) for profile in profiles)

        atomic_write_json(
            self.summary_path,
            {
                "profile": self._profile.name,
                "finished_at": datetime.now(tz=UTC).isoformat(timespec="seconds"),
                "duration_s": round(self._clock() - started, 3),
                "tenants": [outcome.to_dict() for outcome in outcomes],
            },
        )
        failed = [outcome.tenant for outcome in outcomes if not outcome.ok]
        self._logger.info(
            "tenants_finished",
            tenants=len(outcomes),
            failed=failed,
            summary_path=str(self.summary_path),
        )
        return outcomes

    async def _run_one(self, profile: ConfigProfile, migrate: MigrateCall) -> TenantOutcome:
        tenant = profile.tenant or profile.name
        with correlation_scope(tenant=tenant):
            try:
                result = await migrate(self._factory(profile))
            except NoPathNeededError as exc:
                outcome = TenantOutcome(tenant, RunStatus.NO_OP, error=str(exc))
            except Exception as exc:
                self._logger.error(
                    "tenant_failed", tenant=tenant, error=str(exc), error_kind=type(exc).__name__
                )
                outcome = TenantOutcome(
                    tenant,
                    RunStatus.FAILED,
                    error=str(exc),
                    error_kind=type(exc).__name__,
                    exception=exc,
                )
            else:
                outcome = TenantOutcome(tenant, result.status, result=result, error=result.error)
            self._audit.emit(AuditEvent.TENANT_END, tenant=tenant, status=outcome.status.value)
        return outcome


__all__ = ["OrchestratorFactory", "TenantOutcome", "TenantRunner"]
