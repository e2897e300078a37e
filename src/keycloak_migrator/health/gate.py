"""
keycloak-migrator — health gate

File: src/keycloak_migrator/health/gate.py

Purpose
- Decide whether a started instance (or replica) is fit to receive traffic.

What should be included in this file
- Bounded-retry polling of liveness and readiness on one endpoint.
- Generic bounded polling for per-replica checks.
- Delegated smoke-test execution returning a structured result.

Functional requirements
- An attempt succeeds only when liveness and readiness both pass on that same attempt.
- At most ``retries`` attempts, ``interval`` seconds apart; no sleep after the final attempt.
- The gate reports; whether a failed smoke test is fatal is decided by the caller.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import structlog

from keycloak_migrator.domain.errors import OperationError
from keycloak_migrator.observability.audit import AuditEvent

if TYPE_CHECKING:
    from keycloak_migrator.health.probes import HealthEndpoint, HealthProbe
    from keycloak_migrator.health.smoke import SmokeTestRunner
    from keycloak_migrator.observability.audit import AuditSink


@dataclass(frozen=True, slots=True)
class SmokeTestResult:
    passed: bool
    version: str
    base_url: str
    detail: str | None = None
    duration_seconds: float = 0.0


class HealthGate:
    def __init__(
        self,
        probe: HealthProbe,
        *,
        audit: AuditSink | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        logger: Any | None = None,
    ) -> None:
        self._probe = probe
        self._audit = audit
        self._clock = clock
        self._sleep = sleep
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    async def wait_healthy(
        self,
        endpoint: HealthEndpoint,
        retries: int,
        interval: float,
        *,
        version: str | None = None,
    ) -> bool:
        if retries < 1:
            raise ValueError("retries must be >= 1")
        if interval < 0:
            raise ValueError("interval must be >= 0")

        for attempt in range(1, retries + 1):
            live = await self._probe.check(endpoint.liveness_url)
            ready = live and await self._probe.check(endpoint.readiness_url)
            if ready:
                self._report(version, endpoint.base_url, True, attempt)
                return True
            self._logger.debug(
                "health_attempt_failed",
                target=endpoint.base_url,
                attempt=attempt,
                retries=retries,
                live=live,
            )
            if attempt < retries:
                await self._sleep(interval)

        self._report(version, endpoint.base_url, False, retries)
        return False

    async def poll(
        self,
        check: Callable[[], Awaitable[bool]],
        retries: int,
        interval: float,
        *,
        target: str,
        version: str | None = None,
    ) -> bool:
        """Repeat ``check`` until it returns ``True``; operation errors count as failures."""

        if retries < 1:
            raise ValueError("retries must be >= 1")
        for attempt in range(1, retries + 1):
            try:
                healthy = await check()
            except OperationError as exc:
                self._logger.debug(
                    "health_check_error", target=target, attempt=attempt, error=str(exc)
                )
                healthy = False
            if healthy:
                self._report(version, target, True, attempt)
                return True
            if attempt < retries:
                await self._sleep(interval)
        self._report(version, target, False, retries)
        return False

    async def run_smoke_tests(
        self, runner: SmokeTestRunner, base_url: str, version: str
    ) -> SmokeTestResult:
        started = self._clock()
        detail: str | None = None
        try:
            passed = bool(await runner.run(base_url))
        except OperationError as exc:
            passed = False
            detail = str(exc)
        duration = self._clock() - started
        if not passed and detail is None:
            detail = "smoke tests reported failure"
        self._logger.info(
            "smoke_tests_finished",
            version=version,
            base_url=base_url,
            passed=passed,
            duration_s=round(duration, 3),
        )
        return SmokeTestResult(
            passed=passed,
            version=version,
            base_url=base_url,
            detail=detail,
            duration_seconds=duration,
        )

    def _report(self, version: str | None, target: str, healthy: bool, attempts: int) -> None:
        log = self._logger.info if healthy else self._logger.warning
        log(
            "health_gate_result",
            version=version,
            target=target,
            healthy=healthy,
            attempts=attempts,
        )
        if self._audit is not None:
            self._audit.emit(
                AuditEvent.HEALTH_CHECK,
                version=version,
                target=target,
                healthy=healthy,
                attempts=attempts,
            )


__all__ = ["HealthGate", "SmokeTestResult"]
