"""
keycloak-migrator — resilience controller.

File: src/keycloak_migrator/resilience/controller.py

Purpose
- Compose a rate limiter and a circuit breaker around every throttled operation.

What should be included in this file
- Breaker admission before anything else; an OPEN circuit never invokes the operation.
- Limiter pacing on every attempt, including retries.
- A timeout on every attempt; a timeout is its own error kind but retries like a transient one.
- Exponential backoff between attempts, capped.
- One breaker failure per exhausted retry sequence.

Functional requirements
- Only ``TransientOperationError`` and timeouts are retried and breaker-counted.
- ``PermanentOperationError`` and foreign exceptions propagate untouched on first occurrence.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, TypeVar

import structlog

from keycloak_migrator.domain.errors import OperationTimeoutError, TransientOperationError
from keycloak_migrator.resilience.circuit_breaker import (
    CircuitBreaker,
    CircuitState,
    StateListener,
)
from keycloak_migrator.resilience.rate_limiter import (
    LoadSampler,
    RateBudget,
    RateLimiter,
    build_rate_limiter,
)
from keycloak_migrator.utils.concurrency import CancellationToken, run_with_timeout

if TYPE_CHECKING:
    from keycloak_migrator.config.settings import ResilienceSettings

T = TypeVar("T")
Clock = Callable[[], float]
SleepFn = Callable[[float], Awaitable[None]]


def backoff_delay(attempt: int, base: float, cap: float) -> float:
    """Delay after failed attempt ``attempt`` (0-based): ``min(base * 2**attempt, cap)``."""

    if attempt < 0:
        raise ValueError("attempt must be >= 0")
    return min(base * (2**attempt), cap)


@dataclass(frozen=True, slots=True)
class ResilienceSnapshot:
    circuit_state: CircuitState
    failure_count: int
    budget: RateBudget
    calls: int
    attempts: int


class ResilienceController:
    """Single serialization point for calls against the shared database."""

    def __init__(
        self,
        limiter: RateLimiter,
        breaker: CircuitBreaker,
        *,
        max_attempts: int = 3,
        backoff_base_seconds: float = 1.0,
        backoff_max_seconds: float = 60.0,
        default_timeout_seconds: float = 300.0,
        sleep: SleepFn = asyncio.sleep,
        cancel_token: CancellationToken | None = None,
        logger: Any | None = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if default_timeout_seconds <= 0:
            raise ValueError("default_timeout_seconds must be > 0")
        self.limiter = limiter
        self.breaker = breaker
        self._max_attempts = max_attempts
        self._backoff_base = backoff_base_seconds
        self._backoff_max = backoff_max_seconds
        self._default_timeout = default_timeout_seconds
        self._sleep = sleep
        self._cancel_token = cancel_token
        self._calls = 0
        self._attempts = 0
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        name: str,
        timeout: float | None = None,
    ) -> T:
        """Run ``operation`` under breaker, limiter, timeout and retry policy."""

        self.breaker.before_call()
        self._calls += 1
        limit = timeout if timeout is not None else self._default_timeout
        attempt = 0
        try:
            while True:
                await self.limiter.acquire()
                self._attempts += 1
                try:
                    result = await run_with_timeout(operation(), limit, self._cancel_token)
                except TransientOperationError as exc:
                    error: Exception = exc
                except TimeoutError as exc:
                    error = _as_timeout(exc, name, limit)
                else:
                    self.breaker.record_success()
                    return result

                attempt += 1
                if attempt >= self._max_attempts:
                    break
                delay = backoff_delay(attempt - 1, self._backoff_base, self._backoff_max)
                self._logger.warning(
                    "operation_retry",
                    operation=name,
                    attempt=attempt,
                    max_attempts=self._max_attempts,
                    delay_s=delay,
                    error=str(error),
                    error_kind=type(error).__name__,
                )
                await self._sleep(delay)
        except BaseException:
            self.breaker.release_probe()
            raise

        self.breaker.record_failure()
        self._logger.error(
            "operation_failed",
            operation=name,
            attempts=self._max_attempts,
            error=str(error),
            circuit=self.breaker.state.value,
            failure_count=self.breaker.failure_count,
        )
        raise error

    def snapshot(self) -> ResilienceSnapshot:
        breaker = self.breaker.snapshot()
        return ResilienceSnapshot(
            circuit_state=breaker.state,
            failure_count=breaker.failure_count,
            budget=self.limiter.budget(),
            calls=self._calls,
            attempts=self._attempts,
        )


def build_resilience_controller(
    settings: ResilienceSettings,
    *,
    name: str = "database",
    sampler: LoadSampler | None = None,
    clock: Clock = time.monotonic,
    sleep: SleepFn = asyncio.sleep,
    cancel_token: CancellationToken | None = None,
    on_state_change: StateListener | None = None,
    logger: Any | None = None,
) -> ResilienceController:
    """Fresh limiter and breaker per call; state is never shared between runs or tenants."""

    limiter = build_rate_limiter(settings, sampler=sampler, clock=clock, sleep=sleep, logger=logger)
    breaker = CircuitBreaker(
        name,
        failure_threshold=settings.failure_threshold,
        open_seconds=settings.open_seconds,
        clock=clock,
        on_state_change=on_state_change,
        logger=logger,
    )
    return ResilienceController(
        limiter,
        breaker,
        max_attempts=settings.max_attempts,
        backoff_base_seconds=settings.backoff_base_seconds,
        backoff_max_seconds=settings.backoff_max_seconds,
        default_timeout_seconds=settings.operation_timeout_seconds,
        sleep=sleep,
        cancel_token=cancel_token,
        logger=logger,
    )


def _as_timeout(exc: TimeoutError, operation: str, limit: float) -> OperationTimeoutError:
    if isinstance(exc, OperationTimeoutError):
        return exc
    error = OperationTimeoutError(
        f"timed out after {limit:g}s", operation=operation, timeout_seconds=limit
    )
    error.__cause__ = exc
    return error


__all__ = [
    "ResilienceController",
    "ResilienceSnapshot",
    "backoff_delay",
    "build_resilience_controller",
]
