"""
keycloak-migrator — unit tests for the resilience controller

File: tests/unit/resilience/test_controller.py

Purpose
- Validate retry, backoff, breaker accounting and timeout wrapping around a single operation.

What this test file should cover
- Transient failures are retried with exponential backoff.
- Permanent failures propagate on first occurrence and never touch the breaker count.
- One breaker failure per exhausted retry sequence; an open circuit never invokes the call.
"""

from __future__ import annotations

import asyncio

import pytest
from hypothesis import given
from hypothesis import strategies as st

from keycloak_migrator.config.settings import ResilienceSettings
from keycloak_migrator.domain.errors import (
    CircuitOpenError,
    OperationTimeoutError,
    PermanentOperationError,
    TransientOperationError,
)
from keycloak_migrator.resilience.circuit_breaker import CircuitBreaker, CircuitState
from keycloak_migrator.resilience.controller import (
    ResilienceController,
    backoff_delay,
    build_resilience_controller,
)
from keycloak_migrator.resilience.rate_limiter import (
    AdaptiveRateLimiter,
    TokenBucketRateLimiter,
)
from tests.fakes import FakeClock, RecordingDatabase


class _Flaky:
    def __init__(self, *errors: BaseException, result: str = "ok") -> None:
        self.errors = list(errors)
        self.result = result
        self.invocations = 0

    async def __call__(self) -> str:
        self.invocations += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.result


def _controller(
    clock: FakeClock, *, threshold: int = 5, max_attempts: int = 3
) -> ResilienceController:
    limiter = TokenBucketRateLimiter(100.0, 100, clock=clock, sleep=clock.sleep)
    breaker = CircuitBreaker(failure_threshold=threshold, open_seconds=30.0, clock=clock)
    return ResilienceController(
        limiter,
        breaker,
        max_attempts=max_attempts,
        backoff_base_seconds=1.0,
        backoff_max_seconds=60.0,
        default_timeout_seconds=5.0,
        sleep=clock.sleep,
    )


async def test_transient_failures_are_retried_with_backoff() -> None:
    clock = FakeClock()
    controller = _controller(clock)
    operation = _Flaky(TransientOperationError("reset"), TransientOperationError("reset"))

    result = await controller.execute(operation, name="backup")

    assert result == "ok"
    assert operation.invocations == 3
    assert clock.sleeps == [1.0, 2.0]
    assert controller.breaker.failure_count == 0


async def test_permanent_failure_is_not_retried() -> None:
    clock = FakeClock()
    controller = _controller(clock)
    operation = _Flaky(PermanentOperationError("auth failed"))

    with pytest.raises(PermanentOperationError, match="auth failed"):
        await controller.execute(operation, name="restore")

    assert operation.invocations == 1
    assert clock.sleeps == []
    assert controller.breaker.failure_count == 0


async def test_exhausted_retries_count_one_breaker_failure() -> None:
    clock = FakeClock()
    controller = _controller(clock)
    operation = _Flaky(*(TransientOperationError(f"attempt {n}") for n in range(3)))

    with pytest.raises(TransientOperationError, match="attempt 2"):
        await controller.execute(operation, name="backup")

    assert operation.invocations == 3
    assert controller.breaker.failure_count == 1
    snapshot = controller.snapshot()
    assert snapshot.calls == 1
    assert snapshot.attempts == 3


async def test_single_attempt_raises_the_timeout_it_hit() -> None:
    clock = FakeClock()
    controller = _controller(clock, max_attempts=1)

    async def stalled() -> str:
        raise TimeoutError

    with pytest.raises(OperationTimeoutError, match="timed out after 5s") as excinfo:
        await controller.execute(stalled, name="restore")

    assert excinfo.value.operation == "restore"
    assert clock.sleeps == []
    assert controller.breaker.failure_count == 1


async def test_open_circuit_fails_fast_without_invoking() -> None:
    clock = FakeClock()
    controller = _controller(clock, threshold=1, max_attempts=1)
    await _expect_transient(controller, _Flaky(TransientOperationError("down")))
    assert controller.breaker.state is CircuitState.OPEN

    operation = _Flaky()
    with pytest.raises(CircuitOpenError):
        await controller.execute(operation, name="backup")

    assert operation.invocations == 0


async def test_permanent_error_while_half_open_frees_the_trial_slot() -> None:
    clock = FakeClock()
    controller = _controller(clock, threshold=1, max_attempts=1)
    await _expect_transient(controller, _Flaky(TransientOperationError("down")))
    clock.advance(30.0)

    with pytest.raises(PermanentOperationError):
        await controller.execute(_Flaky(PermanentOperationError("bad dump")), name="restore")

    assert controller.breaker.state is CircuitState.HALF_OPEN
    assert not controller.breaker.snapshot().probe_in_flight
    assert await controller.execute(_Flaky(), name="restore") == "ok"
    assert controller.breaker.state is CircuitState.CLOSED


async def test_timeouts_are_wrapped_and_retried() -> None:
    clock = FakeClock()
    controller = _controller(clock, max_attempts=2)

    async def hang() -> None:
        await asyncio.sleep(10)

    with pytest.raises(OperationTimeoutError) as excinfo:
        await controller.execute(hang, name="test_connection", timeout=0.01)

    assert excinfo.value.operation == "test_connection"
    assert excinfo.value.timeout_seconds == 0.01
    assert isinstance(excinfo.value.__cause__, TimeoutError)
    assert clock.sleeps == [1.0]
    assert controller.breaker.failure_count == 1


async def _expect_transient(controller: ResilienceController, operation: _Flaky) -> None:
    with pytest.raises(TransientOperationError):
        await controller.execute(operation, name="backup")


def test_build_uses_settings_and_a_fresh_breaker() -> None:
    settings = ResilienceSettings(rate_policy="adaptive", failure_threshold=2)

    first = build_resilience_controller(settings, sampler=RecordingDatabase())
    second = build_resilience_controller(settings)

    assert isinstance(first.limiter, AdaptiveRateLimiter)
    assert isinstance(second.limiter, TokenBucketRateLimiter)
    assert first.breaker is not second.breaker


def test_backoff_delay_doubles_until_the_cap() -> None:
    assert [backoff_delay(n, 1.0, 60.0) for n in range(8)] == [
        1.0,
        2.0,
        4.0,
        8.0,
        16.0,
        32.0,
        60.0,
        60.0,
    ]
    with pytest.raises(ValueError, match="attempt"):
        backoff_delay(-1, 1.0, 60.0)


@given(
    attempt=st.integers(min_value=0, max_value=30),
    base=st.floats(min_value=0.01, max_value=10.0),
    cap=st.floats(min_value=0.01, max_value=600.0),
)
def test_backoff_delay_is_monotonic_and_bounded(attempt: int, base: float, cap: float) -> None:
    current = backoff_delay(attempt, base, cap)

    assert current <= cap
    assert backoff_delay(attempt + 1, base, cap) >= current
