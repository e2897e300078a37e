"""Unit tests for the database circuit breaker."""

from __future__ import annotations

import pytest

from keycloak_migrator.domain.errors import CircuitOpenError
from keycloak_migrator.resilience.circuit_breaker import CircuitBreaker, CircuitState
from tests.fakes import FakeClock


def _breaker(clock: FakeClock, threshold: int = 5) -> CircuitBreaker:
    return CircuitBreaker("database", failure_threshold=threshold, open_seconds=30.0, clock=clock)


def _trip(breaker: CircuitBreaker, times: int) -> None:
    for _ in range(times):
        breaker.before_call()
        breaker.record_failure()


def test_opens_after_threshold_consecutive_failures() -> None:
    clock = FakeClock()
    breaker = _breaker(clock)

    _trip(breaker, 4)
    assert breaker.state is CircuitState.CLOSED
    assert breaker.failure_count == 4

    _trip(breaker, 1)
    assert breaker.state is CircuitState.OPEN


def test_success_resets_the_consecutive_count() -> None:
    breaker = _breaker(FakeClock())

    _trip(breaker, 4)
    breaker.record_success()
    _trip(breaker, 4)

    assert breaker.state is CircuitState.CLOSED
    assert breaker.failure_count == 4


def test_open_circuit_rejects_with_remaining_window() -> None:
    clock = FakeClock()
    breaker = _breaker(clock, threshold=1)
    _trip(breaker, 1)

    clock.advance(10.0)
    with pytest.raises(CircuitOpenError) as excinfo:
        breaker.before_call()

    assert excinfo.value.name == "database"
    assert excinfo.value.retry_after_seconds == pytest.approx(20.0)


def test_half_open_admits_exactly_one_trial_call() -> None:
    clock = FakeClock()
    breaker = _breaker(clock, threshold=1)
    _trip(breaker, 1)

    clock.advance(30.0)
    assert breaker.state is CircuitState.HALF_OPEN

    breaker.before_call()
    with pytest.raises(CircuitOpenError) as excinfo:
        breaker.before_call()

    assert excinfo.value.retry_after_seconds == 0.0
    assert breaker.snapshot().probe_in_flight


def test_successful_trial_call_closes_the_circuit() -> None:
    clock = FakeClock()
    breaker = _breaker(clock, threshold=2)
    _trip(breaker, 2)
    clock.advance(31.0)

    breaker.before_call()
    breaker.record_success()

    snapshot = breaker.snapshot()
    assert snapshot.state is CircuitState.CLOSED
    assert snapshot.failure_count == 0
    assert snapshot.opened_at is None
    assert not snapshot.probe_in_flight


def test_failed_trial_call_reopens_with_a_fresh_window() -> None:
    clock = FakeClock()
    breaker = _breaker(clock, threshold=1)
    _trip(breaker, 1)
    clock.advance(30.0)

    breaker.before_call()
    breaker.record_failure()

    assert breaker.state is CircuitState.OPEN
    assert breaker.snapshot().opened_at == clock()
    clock.advance(29.0)
    assert breaker.state is CircuitState.OPEN
    clock.advance(1.0)
    assert breaker.state is CircuitState.HALF_OPEN


def test_released_trial_slot_can_be_taken_again() -> None:
    clock = FakeClock()
    breaker = _breaker(clock, threshold=1)
    _trip(breaker, 1)
    clock.advance(30.0)

    breaker.before_call()
    breaker.release_probe()
    breaker.before_call()

    assert breaker.state is CircuitState.HALF_OPEN


@pytest.mark.parametrize(
    ("kwargs", "match"),
    [
        ({"failure_threshold": 0}, "failure_threshold"),
        ({"open_seconds": -1.0}, "open_seconds"),
    ],
)
def test_rejects_invalid_configuration(kwargs: dict[str, float], match: str) -> None:
    with pytest.raises(ValueError, match=match):
        CircuitBreaker(**kwargs)  # type: ignore[arg-type]
