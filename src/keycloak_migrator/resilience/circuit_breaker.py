"""In-memory circuit breaker driven by a monotonic clock."""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

import structlog

from keycloak_migrator.domain.errors import CircuitOpenError


class CircuitState(StrEnum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


StateListener = Callable[[str, CircuitState], None]


@dataclass(frozen=True, slots=True)
class BreakerSnapshot:
    state: CircuitState
    failure_count: int
    opened_at: float | None
    probe_in_flight: bool


class CircuitBreaker:
    """
    CLOSED counts consecutive failures and opens at ``failure_threshold``. OPEN rejects every
    call until ``open_seconds`` have elapsed, then admits exactly one HALF_OPEN probe whose
    outcome closes the circuit again or re-opens it with a fresh window.

    Not thread-safe: a breaker is owned by one controller on one event loop.
    """

    def __init__(
        self,
        name: str = "database",
        *,
        failure_threshold: int = 5,
        open_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
        on_state_change: StateListener | None = None,
        logger: Any | None = None,
    ) -> None:
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        if open_seconds < 0:
            raise ValueError("open_seconds must be >= 0")
        self.name = name
        self._threshold = failure_threshold
        self._open_seconds = open_seconds
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._opened_at: float | None = None
        self._probe_in_flight = False
        self._on_state_change = on_state_change
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def state(self) -> CircuitState:
        if self._state is CircuitState.OPEN and self._window_elapsed():
            self._transition(CircuitState.HALF_OPEN)
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failures

    def before_call(self) -> None:
        """Admit or reject a call; raises ``CircuitOpenError`` without invoking anything."""

        state = self.state
        if state is CircuitState.CLOSED:
            return
        if state is CircuitState.OPEN:
            raise CircuitOpenError(self.name, self._retry_after())
        if self._probe_in_flight:
            raise CircuitOpenError(self.name, 0.0)
        self._probe_in_flight = True

    def record_success(self) -> None:
        self._probe_in_flight = False
        self._failures = 0
        if self._state is not CircuitState.CLOSED:
            self._opened_at = None
            self._transition(CircuitState.CLOSED)

    def record_failure(self) -> None:
        if self.state is CircuitState.HALF_OPEN:
            self._probe_in_flight = False
            self._open()
            return
        self._failures += 1
        if self._state is CircuitState.CLOSED and self._failures >= self._threshold:
            self._open()

    def release_probe(self) -> None:
        """Give the HALF_OPEN probe back after an outcome that neither closes nor re-opens."""

        self._probe_in_flight = False

    def snapshot(self) -> BreakerSnapshot:
        return BreakerSnapshot(
            state=self.state,
            failure_count=self._failures,
            opened_at=self._opened_at,
            probe_in_flight=self._probe_in_flight,
        )

    def _open(self) -> None:
        self._opened_at = self._clock()
        self._transition(CircuitState.OPEN)

    def _window_elapsed(self) -> bool:
        return self._opened_at is not None and self._clock() - self._opened_at >= self._open_seconds

    def _retry_after(self) -> float:
        if self._opened_at is None:
            return 0.0
        return max(0.0, self._open_seconds - (self._clock() - self._opened_at))

    def _transition(self, new_state: CircuitState) -> None:
        previous = self._state
        self._state = new_state
        self._logger.info(
            "circuit_state_changed",
            circuit=self.name,
            previous=previous.value,
            current=new_state.value,
            failure_count=self._failures,
        )
        if self._on_state_change is not None:
            self._on_state_change(self.name, new_state)


__all__ = ["BreakerSnapshot", "CircuitBreaker", "CircuitState", "StateListener"]
