"""
keycloak-migrator — rate limiting for throttled database operations.

File: src/keycloak_migrator/resilience/rate_limiter.py

Purpose
- Pace calls against the shared database during long-running migrations.

What should be included in this file
- Fixed pacing (``1/N`` seconds between operations).
- Token bucket (one token per operation, fixed refill rate, bursts up to capacity).
- Adaptive pacing driven by a sampled load signal mapped through fixed breakpoints.

Functional requirements
- Clock and sleep are injected so tests run against virtual time.
- Waits are cancelable (plain ``await`` on the injected sleep).

Non-functional requirements
- Limiters are run-scoped and never persisted; one instance per resilience controller.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Final, Protocol, runtime_checkable

import structlog

if TYPE_CHECKING:
    from keycloak_migrator.config.settings import ResilienceSettings

Clock = Callable[[], float]
SleepFn = Callable[[float], Awaitable[None]]

# (exclusive upper bound in percent, fraction of base rate); a boundary value falls into the
# next, lower-rate bucket.
ADAPTIVE_BREAKPOINTS: Final[tuple[tuple[float, float], ...]] = (
    (30.0, 1.0),
    (60.0, 0.7),
    (80.0, 0.4),
)
ADAPTIVE_FLOOR_FRACTION: Final[float] = 0.2


@dataclass(frozen=True, slots=True)
class RateBudget:
    """Current permitted rate (ops/s) and token balance of a limiter."""

    rate: float
    tokens: float


@runtime_checkable
class RateLimiter(Protocol):
    async def acquire(self) -> None: ...

    def budget(self) -> RateBudget: ...


@runtime_checkable
class LoadSampler(Protocol):
    """Reports the shared resource's load as a percentage (0..100)."""

    async def sample_load(self) -> float: ...


def adaptive_rate_fraction(load_percent: float) -> float:
    """Map a load percentage to the fraction of the base rate that may be used."""

    for upper_bound, fraction in ADAPTIVE_BREAKPOINTS:
        if load_percent < upper_bound:
            return fraction
    return ADAPTIVE_FLOOR_FRACTION


class FixedRateLimiter:
    """Spaces operations at least ``1 / ops_per_second`` seconds apart."""

    def __init__(
        self,
        ops_per_second: float,
        *,
        clock: Clock = time.monotonic,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        if ops_per_second <= 0:
            raise ValueError("ops_per_second must be > 0")
        self._rate = ops_per_second
        self._clock = clock
        self._sleep = sleep
        self._next_allowed: float | None = None

    def set_rate(self, ops_per_second: float) -> None:
        if ops_per_second <= 0:
            raise ValueError("ops_per_second must be > 0")
        self._rate = ops_per_second

    def budget(self) -> RateBudget:
        return RateBudget(rate=self._rate, tokens=0.0)

    async def acquire(self) -> None:
        now = self._clock()
        if self._next_allowed is not None and now < self._next_allowed:
            await self._sleep(self._next_allowed - now)
            now = self._clock()
        self._next_allowed = now + 1.0 / self._rate


class TokenBucketRateLimiter:
    """Debits one token per operation; refills continuously at ``rate`` up to ``capacity``."""

    def __init__(
        self,
        rate: float,
        capacity: int,
        *,
        clock: Clock = time.monotonic,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        if rate <= 0:
            raise ValueError("rate must be > 0")
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self._rate = rate
        self._capacity = float(capacity)
        self._clock = clock
        self._sleep = sleep
        self._tokens = float(capacity)
        self._updated_at = clock()

    @property
    def tokens(self) -> float:
        self._refill()
        return self._tokens

    def budget(self) -> RateBudget:
        return RateBudget(rate=self._rate, tokens=self.tokens)

    async def acquire(self) -> None:
        while True:
            self._refill()
            if self._tokens >= 1.0:
                self._tokens -= 1.0
                return
            await self._sleep((1.0 - self._tokens) / self._rate)

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._updated_at)
        self._tokens = min(self._capacity, self._tokens + elapsed * self._rate)
        self._updated_at = now


class AdaptiveRateLimiter:
    """Fixed pacing whose rate follows the sampled load of the shared resource."""

    def __init__(
        self,
        base_rate: float,
        sampler: LoadSampler,
        *,
        sample_interval: float = 5.0,
        clock: Clock = time.monotonic,
        sleep: SleepFn = asyncio.sleep,
        logger: Any | None = None,
    ) -> None:
        if base_rate <= 0:
            raise ValueError("base_rate must be > 0")
        if sample_interval < 0:
            raise ValueError("sample_interval must be >= 0")
        self._base_rate = base_rate
        self._sampler = sampler
        self._sample_interval = sample_interval
        self._clock = clock
        self._pacer = FixedRateLimiter(base_rate, clock=clock, sleep=sleep)
        self._fraction = 1.0
        self._last_load: float | None = None
        self._sampled_at: float | None = None
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def fraction(self) -> float:
        return self._fraction

    @property
    def last_load(self) -> float | None:
        return self._last_load

    def budget(self) -> RateBudget:
        return RateBudget(rate=self._base_rate * self._fraction, tokens=0.0)

    async def acquire(self) -> None:
        await self._maybe_resample()
        await self._pacer.acquire()

    async def _maybe_resample(self) -> None:
        now = self._clock()
        if self._sampled_at is not None and now - self._sampled_at < self._sample_interval:
            return
        self._sampled_at = now
        try:
            load = float(await self._sampler.sample_load())
        except Exception as exc:
            # Keep the previous fraction.
            self._logger.warning("rate_limiter_sample_failed", error=str(exc))
            return
        fraction = adaptive_rate_fraction(load)
        if fraction != self._fraction:
            self._logger.info(
                "rate_limiter_adjusted",
                load_percent=round(load, 1),
                fraction=fraction,
                rate=self._base_rate * fraction,
            )
        self._last_load = load
        self._fraction = fraction
        self._pacer.set_rate(self._base_rate * fraction)


def build_rate_limiter(
    settings: ResilienceSettings,
    *,
    sampler: LoadSampler | None = None,
    clock: Clock = time.monotonic,
    sleep: SleepFn = asyncio.sleep,
    logger: Any | None = None,
) -> RateLimiter:
    policy = settings.rate_policy
    if policy == "fixed":
        return FixedRateLimiter(settings.ops_per_second, clock=clock, sleep=sleep)
    if policy == "adaptive":
        if sampler is not None:
            return AdaptiveRateLimiter(
                settings.ops_per_second,
                sampler,
                sample_interval=settings.load_sample_seconds,
                clock=clock,
                sleep=sleep,
                logger=logger,
            )
        (logger or structlog.get_logger(__name__)).warning(
            "rate_limiter_fallback",
            requested="adaptive",
            effective="token_bucket",
            reason="database adapter provides no load sampler",
        )
    return TokenBucketRateLimiter(
        settings.ops_per_second, settings.burst, clock=clock, sleep=sleep
    )


__all__ = [
    "ADAPTIVE_BREAKPOINTS",
    "ADAPTIVE_FLOOR_FRACTION",
    "AdaptiveRateLimiter",
    "FixedRateLimiter",
    "LoadSampler",
    "RateBudget",
    "RateLimiter",
    "TokenBucketRateLimiter",
    "adaptive_rate_fraction",
    "build_rate_limiter",
]
