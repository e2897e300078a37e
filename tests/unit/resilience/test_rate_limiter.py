"""Unit tests for fixed, token-bucket and adaptive rate limiting."""

from __future__ import annotations

import pytest

from keycloak_migrator.config.settings import ResilienceSettings
from keycloak_migrator.resilience.rate_limiter import (
    AdaptiveRateLimiter,
    FixedRateLimiter,
    TokenBucketRateLimiter,
    adaptive_rate_fraction,
    build_rate_limiter,
)
from tests.fakes import FakeClock, RecordingDatabase


class _BrokenSampler:
    async def sample_load(self) -> float:
        raise RuntimeError("pg_stat_activity unavailable")


@pytest.mark.parametrize(
    ("load", "fraction"),
    [
        (0.0, 1.0),
        (25.0, 1.0),
        (30.0, 0.7),
        (45.0, 0.7),
        (60.0, 0.4),
        (79.9, 0.4),
        (80.0, 0.2),
        (90.0, 0.2),
        (150.0, 0.2),
    ],
)
def test_adaptive_fraction_breakpoints(load: float, fraction: float) -> None:
    assert adaptive_rate_fraction(load) == fraction


async def test_token_bucket_allows_burst_then_waits_for_refill() -> None:
    clock = FakeClock()
    limiter = TokenBucketRateLimiter(2.0, 2, clock=clock, sleep=clock.sleep)

    await limiter.acquire()
    await limiter.acquire()
    assert clock.sleeps == []

    await limiter.acquire()

    assert clock.sleeps == [pytest.approx(0.5)]
    assert limiter.budget().rate == 2.0
    assert limiter.tokens == pytest.approx(0.0)


async def test_token_bucket_never_exceeds_capacity() -> None:
    clock = FakeClock()
    limiter = TokenBucketRateLimiter(5.0, 3, clock=clock, sleep=clock.sleep)

    clock.advance(60.0)

    assert limiter.tokens == 3.0


async def test_fixed_rate_spaces_operations() -> None:
    clock = FakeClock()
    limiter = FixedRateLimiter(4.0, clock=clock, sleep=clock.sleep)

    await limiter.acquire()
    await limiter.acquire()
    clock.advance(1.0)
    await limiter.acquire()

    assert clock.sleeps == [pytest.approx(0.25)]


async def test_adaptive_limiter_follows_sampled_load() -> None:
    clock = FakeClock()
    database = RecordingDatabase(load=70.0)
    limiter = AdaptiveRateLimiter(
        10.0, database, sample_interval=5.0, clock=clock, sleep=clock.sleep
    )

    await limiter.acquire()
    assert limiter.fraction == 0.4
    assert limiter.last_load == 70.0
    assert limiter.budget().rate == pytest.approx(4.0)

    database.load = 10.0
    clock.advance(1.0)
    await limiter.acquire()
    assert limiter.fraction == 0.4

    clock.advance(5.0)
    await limiter.acquire()
    assert limiter.fraction == 1.0
    assert len(database.calls_to("sample_load")) == 2


async def test_adaptive_limiter_keeps_fraction_when_sampling_fails() -> None:
    clock = FakeClock()
    limiter = AdaptiveRateLimiter(10.0, _BrokenSampler(), clock=clock, sleep=clock.sleep)

    await limiter.acquire()

    assert limiter.fraction == 1.0
    assert limiter.last_load is None


def test_build_rate_limiter_selects_policy() -> None:
    sampler = RecordingDatabase()

    fixed = build_rate_limiter(ResilienceSettings(rate_policy="fixed"))
    bucket = build_rate_limiter(ResilienceSettings())
    adaptive = build_rate_limiter(ResilienceSettings(rate_policy="adaptive"), sampler=sampler)
    fallback = build_rate_limiter(ResilienceSettings(rate_policy="adaptive"))

    assert isinstance(fixed, FixedRateLimiter)
    assert isinstance(bucket, TokenBucketRateLimiter)
    assert isinstance(adaptive, AdaptiveRateLimiter)
    assert isinstance(fallback, TokenBucketRateLimiter)


def test_limiters_reject_non_positive_rates() -> None:
    with pytest.raises(ValueError, match="ops_per_second"):
        FixedRateLimiter(0.0)
    with pytest.raises(ValueError, match="capacity"):
        TokenBucketRateLimiter(1.0, 0)
