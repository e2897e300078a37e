"""Rate limiting, circuit breaking and retry for throttled operations."""

from keycloak_migrator.resilience.circuit_breaker import (
    BreakerSnapshot,
    CircuitBreaker,
    CircuitState,
)
from keycloak_migrator.resilience.controller import (
    ResilienceController,
    ResilienceSnapshot,
    backoff_delay,
    build_resilience_controller,
)
from keycloak_migrator.resilience.rate_limiter import (
    AdaptiveRateLimiter,
    FixedRateLimiter,
    LoadSampler,
    RateBudget,
    RateLimiter,
    TokenBucketRateLimiter,
    adaptive_rate_fraction,
    build_rate_limiter,
)

__all__ = [
    "AdaptiveRateLimiter",
    "BreakerSnapshot",
    "CircuitBreaker",
    "CircuitState",
    "FixedRateLimiter",
    "LoadSampler",
    "RateBudget",
    "RateLimiter",
    "ResilienceController",
    "ResilienceSnapshot",
    "TokenBucketRateLimiter",
    "adaptive_rate_fraction",
    "backoff_delay",
    "build_rate_limiter",
    "build_resilience_controller",
]
