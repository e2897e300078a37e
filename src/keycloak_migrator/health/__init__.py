"""Health gating: endpoint polling and smoke tests."""

from keycloak_migrator.health.gate import HealthGate, SmokeTestResult
from keycloak_migrator.health.probes import HealthEndpoint, HealthProbe, HttpHealthProbe
from keycloak_migrator.health.smoke import (
    CommandSmokeTestRunner,
    HttpSmokeTestRunner,
    SmokeTestRunner,
)

__all__ = [
    "CommandSmokeTestRunner",
    "HealthEndpoint",
    "HealthGate",
    "HealthProbe",
    "HttpHealthProbe",
    "HttpSmokeTestRunner",
    "SmokeTestResult",
    "SmokeTestRunner",
]
