"""HTTP liveness/readiness probes backed by ``httpx``."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

import httpx
import structlog

if TYPE_CHECKING:
    from keycloak_migrator.config.settings import HealthSettings


@dataclass(frozen=True, slots=True)
class HealthEndpoint:
    """Base URL plus the liveness and readiness paths polled on it."""

    base_url: str
    liveness_path: str = "/health/live"
    readiness_path: str = "/health/ready"

    @property
    def liveness_url(self) -> str:
        return _join(self.base_url, self.liveness_path)

    @property
    def readiness_url(self) -> str:
        return _join(self.base_url, self.readiness_path)

    def at(self, base_url: str) -> HealthEndpoint:
        return HealthEndpoint(base_url, self.liveness_path, self.readiness_path)

    @classmethod
    def from_settings(cls, settings: HealthSettings, base_url: str | None = None) -> HealthEndpoint:
        return cls(
            base_url=base_url or settings.base_url,
            liveness_path=settings.liveness_path,
            readiness_path=settings.readiness_path,
        )


@runtime_checkable
class HealthProbe(Protocol):
    async def check(self, url: str) -> bool: ...


class HttpHealthProbe:
    """A URL is healthy when it answers 2xx within ``timeout_seconds``.

    Transport errors and timeouts count as unhealthy; they never raise.
    """

    def __init__(
        self,
        timeout_seconds: float = 5.0,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        logger: Any | None = None,
    ) -> None:
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        self._timeout = timeout_seconds
        self._transport = transport
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    async def check(self, url: str) -> bool:
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout, transport=self._transport, follow_redirects=True
            ) as client:
                response = await client.get(url)
        except httpx.HTTPError as exc:
            self._logger.debug("health_probe_error", url=url, error=str(exc))
            return False
        healthy = response.is_success
        if not healthy:
            self._logger.debug("health_probe_unhealthy", url=url, status_code=response.status_code)
        return healthy


def _join(base_url: str, path: str) -> str:
    return f"{base_url.rstrip('/')}/{path.lstrip('/')}"


__all__ = ["HealthEndpoint", "HealthProbe", "HttpHealthProbe"]
