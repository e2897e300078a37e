"""Smoke-test runners: an external command, or a built-in anonymous HTTP check."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any, Protocol, runtime_checkable

import httpx
import structlog

from keycloak_migrator.adapters.process import CommandExecutor, CommandSpec


@runtime_checkable
class SmokeTestRunner(Protocol):
    async def run(self, base_url: str) -> bool: ...


class CommandSmokeTestRunner:
    """Runs a configured command with ``KC_URL`` pointing at the instance under test."""

    def __init__(
        self,
        command: Sequence[str],
        executor: CommandExecutor,
        *,
        timeout_seconds: float = 300.0,
        logger: Any | None = None,
    ) -> None:
        if not command:
            raise ValueError("command must not be empty")
        self.command = tuple(command)
        self._executor = executor
        self._timeout = timeout_seconds
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    async def run(self, base_url: str) -> bool:
        result = await self._executor.run(
            CommandSpec(
                argv=self.command,
                env={"KC_URL": base_url},
                timeout_seconds=self._timeout,
            )
        )
        if not result.ok:
            self._logger.warning(
                "smoke_tests_failed",
                base_url=base_url,
                exit_code=result.exit_code,
                timed_out=result.timed_out,
                stderr=result.stderr[-2000:],
            )
        return result.ok


class HttpSmokeTestRunner:
    """Anonymous checks: the master realm answers and publishes OIDC discovery metadata."""

    def __init__(
        self,
        *,
        timeout_seconds: float = 10.0,
        realm: str = "master",
        transport: httpx.AsyncBaseTransport | None = None,
        logger: Any | None = None,
    ) -> None:
        self._timeout = timeout_seconds
        self._realm = realm
        self._transport = transport
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    async def run(self, base_url: str) -> bool:
        root = base_url.rstrip("/")
        realm_url = f"{root}/realms/{self._realm}"
        discovery_url = f"{realm_url}/.well-known/openid-configuration"
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout, transport=self._transport
            ) as client:
                realm = await client.get(realm_url)
                if not realm.is_success:
                    return self._fail(realm_url, f"status {realm.status_code}")
                discovery = await client.get(discovery_url)
                if not discovery.is_success:
                    return self._fail(discovery_url, f"status {discovery.status_code}")
                payload = discovery.json()
        except httpx.HTTPError as exc:
            return self._fail(base_url, str(exc))
        except ValueError as exc:
            return self._fail(discovery_url, f"invalid JSON: {exc}")
        if not isinstance(payload, dict) or "issuer" not in payload:
            return self._fail(discovery_url, "discovery document has no issuer")
        return True

    def _fail(self, url: str, reason: str) -> bool:
        self._logger.warning("smoke_check_failed", url=url, reason=reason)
        return False


__all__ = ["CommandSmokeTestRunner", "HttpSmokeTestRunner", "SmokeTestRunner"]
