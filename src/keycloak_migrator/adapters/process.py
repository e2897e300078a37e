"""
keycloak-migrator — external command execution

File: src/keycloak_migrator/adapters/process.py

Purpose
- One async seam through which every platform tool (pg_dump, kubectl, docker, kc.sh) runs.

What should be included in this file
- ``CommandSpec``/``CommandResult`` value types and the ``CommandExecutor`` protocol.
- ``LocalSubprocessExecutor`` with output capture, timeout and kill-on-cancel.
- ``raise_for_result`` mapping a finished command onto the operation error taxonomy.

Functional requirements
- A timed-out command is killed and reported as ``OperationTimeoutError``.
- A failure whose stderr looks like a connectivity or lock problem is transient;
  anything else non-zero is permanent.
- Captured output is redacted before it reaches logs or error messages.
"""

from __future__ import annotations

import asyncio
import os
import re
import time
from collections.abc import Mapping
from contextlib import suppress
from dataclasses import dataclass, field
from typing import Final, Protocol, runtime_checkable

from keycloak_migrator.domain.errors import (
    OperationTimeoutError,
    PermanentOperationError,
    TransientOperationError,
)
from keycloak_migrator.observability.logging import redact_text

_MAX_OUTPUT_CHARS: Final[int] = 200_000
_TRANSIENT_STDERR_RE: Final[re.Pattern[str]] = re.compile(
    r"connection refused|could not connect|connection reset|timeout expired|timed out"
    r"|too many connections|deadlock detected|could not obtain lock|lock timeout"
    r"|the database system is starting up|temporarily unavailable|i/o timeout"
    r"|TLS handshake timeout|the server is currently unable",
    re.IGNORECASE,
)


@dataclass(slots=True)
class CommandSpec:
    """Portable command invocation; ``env`` is layered over the inherited environment."""

    argv: tuple[str, ...]
    env: Mapping[str, str] = field(default_factory=dict)
    stdin_text: str | None = None
    timeout_seconds: float | None = None
    cwd: str | None = None

    def __post_init__(self) -> None:
        self.argv = tuple(str(part) for part in self.argv)
        if not self.argv:
            raise ValueError("CommandSpec.argv must not be empty")
        if self.timeout_seconds is not None and self.timeout_seconds <= 0:
            raise ValueError("CommandSpec.timeout_seconds must be > 0")

    @property
    def display(self) -> str:
        return redact_text(" ".join(self.argv))

    def build_env(self) -> dict[str, str] | None:
        if not self.env:
            return None
        env = dict(os.environ)
        env.update(self.env)
        return env


@dataclass(slots=True)
class CommandResult:
    argv: tuple[str, ...]
    exit_code: int | None
    stdout: str
    stderr: str
    duration_ms: int
    timed_out: bool = False
    error: str | None = None

    @property
    def ok(self) -> bool:
        return not self.timed_out and self.error is None and self.exit_code == 0


@runtime_checkable
class CommandExecutor(Protocol):
    async def run(self, spec: CommandSpec) -> CommandResult: ...


class LocalSubprocessExecutor:
    """Runs commands with ``asyncio.create_subprocess_exec``; never raises for exit status."""

    def __init__(
        self,
        *,
        default_timeout_seconds: float | None = None,
        max_output_chars: int | None = _MAX_OUTPUT_CHARS,
    ) -> None:
        if default_timeout_seconds is not None and default_timeout_seconds <= 0:
            raise ValueError("default_timeout_seconds must be > 0")
        self._default_timeout = default_timeout_seconds
        self._max_output_chars = max_output_chars

    async def run(self, spec: CommandSpec) -> CommandResult:
        started_ns = time.monotonic_ns()
        timeout = spec.timeout_seconds
        if timeout is None:
            timeout = self._default_timeout

        try:
            process = await asyncio.create_subprocess_exec(
                *spec.argv,
                cwd=spec.cwd,
                env=spec.build_env(),
                stdin=(
                    asyncio.subprocess.PIPE
                    if spec.stdin_text is not None
                    else asyncio.subprocess.DEVNULL
                ),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            return CommandResult(
                argv=spec.argv,
                exit_code=None,
                stdout="",
                stderr="",
                duration_ms=_elapsed_ms(started_ns),
                error=redact_text(str(exc)),
            )

        stdin_bytes = spec.stdin_text.encode("utf-8") if spec.stdin_text is not None else None
        try:
            stdout_bytes, stderr_bytes = await _communicate_with_timeout(
                process=process, stdin_bytes=stdin_bytes, timeout_seconds=timeout
            )
            timed_out = False
            exit_code = process.returncode
        except _CommandTimeoutError as exc:
            stdout_bytes, stderr_bytes = exc.stdout, exc.stderr
            timed_out = True
            exit_code = None

        return CommandResult(
            argv=spec.argv,
            exit_code=exit_code,
            stdout=self._clean(stdout_bytes),
            stderr=self._clean(stderr_bytes),
            duration_ms=_elapsed_ms(started_ns),
            timed_out=timed_out,
            error=f"command timed out after {timeout:g}s" if timed_out and timeout else None,
        )

    def _clean(self, raw: bytes) -> str:
        text = raw.decode("utf-8", errors="replace").replace("\r\n", "\n")
        if self._max_output_chars is not None and len(text) > self._max_output_chars:
            omitted = len(text) - self._max_output_chars
            text = f"{text[: self._max_output_chars]}\n...[truncated {omitted} chars]"
        return redact_text(text)


def raise_for_result(result: CommandResult, *, operation: str) -> CommandResult:
    """Return ``result`` when it succeeded; otherwise raise the matching operation error."""

    if result.ok:
        return result
    if result.timed_out:
        raise OperationTimeoutError(
            result.error or "command timed out", operation=operation
        )
    if result.exit_code is None:
        raise PermanentOperationError(
            f"could not start {result.argv[0]}: {result.error}", operation=operation
        )
    detail = _tail(result.stderr) or _tail(result.stdout) or "no output"
    message = f"exit code {result.exit_code}: {detail}"
    if _TRANSIENT_STDERR_RE.search(result.stderr):
        raise TransientOperationError(message, operation=operation)
    raise PermanentOperationError(message, operation=operation)


@dataclass(slots=True)
class _CommandTimeoutError(Exception):
    stdout: bytes
    stderr: bytes


async def _communicate_with_timeout(
    *,
    process: asyncio.subprocess.Process,
    stdin_bytes: bytes | None,
    timeout_seconds: float | None,
) -> tuple[bytes, bytes]:
    try:
        if timeout_seconds is None:
            return await process.communicate(stdin_bytes)
        return await asyncio.wait_for(process.communicate(stdin_bytes), timeout=timeout_seconds)
    except TimeoutError as exc:
        with suppress(ProcessLookupError):
            process.kill()
        stdout_bytes, stderr_bytes = await process.communicate()
        raise _CommandTimeoutError(stdout=stdout_bytes, stderr=stderr_bytes) from exc
    except asyncio.CancelledError:
        with suppress(ProcessLookupError):
            process.kill()
        await process.communicate()
        raise


def _elapsed_ms(started_ns: int) -> int:
    return max(0, (time.monotonic_ns() - started_ns) // 1_000_000)


def _tail(text: str, lines: int = 5) -> str:
    stripped = [line for line in text.strip().splitlines() if line.strip()]
    return " | ".join(stripped[-lines:])


__all__ = [
    "CommandExecutor",
    "CommandResult",
    "CommandSpec",
    "LocalSubprocessExecutor",
    "raise_for_result",
]
