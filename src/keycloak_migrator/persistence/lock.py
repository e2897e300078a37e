"""Per-run advisory lock so two invocations never interleave checkpoint writes."""

from __future__ import annotations

import asyncio
import contextlib
import fcntl
import json
import os
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Final

import structlog

from keycloak_migrator.constants import LOCKS_DIR
from keycloak_migrator.domain.errors import LockAcquisitionError
from keycloak_migrator.utils.hashing import sha256_text

DEFAULT_RETRY_INTERVAL: Final[float] = 0.5


class RunLock:
    """``fcntl.flock`` on ``<workspace>/locks/<sha256(key)[:16]>.lock``.

    The lock is held by the open file descriptor, so the kernel releases it if the process
    dies. ``timeout=0`` means a single non-blocking attempt.
    """

    def __init__(
        self,
        workspace: Path | str,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        logger: Any | None = None,
    ) -> None:
        self.directory = Path(workspace) / LOCKS_DIR
        self._clock = clock
        self._sleep = sleep
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def path_for(self, key: str) -> Path:
        return self.directory / f"{sha256_text(key)[:16]}.lock"

    @asynccontextmanager
    async def acquire(
        self,
        key: str,
        *,
        timeout: float = 0.0,
        retry_interval: float = DEFAULT_RETRY_INTERVAL,
    ) -> AsyncIterator[Path]:
        if timeout < 0:
            raise ValueError("timeout must be >= 0")
        if retry_interval <= 0:
            raise ValueError("retry_interval must be > 0")

        path = self.path_for(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o644)
        except OSError as exc:
            raise LockAcquisitionError(key, str(exc), timeout) from exc

        try:
            await self._lock_fd(fd, key, timeout, retry_interval)
        except BaseException:
            os.close(fd)
            raise

        try:
            _write_owner(fd, key)
            self._logger.debug("run_lock_acquired", lock_path=str(path))
            yield path
        finally:
            with contextlib.suppress(OSError):
                fcntl.flock(fd, fcntl.LOCK_UN)
            os.close(fd)
            self._logger.debug("run_lock_released", lock_path=str(path))

    async def _lock_fd(self, fd: int, key: str, timeout: float, retry_interval: float) -> None:
        deadline = self._clock() + timeout
        while True:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                return
            except BlockingIOError:
                pass
            except OSError as exc:
                raise LockAcquisitionError(key, str(exc), timeout) from exc

            remaining = deadline - self._clock()
            if remaining <= 0:
                raise LockAcquisitionError(
                    key, f"held by another invocation ({_read_owner(fd)})", timeout
                )
            await self._sleep(min(retry_interval, remaining))


def _write_owner(fd: int, key: str) -> None:
    payload = json.dumps(
        {
            "pid": os.getpid(),
            "key": key,
            "acquired_at": datetime.now(tz=UTC).isoformat(timespec="seconds"),
        }
    ).encode("utf-8")
    os.ftruncate(fd, 0)
    os.pwrite(fd, payload, 0)


def _read_owner(fd: int) -> str:
    try:
        raw = os.pread(fd, 4096, 0)
        owner = json.loads(raw.decode("utf-8")) if raw else {}
    except (OSError, ValueError):
        return "owner unknown"
    pid = owner.get("pid") if isinstance(owner, dict) else None
    return f"pid {pid}" if pid is not None else "owner unknown"


__all__ = ["DEFAULT_RETRY_INTERVAL", "RunLock"]
