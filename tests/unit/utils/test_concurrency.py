"""Regression tests for concurrency utility edge cases."""

from __future__ import annotations

import asyncio
import gc
import sys
import warnings
from contextlib import contextmanager
from types import SimpleNamespace
from typing import TYPE_CHECKING

import pytest

from keycloak_migrator.utils.concurrency import (
    BoundedSemaphore,
    CancellationToken,
    WorkerPool,
    run_with_timeout,
)

if TYPE_CHECKING:
    from collections.abc import Iterator


@contextmanager
def _capture_unraisable() -> Iterator[list[SimpleNamespace]]:
    captured: list[SimpleNamespace] = []
    original = sys.unraisablehook

    def hook(unraisable: object) -> None:
        captured.append(
            SimpleNamespace(
                exc_type=getattr(unraisable, "exc_type", None),
                err_msg=getattr(unraisable, "err_msg", None),
            )
        )

    sys.unraisablehook = hook
    try:
        yield captured
    finally:
        sys.unraisablehook = original


async def _slow() -> int:
    await asyncio.sleep(0.01)
    return 1


async def _slower() -> int:
    await asyncio.sleep(0.05)
    return 1


async def _value_after(value: int, delay: float) -> int:
    await asyncio.sleep(delay)
    return value


async def test_run_with_timeout_returns_the_value() -> None:
    assert await run_with_timeout(_slow(), 1.0) == 1


async def test_run_with_timeout_does_not_leak_coroutine_on_early_cancel() -> None:
    token = CancellationToken()
    token.cancel()

    with _capture_unraisable() as leaked, warnings.catch_warnings():
        warnings.simplefilter("error", RuntimeWarning)
        coro = _slow()
        with pytest.raises(asyncio.CancelledError):
            await run_with_timeout(coro, 1.0, token)
        del coro
        gc.collect()

    assert leaked == []


async def test_run_with_timeout_timeout_path_does_not_leak_coroutine() -> None:
    with _capture_unraisable() as leaked, warnings.catch_warnings():
        warnings.simplefilter("error", RuntimeWarning)
        with pytest.raises(TimeoutError, match="timed out after 0.001 seconds"):
            await run_with_timeout(_slower(), 0.001, None)
        gc.collect()

    assert leaked == []


async def test_run_with_timeout_stops_when_cancelled_midway() -> None:
    token = CancellationToken()
    asyncio.get_running_loop().call_later(0.01, token.cancel)

    with pytest.raises(asyncio.CancelledError):
        await run_with_timeout(asyncio.sleep(5), 2.0, token)


async def test_run_with_timeout_rejects_non_positive_bounds() -> None:
    with pytest.raises(ValueError, match="timeout_seconds"):
        await run_with_timeout(_slow(), 0)


async def test_collect_keeps_submission_order() -> None:
    pool: WorkerPool[int] = WorkerPool(max_concurrency=3)

    results = await pool.collect(
        [_value_after(1, 0.03), _value_after(2, 0.0), _value_after(3, 0.01)]
    )

    assert results == [1, 2, 3]


async def test_pool_respects_its_bound() -> None:
    active = 0
    peak = 0

    async def work(value: int) -> int:
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        await asyncio.sleep(0.005)
        active -= 1
        return value

    pool: WorkerPool[int] = WorkerPool(max_concurrency=2)
    results = await pool.collect(work(index) for index in range(6))

    assert results == list(range(6))
    assert peak == 2
    assert pool.peak_limit == 2


async def test_first_failure_cancels_the_rest() -> None:
    finished: list[str] = []

    async def fail() -> str:
        await asyncio.sleep(0)
        raise RuntimeError("replica keycloak-1 unhealthy")

    async def slow() -> str:
        await asyncio.sleep(1)
        finished.append("slow")
        return "slow"

    pool: WorkerPool[str] = WorkerPool(max_concurrency=2)
    with pytest.raises(RuntimeError, match="keycloak-1"):
        await pool.collect([fail(), slow()])

    assert finished == []


async def test_cancelled_token_schedules_nothing() -> None:
    token = CancellationToken()
    token.cancel()
    pool: WorkerPool[int] = WorkerPool(max_concurrency=1, cancel_token=token)
    pending: asyncio.Future[int] = asyncio.get_running_loop().create_future()

    with pytest.raises(asyncio.CancelledError):
        await pool.collect([pending])

    assert not pending.done()


async def test_semaphore_tracks_permits() -> None:
    semaphore = BoundedSemaphore(2)

    async with semaphore.permit():
        assert semaphore.in_use == 1
    assert semaphore.in_use == 0
    with pytest.raises(RuntimeError, match="more times than acquire"):
        semaphore.release()
    with pytest.raises(ValueError, match="limit"):
        BoundedSemaphore(0)
    with pytest.raises(ValueError, match="max_concurrency"):
        WorkerPool(max_concurrency=0)
