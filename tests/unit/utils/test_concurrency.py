"""Unit tests for async concurrency helpers."""

from __future__ import annotations

import asyncio

import pytest

from buildwave.utils.concurrency import (
    BoundedSemaphore,
    CancellationToken,
    SuspensionGate,
    run_with_timeout,
)


async def _slow(delay: float) -> int:
    await asyncio.sleep(delay)
    return 1


@pytest.mark.asyncio
async def test_run_with_timeout_returns_result() -> None:
    assert await run_with_timeout(_slow(0.01), timeout_seconds=1.0) == 1


@pytest.mark.asyncio
async def test_run_with_timeout_raises_on_expiry() -> None:
    with pytest.raises(TimeoutError):
        await run_with_timeout(_slow(1.0), timeout_seconds=0.01)


@pytest.mark.asyncio
async def test_run_with_timeout_honours_cancellation() -> None:
    token = CancellationToken()
    token.cancel()

    with pytest.raises(asyncio.CancelledError):
        await run_with_timeout(_slow(1.0), timeout_seconds=1.0, cancel_token=token)


@pytest.mark.asyncio
async def test_run_with_timeout_rejects_non_positive_timeout() -> None:
    with pytest.raises(ValueError):
        await run_with_timeout(_slow(0.01), timeout_seconds=0)


@pytest.mark.asyncio
async def test_semaphore_tracks_peak_usage() -> None:
    semaphore = BoundedSemaphore(2)

    async def worker() -> None:
        async with semaphore.permit():
            await asyncio.sleep(0.01)

    await asyncio.gather(*(worker() for _ in range(5)))

    assert semaphore.snapshot() == {"limit": 2, "in_use": 0, "peak": 2}
    with pytest.raises(RuntimeError):
        semaphore.release()


def test_suspension_gate_keeps_first_reason() -> None:
    gate = SuspensionGate()
    gate.suspend("feature-build/api:backend")
    gate.suspend("later")

    assert gate.suspended
    assert gate.reason == "feature-build/api:backend"
    gate.resume()
    assert not gate.suspended and gate.reason is None
