"""Async primitives shared by dispatch, integration and verification."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager, suppress
from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable
    from typing import Any

T = TypeVar("T")


class CancellationToken:
    """Run-wide cooperative cancellation flag."""

    def __init__(self) -> None:
        self._cancelled = asyncio.Event()

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        self._cancelled.set()

    async def wait(self) -> None:
        await self._cancelled.wait()

    def raise_if_cancelled(self) -> None:
        if self.is_cancelled:
            raise asyncio.CancelledError("operation cancelled")


class SuspensionGate:
    """Closed while an escalation is open: no new work is issued, in-flight work finishes.

    The first suspension reason wins until ``resume``.
    """

    def __init__(self) -> None:
        self._reason: str | None = None

    @property
    def suspended(self) -> bool:
        return self._reason is not None

    @property
    def reason(self) -> str | None:
        return self._reason

    def suspend(self, reason: str) -> None:
        self._reason = self._reason or reason

    def resume(self) -> None:
        self._reason = None


class BoundedSemaphore:
    """``asyncio.Semaphore`` that also reports how many permits are held and the peak."""

    def __init__(self, limit: int) -> None:
        if limit <= 0:
            raise ValueError("limit must be > 0")
        self._limit = limit
        self._permits = asyncio.Semaphore(limit)
        self._held = 0
        self._peak = 0

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def in_use(self) -> int:
        return self._held

    @property
    def peak(self) -> int:
        return self._peak

    async def acquire(self) -> None:
        await self._permits.acquire()
        self._held += 1
        if self._held > self._peak:
            self._peak = self._held

    def release(self) -> None:
        if not self._held:
            raise RuntimeError("release called more times than acquire")
        self._held -= 1
        self._permits.release()

    @asynccontextmanager
    async def permit(self) -> AsyncIterator[None]:
        await self.acquire()
        try:
            yield
        finally:
            self.release()

    def snapshot(self) -> dict[str, int]:
        return {"limit": self.limit, "in_use": self.in_use, "peak": self.peak}


async def run_with_timeout(
    awaitable: Awaitable[T],
    timeout_seconds: float,
    cancel_token: CancellationToken | None = None,
) -> T:
    """Await ``awaitable`` for at most ``timeout_seconds``.

    Raises ``TimeoutError`` on expiry and ``asyncio.CancelledError`` when ``cancel_token``
    fires first; in both cases the work itself is cancelled.
    """
    if timeout_seconds <= 0 or (cancel_token is not None and cancel_token.is_cancelled):
        if asyncio.iscoroutine(awaitable):
            awaitable.close()
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        raise asyncio.CancelledError("operation cancelled")

    work: asyncio.Future[T] = asyncio.ensure_future(awaitable)
    watchers: set[asyncio.Future[Any]] = {work}
    cancelled: asyncio.Task[None] | None = None
    if cancel_token is not None:
        cancelled = asyncio.create_task(cancel_token.wait())
        watchers.add(cancelled)
    try:
        await asyncio.wait(watchers, timeout=timeout_seconds, return_when=asyncio.FIRST_COMPLETED)
        if work.done():
            return work.result()
        if cancelled is not None and cancelled.done():
            raise asyncio.CancelledError("operation cancelled")
        raise TimeoutError(f"operation timed out after {timeout_seconds} seconds")
    finally:
        for pending in watchers:
            if not pending.done():
                pending.cancel()
                with suppress(asyncio.CancelledError):
                    await pending


__all__ = [
    "BoundedSemaphore",
    "CancellationToken",
    "SuspensionGate",
    "run_with_timeout",
]
