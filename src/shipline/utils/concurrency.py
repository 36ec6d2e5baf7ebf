"""Cooperative cancellation and bounded waits for stage execution."""

from __future__ import annotations

import asyncio
import inspect
from contextlib import suppress
from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from collections.abc import Awaitable

T = TypeVar("T")

_DEFAULT_REASON = "operation cancelled"


class CancellationToken:
    """Run-wide cancellation flag that stages can await on.

    The first ``cancel`` wins: later calls keep the original reason.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None

    def cancel(self, reason: str | None = None) -> None:
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self.is_cancelled:
            raise asyncio.CancelledError(self._reason or _DEFAULT_REASON)


async def run_with_timeout(
    coroutine: Awaitable[T],
    timeout_seconds: float,
    cancel_token: CancellationToken | None = None,
) -> T:
    """Await ``coroutine`` for at most ``timeout_seconds``.

    ``TimeoutError`` is raised when the deadline passes and
    ``asyncio.CancelledError`` when ``cancel_token`` fires first. Either way the
    work is cancelled and fully unwound before this returns, so a child process
    owned by the work has been reaped.
    """
    if timeout_seconds <= 0:
        _discard(coroutine)
        raise ValueError("timeout_seconds must be > 0")
    token = cancel_token or CancellationToken()
    if token.is_cancelled:
        _discard(coroutine)
        raise asyncio.CancelledError(token.reason or _DEFAULT_REASON)

    work: asyncio.Task[T] = asyncio.ensure_future(coroutine)
    watcher = asyncio.ensure_future(token.wait())
    try:
        done, _pending = await asyncio.wait(
            {work, watcher}, timeout=timeout_seconds, return_when=asyncio.FIRST_COMPLETED
        )
        if work in done:
            return work.result()
        await _cancel_and_wait(work)
        if watcher in done:
            raise asyncio.CancelledError(token.reason or _DEFAULT_REASON)
        raise TimeoutError(f"operation timed out after {timeout_seconds} seconds")
    finally:
        await _cancel_and_wait(work)
        await _cancel_and_wait(watcher)


async def _cancel_and_wait(task: asyncio.Future[object]) -> None:
    if task.done():
        return
    task.cancel()
    with suppress(asyncio.CancelledError):
        await task


def _discard(awaitable: Awaitable[object]) -> None:
    # A coroutine that is never scheduled must be closed to avoid a GC warning.
    if inspect.iscoroutine(awaitable):
        awaitable.close()


__all__ = [
    "CancellationToken",
    "run_with_timeout",
]
