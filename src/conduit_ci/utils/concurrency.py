"""Async cancellation and timeout primitives used by the executor and coordinator."""

from __future__ import annotations

import asyncio
import inspect
from contextlib import suppress
from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from collections.abc import Awaitable

T = TypeVar("T")


class CancellationToken:
    """Cooperative cancellation token backed by ``asyncio.Event``."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None

    def cancel(self, reason: str | None = None) -> None:
        if not self._event.is_set():
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
        if self._event.is_set():
            raise asyncio.CancelledError(self._reason or "operation cancelled")


async def run_with_timeout(
    coroutine: Awaitable[T],
    timeout_seconds: float,
    cancel_token: CancellationToken | None = None,
) -> T:
    """
    Run ``coroutine`` with timeout and cooperative cancellation support.

    Raises ``TimeoutError`` when the deadline passes first and
    ``asyncio.CancelledError`` when ``cancel_token`` fires first. In both cases
    the inner task is cancelled and awaited before returning.
    """
    if timeout_seconds <= 0:
        _close_unscheduled_coroutine(coroutine)
        raise ValueError("timeout_seconds must be > 0")

    token = cancel_token or CancellationToken()
    if token.is_cancelled:
        _close_unscheduled_coroutine(coroutine)
        raise asyncio.CancelledError("operation cancelled")

    task: asyncio.Task[T] = asyncio.create_task(_await_value(coroutine))
    cancel_wait_task = asyncio.create_task(token.wait())

    try:
        done, _ = await asyncio.wait(
            {task, cancel_wait_task},
            timeout=timeout_seconds,
            return_when=asyncio.FIRST_COMPLETED,
        )

        if task in done:
            return await task

        task.cancel()
        with suppress(asyncio.CancelledError):
            await task

        if cancel_wait_task in done and token.is_cancelled:
            raise asyncio.CancelledError("operation cancelled")
        raise TimeoutError(f"operation timed out after {timeout_seconds} seconds")
    finally:
        # Reached with the inner task pending when the caller itself is cancelled.
        if not task.done():
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        cancel_wait_task.cancel()
        with suppress(asyncio.CancelledError):
            await cancel_wait_task


async def sleep_or_cancel(delay_seconds: float, cancel_token: CancellationToken | None = None) -> bool:
    """
    Sleep for ``delay_seconds`` unless ``cancel_token`` fires first.

    Returns ``True`` when the full delay elapsed and ``False`` when cancelled.
    """
    token = cancel_token or CancellationToken()
    if token.is_cancelled:
        return False
    if delay_seconds <= 0:
        return True
    try:
        await asyncio.wait_for(token.wait(), timeout=delay_seconds)
    except TimeoutError:
        return True
    return False


async def _await_value(awaitable: Awaitable[T]) -> T:
    return await awaitable


def _close_unscheduled_coroutine(awaitable: Awaitable[object]) -> None:
    # Close raw coroutine objects that were never scheduled so CPython does not
    # emit "coroutine was never awaited" at GC time.
    if inspect.iscoroutine(awaitable):
        awaitable.close()


__all__ = [
    "CancellationToken",
    "run_with_timeout",
    "sleep_or_cancel",
]
