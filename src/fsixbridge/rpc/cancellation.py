"""Cancellation tokens for in-flight requests.

A CancellationTokenSource is held by whoever may cancel (e.g. the editor's
interrupt button); its token is handed to request-issuing operations.
Callbacks run synchronously on the event loop thread when ``cancel()`` is
called, or immediately on registration if the token is already cancelled.
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable
from typing import TypeVar

from fsixbridge.errors import RequestCancelledError
from fsixbridge.logging import get_logger

log = get_logger("rpc")

T = TypeVar("T")


class CancellationToken:
    """Read side of a cancellation signal."""

    def __init__(self) -> None:
        self._cancelled = False
        self._callbacks: list[Callable[[], None]] = []
        self._event: asyncio.Event | None = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def register(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Run ``callback`` on cancellation. Returns a function that unregisters it."""
        if self._cancelled:
            callback()
            return lambda: None

        self._callbacks.append(callback)

        def unregister() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return unregister

    async def wait(self) -> None:
        """Block until the token is cancelled."""
        if self._cancelled:
            return
        if self._event is None:
            self._event = asyncio.Event()
        await self._event.wait()

    def _fire(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        if self._event is not None:
            self._event.set()

        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception:
                log.exception("Cancellation callback failed")


class CancellationTokenSource:
    """Write side of a cancellation signal."""

    def __init__(self) -> None:
        self.token = CancellationToken()

    @property
    def cancelled(self) -> bool:
        return self.token.cancelled

    def cancel(self) -> None:
        self.token._fire()

    def cancel_after(self, delay: float) -> asyncio.TimerHandle:
        """Schedule ``cancel()`` on the running loop after ``delay`` seconds."""
        return asyncio.get_running_loop().call_later(delay, self.cancel)


async def with_cancellation(
    awaitable: Awaitable[T],
    token: CancellationToken | None,
    what: str = "operation",
) -> T:
    """Await ``awaitable`` unless ``token`` fires first.

    On cancellation the awaitable's task is cancelled and
    RequestCancelledError is raised without waiting for it to finish
    cooperating.
    """
    if token is None:
        return await awaitable
    if token.cancelled:
        if inspect.iscoroutine(awaitable):
            awaitable.close()
        raise RequestCancelledError(f"{what} was cancelled")

    task = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(token.wait())
    try:
        await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        waiter.cancel()
        if not task.done():
            task.cancel()

    if task.cancelled() or not task.done():
        raise RequestCancelledError(f"{what} was cancelled")
    return task.result()
