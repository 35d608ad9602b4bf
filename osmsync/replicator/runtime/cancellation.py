"""
Cooperative cancellation for the replication loops.

A CancellationToken is created by the process entry point, cancelled from
the SIGTERM/SIGINT handlers and passed to every component that waits.
Loops check it between units of work; every timed wait goes through
``token.sleep`` so a shutdown request never waits out a full delay.
"""

from __future__ import annotations

import asyncio
import contextlib
from typing import Awaitable, TypeVar

from ..errors import ShutdownRequested

T = TypeVar("T")


class CancellationToken:
    """Shutdown flag that timed waits can be interrupted by.

    Example:
        >>> token = CancellationToken()
        >>> interrupted = await token.sleep(60)  # returns early on cancel()
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        """Raise ShutdownRequested if cancellation was requested."""
        if self.cancelled:
            raise ShutdownRequested(self.reason or "Shutdown requested")

    async def wait(self) -> None:
        await self._event.wait()

    async def sleep(self, seconds: float) -> bool:
        """Sleep up to ``seconds``.

        Returns:
            True if the sleep was cut short by cancellation
        """
        if self.cancelled:
            return True
        if seconds <= 0:
            return False
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return False
        return True

    async def sleep_or_raise(self, seconds: float) -> None:
        """Sleep up to ``seconds``, raising ShutdownRequested if interrupted."""
        if await self.sleep(seconds):
            raise ShutdownRequested(self.reason or "Shutdown requested")

    async def run(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable``, cancelling it if the token is cancelled first.

        Raises:
            ShutdownRequested: If cancellation won the race
        """
        if self.cancelled:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise ShutdownRequested(self.reason or "Shutdown requested")
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except BaseException:
            task.cancel()
            raise
        finally:
            waiter.cancel()

        if task in done:
            return task.result()

        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        raise ShutdownRequested(self.reason or "Shutdown requested")
