"""
Cooperative cancellation.

A CancellationContext links one or more asyncio events, typically the
process shutdown event and the job's own cancel event. Long running
operations call ``raise_if_cancelled()`` at their checkpoints, pause
through ``sleep()`` and wrap remote calls with ``run()`` so that every
suspend point observes the same signal.

Cancellation surfaces as ``asyncio.CancelledError``; runners translate it
into a Cancelled job status.
"""

import asyncio
from typing import Awaitable, Optional, TypeVar

T = TypeVar("T")


class CancellationContext:
    """Linked cancellation signal shared by a job and the process."""

    def __init__(self, *events: asyncio.Event):
        self._events = tuple(events)

    @classmethod
    def none(cls) -> "CancellationContext":
        """A context that is never cancelled."""
        return cls()

    def linked(self, *events: asyncio.Event) -> "CancellationContext":
        return CancellationContext(*self._events, *events)

    @property
    def cancelled(self) -> bool:
        return any(event.is_set() for event in self._events)

    def raise_if_cancelled(self):
        if self.cancelled:
            raise asyncio.CancelledError("Operation cancelled")

    async def _wait_any(self):
        waiters = [asyncio.ensure_future(event.wait()) for event in self._events]
        try:
            await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                waiter.cancel()

    async def sleep(self, seconds: float):
        """Pause that ends early, with CancelledError, when the context is cancelled."""
        self.raise_if_cancelled()
        if seconds <= 0:
            await asyncio.sleep(0)
            return
        if not self._events:
            await asyncio.sleep(seconds)
            return
        try:
            await asyncio.wait_for(self._wait_any(), timeout=seconds)
        except asyncio.TimeoutError:
            pass
        self.raise_if_cancelled()

    async def run(self, awaitable: Awaitable[T], timeout: Optional[float] = None) -> T:
        """
        Await a remote call under this context.

        The call is abandoned when the context is cancelled or the timeout
        elapses (asyncio.TimeoutError).
        """
        self.raise_if_cancelled()
        task = asyncio.ensure_future(awaitable)
        if not self._events:
            return await asyncio.wait_for(task, timeout=timeout)

        watcher = asyncio.ensure_future(self._wait_any())
        try:
            done, _ = await asyncio.wait(
                {task, watcher},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            watcher.cancel()

        if task in done:
            return task.result()

        task.cancel()
        self.raise_if_cancelled()
        raise asyncio.TimeoutError(f"Operation timed out after {timeout}s")
