"""Cooperative cancellation token threaded through every suspension point."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, TypeVar

from agentloop.errors import Cancelled

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CancellationToken:
    """Cancellation flag for one user request.

    Streaming code polls ``raise_if_cancelled`` once per received line; waits
    that may block indefinitely (approval, tool execution, backoff) go through
    ``wait_for`` so they unblock as soon as the token fires.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise Cancelled()

    async def wait_for(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless the token fires first.

        Raises:
            Cancelled: If the token is cancelled before the awaitable finishes.
                The awaitable is cancelled and awaited before raising.
        """
        if self._event.is_set():
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise Cancelled()
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()

        if task in done:
            return task.result()

        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.warning(f"Error while cancelling pending operation: {e}")
        raise Cancelled()

    async def sleep(self, delay: float) -> None:
        """Sleep for ``delay`` seconds, waking early with ``Cancelled``."""
        if delay <= 0:
            self.raise_if_cancelled()
            return
        await self.wait_for(asyncio.sleep(delay))
