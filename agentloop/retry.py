"""Exponential backoff for transient network failures."""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Awaitable, Callable, TypeVar

from agentloop.cancellation import CancellationToken
from agentloop.errors import Cancelled, NetworkFailure, UnknownError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Retry settings: bounded attempts with exponential backoff."""

    max_attempts: int = 3
    initial_backoff: float = 2.0
    multiplier: float = 2.0

    def with_max_attempts(self, max_attempts: int) -> RetryPolicy:
        return replace(self, max_attempts=max(1, max_attempts))

    @staticmethod
    def should_retry(error: BaseException) -> bool:
        """Only timeouts, dropped connections and missing connectivity are retried."""
        return isinstance(error, NetworkFailure) and error.transient

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        token: CancellationToken | None = None,
    ) -> T:
        """Run ``operation``, retrying transient failures.

        Args:
            operation: Zero-argument coroutine factory, called once per attempt
            token: Cancellation token checked between attempts

        Returns:
            The first successful result

        Raises:
            The last error once attempts are exhausted, or any non-retryable
            error immediately.
        """
        token = token or CancellationToken()
        backoff = self.initial_backoff

        for attempt in range(1, self.max_attempts + 1):
            try:
                return await operation()
            except Cancelled:
                raise
            except Exception as e:
                token.raise_if_cancelled()
                if not self.should_retry(e) or attempt == self.max_attempts:
                    raise
                logger.warning(
                    f"Attempt {attempt}/{self.max_attempts} failed: {e}. Retrying in {backoff:.1f}s..."
                )
                await token.sleep(backoff)
                backoff *= self.multiplier

        raise UnknownError("Retry policy failed unexpectedly")
