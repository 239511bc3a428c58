"""Tests for the retry policy and cancellation token."""

import asyncio

import pytest

from agentloop.cancellation import CancellationToken
from agentloop.errors import Cancelled, InvalidResponse, NetworkFailure
from agentloop.retry import RetryPolicy


def _failing(errors, result="ok"):
    """Operation that raises each of ``errors`` in turn, then returns ``result``."""
    calls = []

    async def operation():
        calls.append(1)
        if errors:
            raise errors.pop(0)
        return result

    return operation, calls


class TestRetryPolicy:
    """Test bounded exponential backoff."""

    @pytest.mark.asyncio
    async def test_retries_transient_failures(self):
        """Transient failures are retried until success."""
        policy = RetryPolicy(max_attempts=3, initial_backoff=0.0)
        operation, calls = _failing([NetworkFailure(TimeoutError()), NetworkFailure(TimeoutError())])

        assert await policy.execute(operation) == "ok"
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self):
        policy = RetryPolicy(max_attempts=2, initial_backoff=0.0)
        operation, calls = _failing([NetworkFailure(TimeoutError()) for _ in range(5)])

        with pytest.raises(NetworkFailure):
            await policy.execute(operation)
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_non_transient_error_not_retried(self):
        """HTTP errors propagate on the first attempt."""
        policy = RetryPolicy(max_attempts=3, initial_backoff=0.0)
        operation, calls = _failing([InvalidResponse(500)])

        with pytest.raises(InvalidResponse):
            await policy.execute(operation)
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_non_transient_network_failure_not_retried(self):
        policy = RetryPolicy(max_attempts=3, initial_backoff=0.0)
        operation, calls = _failing([NetworkFailure(ConnectionError(), transient=False)])

        with pytest.raises(NetworkFailure):
            await policy.execute(operation)
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_cancelled_during_backoff(self):
        """A cancelled token interrupts the backoff sleep."""
        policy = RetryPolicy(max_attempts=3, initial_backoff=30.0)
        token = CancellationToken()
        operation, calls = _failing([NetworkFailure(TimeoutError()) for _ in range(3)])

        asyncio.get_running_loop().call_later(0.05, token.cancel)
        with pytest.raises(Cancelled):
            await policy.execute(operation, token)
        assert len(calls) == 1

    def test_with_max_attempts_floor(self):
        assert RetryPolicy().with_max_attempts(0).max_attempts == 1
        assert RetryPolicy().with_max_attempts(5).max_attempts == 5

    def test_should_retry(self):
        assert RetryPolicy.should_retry(NetworkFailure(TimeoutError())) is True
        assert RetryPolicy.should_retry(InvalidResponse(404)) is False
        assert RetryPolicy.should_retry(ValueError()) is False


class TestCancellationToken:
    """Test cooperative cancellation."""

    def test_raise_if_cancelled(self):
        token = CancellationToken()
        token.raise_if_cancelled()
        token.cancel()
        assert token.cancelled is True
        with pytest.raises(Cancelled):
            token.raise_if_cancelled()

    @pytest.mark.asyncio
    async def test_wait_for_returns_result(self):
        async def compute():
            return 42

        assert await CancellationToken().wait_for(compute()) == 42

    @pytest.mark.asyncio
    async def test_wait_for_interrupted(self):
        """Cancelling the token unblocks a pending wait."""
        token = CancellationToken()
        asyncio.get_running_loop().call_later(0.05, token.cancel)

        with pytest.raises(Cancelled):
            await token.wait_for(asyncio.sleep(30))

    @pytest.mark.asyncio
    async def test_wait_for_already_cancelled(self):
        token = CancellationToken()
        token.cancel()
        with pytest.raises(Cancelled):
            await token.wait_for(asyncio.sleep(30))

    @pytest.mark.asyncio
    async def test_wait_for_propagates_errors(self):
        async def broken():
            raise ValueError("boom")

        with pytest.raises(ValueError, match="boom"):
            await CancellationToken().wait_for(broken())

    @pytest.mark.asyncio
    async def test_sleep_zero(self):
        await CancellationToken().sleep(0)
