"""Tests for the async retry helper."""

from unittest.mock import AsyncMock

import pytest

from communitycoin_indexer.errors import ChainReadError, RetryError
from communitycoin_indexer.retry import RetryPolicy, call_with_retry


def test_delay_doubles() -> None:
    policy = RetryPolicy(max_attempts=4, base_delay=0.5)

    assert [policy.delay_for(i) for i in range(3)] == [0.5, 1.0, 2.0]


def test_invalid_policy() -> None:
    with pytest.raises(ValueError):
        RetryPolicy(max_attempts=0)
    with pytest.raises(ValueError):
        RetryPolicy(base_delay=-1)


@pytest.mark.asyncio
async def test_returns_first_success() -> None:
    func = AsyncMock(side_effect=[ChainReadError("flaky"), 42])

    assert await call_with_retry(RetryPolicy(max_attempts=3, base_delay=0), func) == 42
    assert func.await_count == 2


@pytest.mark.asyncio
async def test_exhaustion_carries_last_exception() -> None:
    last = ChainReadError("still down")
    func = AsyncMock(side_effect=[ChainReadError("down"), last])

    with pytest.raises(RetryError) as exc_info:
        await call_with_retry(RetryPolicy(max_attempts=2, base_delay=0), func, description="get_logs")

    assert exc_info.value.last_exception is last
    assert "get_logs" in str(exc_info.value)


@pytest.mark.asyncio
async def test_non_retryable_propagates_immediately() -> None:
    func = AsyncMock(side_effect=KeyError("bug"))

    with pytest.raises(KeyError):
        await call_with_retry(RetryPolicy(max_attempts=3, base_delay=0), func, retry_on=(ChainReadError,))

    assert func.await_count == 1
