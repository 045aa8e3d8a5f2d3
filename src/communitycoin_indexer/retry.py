"""Exponential-backoff retry for async calls."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from communitycoin_indexer.errors import RetryError

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_RETRY_BASE_DELAY = 0.5


@dataclass(frozen=True)
class RetryPolicy:
    """How often and how patiently a call is retried."""

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    base_delay: float = DEFAULT_RETRY_BASE_DELAY

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay < 0:
            raise ValueError("base_delay must be >= 0")

    def delay_for(self, attempt: int) -> float:
        """Backoff after the 0-based `attempt` failed."""
        return self.base_delay * (2**attempt)


async def call_with_retry(
    policy: RetryPolicy,
    func: Callable[[], Awaitable[T]],
    *,
    retry_on: tuple[type[Exception], ...] = (Exception,),
    description: str | None = None,
) -> T:
    """Await `func()`, retrying transient failures with exponential backoff.

    Args:
        policy: Attempt count and base delay (doubles with each retry).
        func: Zero-argument coroutine factory; called once per attempt.
        retry_on: Exception types that trigger a retry. Anything else
            propagates immediately.
        description: Name used in log lines (defaults to the function name).

    Returns:
        The result of the first successful attempt.

    Raises:
        RetryError: If every attempt failed with a retryable exception.
    """
    name = description or getattr(func, "__qualname__", repr(func))
    last_exception: Exception | None = None

    for attempt in range(policy.max_attempts):
        try:
            return await func()
        except retry_on as e:
            last_exception = e
            if attempt == policy.max_attempts - 1:
                break

            delay = policy.delay_for(attempt)
            logger.warning(
                "Attempt %d/%d of %s failed: %s. Retrying in %.1f seconds...",
                attempt + 1,
                policy.max_attempts,
                name,
                str(e),
                delay,
            )
            await asyncio.sleep(delay)

    raise RetryError(
        f"All {policy.max_attempts} attempts failed for {name}",
        last_exception=last_exception,
    )
