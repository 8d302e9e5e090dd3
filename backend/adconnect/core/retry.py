"""
Bounded exponential-backoff retry for outbound platform calls.

Delay before retry ``n`` (0-based) is ``base_delay * backoff_multiplier ** n``
seconds. Once attempts are exhausted the last error is re-raised unchanged so
callers can branch on its type.
"""

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

import structlog

from adconnect.adapters.base import PermanentProviderError, TransientProviderError
from adconnect.core.errors import AdConnectError
from adconnect.core.metrics import RETRY_ATTEMPTS

logger = structlog.get_logger()

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Retry parameters; ``retry_if=None`` retries every exception."""
    max_retries: int = 3
    base_delay: float = 1.0  # seconds
    backoff_multiplier: float = 2.0
    retry_if: Optional[Callable[[BaseException], bool]] = None

    def delay_for(self, attempt: int) -> float:
        return self.base_delay * self.backoff_multiplier ** attempt


def is_transient(error: BaseException) -> bool:
    """
    Classify an error as worth retrying.

    Provider errors carry their own classification. Domain errors
    (reauthentication, quota, not found) never succeed on a second try.
    Anything else, such as a network failure that escaped an adapter, is
    treated as transient.
    """
    if isinstance(error, TransientProviderError):
        return True
    if isinstance(error, (PermanentProviderError, AdConnectError)):
        return False
    return isinstance(error, Exception)


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    max_retries: int = 3,
    base_delay: float = 1.0,
    backoff_multiplier: float = 2.0,
    retry_if: Optional[Callable[[BaseException], bool]] = None,
) -> T:
    """
    Run ``operation`` with exponential-backoff retry.

    Args:
        operation: Zero-argument coroutine factory, called once per attempt
        max_retries: Additional attempts after the first
        base_delay: Delay before the first retry, in seconds
        backoff_multiplier: Growth factor between consecutive delays
        retry_if: Predicate selecting retryable errors (default: all)

    Returns:
        The first successful result

    Raises:
        The last error raised by ``operation``
    """
    policy = RetryPolicy(max_retries, base_delay, backoff_multiplier, retry_if)
    return await run_with_policy(operation, policy)


async def run_with_policy(
    operation: Callable[[], Awaitable[T]], policy: RetryPolicy
) -> T:
    attempt = 0
    while True:
        try:
            return await operation()
        except Exception as e:
            if attempt >= policy.max_retries:
                logger.warning(
                    "retry_exhausted",
                    attempts=attempt + 1,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                raise
            if policy.retry_if is not None and not policy.retry_if(e):
                raise

            delay = policy.delay_for(attempt)
            logger.info(
                "retry_scheduled",
                attempt=attempt + 1,
                max_retries=policy.max_retries,
                delay_seconds=delay,
                error_type=type(e).__name__,
            )
            RETRY_ATTEMPTS.labels(error_type=type(e).__name__).inc()
            await asyncio.sleep(delay)
            attempt += 1
