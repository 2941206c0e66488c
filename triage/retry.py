"""
Retry and timeout helpers for external calls.

Every call to the reasoning engine, record store and ledger goes through
`with_timeout`; idempotent reads and transient write failures go through
`retry_async`. Semantic rejections (validation, conflict, not found) are
never retried.
"""

from typing import Awaitable, Callable, Type, TypeVar
import asyncio
import random

import structlog

from triage.config import RetryPolicy
from triage.errors import OperationTimeoutError, is_transient

logger = structlog.get_logger()

T = TypeVar("T")


def backoff_delay(policy: RetryPolicy, attempt: int) -> float:
    """Delay to wait after failed attempt number `attempt` (1-based)."""
    delay = min(policy.max_delay_s, policy.base_delay_s * (2 ** (attempt - 1)))
    if policy.jitter:
        delay = delay + random.uniform(0, delay / 2)
    return delay


async def retry_async(
    fn: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy,
    operation: str,
    retry_if: Callable[[BaseException], bool] = is_transient,
) -> T:
    """
    Run `fn` until it succeeds, the error is not retryable, or the
    attempt budget is spent.

    Args:
        fn: Zero-argument coroutine factory (called once per attempt)
        policy: Attempt budget and backoff
        operation: Name used in log events
        retry_if: Predicate deciding whether an error may be retried

    Returns:
        Result of the first successful attempt

    Raises:
        The last error raised by `fn`
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await fn()
        except Exception as e:
            if attempt >= policy.max_attempts or not retry_if(e):
                raise
            delay = backoff_delay(policy, attempt)
            logger.warning(
                "retrying_operation",
                operation=operation,
                attempt=attempt,
                max_attempts=policy.max_attempts,
                delay_s=round(delay, 3),
                error_type=type(e).__name__,
                error=str(e),
            )
            await asyncio.sleep(delay)


async def with_timeout(
    awaitable: Awaitable[T],
    seconds: float,
    operation: str,
    error_cls: Type[OperationTimeoutError] = OperationTimeoutError,
) -> T:
    """Await `awaitable`, converting expiry into a typed timeout error."""
    try:
        return await asyncio.wait_for(awaitable, timeout=seconds)
    except asyncio.TimeoutError as e:
        # On 3.11+ asyncio.TimeoutError is the builtin, which our own
        # typed timeouts also derive from.
        if isinstance(e, OperationTimeoutError):
            raise
        raise error_cls(
            f"{operation} exceeded timeout of {seconds}s",
            operation=operation,
            details={"timeout_s": seconds},
        ) from None
