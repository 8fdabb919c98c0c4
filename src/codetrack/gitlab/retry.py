"""
Bounded retry for single GitLab calls.

  - 429: retried up to `rate_limit_retries` times with exponential backoff
    (base, 2*base, 4*base ...). A smaller Retry-After from the server wins.
  - 5xx and timeouts: retried once after `backoff` seconds.
  - Everything else (auth, not found, malformed): raised immediately.

Only the one request is delayed; other projects keep running meanwhile.
"""
import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from codetrack.gitlab.errors import (
    GitLabRateLimitError,
    GitLabServerError,
    GitLabTimeoutError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSIENT_RETRIES = 1


async def call_with_retry(
    fn: Callable[[], Awaitable[T]],
    *,
    rate_limit_retries: int = 3,
    backoff: float = 2.0,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    label: str = "GitLab request",
) -> T:
    """
    Await fn(), retrying per the policy above.

    Args:
        fn: Zero-argument coroutine factory (called once per attempt).
        rate_limit_retries: Max retries after a 429.
        backoff: Base delay in seconds.
        sleep: Injected for tests.
        label: Used in log lines.

    Raises:
        The last error once retries are exhausted.
    """
    rate_limited = 0
    transient = 0
    while True:
        try:
            return await fn()
        except GitLabRateLimitError as exc:
            if rate_limited >= rate_limit_retries:
                raise
            delay = backoff * (2 ** rate_limited)
            if exc.retry_after is not None:
                delay = min(delay, exc.retry_after)
            rate_limited += 1
            logger.warning(
                "%s rate limited, retry %d/%d in %.1fs",
                label, rate_limited, rate_limit_retries, delay,
            )
            await sleep(delay)
        except (GitLabServerError, GitLabTimeoutError) as exc:
            if transient >= TRANSIENT_RETRIES:
                raise
            transient += 1
            logger.warning("%s failed (%s), retrying once", label, exc)
            await sleep(backoff)
