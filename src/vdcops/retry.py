"""Retry decisions and backoff for REST calls.

Retryable responses:
- status >= 500: transient server error
- 424: object is in a state that does not allow the request yet
- 429: rate limit reached; wait until the `ratelimit-reset` instant

Network-level failures are retried for GET only, so a write whose outcome is
unknown is never sent twice.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable
from typing import TypeVar

from .context import RequestContext
from .errors import MaxRetriesExceededError, RequestError, TransportError
from .transport import Operation

logger = logging.getLogger(__name__)

T = TypeVar("T")


def parse_rate_limit_reset(value: str | None, now: float | None = None) -> float | None:
    """Seconds until a `ratelimit-reset` Unix millisecond timestamp.

    Returns None when the header is missing or not an integer. Instants in
    the past yield 0.
    """
    if not value:
        return None
    try:
        reset_ms = int(value.strip())
    except ValueError:
        return None
    now_ms = (time.time() if now is None else now) * 1000
    return max(0.0, (reset_ms - now_ms) / 1000)


class RetryPolicy:
    """Decides whether and when a failed attempt is retried.

    Args:
        max_retries: Retries allowed after the first attempt. 0 disables retrying.
        delay_interval: Base delay; retry n waits delay_interval * n.
        max_delay_interval: Upper bound of the linear delay.
        clock: Wall-clock source used to interpret `ratelimit-reset`.
    """

    def __init__(
        self,
        max_retries: int,
        delay_interval: float,
        max_delay_interval: float,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if max_retries < 0:
            raise ValueError("max_retries must not be negative")
        self.max_retries = max_retries
        self.delay_interval = delay_interval
        self.max_delay_interval = max_delay_interval
        self._clock = clock

    def should_retry(self, error: Exception, op: Operation) -> bool:
        if isinstance(error, RequestError):
            return error.retryable
        if isinstance(error, TransportError):
            return op.is_read
        return False

    def delay_for(self, error: Exception, retry_number: int) -> float:
        """Seconds to wait before retry number `retry_number` (1-based)."""
        if isinstance(error, RequestError) and error.status_code == 429:
            delay = parse_rate_limit_reset(error.rate_limit_reset, self._clock())
            if delay is not None:
                return delay
        return min(self.delay_interval * retry_number, self.max_delay_interval)

    async def execute(
        self,
        ctx: RequestContext,
        op: Operation,
        attempt: Callable[[], Awaitable[T]],
    ) -> T:
        """Run `attempt` until it succeeds, fails terminally or the budget runs out.

        Raises:
            MaxRetriesExceededError: Retry budget exhausted (wraps the last error).
            OperationCancelledError / OperationTimeoutError: Context done between attempts.
            RequestError / TransportError: Non-retryable failure.
        """
        max_retries = self.max_retries if ctx.max_retries is None else ctx.max_retries
        retries = 0
        while True:
            ctx.check()
            try:
                return await attempt()
            except (RequestError, TransportError) as e:
                if not self.should_retry(e, op):
                    if isinstance(e, RequestError):
                        logger.debug(
                            "Error message: %s. Title: %s. Code: %s. Request UUID: %s.",
                            e.description,
                            e.title,
                            e.status_code,
                            e.request_id,
                        )
                    raise
                if max_retries == 0:
                    raise
                if retries >= max_retries:
                    logger.error(
                        "Maximum number of retries exhausted",
                        extra={"method": op.method, "path": op.path, "attempts": retries + 1},
                    )
                    raise MaxRetriesExceededError(e, retries + 1) from e

                retries += 1
                delay = self.delay_for(e, retries)
                logger.warning(
                    "Retrying %s %s in %.3fs (retry %d/%d): %s",
                    op.method,
                    op.path,
                    delay,
                    retries,
                    max_retries,
                    e,
                )
                await ctx.sleep(delay)
