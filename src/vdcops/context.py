"""Request context: cancellation, deadline and per-operation metadata.

A RequestContext is passed to every outgoing call. It is checked before each
HTTP request, between retry attempts and between polling intervals, which
are the only places the engine suspends.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field

from .errors import OperationCancelledError, OperationTimeoutError


@dataclass
class RequestContext:
    """Carrier for cancellation, deadline and request metadata.

    Attributes:
        deadline: Absolute time.monotonic() value after which work stops.
        max_retries: Per-operation override of the configured retry cap.
        last_request_id: Request id echoed by the most recent response.
    """

    deadline: float | None = None
    max_retries: int | None = None
    last_request_id: str = ""
    _cancelled: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    @classmethod
    def with_timeout(cls, seconds: float, *, max_retries: int | None = None) -> RequestContext:
        """Create a context that expires `seconds` from now."""
        if seconds < 0:
            raise ValueError(f"timeout must not be negative: {seconds}")
        return cls(deadline=time.monotonic() + seconds, max_retries=max_retries)

    def child(self, timeout: float | None = None) -> RequestContext:
        """Derive a context sharing cancellation, optionally with a tighter deadline."""
        deadline = self.deadline
        if timeout is not None:
            candidate = time.monotonic() + timeout
            deadline = candidate if deadline is None else min(deadline, candidate)
        return RequestContext(
            deadline=deadline,
            max_retries=self.max_retries,
            _cancelled=self._cancelled,
        )

    def cancel(self) -> None:
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    @property
    def expired(self) -> bool:
        return self.deadline is not None and time.monotonic() >= self.deadline

    def done(self) -> bool:
        """True once the context is cancelled or past its deadline."""
        return self.cancelled or self.expired

    def remaining(self) -> float | None:
        """Seconds left before the deadline, or None without a deadline."""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def error(self) -> Exception | None:
        """The error describing why the context is done, if it is."""
        if self.cancelled:
            return OperationCancelledError("context cancelled")
        if self.expired:
            return OperationTimeoutError("context deadline exceeded")
        return None

    def check(self) -> None:
        """Raise the context's error if it is done."""
        err = self.error()
        if err is not None:
            raise err

    async def sleep(self, seconds: float) -> None:
        """Sleep for `seconds`, waking early when the context becomes done.

        Raises:
            OperationCancelledError: If cancelled while sleeping.
            OperationTimeoutError: If the deadline falls inside the sleep.
        """
        self.check()
        target = time.monotonic() + max(0.0, seconds)
        while True:
            now = time.monotonic()
            if now >= target:
                break
            wait = target - now
            remaining = self.remaining()
            if remaining is not None:
                wait = min(wait, remaining)
            try:
                await asyncio.wait_for(self._cancelled.wait(), timeout=wait)
            except TimeoutError:
                pass
            self.check()
