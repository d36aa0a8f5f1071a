"""Polling for asynchronous request completion and object state changes.

Mutating calls return a request handle; the platform applies the change in
the background. The tracker polls the request-status endpoint (or the object
itself) at a fixed, slightly jittered delay until a terminal state is
reached or the polling deadline elapses.
"""

from __future__ import annotations

import logging
import random
from collections.abc import Awaitable, Callable
from typing import Any

from .context import RequestContext
from .errors import (
    AsyncRequestFailedError,
    OperationTimeoutError,
    RequestError,
)
from .models import ObjectState, RequestStatus, RequestStatusValue
from .retry import RetryPolicy
from .transport import Operation, Transport

logger = logging.getLogger(__name__)

REQUEST_STATUS_PATH = "/requests/{request_id}"
SERVER_PATH = "/objects/servers/{server_id}"

# Upper bound of the random delay added to each poll, relative to the delay
POLL_JITTER_RATIO = 0.1


class AsyncRequestTracker:
    """Waits for requests and objects to reach a terminal state.

    Args:
        transport: Transport used for the status reads.
        retry_policy: Retry policy applied to each status read.
        delay_interval: Fixed delay between polls, in seconds.
        request_timeout: Default deadline for wait_for_request.
        power_timeout: Default deadline for wait_for_power_state.
    """

    def __init__(
        self,
        transport: Transport,
        retry_policy: RetryPolicy,
        delay_interval: float,
        request_timeout: float,
        power_timeout: float,
    ) -> None:
        self._transport = transport
        self._retry = retry_policy
        self.delay_interval = delay_interval
        self.request_timeout = request_timeout
        self.power_timeout = power_timeout

    async def _get(self, ctx: RequestContext, path: str) -> Any:
        op = Operation("GET", path, expects_output=True)

        async def attempt() -> Any:
            raw = await self._transport.send(ctx, op)
            return Transport.decode(op, raw)

        return await self._retry.execute(ctx, op, attempt)

    def _poll_delay(self) -> float:
        return self.delay_interval + random.uniform(0, self.delay_interval * POLL_JITTER_RATIO)

    async def _poll(
        self,
        ctx: RequestContext,
        timeout: float,
        probe: Callable[[RequestContext], Awaitable[bool]],
        timeout_message: str,
        subject: str,
    ) -> None:
        """Call `probe` after each delay until it returns True.

        A deadline of the poll itself becomes an OperationTimeoutError naming
        `subject`; cancellation or the caller's own deadline propagate as the
        caller's context error.
        """
        poll_ctx = ctx.child(timeout)
        try:
            while True:
                await poll_ctx.sleep(self._poll_delay())
                if await probe(poll_ctx):
                    return
        except OperationTimeoutError:
            ctx.check()
            logger.error(timeout_message, extra={"subject": subject})
            raise OperationTimeoutError(timeout_message, subject=subject) from None

    async def wait_for_request(
        self, ctx: RequestContext, request_id: str, timeout: float | None = None
    ) -> None:
        """Block until request `request_id` is done.

        Raises:
            AsyncRequestFailedError: The request reported `failed`.
            OperationTimeoutError: The polling deadline elapsed.
        """
        path = REQUEST_STATUS_PATH.format(request_id=request_id)

        async def probe(poll_ctx: RequestContext) -> bool:
            response = await self._get(poll_ctx, path)
            entry = response.get(request_id) if isinstance(response, dict) else None
            if entry is None:
                return False
            status = RequestStatus.model_validate(entry)
            if status.status == RequestStatusValue.DONE.value:
                logger.debug("Request %s is done", request_id)
                return True
            if status.status == RequestStatusValue.FAILED.value:
                logger.error(
                    "Request failed",
                    extra={"request_id": request_id, "status_message": status.message},
                )
                raise AsyncRequestFailedError(request_id, status.message)
            return False

        await self._poll(
            ctx,
            self.request_timeout if timeout is None else timeout,
            probe,
            f"Timeout reached when waiting for request {request_id} to complete",
            request_id,
        )

    async def wait_for_status_code(
        self,
        ctx: RequestContext,
        path: str,
        expected_status: int,
        timeout: float | None = None,
    ) -> None:
        """Block until a GET on `path` answers `expected_status` (404 or 200).

        Waiting for 404 confirms a deletion; waiting for 200 probes readiness
        of an object that is still being created.
        """
        if expected_status not in (200, 404):
            raise ValueError(f"can only wait for HTTP 200 or 404, got {expected_status}")

        async def probe(poll_ctx: RequestContext) -> bool:
            try:
                await self._get(poll_ctx, path)
            except RequestError as e:
                if e.status_code != 404:
                    raise
                return expected_status == 404
            return expected_status == 200

        await self._poll(
            ctx,
            self.request_timeout if timeout is None else timeout,
            probe,
            f"Timeout reached when waiting for HTTP {expected_status} on {path}",
            path,
        )

    async def wait_for_power_state(
        self,
        ctx: RequestContext,
        server_id: str,
        running: bool,
        timeout: float | None = None,
    ) -> None:
        """Block until the server reports the requested power state."""
        path = SERVER_PATH.format(server_id=server_id)

        async def probe(poll_ctx: RequestContext) -> bool:
            response = await self._get(poll_ctx, path)
            return bool(response.get("server", {}).get("power")) == running

        await self._poll(
            ctx,
            self.power_timeout if timeout is None else timeout,
            probe,
            f"Timeout reached when waiting for server {server_id} power to become "
            f"{'on' if running else 'off'}",
            server_id,
        )

    async def wait_for_object_active(
        self,
        ctx: RequestContext,
        path: str,
        response_key: str,
        timeout: float | None = None,
    ) -> None:
        """Block until the object at `path` has left provisioning and is active."""

        async def probe(poll_ctx: RequestContext) -> bool:
            response = await self._get(poll_ctx, path)
            status = response.get(response_key, {}).get("status", "")
            return status == ObjectState.ACTIVE.value

        await self._poll(
            ctx,
            self.request_timeout if timeout is None else timeout,
            probe,
            f"Timeout reached when waiting for {path} to become active",
            path,
        )
