"""Server power transitions.

Some server updates are only accepted while the server is powered off. The
orchestrator performs the transitions those updates need:

- start / stop: hard power on / off via the power endpoint
- shutdown: graceful ACPI shutdown, falling back to a hard stop when the
  platform rejects it with a server error or the server does not go down
  within the power-state deadline

Every transition reads the current state first and issues no request when
the server is already where it should be. Transitions on the same server are
serialised through a per-server lock, so concurrent tasks cannot start a
server another task has just shut down for an update.
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from collections.abc import Awaitable, Callable

from .client import Client
from .context import RequestContext
from .errors import (
    CombinedError,
    MaxRetriesExceededError,
    OperationTimeoutError,
    RequestError,
    VdcError,
)
from .models import ServerPowerModel, ServerProperties, validate_uuid

logger = logging.getLogger(__name__)


def _is_server_error(err: Exception) -> bool:
    if isinstance(err, MaxRetriesExceededError):
        err = err.last_error
    return isinstance(err, RequestError) and err.status_code >= 500


class PowerOrchestrator:
    """Coordinates start, stop and graceful shutdown of servers.

    Args:
        client: Client used for the power requests and state polls.
    """

    def __init__(self, client: Client) -> None:
        self._client = client
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def lock_for(self, server_id: str) -> asyncio.Lock:
        """Lock serialising power transitions of one server.

        Locks are only kept while a task holds or waits for them.
        """
        key = server_id.lower()
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    async def status(self, ctx: RequestContext, server_id: str) -> ServerPowerModel:
        server = await self._client.get_server(ctx, validate_uuid(server_id, "server_id"))
        return ServerPowerModel.from_server(server)

    async def start(self, ctx: RequestContext, server_id: str) -> bool:
        """Power the server on. Returns True if a request was issued."""
        server_id = validate_uuid(server_id, "server_id")
        async with self.lock_for(server_id):
            return await self._set_power(ctx, server_id, True)

    async def stop(self, ctx: RequestContext, server_id: str) -> bool:
        """Hard power-off. Returns True if a request was issued."""
        server_id = validate_uuid(server_id, "server_id")
        async with self.lock_for(server_id):
            return await self._set_power(ctx, server_id, False)

    async def shutdown(self, ctx: RequestContext, server_id: str) -> bool:
        """Graceful shutdown with hard-stop fallback. Returns True if a request was issued."""
        server_id = validate_uuid(server_id, "server_id")
        async with self.lock_for(server_id):
            server = await self._client.get_server(ctx, server_id)
            return await self._shutdown(ctx, server)

    async def _set_power(
        self,
        ctx: RequestContext,
        server_id: str,
        power: bool,
        server: ServerProperties | None = None,
    ) -> bool:
        if server is None:
            server = await self._client.get_server(ctx, server_id)
        if server.power == power:
            logger.debug(
                "Server already in requested power state",
                extra={"server_id": server_id, "power": power},
            )
            return False

        logger.info("Changing server power state", extra={"server_id": server_id, "power": power})
        await self._client.set_server_power(ctx, server_id, power)
        await self._client.tracker.wait_for_power_state(ctx, server_id, power)
        return True

    async def _shutdown(self, ctx: RequestContext, server: ServerProperties) -> bool:
        server_id = server.object_uuid
        if not server.power:
            logger.debug("Server already off", extra={"server_id": server_id})
            return False

        # The platform answers 5xx when the guest ignores ACPI; no point retrying that
        shutdown_ctx = ctx.child()
        shutdown_ctx.max_retries = 0
        try:
            await self._client.shutdown_server_request(shutdown_ctx, server_id)
        except (RequestError, MaxRetriesExceededError) as e:
            if not _is_server_error(e):
                raise
            logger.warning(
                "Graceful shutdown failed, using power-off",
                extra={"server_id": server_id, "error": str(e)},
            )
            return await self._set_power(ctx, server_id, False, server)

        try:
            await self._client.tracker.wait_for_power_state(ctx, server_id, False)
        except OperationTimeoutError:
            ctx.check()
            logger.warning(
                "Server did not shut down in time, using power-off",
                extra={"server_id": server_id},
            )
            return await self._set_power(ctx, server_id, False)
        return True

    async def run_with_server_off(
        self,
        ctx: RequestContext,
        server_id: str,
        action: Callable[[], Awaitable[None]],
        *,
        server_required: bool = True,
    ) -> bool:
        """Run `action` while the server is powered off.

        The server is shut down first if it is running and started again
        afterwards, even when the action failed or its task was cancelled.
        Errors of the action and of the restart are reported together.

        Args:
            ctx: Request context.
            server_id: Server to power-cycle.
            action: Coroutine factory performing the update.
            server_required: If False, a server that no longer exists (404)
                is not an error; the action is skipped.

        Returns:
            True if the server was shut down for the action.

        Raises:
            CombinedError: Both the action and the restart failed.
        """
        server_id = validate_uuid(server_id, "server_id")
        async with self.lock_for(server_id):
            try:
                server = await self._client.get_server(ctx, server_id)
            except RequestError as e:
                if e.status_code == 404 and not server_required:
                    logger.info("Server is gone, skipping action", extra={"server_id": server_id})
                    return False
                raise

            was_running = server.power
            if was_running:
                await self._shutdown(ctx, server)

            errors: list[Exception] = []
            try:
                await action()
            except VdcError as e:
                errors.append(e)
            finally:
                if was_running:
                    await self._restart(server_id, errors)

            if len(errors) == 1:
                raise errors[0]
            if errors:
                raise CombinedError(errors)
            return was_running

    async def _restart(self, server_id: str, errors: list[Exception]) -> None:
        """Power a server on again after run_with_server_off, recording a failure in `errors`.

        The restart has its own deadline and does not share the caller's
        cancellation, so an interrupted update does not leave the server off.
        """
        config = self._client.config
        restart_ctx = RequestContext.with_timeout(
            config.request_completion_timeout + config.power_state_timeout
        )
        try:
            await self._set_power(restart_ctx, server_id, True)
        except VdcError as e:
            logger.error(
                "Failed to restart server after update",
                extra={"server_id": server_id, "error": str(e)},
            )
            errors.append(e)
