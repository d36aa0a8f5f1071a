"""Tests for server power transitions."""

import asyncio

import pytest
from vdc_mock import MockPlatform, make_config

from vdcops.client import Client
from vdcops.context import RequestContext
from vdcops.errors import CombinedError, OperationCancelledError, RequestError, ValidationError
from vdcops.power import PowerOrchestrator


def power_path(server_id: str) -> str:
    return f"/objects/servers/{server_id}/power"


def shutdown_path(server_id: str) -> str:
    return f"/objects/servers/{server_id}/shutdown"


class TestStartStop:
    """Tests for start and stop."""

    @pytest.mark.asyncio
    async def test_start(
        self, platform: MockPlatform, client: Client, ctx: RequestContext
    ) -> None:
        """Test powering on a stopped server."""
        server = platform.state.add_server(power=False)

        assert await PowerOrchestrator(client).start(ctx, server.object_uuid) is True

        assert server.power is True
        assert platform.mutation_summary() == [("PATCH", power_path(server.object_uuid))]

    @pytest.mark.asyncio
    async def test_stop(
        self, platform: MockPlatform, client: Client, ctx: RequestContext
    ) -> None:
        """Test hard power-off of a running server."""
        server = platform.state.add_server(power=True)

        assert await PowerOrchestrator(client).stop(ctx, server.object_uuid) is True

        assert server.power is False
        assert platform.mutations[0].body == {"power": False}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("running", [True, False])
    async def test_no_request_when_already_in_state(
        self, platform: MockPlatform, client: Client, ctx: RequestContext, running: bool
    ) -> None:
        """Test that a transition to the current state sends no mutation."""
        server = platform.state.add_server(power=running)
        orchestrator = PowerOrchestrator(client)

        if running:
            assert await orchestrator.start(ctx, server.object_uuid) is False
        else:
            assert await orchestrator.stop(ctx, server.object_uuid) is False
            assert await orchestrator.shutdown(ctx, server.object_uuid) is False

        assert platform.mutations == []

    @pytest.mark.asyncio
    async def test_status(
        self, platform: MockPlatform, client: Client, ctx: RequestContext
    ) -> None:
        """Test reading the power model."""
        server = platform.state.add_server(power=True, legacy=True)

        status = await PowerOrchestrator(client).status(ctx, server.object_uuid)

        assert status.running is True
        assert status.supports_hot_update is False

    @pytest.mark.asyncio
    async def test_invalid_server_id(self, client: Client, ctx: RequestContext) -> None:
        """Test that the server id is validated first."""
        with pytest.raises(ValidationError):
            await PowerOrchestrator(client).start(ctx, "server-1")


class TestShutdown:
    """Tests for graceful shutdown and its fallbacks."""

    @pytest.mark.asyncio
    async def test_graceful_shutdown(
        self, platform: MockPlatform, client: Client, ctx: RequestContext
    ) -> None:
        """Test that a cooperating guest is shut down via ACPI."""
        server = platform.state.add_server(power=True)

        assert await PowerOrchestrator(client).shutdown(ctx, server.object_uuid) is True

        assert server.power is False
        assert platform.mutation_summary() == [("PATCH", shutdown_path(server.object_uuid))]

    @pytest.mark.asyncio
    async def test_server_error_falls_back_to_power_off(
        self, platform: MockPlatform, client: Client, ctx: RequestContext
    ) -> None:
        """Test that a 500 on shutdown is followed by a hard power-off without retrying."""
        server = platform.state.add_server(power=True)
        platform.inject("PATCH", shutdown_path(server.object_uuid), 500)

        assert await PowerOrchestrator(client).shutdown(ctx, server.object_uuid) is True

        assert server.power is False
        assert platform.mutation_summary() == [
            ("PATCH", shutdown_path(server.object_uuid)),
            ("PATCH", power_path(server.object_uuid)),
        ]

    @pytest.mark.asyncio
    async def test_ignored_shutdown_falls_back_after_deadline(
        self, platform: MockPlatform, ctx: RequestContext
    ) -> None:
        """Test that a guest ignoring ACPI is powered off after the power deadline."""
        platform.ignore_shutdown = True
        server = platform.state.add_server(power=True)

        async with Client(make_config(platform, power_state_timeout=0.1)) as client:
            assert await PowerOrchestrator(client).shutdown(ctx, server.object_uuid) is True

        assert server.power is False
        assert platform.mutation_summary() == [
            ("PATCH", shutdown_path(server.object_uuid)),
            ("PATCH", power_path(server.object_uuid)),
        ]

    @pytest.mark.asyncio
    async def test_client_error_is_not_masked(
        self, platform: MockPlatform, client: Client, ctx: RequestContext
    ) -> None:
        """Test that a 4xx on shutdown propagates without fallback."""
        server = platform.state.add_server(power=True)
        platform.inject("PATCH", shutdown_path(server.object_uuid), 403)

        with pytest.raises(RequestError) as exc_info:
            await PowerOrchestrator(client).shutdown(ctx, server.object_uuid)

        assert exc_info.value.status_code == 403
        assert server.power is True
        assert len(platform.mutations) == 1


class TestRunWithServerOff:
    """Tests for run_with_server_off."""

    @pytest.mark.asyncio
    async def test_power_cycle_around_action(
        self, platform: MockPlatform, client: Client, ctx: RequestContext
    ) -> None:
        """Test shutdown, action while off, and restart."""
        server = platform.state.add_server(power=True)
        observed: list[bool] = []

        async def action() -> None:
            observed.append(server.power)

        orchestrator = PowerOrchestrator(client)
        assert await orchestrator.run_with_server_off(ctx, server.object_uuid, action) is True

        assert observed == [False]
        assert server.power is True
        assert platform.mutation_summary() == [
            ("PATCH", shutdown_path(server.object_uuid)),
            ("PATCH", power_path(server.object_uuid)),
        ]

    @pytest.mark.asyncio
    async def test_stopped_server_stays_off(
        self, platform: MockPlatform, client: Client, ctx: RequestContext
    ) -> None:
        """Test that a stopped server is neither shut down nor started."""
        server = platform.state.add_server(power=False)
        calls: list[str] = []

        async def action() -> None:
            calls.append("action")

        orchestrator = PowerOrchestrator(client)
        assert await orchestrator.run_with_server_off(ctx, server.object_uuid, action) is False

        assert calls == ["action"]
        assert server.power is False
        assert platform.mutations == []

    @pytest.mark.asyncio
    async def test_restart_after_failed_action(
        self, platform: MockPlatform, client: Client, ctx: RequestContext
    ) -> None:
        """Test that the server is restarted even when the action fails."""
        server = platform.state.add_server(power=True)

        async def action() -> None:
            raise RequestError(400, description="invalid cores")

        with pytest.raises(RequestError):
            await PowerOrchestrator(client).run_with_server_off(ctx, server.object_uuid, action)

        assert server.power is True

    @pytest.mark.asyncio
    async def test_restart_after_unexpected_exception(
        self, platform: MockPlatform, client: Client, ctx: RequestContext
    ) -> None:
        """Test that the server is restarted when the action raises a non-platform error."""
        server = platform.state.add_server(power=True)

        async def action() -> None:
            raise RuntimeError("bad address data")

        with pytest.raises(RuntimeError):
            await PowerOrchestrator(client).run_with_server_off(ctx, server.object_uuid, action)

        assert server.power is True

    @pytest.mark.asyncio
    async def test_restart_after_task_cancelled(
        self, platform: MockPlatform, client: Client, ctx: RequestContext
    ) -> None:
        """Test that cancelling the task during the action still restarts the server."""
        server = platform.state.add_server(power=True)
        action_started = asyncio.Event()

        async def action() -> None:
            action_started.set()
            await asyncio.Event().wait()

        task = asyncio.create_task(
            PowerOrchestrator(client).run_with_server_off(ctx, server.object_uuid, action)
        )
        await action_started.wait()
        assert server.power is False
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        assert server.power is True

    @pytest.mark.asyncio
    async def test_restart_after_context_cancelled(
        self, platform: MockPlatform, client: Client
    ) -> None:
        """Test that a cancelled context does not prevent the restart."""
        server = platform.state.add_server(power=True)
        ctx = RequestContext.with_timeout(30)

        async def action() -> None:
            ctx.cancel()
            ctx.check()

        with pytest.raises(OperationCancelledError):
            await PowerOrchestrator(client).run_with_server_off(ctx, server.object_uuid, action)

        assert server.power is True

    @pytest.mark.asyncio
    async def test_action_and_restart_failures_combined(
        self, platform: MockPlatform, client: Client, ctx: RequestContext
    ) -> None:
        """Test that both failures are reported together."""
        server = platform.state.add_server(power=True)
        platform.inject("PATCH", power_path(server.object_uuid), 400, description="power denied")

        async def action() -> None:
            raise RequestError(400, description="invalid cores")

        with pytest.raises(CombinedError) as exc_info:
            await PowerOrchestrator(client).run_with_server_off(ctx, server.object_uuid, action)

        assert len(exc_info.value.errors) == 2
        assert "invalid cores" in str(exc_info.value)
        assert "power denied" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_missing_server(self, client: Client, ctx: RequestContext) -> None:
        """Test the server_required switch for a deleted server."""
        server_id = "eeeeeeee-0000-0000-0000-000000000000"
        calls: list[str] = []

        async def action() -> None:
            calls.append("action")

        orchestrator = PowerOrchestrator(client)
        assert (
            await orchestrator.run_with_server_off(ctx, server_id, action, server_required=False)
            is False
        )
        with pytest.raises(RequestError):
            await orchestrator.run_with_server_off(ctx, server_id, action)
        assert calls == []

    @pytest.mark.asyncio
    async def test_same_server_transitions_are_serialised(
        self, platform: MockPlatform, client: Client, ctx: RequestContext
    ) -> None:
        """Test that a start waits until a running update has restarted the server."""
        server = platform.state.add_server(power=True)
        orchestrator = PowerOrchestrator(client)
        action_started = asyncio.Event()
        release = asyncio.Event()

        async def action() -> None:
            action_started.set()
            await release.wait()

        update = asyncio.create_task(
            orchestrator.run_with_server_off(ctx, server.object_uuid, action)
        )
        await action_started.wait()
        start = asyncio.create_task(orchestrator.start(ctx, server.object_uuid))
        await asyncio.sleep(0.05)

        assert not start.done()
        assert server.power is False

        release.set()
        assert await update is True
        assert await start is False

    @pytest.mark.asyncio
    async def test_locks_are_released_after_use(
        self, platform: MockPlatform, client: Client, ctx: RequestContext
    ) -> None:
        """Test that finished transitions leave no lock behind."""
        orchestrator = PowerOrchestrator(client)
        servers = [platform.state.add_server(power=False) for _ in range(3)]

        for server in servers:
            await orchestrator.start(ctx, server.object_uuid)

        assert len(orchestrator._locks) == 0

    @pytest.mark.asyncio
    async def test_lock_is_shared_while_held(self, client: Client) -> None:
        """Test that callers asking for the same server get the same lock."""
        orchestrator = PowerOrchestrator(client)
        server_id = "eeeeeeee-0000-0000-0000-000000000001"

        lock = orchestrator.lock_for(server_id)

        assert orchestrator.lock_for(server_id.upper()) is lock
        assert orchestrator.lock_for("eeeeeeee-0000-0000-0000-000000000002") is not lock
