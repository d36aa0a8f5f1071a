"""Platform client: request engine plus the endpoints the reconciler consumes.

Every call goes through the same pipeline:

    Transport (one exchange) -> RetryPolicy (retry/backoff) -> AsyncRequestTracker

In synchronous mode (the default) a mutating call returns only after the
platform reports its request as done. In asynchronous mode it returns the
RequestHandle as soon as the platform has accepted the mutation; the caller
then owns the handle and may pass it to `wait_for_request` later.
"""

from __future__ import annotations

import json
import logging
from enum import Enum
from typing import Any

import httpx

from .config import Config
from .context import RequestContext
from .errors import (
    MutationAppliedError,
    OperationCancelledError,
    OperationTimeoutError,
    ValidationError,
)
from .models import (
    FirewallRuleSet,
    IPProperties,
    RequestHandle,
    ServerProperties,
    validate_uuid,
)
from .retry import RetryPolicy
from .tracker import AsyncRequestTracker
from .transport import Operation, RawResponse, Transport

logger = logging.getLogger(__name__)

API_OBJECTS_BASE = "/objects"

# Per-request network timeout of the default HTTP client
DEFAULT_HTTP_TIMEOUT_SECONDS = 60.0


class ResourceKind(str, Enum):
    """Top-level object collections. The value is the collection path segment."""

    SERVER = "servers"
    STORAGE = "storages"
    NETWORK = "networks"
    IP = "ips"
    ISO_IMAGE = "isoimages"
    FIREWALL = "firewalls"
    LOADBALANCER = "loadbalancers"
    PAAS = "paas"
    TEMPLATE = "templates"
    SSHKEY = "sshkeys"

    @property
    def response_key(self) -> str:
        """Key under which a GET-by-id response wraps the object."""
        return _RESPONSE_KEYS[self]

    def collection_path(self) -> str:
        return f"{API_OBJECTS_BASE}/{self.value}"

    def object_path(self, object_id: str) -> str:
        return f"{self.collection_path()}/{object_id}"


_RESPONSE_KEYS: dict[ResourceKind, str] = {
    ResourceKind.SERVER: "server",
    ResourceKind.STORAGE: "storage",
    ResourceKind.NETWORK: "network",
    ResourceKind.IP: "ip",
    ResourceKind.ISO_IMAGE: "isoimage",
    ResourceKind.FIREWALL: "firewall",
    ResourceKind.LOADBALANCER: "loadbalancer",
    ResourceKind.PAAS: "paas_service",
    ResourceKind.TEMPLATE: "template",
    ResourceKind.SSHKEY: "sshkey",
}


class RelationKind(str, Enum):
    """Server relation collections under /objects/servers/{id}/."""

    STORAGE = "storages"
    NETWORK = "networks"
    IP = "ips"
    ISO_IMAGE = "isoimages"

    @property
    def object_kind(self) -> ResourceKind:
        return _RELATION_OBJECT_KINDS[self]

    @property
    def response_key(self) -> str:
        return f"{self.object_kind.response_key}_relation"


_RELATION_OBJECT_KINDS: dict[RelationKind, ResourceKind] = {
    RelationKind.STORAGE: ResourceKind.STORAGE,
    RelationKind.NETWORK: ResourceKind.NETWORK,
    RelationKind.IP: ResourceKind.IP,
    RelationKind.ISO_IMAGE: ResourceKind.ISO_IMAGE,
}


def _relation_path(server_id: str, relation: RelationKind, object_id: str | None = None) -> str:
    path = f"{ResourceKind.SERVER.object_path(server_id)}/{relation.value}"
    if object_id is not None:
        path += f"/{object_id}"
    return path


class Client:
    """Asynchronous client for the virtual-datacenter REST API.

    The HTTP client is created once at construction (or injected through
    `config.http_client`) and shared by all calls; it is safe to use one
    Client from several tasks reconciling different servers.

    Usage:
        async with Client(config) as client:
            ctx = RequestContext.with_timeout(600)
            server = await client.get_server(ctx, server_id)
    """

    def __init__(self, config: Config) -> None:
        self._config = config
        self._owns_http_client = config.http_client is None
        self._http = config.http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(DEFAULT_HTTP_TIMEOUT_SECONDS)
        )
        self.transport = Transport(config, self._http)
        self.retry_policy = RetryPolicy(
            max_retries=config.max_retries,
            delay_interval=config.delay_interval,
            max_delay_interval=config.max_delay_interval,
        )
        self.tracker = AsyncRequestTracker(
            self.transport,
            self.retry_policy,
            delay_interval=config.delay_interval,
            request_timeout=config.request_completion_timeout,
            power_timeout=config.power_state_timeout,
        )

    @property
    def config(self) -> Config:
        return self._config

    @property
    def synchronous(self) -> bool:
        return self._config.synchronous

    async def aclose(self) -> None:
        """Close the HTTP client if this Client created it."""
        if self._owns_http_client:
            await self._http.aclose()

    async def __aenter__(self) -> Client:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    # -------------------------------------------------------------------------
    # Engine
    # -------------------------------------------------------------------------

    async def _execute(self, ctx: RequestContext, op: Operation) -> tuple[RawResponse, Any]:
        async def attempt() -> RawResponse:
            return await self.transport.send(ctx, op)

        raw = await self.retry_policy.execute(ctx, op, attempt)
        return raw, Transport.decode(op, raw)

    async def get(self, ctx: RequestContext, path: str) -> Any:
        """GET `path` and return the decoded body."""
        _, output = await self._execute(ctx, Operation("GET", path, expects_output=True))
        return output

    async def mutate(
        self,
        ctx: RequestContext,
        method: str,
        path: str,
        body: Any = None,
        *,
        skip_wait: bool = False,
    ) -> RequestHandle | None:
        """Send a mutating call and, in synchronous mode, wait for completion.

        Returns:
            The request handle (None if the platform returned no request id).

        Raises:
            MutationAppliedError: The mutation succeeded but the completion
                wait was cancelled or ran past the caller's deadline. The
                mutation is not undone.
        """
        op = Operation(method, path, body=body, skip_wait=skip_wait)
        raw, _ = await self._execute(ctx, op)
        handle = self._handle_from_response(raw)
        if handle is None or not self.synchronous or op.skip_wait:
            return handle

        try:
            await self.tracker.wait_for_request(ctx, handle.request_id)
        except (OperationCancelledError, OperationTimeoutError) as e:
            # A polling timeout of the tracker itself is not an interruption
            if isinstance(e, OperationTimeoutError) and not ctx.expired:
                raise
            logger.warning(
                "Mutation applied but completion wait was interrupted",
                extra={"request_id": handle.request_id, "path": path},
            )
            raise MutationAppliedError(handle, e) from e
        return handle

    @staticmethod
    def _handle_from_response(raw: RawResponse) -> RequestHandle | None:
        """Prefer the request_uuid of a create response, else the response header."""
        body: Any = None
        if raw.content:
            try:
                body = json.loads(raw.content)
            except ValueError:
                body = None
        if isinstance(body, dict) and body.get("request_uuid"):
            return RequestHandle.model_validate(body)
        if raw.request_id:
            return RequestHandle(request_id=raw.request_id)
        return None

    async def request(
        self,
        ctx: RequestContext,
        method: str,
        path: str,
        body: Any = None,
        *,
        skip_wait: bool = False,
    ) -> Any:
        """Send any call: GET returns the decoded body, other methods the handle."""
        if method.upper() == "GET":
            return await self.get(ctx, path)
        return await self.mutate(ctx, method, path, body, skip_wait=skip_wait)

    async def wait_for_request(self, ctx: RequestContext, handle: RequestHandle) -> None:
        """Wait for a handle returned in asynchronous mode."""
        await self.tracker.wait_for_request(ctx, handle.request_id)

    # -------------------------------------------------------------------------
    # Generic object CRUD
    # -------------------------------------------------------------------------

    async def get_object(
        self, ctx: RequestContext, kind: ResourceKind, object_id: str
    ) -> dict[str, Any]:
        object_id = validate_uuid(object_id, f"{kind.response_key}_id")
        response = await self.get(ctx, kind.object_path(object_id))
        return response.get(kind.response_key, {})

    async def list_objects(self, ctx: RequestContext, kind: ResourceKind) -> dict[str, Any]:
        response = await self.get(ctx, kind.collection_path())
        return response.get(kind.value, {})

    async def create_object(
        self, ctx: RequestContext, kind: ResourceKind, body: dict[str, Any]
    ) -> RequestHandle:
        if not body:
            raise ValidationError(f"create body for {kind.value} must not be empty")
        handle = await self.mutate(ctx, "POST", kind.collection_path(), body)
        if handle is None or handle.object_id is None:
            raise ValidationError(f"create {kind.value} returned no object_uuid")
        return handle

    async def update_object(
        self, ctx: RequestContext, kind: ResourceKind, object_id: str, body: dict[str, Any]
    ) -> RequestHandle | None:
        object_id = validate_uuid(object_id, f"{kind.response_key}_id")
        return await self.mutate(ctx, "PATCH", kind.object_path(object_id), body)

    async def delete_object(
        self, ctx: RequestContext, kind: ResourceKind, object_id: str
    ) -> RequestHandle | None:
        object_id = validate_uuid(object_id, f"{kind.response_key}_id")
        return await self.mutate(ctx, "DELETE", kind.object_path(object_id))

    async def wait_for_deletion(
        self,
        ctx: RequestContext,
        kind: ResourceKind,
        object_id: str,
        timeout: float | None = None,
    ) -> None:
        object_id = validate_uuid(object_id, f"{kind.response_key}_id")
        await self.tracker.wait_for_status_code(ctx, kind.object_path(object_id), 404, timeout)

    async def wait_for_readiness(
        self,
        ctx: RequestContext,
        kind: ResourceKind,
        object_id: str,
        timeout: float | None = None,
    ) -> None:
        object_id = validate_uuid(object_id, f"{kind.response_key}_id")
        await self.tracker.wait_for_status_code(ctx, kind.object_path(object_id), 200, timeout)

    # -------------------------------------------------------------------------
    # Servers
    # -------------------------------------------------------------------------

    async def get_server(self, ctx: RequestContext, server_id: str) -> ServerProperties:
        return ServerProperties.model_validate(
            await self.get_object(ctx, ResourceKind.SERVER, server_id)
        )

    async def create_server(self, ctx: RequestContext, body: dict[str, Any]) -> RequestHandle:
        return await self.create_object(ctx, ResourceKind.SERVER, body)

    async def update_server(
        self, ctx: RequestContext, server_id: str, body: dict[str, Any]
    ) -> RequestHandle | None:
        return await self.update_object(ctx, ResourceKind.SERVER, server_id, body)

    async def delete_server(self, ctx: RequestContext, server_id: str) -> RequestHandle | None:
        return await self.delete_object(ctx, ResourceKind.SERVER, server_id)

    async def set_server_power(self, ctx: RequestContext, server_id: str, power: bool) -> None:
        """Send the raw power PATCH. Use PowerOrchestrator for state-aware transitions."""
        server_id = validate_uuid(server_id, "server_id")
        await self.mutate(
            ctx, "PATCH", f"{ResourceKind.SERVER.object_path(server_id)}/power", {"power": power}
        )

    async def shutdown_server_request(self, ctx: RequestContext, server_id: str) -> None:
        """Send the raw graceful-shutdown PATCH."""
        server_id = validate_uuid(server_id, "server_id")
        path = f"{ResourceKind.SERVER.object_path(server_id)}/shutdown"
        await self.mutate(ctx, "PATCH", path, {})

    # -------------------------------------------------------------------------
    # Server relations
    # -------------------------------------------------------------------------

    async def get_server_relation(
        self, ctx: RequestContext, server_id: str, relation: RelationKind, object_id: str
    ) -> dict[str, Any]:
        server_id = validate_uuid(server_id, "server_id")
        object_id = validate_uuid(object_id, f"{relation.object_kind.response_key}_id")
        response = await self.get(ctx, _relation_path(server_id, relation, object_id))
        return response.get(relation.response_key, {})

    async def link(
        self,
        ctx: RequestContext,
        server_id: str,
        relation: RelationKind,
        object_id: str,
        **properties: Any,
    ) -> RequestHandle | None:
        server_id = validate_uuid(server_id, "server_id")
        object_id = validate_uuid(object_id, f"{relation.object_kind.response_key}_id")
        body = {"object_uuid": object_id, **properties}
        return await self.mutate(ctx, "POST", _relation_path(server_id, relation), body)

    async def unlink(
        self, ctx: RequestContext, server_id: str, relation: RelationKind, object_id: str
    ) -> RequestHandle | None:
        server_id = validate_uuid(server_id, "server_id")
        object_id = validate_uuid(object_id, f"{relation.object_kind.response_key}_id")
        return await self.mutate(ctx, "DELETE", _relation_path(server_id, relation, object_id))

    async def link_storage(
        self, ctx: RequestContext, server_id: str, storage_id: str, boot_device: bool = False
    ) -> RequestHandle | None:
        return await self.link(
            ctx, server_id, RelationKind.STORAGE, storage_id, bootdevice=boot_device
        )

    async def link_ip(
        self, ctx: RequestContext, server_id: str, ip_id: str
    ) -> RequestHandle | None:
        return await self.link(ctx, server_id, RelationKind.IP, ip_id)

    async def link_iso_image(
        self, ctx: RequestContext, server_id: str, iso_image_id: str
    ) -> RequestHandle | None:
        return await self.link(ctx, server_id, RelationKind.ISO_IMAGE, iso_image_id)

    async def unlink_storage(
        self, ctx: RequestContext, server_id: str, storage_id: str
    ) -> RequestHandle | None:
        return await self.unlink(ctx, server_id, RelationKind.STORAGE, storage_id)

    async def unlink_ip(
        self, ctx: RequestContext, server_id: str, ip_id: str
    ) -> RequestHandle | None:
        return await self.unlink(ctx, server_id, RelationKind.IP, ip_id)

    async def unlink_iso_image(
        self, ctx: RequestContext, server_id: str, iso_image_id: str
    ) -> RequestHandle | None:
        return await self.unlink(ctx, server_id, RelationKind.ISO_IMAGE, iso_image_id)

    async def unlink_network(
        self, ctx: RequestContext, server_id: str, network_id: str
    ) -> RequestHandle | None:
        return await self.unlink(ctx, server_id, RelationKind.NETWORK, network_id)

    async def link_network(
        self,
        ctx: RequestContext,
        server_id: str,
        network_id: str,
        *,
        ordering: int = 0,
        boot_device: bool = False,
        firewall_template_id: str | None = None,
        firewall: FirewallRuleSet | None = None,
    ) -> RequestHandle | None:
        """Link a network. A None or empty firewall is left out (firewall inactive)."""
        properties: dict[str, Any] = {"ordering": ordering, "bootdevice": boot_device}
        if firewall_template_id:
            properties["firewall_template_uuid"] = firewall_template_id
        if firewall is not None and not firewall.is_empty():
            properties["firewall"] = firewall.to_wire()
        return await self.link(ctx, server_id, RelationKind.NETWORK, network_id, **properties)

    async def update_server_network(
        self,
        ctx: RequestContext,
        server_id: str,
        network_id: str,
        *,
        ordering: int,
        boot_device: bool,
        firewall_template_id: str | None,
        firewall: FirewallRuleSet | None,
    ) -> RequestHandle | None:
        """Update a network relation in place. A None or empty firewall is sent as null."""
        server_id = validate_uuid(server_id, "server_id")
        network_id = validate_uuid(network_id, "network_id")
        body: dict[str, Any] = {
            "ordering": ordering,
            "bootdevice": boot_device,
            "firewall_template_uuid": firewall_template_id,
            "firewall": None if firewall is None or firewall.is_empty() else firewall.to_wire(),
        }
        return await self.mutate(
            ctx, "PATCH", _relation_path(server_id, RelationKind.NETWORK, network_id), body
        )

    # -------------------------------------------------------------------------
    # IPs and networks
    # -------------------------------------------------------------------------

    async def get_ip(self, ctx: RequestContext, ip_id: str) -> IPProperties:
        return IPProperties.model_validate(await self.get_object(ctx, ResourceKind.IP, ip_id))

    async def get_network(self, ctx: RequestContext, network_id: str) -> dict[str, Any]:
        return await self.get_object(ctx, ResourceKind.NETWORK, network_id)

    async def pin_server_ip(
        self, ctx: RequestContext, network_id: str, server_id: str, ip: str
    ) -> RequestHandle | None:
        """Reserve DHCP address `ip` for the server on the network."""
        if not ip:
            raise ValidationError("pinned IP must not be empty")
        path = self._pinned_server_path(network_id, server_id)
        return await self.mutate(ctx, "PATCH", path, {"ip": ip})

    async def unpin_server_ip(
        self, ctx: RequestContext, network_id: str, server_id: str
    ) -> RequestHandle | None:
        return await self.mutate(ctx, "DELETE", self._pinned_server_path(network_id, server_id))

    @staticmethod
    def _pinned_server_path(network_id: str, server_id: str) -> str:
        network_id = validate_uuid(network_id, "network_id")
        server_id = validate_uuid(server_id, "server_id")
        return f"{ResourceKind.NETWORK.object_path(network_id)}/pinned_servers/{server_id}"

    # -------------------------------------------------------------------------
    # Snapshots (nested under their storage)
    # -------------------------------------------------------------------------

    @staticmethod
    def _snapshot_path(storage_id: str, snapshot_id: str | None = None) -> str:
        storage_id = validate_uuid(storage_id, "storage_id")
        path = f"{ResourceKind.STORAGE.object_path(storage_id)}/snapshots"
        if snapshot_id is not None:
            path += f"/{validate_uuid(snapshot_id, 'snapshot_id')}"
        return path

    async def get_snapshot(
        self, ctx: RequestContext, storage_id: str, snapshot_id: str
    ) -> dict[str, Any]:
        response = await self.get(ctx, self._snapshot_path(storage_id, snapshot_id))
        return response.get("snapshot", {})

    async def create_snapshot(
        self, ctx: RequestContext, storage_id: str, body: dict[str, Any]
    ) -> RequestHandle:
        handle = await self.mutate(ctx, "POST", self._snapshot_path(storage_id), body)
        if handle is None or handle.object_id is None:
            raise ValidationError("create snapshot returned no object_uuid")
        return handle

    async def delete_snapshot(
        self, ctx: RequestContext, storage_id: str, snapshot_id: str
    ) -> RequestHandle | None:
        return await self.mutate(ctx, "DELETE", self._snapshot_path(storage_id, snapshot_id))
