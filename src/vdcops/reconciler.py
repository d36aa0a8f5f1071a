"""Reconciliation of a server's relations from a desired configuration.

A reconcile pass compares the current configuration snapshot of a server
with the desired one and applies the difference as an ordered sequence of
relation operations:

1. ISO image: unlink the old one, link the new one
2. IPv4, then IPv6: same shape as the ISO image
3. Networks: relink all when membership or ordering changed, otherwise
   update the relation properties (and pinned DHCP IPs) in place
4. Storages: unlink all, then link in declaration order (first one boots)

The platform is not transactional and applies `ordering` in arrival order,
so the operations of one server are always executed one after the other.

Unlinking treats 404 and 409 as success: the relation is already gone,
usually because the linked object was deleted. Linking first checks whether
the relation exists, so repeating a pass never duplicates a link.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from .client import Client, RelationKind
from .context import RequestContext
from .errors import CombinedError, ReconcileError, ValidationError, VdcError, skip_http_codes
from .firewall import compose_rule_set
from .models import (
    DesiredServerConfig,
    IPv4Attachment,
    IPv6Attachment,
    IsoImageAttachment,
    NetworkAttachment,
    ServerAttachment,
    StorageAttachment,
    validate_uuid,
)
from .power import PowerOrchestrator
from .probe import relation_exists

logger = logging.getLogger(__name__)

# Server attributes that can only be changed while the server is off
SHUTDOWN_FIELDS = (
    "cores",
    "memory",
    "ipv4",
    "ipv6",
    "hardware_profile",
    "hardware_profile_config",
    "auto_recovery",
    "user_data",
)

# Server attributes sent with the server PATCH
SERVER_UPDATE_FIELDS = (
    "cores",
    "memory",
    "hardware_profile",
    "hardware_profile_config",
    "auto_recovery",
    "user_data",
)

# Unlinking an already detached object answers 404 (object gone) or 409
UNLINK_SUPPRESSED_CODES = (404, 409)


def relations_require_power_off(legacy: bool) -> bool:
    """Whether storage and ISO image changes require the server to be off.

    Servers with a current hardware profile accept hot-plugging storages
    and ISO images. Legacy servers must be powered off.
    """
    return legacy


def _firewall_wire(net: NetworkAttachment) -> dict[str, Any] | None:
    composed = compose_rule_set(net.custom_firewall)
    return None if composed.is_empty() else composed.to_wire()


def _link_properties(net: NetworkAttachment) -> tuple[Any, ...]:
    return (net.ordering, net.boot_device, net.firewall_template_id, _firewall_wire(net))


def network_list_changed(
    old: Sequence[NetworkAttachment], new: Sequence[NetworkAttachment]
) -> bool:
    """True if the attached networks differ in membership or ordering."""
    if len(old) != len(new):
        return True
    return any(
        a.object_id != b.object_id or a.ordering != b.ordering for a, b in zip(old, new)
    )


def network_properties_changed(
    old: Sequence[NetworkAttachment], new: Sequence[NetworkAttachment]
) -> bool:
    """True if a network at the same position has different link properties.

    Membership and ordering are not considered here; see network_list_changed.
    """
    return any(
        _link_properties(a) != _link_properties(b) or a.pinned_ip != b.pinned_ip
        for a, b in zip(old, new)
        if a.object_id == b.object_id
    )


@dataclass(frozen=True)
class ServerChange:
    """Current and desired configuration of one server."""

    old: DesiredServerConfig
    new: DesiredServerConfig

    def get_change(self, name: str) -> tuple[Any, Any]:
        if name not in DesiredServerConfig.model_fields:
            raise ValueError(f"unknown server config field: {name}")
        return getattr(self.old, name), getattr(self.new, name)

    def has_change(self, name: str) -> bool:
        old, new = self.get_change(name)
        return old != new

    def network_list_changed(self) -> bool:
        return network_list_changed(self.old.networks, self.new.networks)

    def network_properties_changed(self) -> bool:
        return network_properties_changed(self.old.networks, self.new.networks)

    def storages_changed(self) -> bool:
        return self.old.storage_ids() != self.new.storage_ids()

    def server_update(self) -> dict[str, Any]:
        """Body of the server PATCH: the changed server attributes."""
        return {
            name: self.get_change(name)[1]
            for name in SERVER_UPDATE_FIELDS
            if self.has_change(name)
        }

    def shutdown_required(self, legacy: bool = False) -> bool:
        if any(self.has_change(name) for name in SHUTDOWN_FIELDS):
            return True
        if self.network_list_changed():
            return True
        if relations_require_power_off(legacy):
            return self.storages_changed() or self.has_change("iso_image")
        return False


class OperationAction(str, Enum):
    UPDATE_SERVER = "update"
    LINK = "link"
    UNLINK = "unlink"
    UPDATE_RELATION = "update relation"
    PIN = "pin IP"
    UNPIN = "unpin IP"


@dataclass(frozen=True)
class RelationOperation:
    """One step of a reconcile plan.

    `attachment` carries the link properties for LINK and UPDATE_RELATION;
    `value` carries the pinned IP for PIN and the PATCH body for UPDATE_SERVER.
    """

    action: OperationAction
    relation: str
    object_id: str
    attachment: ServerAttachment | None = None
    value: Any = None

    def describe(self) -> str:
        return f"{self.action.value} {self.relation} {self.object_id}"


@dataclass
class ReconcileResult:
    """Result of a single reconcile pass."""

    server_id: str
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    operations: list[RelationOperation] = field(default_factory=list)
    shutdown_required: bool = False
    shutdown_performed: bool = False
    error: Exception | None = None

    @property
    def duration_seconds(self) -> float:
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success(self) -> bool:
        return self.error is None

    def raise_for_error(self) -> None:
        if self.error is not None:
            raise self.error


def _plan_single(
    change: ServerChange,
    name: str,
    relation: RelationKind,
    attachment_type: type[IsoImageAttachment] | type[IPv4Attachment] | type[IPv6Attachment],
) -> list[RelationOperation]:
    if not change.has_change(name):
        return []
    old, new = change.get_change(name)
    operations = []
    if old:
        operations.append(RelationOperation(OperationAction.UNLINK, relation.value, old))
    if new:
        operations.append(
            RelationOperation(
                OperationAction.LINK,
                relation.value,
                new,
                attachment=attachment_type(object_id=new),
            )
        )
    return operations


def _plan_networks(change: ServerChange) -> list[RelationOperation]:
    old_nets, new_nets = change.old.networks, change.new.networks
    relation = RelationKind.NETWORK.value
    operations: list[RelationOperation] = []

    if change.network_list_changed():
        for net in old_nets:
            operations.append(RelationOperation(OperationAction.UNLINK, relation, net.object_id))
        for net in new_nets:
            operations.append(
                RelationOperation(OperationAction.LINK, relation, net.object_id, attachment=net)
            )
            if net.pinned_ip:
                operations.append(
                    RelationOperation(
                        OperationAction.PIN, relation, net.object_id, value=net.pinned_ip
                    )
                )
        return operations

    if not change.network_properties_changed():
        return operations

    for old, new in zip(old_nets, new_nets):
        operations.append(
            RelationOperation(
                OperationAction.UPDATE_RELATION, relation, new.object_id, attachment=new
            )
        )
        if old.pinned_ip == new.pinned_ip:
            continue
        if new.pinned_ip:
            operations.append(
                RelationOperation(OperationAction.PIN, relation, new.object_id, value=new.pinned_ip)
            )
        else:
            operations.append(RelationOperation(OperationAction.UNPIN, relation, new.object_id))
    return operations


def _plan_storages(change: ServerChange) -> list[RelationOperation]:
    if not change.storages_changed():
        return []
    relation = RelationKind.STORAGE.value
    operations = [
        RelationOperation(OperationAction.UNLINK, relation, storage_id)
        for storage_id in change.old.storage_ids()
    ]
    operations.extend(
        RelationOperation(OperationAction.LINK, relation, storage.object_id, attachment=storage)
        for storage in change.new.storages
    )
    return operations


def build_plan(change: ServerChange) -> list[RelationOperation]:
    """The relation operations needed to go from `change.old` to `change.new`, in order."""
    return [
        *_plan_single(change, "iso_image", RelationKind.ISO_IMAGE, IsoImageAttachment),
        *_plan_single(change, "ipv4", RelationKind.IP, IPv4Attachment),
        *_plan_single(change, "ipv6", RelationKind.IP, IPv6Attachment),
        *_plan_networks(change),
        *_plan_storages(change),
    ]


class ServerRelationReconciler:
    """Applies a ServerChange to one server.

    The reconciler owns no state beyond one pass; the client and the power
    orchestrator are borrowed. Share one PowerOrchestrator between
    reconcilers running concurrently so power transitions of the same
    server are serialised.

    Args:
        client: Client used for every call.
        server_id: Server to reconcile.
        change: Current and desired configuration.
        power: Power orchestrator; a private one is created if omitted.
    """

    def __init__(
        self,
        client: Client,
        server_id: str,
        change: ServerChange,
        power: PowerOrchestrator | None = None,
    ) -> None:
        self._client = client
        self.server_id = validate_uuid(server_id, "server_id")
        self.change = change
        self._power = power or PowerOrchestrator(client)

    def shutdown_required(self, legacy: bool = False) -> bool:
        return self.change.shutdown_required(legacy)

    def plan(self) -> list[RelationOperation]:
        return build_plan(self.change)

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    async def apply(self, ctx: RequestContext) -> ReconcileResult:
        """Run a full pass, powering the server off around it when required.

        Errors do not propagate; they are returned in `ReconcileResult.error`
        wrapped in a ReconcileError naming the failing operation.
        """
        result = ReconcileResult(server_id=self.server_id)
        logger.info("Starting reconcile", extra={"server_id": self.server_id})

        try:
            server = await self._client.get_server(ctx, self.server_id)
            result.shutdown_required = self.shutdown_required(server.legacy)

            async def update() -> None:
                await self._update_server(ctx, result)
                await self._execute_plan(ctx, result)

            if result.shutdown_required and server.power:
                result.shutdown_performed = await self._power.run_with_server_off(
                    ctx, self.server_id, update
                )
            else:
                await update()
        except (ReconcileError, CombinedError) as e:
            result.error = e
        except VdcError as e:
            result.error = ReconcileError("reconcile", self.server_id, self.server_id, e)
        finally:
            result.end_time = datetime.now(UTC)

        self._log_result(result)
        return result

    async def reconcile(self, ctx: RequestContext) -> ReconcileResult:
        """Run the relation plan only, without server update or power handling."""
        result = ReconcileResult(server_id=self.server_id)
        try:
            await self._execute_plan(ctx, result)
        except ReconcileError as e:
            result.error = e
        finally:
            result.end_time = datetime.now(UTC)
        self._log_result(result)
        return result

    async def _update_server(self, ctx: RequestContext, result: ReconcileResult) -> None:
        body = self.change.server_update()
        if not body:
            return
        await self._run(
            ctx,
            result,
            RelationOperation(OperationAction.UPDATE_SERVER, "server", self.server_id, value=body),
        )

    async def _execute_plan(self, ctx: RequestContext, result: ReconcileResult) -> None:
        for op in self.plan():
            await self._run(ctx, result, op)

    async def _run(
        self, ctx: RequestContext, result: ReconcileResult, op: RelationOperation
    ) -> None:
        """Execute one operation, wrapping the first failure with its context."""
        try:
            issued = await self._dispatch(ctx, op)
        except VdcError as e:
            logger.error(
                "Reconcile operation failed",
                extra={"server_id": self.server_id, "operation": op.describe(), "error": str(e)},
            )
            raise ReconcileError(op.action.value, self.server_id, op.object_id, e) from e
        if issued:
            result.operations.append(op)
            logger.debug(
                "Reconcile operation done",
                extra={"server_id": self.server_id, "operation": op.describe()},
            )

    async def _dispatch(self, ctx: RequestContext, op: RelationOperation) -> bool:
        """Send the request(s) of `op`. Returns False if nothing had to be sent."""
        client, server_id = self._client, self.server_id
        relation = RelationKind(op.relation) if op.relation != "server" else None

        if op.action is OperationAction.UPDATE_SERVER:
            await client.update_server(ctx, server_id, op.value)
        elif op.action is OperationAction.UNLINK:
            with skip_http_codes(*UNLINK_SUPPRESSED_CODES):
                await client.unlink(ctx, server_id, relation, op.object_id)
        elif op.action is OperationAction.LINK:
            return await self._link(ctx, relation, op)
        elif op.action is OperationAction.UPDATE_RELATION:
            net = op.attachment
            await client.update_server_network(
                ctx,
                server_id,
                op.object_id,
                ordering=net.ordering,
                boot_device=net.boot_device,
                firewall_template_id=net.firewall_template_id,
                firewall=compose_rule_set(net.custom_firewall),
            )
        elif op.action is OperationAction.PIN:
            await client.pin_server_ip(ctx, op.object_id, server_id, op.value)
        elif op.action is OperationAction.UNPIN:
            with skip_http_codes(404):
                await client.unpin_server_ip(ctx, op.object_id, server_id)
        return True

    async def _link(
        self, ctx: RequestContext, relation: RelationKind, op: RelationOperation
    ) -> bool:
        client, server_id = self._client, self.server_id
        attachment = op.attachment

        if isinstance(attachment, IPv4Attachment | IPv6Attachment):
            family = 4 if isinstance(attachment, IPv4Attachment) else 6
            ip = await client.get_ip(ctx, op.object_id)
            if ip.family != family:
                raise ValidationError(
                    f"The IP address with UUID {op.object_id} is not version {family}"
                )

        existing = await relation_exists(client, ctx, server_id, relation, op.object_id)
        if existing.raise_for_error():
            logger.debug(
                "Relation already exists, skipping link",
                extra={"server_id": server_id, "operation": op.describe()},
            )
            return False

        if isinstance(attachment, NetworkAttachment):
            await client.link_network(
                ctx,
                server_id,
                op.object_id,
                ordering=attachment.ordering,
                boot_device=attachment.boot_device,
                firewall_template_id=attachment.firewall_template_id,
                firewall=compose_rule_set(attachment.custom_firewall),
            )
        elif isinstance(attachment, StorageAttachment):
            await client.link_storage(ctx, server_id, op.object_id, attachment.boot_device)
        else:
            await client.link(ctx, server_id, relation, op.object_id)
        return True

    def _log_result(self, result: ReconcileResult) -> None:
        extra: dict[str, Any] = {
            "server_id": result.server_id,
            "duration_seconds": result.duration_seconds,
            "operations": len(result.operations),
            "shutdown_required": result.shutdown_required,
            "shutdown_performed": result.shutdown_performed,
        }
        if result.error is not None:
            extra["error"] = str(result.error)
            logger.error("Reconcile failed", extra=extra)
        else:
            logger.info("Reconcile result", extra=extra)
