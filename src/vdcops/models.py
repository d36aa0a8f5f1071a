"""Pydantic models for the platform's wire objects and server configuration.

These models provide:
1. Validation at the boundary (identifiers, rule orders, attachment shapes)
2. Type-safe parsing of API responses
3. Serialization to the API's JSON field names
"""

from __future__ import annotations

import re
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, field_validator, model_validator

from .errors import ValidationError

UUID_PATTERN = re.compile(
    r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$"
)


def is_valid_uuid(value: str | None) -> bool:
    return bool(value) and UUID_PATTERN.match(value) is not None


def validate_uuid(value: str | None, name: str = "id") -> str:
    """Return the canonical (lowercase, hyphenated) form of an identifier.

    Raises:
        ValidationError: If the value is not a hyphenated hex UUID.
    """
    if not value or not is_valid_uuid(value):
        raise ValidationError(f"'{name}' is not a valid UUID: {value!r}")
    return value.lower()


def _uuid_field(value: str | None) -> str | None:
    if value is None or value == "":
        return None
    if not is_valid_uuid(value):
        raise ValueError(f"not a valid UUID: {value!r}")
    return value.lower()


def _required_uuid_field(value: str) -> str:
    if not is_valid_uuid(value):
        raise ValueError(f"not a valid UUID: {value!r}")
    return value.lower()


ObjectId = Annotated[str, AfterValidator(_required_uuid_field)]
OptionalObjectId = Annotated[str | None, AfterValidator(_uuid_field)]


# =============================================================================
# Request lifecycle
# =============================================================================


class ObjectState(str, Enum):
    """Known object states. Other values are passed through as plain strings."""

    IN_PROVISIONING = "in-provisioning"
    ACTIVE = "active"


class RequestStatusValue(str, Enum):
    DONE = "done"
    FAILED = "failed"
    IN_PROGRESS = "in-progress"


class RequestHandle(BaseModel):
    """Acknowledgement of a mutation, returned by create/link calls."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    request_id: str = Field(alias="request_uuid")
    object_id: str | None = Field(None, alias="object_uuid")


class RequestStatus(BaseModel):
    """Status of one async request as reported by the request-status endpoint."""

    model_config = ConfigDict(extra="ignore")

    status: str
    message: str = ""
    create_time: str | None = None

    @property
    def terminal(self) -> bool:
        return self.status in (RequestStatusValue.DONE.value, RequestStatusValue.FAILED.value)


# =============================================================================
# Firewall
# =============================================================================


class Protocol(str, Enum):
    TCP = "tcp"
    UDP = "udp"


class Action(str, Enum):
    ACCEPT = "accept"
    DROP = "drop"


class AddressFamily(str, Enum):
    V4 = "v4"
    V6 = "v6"


class Direction(str, Enum):
    IN = "in"
    OUT = "out"


class FirewallRule(BaseModel):
    """A single firewall rule. Missing ranges mean "unrestricted"."""

    model_config = ConfigDict(extra="ignore", frozen=True, use_enum_values=False)

    protocol: Protocol | None = None
    src_cidr: str | None = None
    src_port: str | None = None
    dst_cidr: str | None = None
    dst_port: str | None = None
    action: Action = Action.ACCEPT
    comment: str = ""
    order: Annotated[int, Field(ge=0)] = 0

    @field_validator("protocol", mode="before")
    @classmethod
    def empty_protocol_means_any(cls, v: Any) -> Any:
        if v == "":
            return None
        return v

    @field_validator("src_cidr", "src_port", "dst_cidr", "dst_port", mode="before")
    @classmethod
    def empty_range_means_any(cls, v: Any) -> Any:
        if v == "":
            return None
        if isinstance(v, int):
            return str(v)
        return v

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


RULE_SET_KEYS: dict[tuple[AddressFamily, Direction], str] = {
    (AddressFamily.V4, Direction.IN): "rules_v4_in",
    (AddressFamily.V4, Direction.OUT): "rules_v4_out",
    (AddressFamily.V6, Direction.IN): "rules_v6_in",
    (AddressFamily.V6, Direction.OUT): "rules_v6_out",
}


class FirewallRuleSet(BaseModel):
    """Four ordered rule sequences keyed by address family and direction."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    rules_v4_in: list[FirewallRule] = Field(default_factory=list, alias="rules-v4-in")
    rules_v4_out: list[FirewallRule] = Field(default_factory=list, alias="rules-v4-out")
    rules_v6_in: list[FirewallRule] = Field(default_factory=list, alias="rules-v6-in")
    rules_v6_out: list[FirewallRule] = Field(default_factory=list, alias="rules-v6-out")

    @field_validator("rules_v4_in", "rules_v4_out", "rules_v6_in", "rules_v6_out")
    @classmethod
    def orders_are_unique(cls, v: list[FirewallRule]) -> list[FirewallRule]:
        orders = [rule.order for rule in v]
        if len(orders) != len(set(orders)):
            raise ValueError(f"firewall rule orders must be unique within a sequence: {orders}")
        return v

    def rules(self, family: AddressFamily, direction: Direction) -> list[FirewallRule]:
        return list(getattr(self, RULE_SET_KEYS[(family, direction)]))

    def is_empty(self) -> bool:
        return not any(getattr(self, key) for key in RULE_SET_KEYS.values())

    def to_wire(self) -> dict[str, list[dict[str, Any]]]:
        """Serialize with each sequence sorted by ascending order."""
        wire: dict[str, list[dict[str, Any]]] = {}
        for key in RULE_SET_KEYS.values():
            ordered = sorted(getattr(self, key), key=lambda rule: rule.order)
            wire[key.replace("_", "-")] = [rule.to_wire() for rule in ordered]
        return wire


# =============================================================================
# Server attachments (tagged union, no shared base record)
# =============================================================================

_ATTACHMENT_CONFIG = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)


class StorageAttachment(BaseModel):
    model_config = _ATTACHMENT_CONFIG

    kind: Literal["storage"] = "storage"
    object_id: ObjectId = Field(alias="object_uuid")
    boot_device: bool = Field(False, alias="bootdevice")


class NetworkAttachment(BaseModel):
    """A network link with ordering, firewall and optional pinned DHCP IP."""

    model_config = _ATTACHMENT_CONFIG

    kind: Literal["network"] = "network"
    object_id: ObjectId = Field(alias="object_uuid")
    ordering: Annotated[int, Field(ge=0)] = 0
    boot_device: bool = Field(False, alias="bootdevice")
    firewall_template_id: OptionalObjectId = Field(None, alias="firewall_template_uuid")
    custom_firewall: FirewallRuleSet | None = Field(None, alias="firewall")
    pinned_ip: str | None = Field(None, alias="ip")

    @field_validator("pinned_ip", mode="before")
    @classmethod
    def empty_ip_means_unpinned(cls, v: Any) -> Any:
        return v or None


class IPv4Attachment(BaseModel):
    model_config = _ATTACHMENT_CONFIG

    kind: Literal["ipv4"] = "ipv4"
    object_id: ObjectId = Field(alias="object_uuid")


class IPv6Attachment(BaseModel):
    model_config = _ATTACHMENT_CONFIG

    kind: Literal["ipv6"] = "ipv6"
    object_id: ObjectId = Field(alias="object_uuid")


class IsoImageAttachment(BaseModel):
    model_config = _ATTACHMENT_CONFIG

    kind: Literal["iso_image"] = "iso_image"
    object_id: ObjectId = Field(alias="object_uuid")


ServerAttachment = Annotated[
    StorageAttachment | NetworkAttachment | IPv4Attachment | IPv6Attachment | IsoImageAttachment,
    Field(discriminator="kind"),
]


# =============================================================================
# Server configuration
# =============================================================================


class DesiredServerConfig(BaseModel):
    """Declarative configuration of a server and its relations.

    Network `ordering` is always the 0-based index in declaration order and
    the first storage is always the boot device, regardless of input.
    """

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    cores: Annotated[int, Field(ge=1)]
    memory: Annotated[int, Field(ge=1)]
    hardware_profile: str = "default"
    hardware_profile_config: dict[str, Any] | None = None
    auto_recovery: bool = True
    user_data: str | None = None
    ipv4: str | None = None
    ipv6: str | None = None
    iso_image: str | None = None
    storages: list[StorageAttachment] = Field(default_factory=list)
    networks: list[NetworkAttachment] = Field(default_factory=list)

    @field_validator("ipv4", "ipv6", "iso_image")
    @classmethod
    def validate_optional_id(cls, v: str | None) -> str | None:
        return _uuid_field(v)

    @field_validator("storages", mode="before")
    @classmethod
    def accept_bare_storage_ids(cls, v: Any) -> Any:
        if isinstance(v, list):
            return [{"object_uuid": item} if isinstance(item, str) else item for item in v]
        return v

    @field_validator("networks", mode="before")
    @classmethod
    def accept_bare_network_ids(cls, v: Any) -> Any:
        if isinstance(v, list):
            return [{"object_uuid": item} if isinstance(item, str) else item for item in v]
        return v

    @model_validator(mode="after")
    def normalize_relations(self) -> DesiredServerConfig:
        self.networks = [
            net.model_copy(update={"ordering": index}) for index, net in enumerate(self.networks)
        ]
        self.storages = [
            storage.model_copy(update={"boot_device": index == 0})
            for index, storage in enumerate(self.storages)
        ]
        return self

    def network_ids(self) -> list[str]:
        return [net.object_id for net in self.networks]

    def storage_ids(self) -> list[str]:
        return [storage.object_id for storage in self.storages]

    def attachments(self) -> list[ServerAttachment]:
        """All relations of this configuration as tagged attachments."""
        result: list[ServerAttachment] = []
        if self.iso_image:
            result.append(IsoImageAttachment(object_id=self.iso_image))
        if self.ipv4:
            result.append(IPv4Attachment(object_id=self.ipv4))
        if self.ipv6:
            result.append(IPv6Attachment(object_id=self.ipv6))
        result.extend(self.networks)
        result.extend(self.storages)
        return result


class ServerPowerModel(BaseModel):
    """Power state of a server and whether it accepts updates while running."""

    model_config = ConfigDict(frozen=True)

    running: bool
    supports_hot_update: bool = True

    @classmethod
    def from_server(cls, server: ServerProperties) -> ServerPowerModel:
        return cls(running=server.power, supports_hot_update=not server.legacy)


class ServerProperties(BaseModel):
    """Subset of the server object consumed by the engine."""

    model_config = ConfigDict(extra="ignore")

    object_uuid: str
    name: str = ""
    status: str = ""
    power: bool = False
    legacy: bool = False
    cores: int | None = None
    memory: int | None = None

    @property
    def state(self) -> ObjectState | str:
        try:
            return ObjectState(self.status)
        except ValueError:
            return self.status


class IPProperties(BaseModel):
    model_config = ConfigDict(extra="ignore")

    object_uuid: str
    family: int
    ip: str = ""
    status: str = ""
