"""Default inbound firewall rules for server network attachments.

When a network attachment declares custom inbound rules, the platform
applies them as a whitelist. To keep DHCP and outgoing connections working,
a fixed block of default rules is appended to every non-empty inbound
sequence. A default rule is recognised by its comment together with the
exact protocol, ports, source range and action the block uses, never by
position, so it can be stripped again when presenting the rules back to the
user. A user rule that merely reuses one of the comments is kept.

The block has five rules per address family:

    DHCP IPv4 / DHCP IPv6   accept udp to the DHCP ports
    Highports TCP           accept tcp 32768:65535
    Highports UDP           accept udp 32768:65535
    Drop all other UDP      drop udp 1:65535
    Drop all other TCP      drop tcp 1:65535
"""

from __future__ import annotations

from collections.abc import Sequence

from .models import (
    Action,
    AddressFamily,
    Direction,
    FirewallRule,
    FirewallRuleSet,
    Protocol,
)

HIGH_PORTS = "32768:65535"
ALL_PORTS = "1:65535"

DHCP_COMMENTS: dict[AddressFamily, str] = {
    AddressFamily.V4: "DHCP IPv4",
    AddressFamily.V6: "DHCP IPv6",
}
DHCP_PORTS: dict[AddressFamily, str] = {
    AddressFamily.V4: "67:68",
    AddressFamily.V6: "546:547",
}
ANY_SOURCE: dict[AddressFamily, str] = {
    AddressFamily.V4: "0.0.0.0/0",
    AddressFamily.V6: "::/0",
}

# (protocol, dst_port, action, comment); the DHCP entry is filled per family
_SHARED_DEFAULTS: tuple[tuple[Protocol, str, Action, str], ...] = (
    (Protocol.TCP, HIGH_PORTS, Action.ACCEPT, "Highports TCP"),
    (Protocol.UDP, HIGH_PORTS, Action.ACCEPT, "Highports UDP"),
    (Protocol.UDP, ALL_PORTS, Action.DROP, "Drop all other UDP"),
    (Protocol.TCP, ALL_PORTS, Action.DROP, "Drop all other TCP"),
)

DEFAULT_BLOCK_SIZE = 1 + len(_SHARED_DEFAULTS)


def default_inbound_rules(family: AddressFamily, first_order: int) -> list[FirewallRule]:
    """Build the default inbound block for `family`, numbered from `first_order`."""
    src_cidr = ANY_SOURCE[family]
    entries = [
        (Protocol.UDP, DHCP_PORTS[family], Action.ACCEPT, DHCP_COMMENTS[family]),
        *_SHARED_DEFAULTS,
    ]
    return [
        FirewallRule(
            protocol=protocol,
            dst_port=dst_port,
            src_cidr=src_cidr,
            action=action,
            comment=comment,
            order=first_order + offset,
        )
        for offset, (protocol, dst_port, action, comment) in enumerate(entries)
    ]


def _next_order(rules: Sequence[FirewallRule]) -> int:
    return max(rule.order for rule in rules) + 1


def _signature(rule: FirewallRule) -> tuple[object, ...]:
    """Everything that identifies a rule except its order."""
    return (
        rule.protocol,
        rule.src_cidr,
        rule.src_port,
        rule.dst_cidr,
        rule.dst_port,
        rule.action,
        rule.comment,
    )


_DEFAULT_SIGNATURES: frozenset[tuple[object, ...]] = frozenset(
    _signature(rule)
    for family in AddressFamily
    for rule in default_inbound_rules(family, first_order=0)
)


def is_default_rule(rule: FirewallRule) -> bool:
    """True if `rule` is one of the generated default rules, at any order."""
    return _signature(rule) in _DEFAULT_SIGNATURES


def _ends_with_default_block(rules: Sequence[FirewallRule], family: AddressFamily) -> bool:
    """True if `rules` is user rules followed by the block composition would append."""
    if len(rules) <= DEFAULT_BLOCK_SIZE:
        return False
    user_rules = rules[:-DEFAULT_BLOCK_SIZE]
    block = rules[-DEFAULT_BLOCK_SIZE:]
    return list(block) == default_inbound_rules(family, _next_order(user_rules))


def add_default_inbound_rules(
    rules: Sequence[FirewallRule], family: AddressFamily
) -> list[FirewallRule]:
    """Append the default inbound block to a non-empty rule sequence.

    An empty input stays empty, so a network without custom rules ends up
    with an inactive firewall instead of an implicit default-deny.

    Every input rule is kept. A sequence that already ends with the block
    this function would append is returned unchanged, so composing twice
    still yields exactly one block.
    """
    if not rules:
        return []
    if _ends_with_default_block(rules, family):
        return list(rules)
    return [*rules, *default_inbound_rules(family, _next_order(rules))]


def remove_default_inbound_rules(rules: Sequence[FirewallRule]) -> list[FirewallRule]:
    """Drop every generated default rule, wherever it sits in the sequence."""
    return [rule for rule in rules if not is_default_rule(rule)]


def compose_rule_set(rule_set: FirewallRuleSet | None) -> FirewallRuleSet:
    """Return the rule set to transmit, with defaults added to both inbound sequences."""
    if rule_set is None:
        return FirewallRuleSet()
    return FirewallRuleSet(
        rules_v4_in=add_default_inbound_rules(
            rule_set.rules(AddressFamily.V4, Direction.IN), AddressFamily.V4
        ),
        rules_v4_out=rule_set.rules(AddressFamily.V4, Direction.OUT),
        rules_v6_in=add_default_inbound_rules(
            rule_set.rules(AddressFamily.V6, Direction.IN), AddressFamily.V6
        ),
        rules_v6_out=rule_set.rules(AddressFamily.V6, Direction.OUT),
    )


def strip_rule_set(rule_set: FirewallRuleSet) -> FirewallRuleSet:
    """Inverse of compose_rule_set for display: remove defaults from inbound sequences."""
    return FirewallRuleSet(
        rules_v4_in=remove_default_inbound_rules(rule_set.rules(AddressFamily.V4, Direction.IN)),
        rules_v4_out=rule_set.rules(AddressFamily.V4, Direction.OUT),
        rules_v6_in=remove_default_inbound_rules(rule_set.rules(AddressFamily.V6, Direction.IN)),
        rules_v6_out=rule_set.rules(AddressFamily.V6, Direction.OUT),
    )
