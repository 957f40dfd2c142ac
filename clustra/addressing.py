"""
Node address resolution.

Pure functions, no I/O. A node's IP address and hostname are derived from
its workspace's index and release letter plus its role and ordinal:

    ip       = base_ip + (index - first_index) * ip_block_size + role_offset
    hostname = role_prefix + release_letter + ordinal
    fqdn     = hostname + domain_suffix

Within a block, control-plane ordinals 1..control_plane_slots occupy the
low offsets and worker ordinals 1..worker_slots the offsets right after
them. With the default 5 + 5 slots in a block of 10:

    control plane 1 -> +0 ... control plane 5 -> +4
    worker 1        -> +5 ... worker 5        -> +9
"""

import ipaddress
from typing import Iterable

from clustra.config import NetworkConfig
from clustra.errors import ConfigError, InputError, ReservedAddressError
from clustra.schemas import Node, NodeAddress, NodeRole, Workspace


def role_slots(role: NodeRole, network: NetworkConfig) -> int:
    """Number of ordinals available to `role` in one block."""
    if role == NodeRole.CONTROL_PLANE:
        return network.control_plane_slots
    return network.worker_slots


def role_offset(role: NodeRole, ordinal: int, network: NetworkConfig) -> int:
    """Offset of (role, ordinal) inside a workspace's IP block."""
    slots = role_slots(role, network)
    if not 1 <= ordinal <= slots:
        raise InputError(
            f"{role.value} ordinal {ordinal} is outside 1..{slots}",
            context={"role": role.value, "ordinal": ordinal, "slots": slots},
        )
    if role == NodeRole.CONTROL_PLANE:
        return ordinal - 1
    return network.control_plane_slots + ordinal - 1


def validate_block(ip_block_size: int, network: NetworkConfig) -> None:
    """Fail fast if a block cannot hold every role slot."""
    if ip_block_size < network.slots_per_block:
        raise ConfigError(
            f"IP block size {ip_block_size} cannot hold {network.control_plane_slots} control-plane "
            f"and {network.worker_slots} worker addresses",
            context={"ip_block_size": ip_block_size, "required": network.slots_per_block},
            remediation=f"Set network.ip_block_size to at least {network.slots_per_block}.",
        )


def block_start(workspace: Workspace, network: NetworkConfig) -> ipaddress.IPv4Address:
    """First address of the workspace's IP block."""
    if workspace.index < network.first_index:
        raise ConfigError(
            f"Workspace '{workspace.name}' has index {workspace.index} below "
            f"network.first_index {network.first_index}",
            remediation="Lower network.first_index or recreate the workspace.",
        )
    offset = (workspace.index - network.first_index) * workspace.ip_block_size
    try:
        return network.base_ip + offset
    except ipaddress.AddressValueError:
        raise ConfigError(
            f"Block for workspace '{workspace.name}' runs past the end of the IPv4 space",
            context={"index": workspace.index, "base_ip": network.base_ip},
        )


def role_prefix(role: NodeRole, network: NetworkConfig) -> str:
    if role == NodeRole.CONTROL_PLANE:
        return network.control_plane_prefix
    return network.worker_prefix


def resolve_node(
    workspace: Workspace,
    role: NodeRole,
    ordinal: int,
    network: NetworkConfig,
) -> NodeAddress:
    """
    Compute the address and hostname of a node.

    Deterministic: identical inputs always yield identical outputs.

    Args:
        workspace: Owning workspace (index, release letter, block size)
        role: Node role
        ordinal: Node ordinal within its role (1-based)
        network: Network settings

    Returns:
        NodeAddress with ip_address, hostname and fqdn

    Raises:
        InputError: If the ordinal is outside the role's slot range
        ConfigError: If the workspace block is invalid
    """
    validate_block(workspace.ip_block_size, network)
    offset = role_offset(role, ordinal, network)
    try:
        ip = block_start(workspace, network) + offset
    except ipaddress.AddressValueError:
        raise ConfigError(f"Address for {role.value} {ordinal} runs past the end of the IPv4 space")

    hostname = f"{role_prefix(role, network)}{workspace.release_letter}{ordinal}"
    return NodeAddress(
        node=Node(workspace=workspace.name, role=role, ordinal=ordinal),
        ip_address=str(ip),
        hostname=hostname,
        fqdn=f"{hostname}{network.domain_suffix}",
    )


def check_reserved(address: NodeAddress, network: NetworkConfig) -> None:
    """
    Fail if a computed address falls inside a reserved range.

    A static, local check against the configured ranges (DHCP pool,
    infrastructure statics); no network scan.
    """
    ip = ipaddress.IPv4Address(address.ip_address)
    for reserved in network.reserved_ranges:
        if reserved.contains(ip):
            raise ReservedAddressError(
                f"{address.hostname} would get {ip}, inside reserved range "
                f"'{reserved.name}' ({reserved.start}-{reserved.end})",
                context={
                    "hostname": address.hostname,
                    "ip_address": address.ip_address,
                    "range": reserved.name,
                },
                remediation="Move network.base_ip or the reserved range so they do not overlap.",
            )


def workspace_addresses(
    workspace: Workspace,
    network: NetworkConfig,
    nodes: Iterable[Node] = None,
) -> list[NodeAddress]:
    """Resolve every live node of a workspace (or the given nodes)."""
    if nodes is None:
        nodes = workspace.nodes()
    return [resolve_node(workspace, n.role, n.ordinal, network) for n in nodes]
