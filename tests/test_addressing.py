"""Tests for node address resolution."""

import itertools

import pytest

from clustra.addressing import (
    check_reserved,
    resolve_node,
    role_offset,
    validate_block,
    workspace_addresses,
)
from clustra.config import NetworkConfig
from clustra.errors import ConfigError, InputError, ReservedAddressError
from clustra.schemas import NodeRole, RoleRoster, Workspace


def make_workspace(name="ubuntu", index=1, letter="u", block=10, control_planes=1, workers=2):
    roster = {role: RoleRoster() for role in NodeRole}
    for _ in range(control_planes):
        roster[NodeRole.CONTROL_PLANE].issue()
    for _ in range(workers):
        roster[NodeRole.WORKER].issue()
    return Workspace(name=name, index=index, release_letter=letter, ip_block_size=block, roster=roster)


# =============================================================================
# FIXTURES
# =============================================================================


@pytest.fixture
def example_network():
    """Network where index 1 starts at 10.10.10.110."""
    return NetworkConfig({
        "base_ip": "10.10.10.110",
        "ip_block_size": 10,
        "first_index": 1,
        "domain_suffix": ".bevz.net",
        "reserved_ranges": [{"name": "dhcp", "start": "10.10.10.2", "end": "10.10.10.99"}],
    })


@pytest.fixture
def default_network():
    return NetworkConfig({"base_ip": "10.10.10.100", "ip_block_size": 10})


class TestExampleScenario:
    """ubuntu at index 1 with one control plane and two workers."""

    def test_addresses(self, example_network):
        workspace = make_workspace()
        addresses = workspace_addresses(workspace, example_network)

        assert [(a.hostname, a.ip_address) for a in addresses] == [
            ("cu1", "10.10.10.110"),
            ("wu1", "10.10.10.115"),
            ("wu2", "10.10.10.116"),
        ]
        assert addresses[0].fqdn == "cu1.bevz.net"
        assert addresses[0].node.name == "ubuntu-controlplane-1"

    def test_next_workspace_block(self, example_network):
        workspace = make_workspace(name="debian", index=2, letter="d")
        address = resolve_node(workspace, NodeRole.CONTROL_PLANE, 1, example_network)
        assert address.ip_address == "10.10.10.120"
        assert address.hostname == "cd1"


class TestRoleOffset:
    """Tests for role_offset()."""

    def test_control_plane_offsets(self, default_network):
        assert [role_offset(NodeRole.CONTROL_PLANE, n, default_network) for n in range(1, 6)] == [0, 1, 2, 3, 4]

    def test_worker_offsets(self, default_network):
        assert [role_offset(NodeRole.WORKER, n, default_network) for n in range(1, 6)] == [5, 6, 7, 8, 9]

    @pytest.mark.parametrize("role,ordinal", [
        (NodeRole.CONTROL_PLANE, 0),
        (NodeRole.CONTROL_PLANE, 6),
        (NodeRole.WORKER, 6),
    ])
    def test_out_of_range(self, default_network, role, ordinal):
        with pytest.raises(InputError):
            role_offset(role, ordinal, default_network)


class TestResolveNode:
    """Tests for resolve_node()."""

    def test_is_deterministic(self, default_network):
        workspace = make_workspace(index=3)
        first = resolve_node(workspace, NodeRole.WORKER, 2, default_network)
        second = resolve_node(workspace, NodeRole.WORKER, 2, default_network)
        assert first == second

    def test_index_zero_starts_at_base(self, default_network):
        workspace = make_workspace(index=0)
        assert resolve_node(workspace, NodeRole.CONTROL_PLANE, 1, default_network).ip_address == "10.10.10.100"

    def test_index_below_first_index(self, example_network):
        workspace = make_workspace(index=0)
        with pytest.raises(ConfigError):
            resolve_node(workspace, NodeRole.CONTROL_PLANE, 1, example_network)

    def test_small_block_rejected(self, default_network):
        workspace = make_workspace(block=8)
        with pytest.raises(ConfigError):
            resolve_node(workspace, NodeRole.WORKER, 1, default_network)

    def test_past_end_of_address_space(self):
        network = NetworkConfig({"base_ip": "255.255.255.250", "ip_block_size": 10})
        workspace = make_workspace(index=1)
        with pytest.raises(ConfigError):
            resolve_node(workspace, NodeRole.CONTROL_PLANE, 1, network)

    def test_custom_prefixes(self):
        network = NetworkConfig({
            "base_ip": "10.0.0.0",
            "role_prefixes": {"control_plane": "m", "worker": "n"},
        })
        workspace = make_workspace(index=0, letter="x")
        assert resolve_node(workspace, NodeRole.WORKER, 3, network).hostname == "nx3"


class TestAddressUniqueness:
    """Addresses never collide across workspaces with a valid block."""

    def test_pairwise_distinct(self, default_network):
        workspaces = [
            make_workspace(name=f"ws{i}", index=i, letter="abcdef"[i], control_planes=5, workers=5)
            for i in range(6)
        ]
        addresses = list(itertools.chain.from_iterable(
            workspace_addresses(w, default_network) for w in workspaces
        ))
        ips = [a.ip_address for a in addresses]
        hostnames = [a.hostname for a in addresses]
        assert len(ips) == 60
        assert len(set(ips)) == len(ips)
        assert len(set(hostnames)) == len(hostnames)


class TestValidateBlock:
    """Tests for validate_block()."""

    def test_exact_fit(self, default_network):
        validate_block(10, default_network)

    def test_too_small(self, default_network):
        with pytest.raises(ConfigError) as exc_info:
            validate_block(9, default_network)
        assert "at least 10" in exc_info.value.record.remediation


class TestCheckReserved:
    """Tests for check_reserved()."""

    def test_outside_range(self, example_network):
        address = resolve_node(make_workspace(), NodeRole.CONTROL_PLANE, 1, example_network)
        check_reserved(address, example_network)

    def test_inside_range(self):
        network = NetworkConfig({
            "base_ip": "10.10.10.90",
            "reserved_ranges": [{"name": "dhcp", "start": "10.10.10.2", "end": "10.10.10.99"}],
        })
        address = resolve_node(make_workspace(index=0), NodeRole.WORKER, 1, network)
        with pytest.raises(ReservedAddressError) as exc_info:
            check_reserved(address, network)
        assert exc_info.value.record.context["range"] == "dhcp"
