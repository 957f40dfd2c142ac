"""
Workspace and node schemas.

A Workspace is one isolated deployment: a name, a stable integer index
(which selects its IP block), a release letter used in hostnames, and a
configuration overlay. Nodes belong to a workspace and are identified by
role and ordinal; their addresses are derived, never stored.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


def _utcnow() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


class NodeRole(str, Enum):
    """Role of a node inside its workspace."""
    CONTROL_PLANE = "control_plane"
    WORKER = "worker"


@dataclass
class RoleRoster:
    """
    Ordinal bookkeeping for one role.

    Attributes:
        live: Ordinals of nodes that currently exist
        highest_issued: Highest ordinal ever issued; retired ordinals are
            never handed out again
    """
    live: list[int] = field(default_factory=list)
    highest_issued: int = 0

    def issue(self) -> int:
        self.highest_issued += 1
        self.live.append(self.highest_issued)
        return self.highest_issued

    def retire(self, ordinal: int) -> None:
        self.live.remove(ordinal)

    def to_dict(self) -> dict[str, Any]:
        return {"live": sorted(self.live), "highest_issued": self.highest_issued}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RoleRoster":
        return cls(live=list(data.get("live", [])), highest_issued=data.get("highest_issued", 0))


@dataclass
class Workspace:
    """
    A workspace entry in the registry.

    Attributes:
        name: Unique human-chosen name
        index: Stable integer index, unique among live workspaces
        release_letter: Single character used in hostnames
        ip_block_size: Block size copied from config at creation time
        template: Workspace this one was cloned from (None for fresh-init)
        settings: Configuration overlay handed to the external engines
        created_at: When the workspace was allocated
        roster: Ordinal bookkeeping per role
    """
    name: str
    index: int
    release_letter: str
    ip_block_size: int
    template: Optional[str] = None
    settings: dict[str, str] = field(default_factory=dict)
    created_at: datetime = field(default_factory=_utcnow)
    roster: dict[NodeRole, RoleRoster] = field(
        default_factory=lambda: {role: RoleRoster() for role in NodeRole}
    )

    def live_ordinals(self, role: NodeRole) -> list[int]:
        return sorted(self.roster[role].live)

    def node_count(self, role: NodeRole) -> int:
        return len(self.roster[role].live)

    def nodes(self) -> list["Node"]:
        """Live nodes, control plane first, by ordinal."""
        return [
            Node(workspace=self.name, role=role, ordinal=ordinal)
            for role in NodeRole
            for ordinal in self.live_ordinals(role)
        ]

    def to_dict(self) -> dict[str, Any]:
        """Serialize the immutable identity of the workspace for the registry log."""
        return {
            "name": self.name,
            "index": self.index,
            "release_letter": self.release_letter,
            "ip_block_size": self.ip_block_size,
            "template": self.template,
            "settings": dict(self.settings),
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Workspace":
        """Deserialize from dictionary."""
        roster = {role: RoleRoster() for role in NodeRole}
        for role_value, roster_data in data.get("roster", {}).items():
            roster[NodeRole(role_value)] = RoleRoster.from_dict(roster_data)
        return cls(
            name=data["name"],
            index=data["index"],
            release_letter=data["release_letter"],
            ip_block_size=data["ip_block_size"],
            template=data.get("template"),
            settings=dict(data.get("settings", {})),
            created_at=datetime.fromisoformat(data["created_at"]) if data.get("created_at") else _utcnow(),
            roster=roster,
        )


@dataclass(frozen=True)
class Node:
    """A node reference: workspace name, role and ordinal."""
    workspace: str
    role: NodeRole
    ordinal: int

    def __post_init__(self):
        if self.ordinal < 1:
            raise ValueError("ordinal must be >= 1")

    @property
    def name(self) -> str:
        """Stable node name as used by the infrastructure engine."""
        return f"{self.workspace}-{self.role.value.replace('_', '')}-{self.ordinal}"


@dataclass(frozen=True)
class NodeAddress:
    """Derived network identity of a node."""
    node: Node
    ip_address: str
    hostname: str
    fqdn: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "workspace": self.node.workspace,
            "role": self.node.role.value,
            "ordinal": self.node.ordinal,
            "ip_address": self.ip_address,
            "hostname": self.hostname,
            "fqdn": self.fqdn,
        }
