"""
Ansible engine.

Runs a playbook against an inventory generated from the registry and the
address resolver. The inventory lives in the invocation's scratch
directory and is removed with it.
"""

import logging
from pathlib import Path
from typing import Any

import yaml

from clustra.config import EngineConfig
from clustra.engines.base import Engine, EngineRequest, EngineStatus, OperationKind, ScratchScope
from clustra.errors import InputError
from clustra.schemas import NodeAddress, NodeRole
from clustra.timeouts import Invocation, ProcessInvocation

logger = logging.getLogger(__name__)

INVENTORY_FILENAME = "inventory.yml"

GROUPS = {
    NodeRole.CONTROL_PLANE: "control_plane",
    NodeRole.WORKER: "workers",
}


def build_inventory(addresses: list[NodeAddress], remote_user: str) -> dict[str, Any]:
    """
    Inventory mapping with control_plane and workers groups.

    Hosts are keyed by hostname with ansible_host set to the resolved IP.
    """
    children: dict[str, Any] = {group: {"hosts": {}} for group in GROUPS.values()}
    for address in addresses:
        group = GROUPS[address.node.role]
        children[group]["hosts"][address.hostname] = {
            "ansible_host": address.ip_address,
            "node_name": address.node.name,
            "fqdn": address.fqdn,
            "k8s_role": "control-plane" if address.node.role == NodeRole.CONTROL_PLANE else "worker",
        }
    return {
        "all": {
            "vars": {"ansible_user": remote_user},
            "children": children,
        }
    }


class AnsibleEngine(Engine):
    """Drives `ansible-playbook` for configure steps."""

    name = "ansible"

    def __init__(self, config: EngineConfig):
        self.binary = config.binary
        self.playbook_dir = Path(config.get("playbook_dir", "ansible/playbooks")).expanduser()
        self.remote_user = config.get("remote_user", "root")
        self.ssh_extra_args = config.get("ssh_extra_args", "-o StrictHostKeyChecking=no")

    def build_command(self, request: EngineRequest, inventory: Path) -> list[str]:
        playbook = request.parameters.get("playbook")
        if not playbook:
            raise InputError("Configure operation requires a 'playbook' parameter")
        if not request.addresses:
            raise InputError(f"Workspace {request.workspace.name} has no nodes to configure")

        command = [
            self.binary,
            "-i",
            str(inventory),
            str(self.playbook_dir / playbook),
            "--ssh-extra-args",
            self.ssh_extra_args,
            "-e",
            f"ansible_user={self.remote_user}",
        ]
        limit = request.parameters.get("limit")
        if limit:
            command.extend(["--limit", str(limit)])
        extra_vars = request.parameters.get("extra_vars") or {}
        for key in sorted(extra_vars):
            command.extend(["-e", f"{key}={extra_vars[key]}"])
        return command

    def run(self, request: EngineRequest, scratch: ScratchScope) -> Invocation:
        if request.kind != OperationKind.CONFIGURE:
            raise InputError(f"ansible engine cannot run {request.kind.value}")
        inventory = scratch.write_file(
            INVENTORY_FILENAME,
            yaml.safe_dump(build_inventory(request.addresses, self.remote_user), sort_keys=True),
        )
        command = self.build_command(request, inventory)
        logger.info(f"Running playbook {request.parameters['playbook']} for {request.workspace.name}")
        return ProcessInvocation(command, env=scratch.environment(), correlation_id=request.correlation_id)

    def status(self, workspace: str) -> EngineStatus:
        # Ansible keeps no resource state of its own
        return EngineStatus(workspace=workspace, live=False)
