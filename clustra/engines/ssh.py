"""
SSH engine for remote commands on a single node.
"""

import logging

from clustra.config import EngineConfig
from clustra.engines.base import Engine, EngineRequest, EngineStatus, OperationKind, ScratchScope
from clustra.errors import InputError
from clustra.schemas import NodeAddress, NodeRole
from clustra.timeouts import Invocation, ProcessInvocation

logger = logging.getLogger(__name__)


class SshEngine(Engine):
    """Runs `ssh` in batch mode against a resolved node address."""

    name = "ssh"

    def __init__(self, config: EngineConfig):
        self.binary = config.binary
        self.user = config.get("user", "root")
        self.key_file = config.get("key_file")
        self.connect_timeout = int(config.get("connect_timeout", 10))

    def pick_target(self, request: EngineRequest) -> NodeAddress:
        """The node named by the `host` parameter, else control plane 1."""
        host = request.parameters.get("host")
        for address in request.addresses:
            if host is None and address.node.role == NodeRole.CONTROL_PLANE:
                return address
            if host in (address.hostname, address.fqdn, address.ip_address, address.node.name):
                return address
        raise InputError(
            f"No node {host or 'control plane'} in workspace {request.workspace.name}",
            context={"host": host or ""},
        )

    def build_command(self, request: EngineRequest) -> list[str]:
        command_text = request.parameters.get("command")
        if not command_text:
            raise InputError("Remote exec requires a 'command' parameter")
        target = self.pick_target(request)

        command = [
            self.binary,
            "-o", "BatchMode=yes",
            "-o", f"ConnectTimeout={self.connect_timeout}",
            "-o", "StrictHostKeyChecking=no",
        ]
        if self.key_file:
            command.extend(["-i", str(self.key_file)])
        command.extend([f"{self.user}@{target.ip_address}", command_text])
        return command

    def run(self, request: EngineRequest, scratch: ScratchScope) -> Invocation:
        if request.kind != OperationKind.REMOTE_EXEC:
            raise InputError(f"ssh engine cannot run {request.kind.value}")
        command = self.build_command(request)
        logger.info(f"Running remote command on {command[-2]}")
        return ProcessInvocation(command, env=scratch.environment(), correlation_id=request.correlation_id)

    def status(self, workspace: str) -> EngineStatus:
        return EngineStatus(workspace=workspace, live=False)
