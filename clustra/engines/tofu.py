"""
OpenTofu engine.

One tofu workspace per clustra workspace. apply/destroy/plan run in the
configured working directory with `-var key=value` parameters; status
reads the `cluster_summary` output:

    {"ubuntu-controlplane-1": {"IP": "10.10.10.110", "hostname": "cu1", "VM_ID": 301}, ...}
"""

import json
import logging
import subprocess
from pathlib import Path
from typing import Any, Optional

from clustra.config import EngineConfig
from clustra.engines.base import Engine, EngineRequest, EngineStatus, OperationKind, ScratchScope, stderr_tail
from clustra.errors import ExecutionError, InputError
from clustra.timeouts import Invocation, ProcessInvocation, with_timeout

logger = logging.getLogger(__name__)

SUMMARY_OUTPUT = "cluster_summary"
QUERY_TIMEOUT = 120
DEFAULT_WORKSPACE = "default"

_SUBCOMMANDS = {
    OperationKind.INFRA_APPLY: ["apply", "-auto-approve", "-input=false"],
    OperationKind.INFRA_DESTROY: ["destroy", "-auto-approve", "-input=false"],
    OperationKind.INFRA_PLAN: ["plan", "-input=false"],
}


def format_var(key: str, value: Any) -> str:
    if isinstance(value, bool):
        value = "true" if value else "false"
    return f"{key}={value}"


class TofuEngine(Engine):
    """Drives `tofu` for infra apply, destroy and plan."""

    name = "tofu"

    def __init__(self, config: EngineConfig):
        self.binary = config.binary
        self.working_dir = Path(config.get("working_dir", "terraform")).expanduser()

    def _query(self, args: list[str], env: Optional[dict[str, str]] = None) -> subprocess.CompletedProcess:
        try:
            return subprocess.run(
                [self.binary, *args],
                capture_output=True,
                text=True,
                cwd=self.working_dir,
                env=env,
                timeout=QUERY_TIMEOUT,
            )
        except FileNotFoundError:
            raise ExecutionError(
                f"Command not found: {self.binary}",
                remediation="Install OpenTofu or set engines.tofu.binary in config.yaml.",
            )
        except subprocess.TimeoutExpired:
            raise ExecutionError(f"tofu {' '.join(args)} did not answer within {QUERY_TIMEOUT}s")

    def select_workspace(self, workspace: str, env: Optional[dict[str, str]] = None) -> bool:
        """Select an existing tofu workspace; False if it does not exist."""
        result = self._query(["workspace", "select", workspace], env=env)
        if result.returncode == 0:
            return True
        if "doesn't exist" in (result.stderr or ""):
            return False
        raise ExecutionError(
            f"Failed to select tofu workspace {workspace}",
            context={"exit_code": result.returncode, "stderr_tail": stderr_tail(result.stderr)},
        )

    def _select_supervised(self, request: EngineRequest, env: dict[str, str]) -> None:
        """`workspace select -or-create` bounded by the query timeout and the shutdown signal."""
        name = request.workspace.name
        invocation = ProcessInvocation(
            [self.binary, "workspace", "select", "-or-create", name],
            env=env,
            cwd=str(self.working_dir),
            correlation_id=request.correlation_id,
        )
        result = with_timeout(
            invocation,
            QUERY_TIMEOUT,
            shutdown=request.shutdown,
            correlation_id=request.correlation_id,
            description=f"tofu workspace select {name}",
        )
        if result.returncode != 0:
            raise ExecutionError(
                f"Failed to select tofu workspace {name}",
                correlation_id=request.correlation_id,
                context={"exit_code": result.returncode, "stderr_tail": stderr_tail(result.stderr)},
            )

    def delete_workspace(self, workspace: str) -> bool:
        """Remove the tofu workspace from the backend; False if it never existed."""
        # tofu refuses to delete the selected workspace
        self.select_workspace(DEFAULT_WORKSPACE)
        result = self._query(["workspace", "delete", workspace])
        if result.returncode == 0:
            logger.info(f"Deleted tofu workspace {workspace}")
            return True
        if "doesn't exist" in (result.stderr or ""):
            return False
        raise ExecutionError(
            f"Failed to delete tofu workspace {workspace}",
            context={"exit_code": result.returncode, "stderr_tail": stderr_tail(result.stderr)},
            remediation=f"Run 'tofu workspace delete {workspace}' in {self.working_dir} and retry.",
        )

    def build_command(self, request: EngineRequest) -> list[str]:
        if request.kind not in _SUBCOMMANDS:
            raise InputError(f"tofu engine cannot run {request.kind.value}")
        command = [self.binary, *_SUBCOMMANDS[request.kind]]
        for key in sorted(request.parameters):
            command.extend(["-var", format_var(key, request.parameters[key])])
        return command

    def run(self, request: EngineRequest, scratch: ScratchScope) -> Invocation:
        command = self.build_command(request)
        env = scratch.environment()
        self._select_supervised(request, env)
        logger.info(f"Running tofu {request.kind.value} for {request.workspace.name}")
        return ProcessInvocation(
            command,
            env=env,
            cwd=str(self.working_dir),
            correlation_id=request.correlation_id,
        )

    def status(self, workspace: str) -> EngineStatus:
        """Live nodes according to the `cluster_summary` output."""
        if not self.select_workspace(workspace):
            return EngineStatus(workspace=workspace, live=False)

        result = self._query(["output", "-json", SUMMARY_OUTPUT])
        if result.returncode != 0:
            if "not found" in (result.stderr or "").lower():
                return EngineStatus(workspace=workspace, live=False)
            raise ExecutionError(
                f"Failed to read tofu output {SUMMARY_OUTPUT} for {workspace}",
                context={"exit_code": result.returncode, "stderr_tail": stderr_tail(result.stderr)},
            )

        nodes = parse_summary(result.stdout)
        return EngineStatus(workspace=workspace, live=bool(nodes), nodes=nodes)


def parse_summary(text: str) -> dict[str, dict[str, Any]]:
    """Parse `tofu output -json cluster_summary` (bare or wrapped in {"value": ...})."""
    if not text or not text.strip():
        return {}
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise ExecutionError(f"Unparseable {SUMMARY_OUTPUT} output: {e}")
    if isinstance(data, dict) and isinstance(data.get("value"), dict):
        data = data["value"]
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ExecutionError(f"{SUMMARY_OUTPUT} is not a mapping of node names")
    return {str(name): dict(info or {}) for name, info in data.items()}
