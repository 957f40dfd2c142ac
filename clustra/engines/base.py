"""
Engine contract and common pieces.

An Engine turns an EngineRequest into a running Invocation of an external
tool (tofu, ansible-playbook, ssh). Engines never wait on the invocation
themselves; the gateway supervises it with a timeout and retries it.

Side effects of a single invocation (inventory files, environment
exports, decrypted secrets) live in a ScratchScope that is removed when
the invocation finishes, whether it succeeded or not.
"""

import logging
import os
import shutil
import subprocess
import tempfile
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from clustra.errors import ConfigError, ExecutionError
from clustra.schemas import NodeAddress, StepKind, Workspace
from clustra.timeouts import Invocation, ShutdownSignal

logger = logging.getLogger(__name__)

STDERR_TAIL_LINES = 20


class OperationKind(str, Enum):
    """External operations the gateway knows how to run."""
    INFRA_APPLY = "infra_apply"
    INFRA_DESTROY = "infra_destroy"
    INFRA_PLAN = "infra_plan"
    CONFIGURE = "configure"
    REMOTE_EXEC = "remote_exec"

    @property
    def operation_class(self) -> str:
        """Key under timeouts.* and retry.* in config."""
        if self in (OperationKind.INFRA_APPLY, OperationKind.INFRA_DESTROY, OperationKind.INFRA_PLAN):
            return "provision"
        return self.value

    @property
    def step_kind(self) -> StepKind:
        return StepKind(self.operation_class)

    @property
    def engine_name(self) -> str:
        if self.operation_class == "provision":
            return "tofu"
        if self == OperationKind.CONFIGURE:
            return "ansible"
        return "ssh"


@dataclass
class EngineRequest:
    """
    Everything an engine needs to start one invocation.

    Attributes:
        kind: Operation kind
        workspace: Target workspace
        parameters: Engine-specific key/value parameters
        addresses: Resolved addresses of the workspace's live nodes
        correlation_id: Correlation id of the surrounding workflow
        shutdown: Shutdown signal for any wait the engine does before
            handing back its invocation
    """
    kind: OperationKind
    workspace: Workspace
    parameters: dict[str, Any] = field(default_factory=dict)
    addresses: list[NodeAddress] = field(default_factory=list)
    correlation_id: Optional[str] = None
    shutdown: Optional[ShutdownSignal] = None


@dataclass
class EngineStatus:
    """What an engine knows about a workspace's external resources."""
    workspace: str
    live: bool
    nodes: dict[str, dict[str, Any]] = field(default_factory=dict)


class ScratchScope:
    """
    Per-invocation temp directory and environment overlay.

    Usage:
        with ScratchScope("ubuntu", env=secrets) as scratch:
            inventory = scratch.write_file("inventory.yml", text)
            subprocess.run(..., env=scratch.environment())
    """

    def __init__(self, workspace: str, env: Optional[dict[str, str]] = None):
        self.workspace = workspace
        self.env: dict[str, str] = dict(env or {})
        self.path: Optional[Path] = None

    def __enter__(self) -> "ScratchScope":
        self.path = Path(tempfile.mkdtemp(prefix=f"clustra-{self.workspace}-"))
        self.path.chmod(0o700)
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if self.path is not None:
            shutil.rmtree(self.path, ignore_errors=True)
            self.path = None

    def write_file(self, name: str, content: str) -> Path:
        if self.path is None:
            raise RuntimeError("ScratchScope is not active")
        target = self.path / name
        target.write_text(content)
        target.chmod(0o600)
        return target

    def environment(self) -> dict[str, str]:
        """Process environment with the overlay applied."""
        merged = dict(os.environ)
        merged.update(self.env)
        return merged


def stderr_tail(text: str, lines: int = STDERR_TAIL_LINES) -> str:
    return "\n".join((text or "").strip().splitlines()[-lines:])


class Engine(ABC):
    """
    Abstract base class for external engines.

    Subclasses implement run() and status(); cancel() and check_result()
    have working defaults.
    """

    name: str = "engine"

    @abstractmethod
    def run(self, request: EngineRequest, scratch: ScratchScope) -> Invocation:
        """
        Start the external operation described by `request`.

        Args:
            request: Operation request
            scratch: Active scratch scope for files and environment

        Returns:
            A started Invocation

        Raises:
            InputError: Missing or invalid parameters
            ExecutionError: The tool could not be started
        """
        pass

    def cancel(self, invocation: Invocation) -> None:
        """Ask a running invocation to stop."""
        invocation.cancel()

    @abstractmethod
    def status(self, workspace: str) -> EngineStatus:
        """Report live external resources for a workspace."""
        pass

    def delete_workspace(self, workspace: str) -> bool:
        """Drop engine-side state of a released workspace; False if there was none."""
        return False

    def check_result(self, request: EngineRequest, completed: subprocess.CompletedProcess) -> dict[str, Any]:
        """
        Turn a finished process into a result mapping.

        Raises:
            ExecutionError: Non-zero exit status
        """
        if completed.returncode != 0:
            raise ExecutionError(
                f"{self.name} exited with status {completed.returncode}",
                correlation_id=request.correlation_id,
                context={
                    "engine": self.name,
                    "exit_code": completed.returncode,
                    "command": " ".join(str(a) for a in completed.args),
                    "stderr_tail": stderr_tail(completed.stderr),
                },
            )
        return {
            "returncode": completed.returncode,
            "stdout": completed.stdout or "",
            "stderr": completed.stderr or "",
        }


class EngineRegistry:
    """
    Registry of engines by name.

    Usage:
        engines = EngineRegistry.create_default(config)
        engines.get("tofu").status("ubuntu")
    """

    def __init__(self) -> None:
        self._engines: dict[str, Engine] = {}

    def register(self, name: str, engine: Engine) -> None:
        self._engines[name] = engine

    def get(self, name: str) -> Engine:
        """
        Get the engine registered under `name`.

        Raises:
            ConfigError: If no engine is registered under that name
        """
        if name not in self._engines:
            raise ConfigError(
                f"No engine registered: {name}. Registered: {sorted(self._engines)}",
                remediation=f"Add an engines.{name} section to config.yaml.",
            )
        return self._engines[name]

    @classmethod
    def create_default(cls, config) -> "EngineRegistry":
        """Registry with the tofu, ansible and ssh engines built from config."""
        from clustra.engines.ansible import AnsibleEngine
        from clustra.engines.ssh import SshEngine
        from clustra.engines.tofu import TofuEngine

        registry = cls()
        registry.register("tofu", TofuEngine(config.get_engine("tofu")))
        registry.register("ansible", AnsibleEngine(config.get_engine("ansible")))
        registry.register("ssh", SshEngine(config.get_engine("ssh")))
        return registry
