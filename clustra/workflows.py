"""
Workflow definitions.

A workflow is a fixed, ordered list of steps. Each step names the external
operation it performs and, optionally, the operation that compensates for
it during an explicit rollback.

Provision-class steps receive the workspace's infra parameters (node
counts, release letter, settings overlay) merged under their own.
"""

from dataclasses import dataclass, field
from typing import Any, Optional

from clustra.engines.base import OperationKind
from clustra.errors import InputError


@dataclass(frozen=True)
class Operation:
    """An external operation with fixed parameters."""
    kind: OperationKind
    parameters: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class StepSpec:
    """One step of a workflow definition."""
    step_id: str
    operation: Operation
    compensation: Optional[Operation] = None
    description: str = ""

    @property
    def kind(self) -> OperationKind:
        return self.operation.kind


@dataclass(frozen=True)
class WorkflowSpec:
    """A named, ordered list of steps."""
    name: str
    steps: tuple[StepSpec, ...]
    description: str = ""

    def get_step(self, step_id: str) -> StepSpec:
        for step in self.steps:
            if step.step_id == step_id:
                return step
        raise InputError(f"Workflow {self.name} has no step {step_id}")


RESET_NODE = "pb_reset_node.yml"

BOOTSTRAP = WorkflowSpec(
    name="bootstrap",
    description="Provision VMs, install Kubernetes, initialize and join the cluster",
    steps=(
        StepSpec(
            step_id="provision-nodes",
            operation=Operation(OperationKind.INFRA_APPLY),
            compensation=Operation(OperationKind.INFRA_DESTROY),
            description="Create the workspace's VMs",
        ),
        StepSpec(
            step_id="install-base",
            operation=Operation(OperationKind.CONFIGURE, {"playbook": "install_kubernetes_cluster.yml"}),
            compensation=Operation(OperationKind.CONFIGURE, {"playbook": RESET_NODE}),
            description="Install container runtime and Kubernetes packages",
        ),
        StepSpec(
            step_id="init-control-plane",
            operation=Operation(OperationKind.CONFIGURE, {"playbook": "initialize_kubernetes_cluster.yml"}),
            compensation=Operation(OperationKind.CONFIGURE, {"playbook": RESET_NODE, "limit": "control_plane"}),
            description="Initialize the control plane",
        ),
        StepSpec(
            step_id="join-workers",
            operation=Operation(OperationKind.CONFIGURE, {"playbook": "pb_add_nodes.yml"}),
            compensation=Operation(OperationKind.CONFIGURE, {"playbook": RESET_NODE, "limit": "workers"}),
            description="Join worker nodes",
        ),
        StepSpec(
            step_id="validate",
            operation=Operation(OperationKind.REMOTE_EXEC, {"command": "kubectl get nodes"}),
            description="Check every node is registered",
        ),
    ),
)

TEARDOWN = WorkflowSpec(
    name="teardown",
    description="Destroy the workspace's VMs",
    steps=(
        StepSpec(
            step_id="destroy-nodes",
            operation=Operation(OperationKind.INFRA_DESTROY),
            description="Destroy the workspace's VMs",
        ),
    ),
)

WORKFLOWS = {spec.name: spec for spec in (BOOTSTRAP, TEARDOWN)}


def get_workflow(name: str) -> WorkflowSpec:
    """
    Look up a workflow definition by name.

    Raises:
        InputError: Unknown workflow
    """
    if name not in WORKFLOWS:
        raise InputError(
            f"Unknown workflow: {name}. Available: {', '.join(sorted(WORKFLOWS))}"
        )
    return WORKFLOWS[name]
