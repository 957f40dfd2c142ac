"""
clustra.schemas - Data structures shared across the core.

Workspace -> Node -> NodeAddress
WorkflowRecord -> StepRecord

Lifecycle:
1. Workspace: allocated by the registry, owns an index and an IP block
2. Node: issued by the registry with a stable, never reused ordinal
3. NodeAddress: computed on demand by the address resolver
4. WorkflowRecord: created by the ledger when a workflow begins
5. StepRecord: tracks each step's state, attempts and last error
"""

from .workspace import (
    Node,
    NodeAddress,
    NodeRole,
    RoleRoster,
    Workspace,
)
from .step import (
    StepKind,
    StepRecord,
    StepState,
    WorkflowRecord,
)

__all__ = [
    # Workspace
    "Node",
    "NodeAddress",
    "NodeRole",
    "RoleRoster",
    "Workspace",
    # Workflow
    "StepKind",
    "StepRecord",
    "StepState",
    "WorkflowRecord",
]
