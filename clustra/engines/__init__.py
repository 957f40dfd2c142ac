"""
clustra.engines - Adapters for the external tools clustra drives.

- tofu: infrastructure apply, destroy, plan and the cluster summary
- ansible: configuration playbooks against a generated inventory
- ssh: single remote commands
"""

from .base import (
    Engine,
    EngineRegistry,
    EngineRequest,
    EngineStatus,
    OperationKind,
    ScratchScope,
)

__all__ = [
    "Engine",
    "EngineRegistry",
    "EngineRequest",
    "EngineStatus",
    "OperationKind",
    "ScratchScope",
]
