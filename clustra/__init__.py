"""
clustra - Workspace registry and resilient cluster provisioning

Allocates isolated workspaces with deterministic node addresses and drives
multi-step provisioning workflows against OpenTofu, Ansible and SSH with
retry, timeout and checkpointed resume.
"""

__version__ = "0.1.0"
__author__ = "Cluster Platform Team"


__all__ = ["ClustraConfig", "load_config", "get_clustra_home"]

from .config import ClustraConfig, load_config, get_clustra_home
