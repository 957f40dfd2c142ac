"""
Workspace registry.

Owns the workspace name -> index mapping and per-role node ordinals. State
lives in an append-structured JSON-lines log under
<state_dir>/registry/workspaces.jsonl, replayed into memory on every read.

Every mutation:
1. takes an exclusive flock on <state_dir>/registry/.lock
2. replays the log and validates the change against current state
3. writes previous bytes + one new event line to a temp file, fsyncs it
   and renames it over the log

Lines already in the log are never rewritten, except by compact().

The current workspace (the one commands use when none is named) is kept
in <state_dir>/registry/context and written under the same lock.
"""

import json
import logging
import re
from pathlib import Path
from typing import Any, List, Optional

from clustra.addressing import role_slots, validate_block
from clustra.config import ClustraConfig
from clustra.errors import (
    ConfigError,
    HasLiveResourcesError,
    InputError,
    NameConflictError,
    ProtectedWorkspaceError,
    WorkspaceNotFoundError,
)
from clustra.fileio import atomic_write, file_lock
from clustra.schemas import Node, NodeRole, RoleRoster, Workspace

logger = logging.getLogger(__name__)

NAME_PATTERN = re.compile(r"^[a-zA-Z0-9_-]+$")
MAX_NAME_LENGTH = 50
RESERVED_NAMES = frozenset({"default", "null", "none"})
LETTER_PATTERN = re.compile(r"^[a-z0-9]$")

# Base workspaces and their release letters; base workspaces cannot be deleted
BASE_WORKSPACES = {
    "debian": "d",
    "ubuntu": "u",
    "rocky": "r",
    "suse": "s",
}
PROTECTED_NAMES = frozenset(BASE_WORKSPACES)

LOG_FILENAME = "workspaces.jsonl"
LOCK_FILENAME = ".lock"
CONTEXT_FILENAME = "context"

# Context switched to when the current workspace is deleted
SAFE_CONTEXT = "ubuntu"


def validate_name(name: str) -> None:
    """Raise InputError unless `name` is a usable workspace name."""
    if not name:
        raise InputError("Workspace name cannot be empty")
    if len(name) > MAX_NAME_LENGTH:
        raise InputError(f"Workspace name too long (max {MAX_NAME_LENGTH} characters): {name}")
    if not NAME_PATTERN.match(name):
        raise InputError(
            f"Invalid workspace name: {name}",
            remediation="Use only letters, numbers, hyphens and underscores.",
        )
    if name.lower() in RESERVED_NAMES:
        raise InputError(f"Workspace name is reserved: {name}")


def derive_release_letter(name: str, requested: Optional[str] = None) -> str:
    """
    Release letter for a workspace.

    An explicitly requested letter wins. Base workspaces use their fixed
    letter; anything else uses the lowercased first character of its name.
    """
    letter = requested if requested is not None else BASE_WORKSPACES.get(name, name[:1].lower())
    if not LETTER_PATTERN.match(letter or ""):
        raise InputError(
            f"Invalid release letter {letter!r} for workspace {name}",
            remediation="Pass a single lowercase letter or digit as the release letter.",
        )
    return letter


def _encode(event: dict[str, Any]) -> bytes:
    return (json.dumps(event, sort_keys=True, separators=(",", ":")) + "\n").encode("utf-8")


def _workspace_entry(workspace: Workspace) -> dict[str, Any]:
    entry = workspace.to_dict()
    entry["roster"] = {role.value: workspace.roster[role].to_dict() for role in NodeRole}
    return entry


class WorkspaceRegistry:
    """
    File-backed workspace registry.

    Args:
        config: Loaded configuration (state_dir, network, defaults)
        gateway: Optional object with has_live_resources(workspace),
            destroy_infrastructure(workspace) and
            delete_infra_workspace(workspace); consulted by release()
    """

    def __init__(self, config: ClustraConfig, gateway=None):
        self.config = config
        self.network = config.network
        self.gateway = gateway
        self.registry_dir = Path(config.state_dir) / "registry"
        self.log_path = self.registry_dir / LOG_FILENAME
        self.lock_path = self.registry_dir / LOCK_FILENAME
        self.context_path = self.registry_dir / CONTEXT_FILENAME

    # ------------------------------------------------------------------
    # Log handling
    # ------------------------------------------------------------------

    def _read_log(self) -> bytes:
        if not self.log_path.exists():
            return b""
        return self.log_path.read_bytes()

    def _replay(self, raw: bytes) -> dict[str, Workspace]:
        workspaces: dict[str, Workspace] = {}
        for line_no, line in enumerate(raw.decode("utf-8").splitlines(), start=1):
            if not line.strip():
                continue
            try:
                event = json.loads(line)
            except json.JSONDecodeError as e:
                raise ConfigError(
                    f"Corrupt registry log {self.log_path} at line {line_no}: {e}",
                    remediation="Restore the registry log from backup.",
                )
            self._apply(workspaces, event, line_no)
        return workspaces

    def _apply(self, workspaces: dict[str, Workspace], event: dict[str, Any], line_no: int) -> None:
        kind = event.get("event")
        if kind == "allocate":
            workspace = Workspace.from_dict(event["workspace"])
            workspaces[workspace.name] = workspace
            return

        name = event.get("name")
        workspace = workspaces.get(name)
        if workspace is None:
            raise ConfigError(
                f"Registry log line {line_no} refers to unknown workspace {name!r}",
                remediation="Restore the registry log from backup.",
            )
        if kind == "release":
            del workspaces[name]
        elif kind == "node_added":
            roster = workspace.roster[NodeRole(event["role"])]
            roster.live.append(event["ordinal"])
            roster.highest_issued = max(roster.highest_issued, event["ordinal"])
        elif kind == "node_removed":
            workspace.roster[NodeRole(event["role"])].retire(event["ordinal"])
        elif kind == "settings":
            workspace.settings = dict(event["settings"])
        else:
            raise ConfigError(f"Unknown event {kind!r} in registry log line {line_no}")

    def _load(self, shared: bool = True) -> dict[str, Workspace]:
        with file_lock(self.lock_path, shared=shared):
            return self._replay(self._read_log())

    def _append(self, raw: bytes, event: dict[str, Any]) -> None:
        """Persist `raw` + one event line. Caller holds the exclusive lock."""
        atomic_write(self.log_path, raw + _encode(event))

    def _read_context(self) -> Optional[str]:
        if not self.context_path.exists():
            return None
        return self.context_path.read_text().strip() or None

    def _write_context(self, name: Optional[str]) -> None:
        """Caller holds the exclusive lock. None clears the context."""
        if name is None:
            self.context_path.unlink(missing_ok=True)
        else:
            atomic_write(self.context_path, f"{name}\n".encode("utf-8"))

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def resolve(self, name: str) -> Workspace:
        """Look up a live workspace by name."""
        workspaces = self._load()
        if name not in workspaces:
            raise WorkspaceNotFoundError(f"Workspace not found: {name}")
        return workspaces[name]

    def current_context(self) -> Optional[str]:
        """Name of the current workspace, or None if none is selected."""
        with file_lock(self.lock_path, shared=True):
            return self._read_context()

    def target(self, name: Optional[str] = None) -> Workspace:
        """
        Resolve `name`, or the current workspace when `name` is None.

        Raises:
            InputError: No name given and no workspace selected
            WorkspaceNotFoundError: The workspace does not exist
        """
        if name is not None:
            return self.resolve(name)
        with file_lock(self.lock_path, shared=True):
            current = self._read_context()
            workspaces = self._replay(self._read_log())
        if current is None:
            raise InputError(
                "No workspace given and none selected",
                remediation="Pass a workspace name or select one with 'clustra ctx NAME'.",
            )
        if current not in workspaces:
            raise WorkspaceNotFoundError(
                f"Current workspace no longer exists: {current}",
                remediation="Select another one with 'clustra ctx NAME'.",
            )
        return workspaces[current]

    def list(self) -> List[Workspace]:
        """All live workspaces ordered by index."""
        return sorted(self._load().values(), key=lambda w: w.index)

    def nodes(self, name: str) -> List[Node]:
        return self.resolve(name).nodes()

    def free_indices(self) -> List[int]:
        """Unused indices below the highest live index."""
        used = {w.index for w in self._load().values()}
        if not used:
            return []
        return [i for i in range(self.network.first_index, max(used)) if i not in used]

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def allocate(
        self,
        name: str,
        requested_letter: Optional[str] = None,
        template: Optional[str] = None,
    ) -> Workspace:
        """
        Create a workspace with the smallest free index.

        Args:
            name: New workspace name
            requested_letter: Release letter; derived from the name if omitted
            template: Existing workspace to clone settings and node counts from

        Returns:
            The new Workspace

        Raises:
            InputError: Invalid name or letter
            NameConflictError: Name already in use
            WorkspaceNotFoundError: Template does not exist
            ConfigError: Configured block size cannot hold the role slots
        """
        validate_name(name)
        letter = derive_release_letter(name, requested_letter)
        validate_block(self.network.ip_block_size, self.network)

        with file_lock(self.lock_path):
            raw = self._read_log()
            workspaces = self._replay(raw)

            if name in workspaces:
                raise NameConflictError(f"Workspace already exists: {name}")

            if template is not None:
                if template not in workspaces:
                    raise WorkspaceNotFoundError(f"Template workspace not found: {template}")
                source = workspaces[template]
                settings = dict(source.settings)
                counts = {role: source.node_count(role) for role in NodeRole}
            else:
                settings = {}
                counts = {
                    NodeRole.CONTROL_PLANE: self.config.get_default_node_count("control_planes"),
                    NodeRole.WORKER: self.config.get_default_node_count("workers"),
                }
            settings["RELEASE_LETTER"] = letter

            for role, count in counts.items():
                if count > role_slots(role, self.network):
                    raise InputError(
                        f"{count} {role.value} nodes exceed the {role_slots(role, self.network)} slots per block"
                    )

            used = {w.index for w in workspaces.values()}
            index = self.network.first_index
            while index in used:
                index += 1

            workspace = Workspace(
                name=name,
                index=index,
                release_letter=letter,
                ip_block_size=self.network.ip_block_size,
                template=template,
                settings=settings,
                roster={role: RoleRoster() for role in NodeRole},
            )
            for role, count in counts.items():
                for _ in range(count):
                    workspace.roster[role].issue()

            self._append(raw, {"event": "allocate", "workspace": _workspace_entry(workspace)})

        clashes = [w.name for w in workspaces.values() if w.release_letter == letter]
        if clashes:
            logger.warning(
                f"Release letter '{letter}' of {name} is also used by {', '.join(sorted(clashes))}; "
                "hostnames will collide across those workspaces"
            )
        logger.info(f"Allocated workspace {name} (index={index}, letter={letter})")
        return workspace

    def release(self, name: str, force: bool = False) -> Workspace:
        """
        Delete a workspace and free its index.

        Fails closed: if the gateway reports live nodes, the workspace is
        kept unless `force` is set, in which case its infrastructure is
        destroyed first. The engine's own workspace (tofu state) is then
        removed before the index is freed. If the deleted workspace was
        the current one, the context falls back to the ubuntu base
        workspace.

        Raises:
            WorkspaceNotFoundError: No such workspace
            ProtectedWorkspaceError: Base workspace
            HasLiveResourcesError: Live nodes and not forced
            ExecutionError: The engine workspace could not be removed; the
                registry entry is kept
        """
        workspace = self.resolve(name)
        if name in PROTECTED_NAMES:
            raise ProtectedWorkspaceError(f"Cannot delete base workspace: {name}")

        if self.gateway is not None and self.gateway.has_live_resources(workspace):
            if not force:
                raise HasLiveResourcesError(
                    f"Workspace {name} still has live nodes",
                    remediation=f"Run 'clustra workflow run teardown {name}' or delete with --force.",
                )
            logger.warning(f"Destroying live infrastructure of {name} before deletion")
            # No lock held while the external destroy runs
            self.gateway.destroy_infrastructure(workspace)

        if self.gateway is not None:
            # A later workspace with the same name must not inherit this state
            self.gateway.delete_infra_workspace(workspace)

        with file_lock(self.lock_path):
            raw = self._read_log()
            workspaces = self._replay(raw)
            current = workspaces.get(name)
            if current is None:
                raise WorkspaceNotFoundError(f"Workspace not found: {name}")
            if current.index != workspace.index:
                raise InputError(f"Workspace {name} was recreated while being deleted")
            self._append(raw, {"event": "release", "name": name})

            if self._read_context() == name:
                fallback = SAFE_CONTEXT if SAFE_CONTEXT in workspaces else None
                self._write_context(fallback)
                logger.info(f"Current workspace {name} deleted; context is now {fallback or 'unset'}")

        logger.info(f"Released workspace {name} (index={workspace.index})")
        return current

    def set_context(self, name: str) -> Workspace:
        """Make `name` the current workspace."""
        with file_lock(self.lock_path):
            workspaces = self._replay(self._read_log())
            if name not in workspaces:
                raise WorkspaceNotFoundError(f"Workspace not found: {name}")
            self._write_context(name)
        logger.info(f"Current workspace set to {name}")
        return workspaces[name]

    def add_node(self, name: str, role: NodeRole) -> Node:
        """Issue the next ordinal for `role`; retired ordinals are never reused."""
        role = NodeRole(role)
        with file_lock(self.lock_path):
            raw = self._read_log()
            workspaces = self._replay(raw)
            if name not in workspaces:
                raise WorkspaceNotFoundError(f"Workspace not found: {name}")
            roster = workspaces[name].roster[role]
            ordinal = roster.highest_issued + 1
            slots = role_slots(role, self.network)
            if ordinal > slots:
                raise InputError(
                    f"Workspace {name} has issued all {slots} {role.value} ordinals",
                    context={"highest_issued": roster.highest_issued, "slots": slots},
                )
            self._append(raw, {"event": "node_added", "name": name, "role": role.value, "ordinal": ordinal})

        logger.info(f"Added {role.value} {ordinal} to {name}")
        return Node(workspace=name, role=role, ordinal=ordinal)

    def remove_node(self, name: str, role: NodeRole, ordinal: int) -> Node:
        """Retire a live node's ordinal."""
        role = NodeRole(role)
        with file_lock(self.lock_path):
            raw = self._read_log()
            workspaces = self._replay(raw)
            if name not in workspaces:
                raise WorkspaceNotFoundError(f"Workspace not found: {name}")
            if ordinal not in workspaces[name].roster[role].live:
                raise InputError(f"Workspace {name} has no live {role.value} {ordinal}")
            self._append(raw, {"event": "node_removed", "name": name, "role": role.value, "ordinal": ordinal})

        logger.info(f"Removed {role.value} {ordinal} from {name}")
        return Node(workspace=name, role=role, ordinal=ordinal)

    def update_settings(self, name: str, **settings: str) -> Workspace:
        """Merge key/value settings into the workspace overlay."""
        if "RELEASE_LETTER" in settings:
            raise InputError("RELEASE_LETTER is fixed at creation time")
        with file_lock(self.lock_path):
            raw = self._read_log()
            workspaces = self._replay(raw)
            if name not in workspaces:
                raise WorkspaceNotFoundError(f"Workspace not found: {name}")
            workspace = workspaces[name]
            workspace.settings.update({k: str(v) for k, v in settings.items()})
            self._append(raw, {"event": "settings", "name": name, "settings": workspace.settings})
        return workspace

    def seed_base_workspaces(self) -> List[Workspace]:
        """Create any missing base workspace; returns the ones created."""
        existing = {w.name for w in self.list()}
        return [
            self.allocate(name, requested_letter=letter)
            for name, letter in BASE_WORKSPACES.items()
            if name not in existing
        ]

    def compact(self) -> int:
        """
        Rewrite the log as one allocate line per live workspace.

        Indices and ordinals are preserved exactly. Returns the number of
        lines removed.
        """
        with file_lock(self.lock_path):
            raw = self._read_log()
            workspaces = self._replay(raw)
            before = len([line for line in raw.splitlines() if line.strip()])
            compacted = b"".join(
                _encode({"event": "allocate", "workspace": _workspace_entry(w)})
                for w in sorted(workspaces.values(), key=lambda w: w.index)
            )
            atomic_write(self.log_path, compacted)

        removed = before - len(workspaces)
        logger.info(f"Compacted registry log: {before} -> {len(workspaces)} lines")
        return removed
