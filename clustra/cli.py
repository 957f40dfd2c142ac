"""
CLI interface for clustra.

Manage workspaces and their nodes, and run provisioning workflows.

Exit codes:
    0  success
    2  input error (bad arguments, unknown workspace, conflicts)
    3  configuration error
    4  execution error (including retries exhausted)
    5  timeout or cancelled
"""

import click
import yaml
from rich.table import Table

from clustra import __version__
from clustra.errors import ClustraError, ErrorCategory, ErrorRecord
from clustra.logs import console


EXIT_CODES = {
    ErrorCategory.INPUT: 2,
    ErrorCategory.CONFIG: 3,
    ErrorCategory.EXECUTION: 4,
    ErrorCategory.TIMEOUT: 5,
}

ROLE_CHOICES = ["control_plane", "worker"]


def exit_code_for(record: ErrorRecord) -> int:
    return EXIT_CODES.get(record.category, 4)


def _fail(record: ErrorRecord) -> None:
    click.echo(f"✗ {record.message}", err=True)
    if record.remediation:
        click.echo(f"  hint: {record.remediation}", err=True)
    click.echo(f"  correlation id: {record.correlation_id}", err=True)
    raise SystemExit(exit_code_for(record))


def _config(ctx):
    if "config" not in ctx.obj:
        click.echo(f"✗ Config not loaded: {ctx.obj.get('config_error', 'Unknown error')}", err=True)
        click.echo("Run 'clustra init' to create a configuration file.", err=True)
        raise SystemExit(EXIT_CODES[ErrorCategory.CONFIG])
    return ctx.obj["config"]


def _engines(ctx):
    from clustra.engines import EngineRegistry

    if "engines" not in ctx.obj:
        ctx.obj["engines"] = EngineRegistry.create_default(_config(ctx))
    return ctx.obj["engines"]


def _shutdown(ctx):
    from clustra.timeouts import ShutdownSignal

    if "shutdown" not in ctx.obj:
        ctx.obj["shutdown"] = ShutdownSignal()
    return ctx.obj["shutdown"]


def _registry(ctx):
    from clustra.gateway import OperationGateway
    from clustra.registry import WorkspaceRegistry

    config = _config(ctx)
    gateway = OperationGateway(config, _engines(ctx), shutdown=_shutdown(ctx))
    return WorkspaceRegistry(config, gateway=gateway)


def _orchestrator(ctx):
    from clustra.ledger import CheckpointLedger, FileLedgerStore
    from clustra.orchestrator import Orchestrator
    from clustra.secrets import provider_from_config

    config = _config(ctx)
    ledger = CheckpointLedger(FileLedgerStore(config.state_dir / "workflows"))
    return Orchestrator(
        config,
        _registry(ctx),
        ledger,
        _engines(ctx),
        secrets_provider=provider_from_config(config),
        shutdown=_shutdown(ctx),
    )


@click.group()
@click.version_option(version=__version__, prog_name="clustra")
@click.option("--config", "config_path", type=click.Path(dir_okay=False), help="Path to config.yaml")
@click.pass_context
def main(ctx, config_path):
    """
    clustra - Workspace registry and cluster provisioning orchestrator.

    Allocate isolated workspaces, compute node addresses, and drive
    provisioning workflows with retry, timeout and resume.
    """
    from clustra.config import load_config
    from clustra.logs import setup_logging

    ctx.ensure_object(dict)
    if "config" in ctx.obj:
        return
    try:
        config = load_config(config_path)
    except ClustraError as e:
        # init works without a config; other commands report this later
        ctx.obj["config_error"] = str(e)
        return

    ctx.obj["config"] = config
    setup_logging(
        config.get_log_file_path(),
        log_level=config.get_log_level(),
        log_format=config.get_log_format(),
        console_output=config.should_log_to_console(),
    )


@main.command("init")
@click.option("--force", is_flag=True, help="Overwrite existing configuration")
@click.option("--no-base", is_flag=True, help="Do not create the base workspaces")
@click.pass_context
def init(ctx, force: bool, no_base: bool):
    """Initialize clustra configuration and state."""
    from clustra.config import DEFAULT_CONFIG, get_clustra_home, load_config
    from clustra.registry import WorkspaceRegistry

    home = get_clustra_home()
    home.mkdir(parents=True, exist_ok=True)

    cfg_path = home / "config.yaml"
    if cfg_path.exists() and not force:
        click.echo(f"Config already exists at {cfg_path}. Use --force to overwrite.", err=True)
        raise SystemExit(EXIT_CODES[ErrorCategory.INPUT])

    default_cfg = dict(DEFAULT_CONFIG)
    default_cfg["state_dir"] = str(home / "state")
    default_cfg["logging"] = dict(DEFAULT_CONFIG["logging"], output=str(home / "logs" / "clustra-{date}.log"))
    cfg_path.write_text(yaml.safe_dump(default_cfg, sort_keys=False))
    click.echo(f"Initialized clustra config at {cfg_path}")

    if no_base:
        return
    try:
        config = load_config(cfg_path)
        created = WorkspaceRegistry(config).seed_base_workspaces()
    except ClustraError as e:
        _fail(e.record)
    for workspace in created:
        click.echo(f"✓ Created base workspace {workspace.name} (index {workspace.index})")


@main.command("ctx")
@click.argument("name", required=False)
@click.pass_context
def ctx_command(ctx, name: str):
    """Show the current workspace, or switch to NAME."""
    registry = _registry(ctx)
    try:
        if name is None:
            current = registry.current_context()
        else:
            current = registry.set_context(name).name
    except ClustraError as e:
        _fail(e.record)

    if name is not None:
        click.echo(f"✓ Switched to workspace {current}")
    elif current is None:
        click.echo("No workspace selected. Use 'clustra ctx NAME'.")
    else:
        click.echo(f"Current workspace: {current}")


# ----------------------------------------------------------------------
# workspace
# ----------------------------------------------------------------------

@main.group("workspace")
def workspace_group():
    """Create, delete and inspect workspaces."""
    pass


@workspace_group.command("create")
@click.argument("name")
@click.option("--letter", help="Release letter used in hostnames (default: derived from name)")
@click.option("--from", "template", help="Clone settings and node counts from this workspace")
@click.pass_context
def workspace_create(ctx, name: str, letter: str, template: str):
    """Create a workspace with the first free index and switch to it."""
    registry = _registry(ctx)
    try:
        workspace = registry.allocate(name, requested_letter=letter, template=template)
        registry.set_context(workspace.name)
    except ClustraError as e:
        _fail(e.record)
    click.echo(
        f"✓ Created workspace {workspace.name} "
        f"(index {workspace.index}, letter {workspace.release_letter})"
    )
    click.echo(f"Switched to workspace {workspace.name}")


@workspace_group.command("delete")
@click.argument("name")
@click.option("--force", is_flag=True, help="Destroy live infrastructure before deleting")
@click.pass_context
def workspace_delete(ctx, name: str, force: bool):
    """Delete a workspace and free its index."""
    registry = _registry(ctx)
    try:
        workspace = registry.release(name, force=force)
        current = registry.current_context()
    except ClustraError as e:
        _fail(e.record)
    click.echo(f"✓ Deleted workspace {workspace.name} (index {workspace.index} is free)")
    click.echo(f"Current workspace: {current or 'none'}")


@workspace_group.command("list")
@click.pass_context
def workspace_list(ctx):
    """List workspaces by index."""
    from clustra.schemas import NodeRole

    try:
        workspaces = _registry(ctx).list()
    except ClustraError as e:
        _fail(e.record)

    if not workspaces:
        click.echo("No workspaces. Create one with 'clustra workspace create NAME'.")
        return

    table = Table(title="Workspaces")
    table.add_column("Index", justify="right")
    table.add_column("Name")
    table.add_column("Letter")
    table.add_column("Control planes", justify="right")
    table.add_column("Workers", justify="right")
    table.add_column("Template")
    for workspace in workspaces:
        table.add_row(
            str(workspace.index),
            workspace.name,
            workspace.release_letter,
            str(workspace.node_count(NodeRole.CONTROL_PLANE)),
            str(workspace.node_count(NodeRole.WORKER)),
            workspace.template or "-",
        )
    console.print(table)


@workspace_group.command("show")
@click.argument("name", required=False)
@click.pass_context
def workspace_show(ctx, name: str):
    """Show a workspace (default: current), its settings and node addresses."""
    from clustra.addressing import workspace_addresses

    config = _config(ctx)
    try:
        workspace = _registry(ctx).target(name)
        addresses = workspace_addresses(workspace, config.network)
    except ClustraError as e:
        _fail(e.record)

    click.echo(f"Workspace: {workspace.name}")
    click.echo(f"  Index:    {workspace.index}")
    click.echo(f"  Letter:   {workspace.release_letter}")
    click.echo(f"  Template: {workspace.template or '-'}")
    click.echo(f"  Created:  {workspace.created_at.isoformat(timespec='seconds')}")
    if workspace.settings:
        click.echo("  Settings:")
        for key in sorted(workspace.settings):
            click.echo(f"    {key}={workspace.settings[key]}")

    table = Table(title="Nodes")
    table.add_column("Node")
    table.add_column("Hostname")
    table.add_column("IP address")
    table.add_column("FQDN")
    for address in addresses:
        table.add_row(address.node.name, address.hostname, address.ip_address, address.fqdn)
    console.print(table)


@workspace_group.command("set")
@click.argument("name")
@click.argument("settings", nargs=-1, required=True)
@click.pass_context
def workspace_set(ctx, name: str, settings: tuple):
    """Set overlay settings (KEY=VALUE ...) on a workspace."""
    values = {}
    for item in settings:
        if "=" not in item:
            raise click.UsageError(f"Expected KEY=VALUE, got: {item}")
        key, value = item.split("=", 1)
        values[key.strip()] = value
    try:
        workspace = _registry(ctx).update_settings(name, **values)
    except ClustraError as e:
        _fail(e.record)
    click.echo(f"✓ Updated {len(values)} setting(s) on {workspace.name}")


@workspace_group.command("compact")
@click.pass_context
def workspace_compact(ctx):
    """Rewrite the registry log keeping only live state."""
    try:
        removed = _registry(ctx).compact()
    except ClustraError as e:
        _fail(e.record)
    click.echo(f"✓ Compacted registry log ({removed} line(s) removed)")


# ----------------------------------------------------------------------
# node
# ----------------------------------------------------------------------

@main.group("node")
def node_group():
    """Add and remove nodes."""
    pass


@node_group.command("add")
@click.argument("workspace", required=False)
@click.option("--role", type=click.Choice(ROLE_CHOICES), default="worker", show_default=True)
@click.pass_context
def node_add(ctx, workspace: str, role: str):
    """Add a node with the next unused ordinal to WORKSPACE (default: current)."""
    from clustra.addressing import resolve_node
    from clustra.schemas import NodeRole

    config = _config(ctx)
    registry = _registry(ctx)
    try:
        name = registry.target(workspace).name
        node = registry.add_node(name, NodeRole(role))
        address = resolve_node(registry.resolve(name), node.role, node.ordinal, config.network)
    except ClustraError as e:
        _fail(e.record)
    click.echo(f"✓ Added {node.name} ({address.hostname}, {address.ip_address})")
    click.echo(f"Run 'clustra workflow run bootstrap {name}' to provision it.")


@node_group.command("remove")
@click.argument("workspace")
@click.argument("role", type=click.Choice(ROLE_CHOICES))
@click.argument("ordinal", type=int)
@click.pass_context
def node_remove(ctx, workspace: str, role: str, ordinal: int):
    """Retire a node's ordinal (it is never reused)."""
    from clustra.schemas import NodeRole

    try:
        node = _registry(ctx).remove_node(workspace, NodeRole(role), ordinal)
    except ClustraError as e:
        _fail(e.record)
    click.echo(f"✓ Removed {node.name}")


# ----------------------------------------------------------------------
# workflow
# ----------------------------------------------------------------------

@main.group("workflow")
def workflow_group():
    """Run, resume and inspect provisioning workflows."""
    pass


def _report_result(result) -> None:
    for step in result.steps:
        marker = {"succeeded": "✓", "failed": "✗"}.get(step.state.value, "·")
        click.echo(f"  {marker} {step.step_id} [{step.state.value}] attempts={step.attempt_count}")
    for mismatch in result.mismatches:
        click.echo(f"  ! {mismatch}")
    if result.succeeded:
        click.echo(f"✓ {result.name} on {result.workspace} succeeded ({result.workflow_id})")
        return
    click.echo(f"✗ {result.name} on {result.workspace} {result.status} ({result.workflow_id})", err=True)
    click.echo(f"  Resume with: clustra workflow resume {result.workflow_id}", err=True)
    if result.error is not None:
        _fail(result.error)
    raise SystemExit(EXIT_CODES[ErrorCategory.EXECUTION])


@workflow_group.command("run")
@click.argument("name")
@click.argument("workspace", required=False)
@click.pass_context
def workflow_run(ctx, name: str, workspace: str):
    """Run workflow NAME (bootstrap, teardown) on WORKSPACE (default: current)."""
    from clustra.timeouts import install_signal_handlers, restore_signal_handlers

    orchestrator = _orchestrator(ctx)
    previous = install_signal_handlers(_shutdown(ctx))
    try:
        result = orchestrator.run(name, workspace)
    except ClustraError as e:
        _fail(e.record)
    finally:
        restore_signal_handlers(previous)
    _report_result(result)


@workflow_group.command("resume")
@click.argument("workflow_id")
@click.pass_context
def workflow_resume(ctx, workflow_id: str):
    """Resume a failed or interrupted workflow."""
    from clustra.timeouts import install_signal_handlers, restore_signal_handlers

    orchestrator = _orchestrator(ctx)
    previous = install_signal_handlers(_shutdown(ctx))
    try:
        result = orchestrator.resume(workflow_id)
    except ClustraError as e:
        _fail(e.record)
    finally:
        restore_signal_handlers(previous)
    _report_result(result)


@workflow_group.command("rollback")
@click.argument("workflow_id")
@click.pass_context
def workflow_rollback(ctx, workflow_id: str):
    """Undo the succeeded steps of a workflow, last first."""
    try:
        report = _orchestrator(ctx).rollback(workflow_id)
    except ClustraError as e:
        _fail(e.record)

    for step_id in report.rolled_back:
        click.echo(f"  ✓ {step_id} rolled back")
    for step_id in report.skipped:
        click.echo(f"  · {step_id} skipped (no compensation)")
    for step_id, error in report.failed.items():
        click.echo(f"  ✗ {step_id}: {error.message}", err=True)
    if not report.ok:
        raise SystemExit(EXIT_CODES[ErrorCategory.EXECUTION])
    click.echo(f"✓ Rolled back {workflow_id}")


@workflow_group.command("status")
@click.argument("workflow_id")
@click.pass_context
def workflow_status(ctx, workflow_id: str):
    """Show the steps and errors of a workflow."""
    orchestrator = _orchestrator(ctx)
    try:
        record = orchestrator.status(workflow_id)
        report = orchestrator.error_report(workflow_id)
    except ClustraError as e:
        _fail(e.record)

    click.echo(f"Workflow: {record.workflow_id} ({record.name} on {record.workspace})")
    click.echo(f"Status:   {record.status}")

    table = Table(title="Steps")
    table.add_column("#", justify="right")
    table.add_column("Step")
    table.add_column("Kind")
    table.add_column("State")
    table.add_column("Attempts", justify="right")
    table.add_column("Duration", justify="right")
    for step in record.steps:
        duration = step.duration_ms
        table.add_row(
            str(step.sequence_number),
            step.step_id,
            step.kind.value,
            step.state.value,
            str(step.attempt_count),
            f"{duration / 1000:.1f}s" if duration is not None else "-",
        )
    console.print(table)

    if report.records:
        click.echo(report.render())


@workflow_group.command("list")
@click.option("--workspace", help="Only workflows of this workspace")
@click.pass_context
def workflow_list(ctx, workspace: str):
    """List recorded workflows, oldest first."""
    try:
        records = _orchestrator(ctx).list_workflows(workspace)
    except ClustraError as e:
        _fail(e.record)

    if not records:
        click.echo("No workflows recorded.")
        return
    for record in records:
        click.echo(
            f"{record.workflow_id}  {record.name:<10} {record.workspace:<16} "
            f"{record.status:<12} {record.created_at.isoformat(timespec='seconds')}"
        )


if __name__ == "__main__":
    main()
