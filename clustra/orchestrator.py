"""
Workflow orchestrator.

Runs a workflow definition against a workspace, one step at a time:

1. resolve the workspace (or the current one) and check no other
   workflow is active on it
2. check every predicted node address against the reserved ranges
3. record the workflow in the ledger (all steps PENDING)
4. load secrets once
5. run each step through the gateway; stop at the first failure, or
   before the next step once shutdown is requested

A failed workflow is left as is so it can be resumed. Rollback only
happens when explicitly requested.
"""

import logging
import random
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from clustra.addressing import check_reserved, workspace_addresses
from clustra.config import ClustraConfig
from clustra.engines.base import EngineRegistry, OperationKind
from clustra.errors import ClustraError, ErrorRecord, ErrorReport, InputError, OperationCancelled
from clustra.gateway import OperationGateway, infra_parameters
from clustra.ids import generate_ulid, new_correlation_id
from clustra.ledger import CheckpointLedger, RollbackReport, WorkflowHandle
from clustra.logs import log_extra
from clustra.registry import WorkspaceRegistry
from clustra.schemas import StepRecord, StepState, WorkflowRecord, Workspace
from clustra.secrets import NullSecretsProvider, SecretsProvider
from clustra.timeouts import ShutdownSignal
from clustra.workflows import Operation, WorkflowSpec, get_workflow

logger = logging.getLogger(__name__)


@dataclass
class WorkflowResult:
    """Outcome of run() or resume()."""
    workflow_id: str
    name: str
    workspace: str
    correlation_id: str
    status: str
    steps: list[StepRecord] = field(default_factory=list)
    error: Optional[ErrorRecord] = None
    mismatches: list[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.status == "succeeded"


class Orchestrator:
    """
    Drives workflows through the gateway and the ledger.

    Args:
        config: Loaded configuration
        registry: Workspace registry
        ledger: Checkpoint ledger
        engines: Engine registry used by the gateway
        secrets_provider: Source of secrets for engine environments
        shutdown: Shutdown signal interrupting waits and backoff
        sleep: Sleep function for retry backoff (injected by tests)
        rng: Random source for retry jitter
    """

    def __init__(
        self,
        config: ClustraConfig,
        registry: WorkspaceRegistry,
        ledger: CheckpointLedger,
        engines: EngineRegistry,
        *,
        secrets_provider: Optional[SecretsProvider] = None,
        shutdown: Optional[ShutdownSignal] = None,
        sleep: Callable[[float], None] = time.sleep,
        rng: Optional[random.Random] = None,
    ):
        self.config = config
        self.registry = registry
        self.ledger = ledger
        self.engines = engines
        self.secrets_provider = secrets_provider or NullSecretsProvider()
        self.shutdown = shutdown
        self.sleep = sleep
        self.rng = rng

    def _gateway(self, secrets: Optional[dict[str, str]] = None) -> OperationGateway:
        return OperationGateway(
            self.config,
            self.engines,
            shutdown=self.shutdown,
            secrets=secrets,
            sleep=self.sleep,
            rng=self.rng,
        )

    def parameters_for(self, operation: Operation, workspace: Workspace) -> dict[str, Any]:
        """Engine parameters for one operation against `workspace`."""
        if operation.kind.operation_class == "provision":
            return {**infra_parameters(workspace), **operation.parameters}
        params = dict(operation.parameters)
        if operation.kind == OperationKind.CONFIGURE:
            extra_vars = {key.lower(): value for key, value in workspace.settings.items()}
            extra_vars.update(params.get("extra_vars", {}))
            params["extra_vars"] = extra_vars
        return params

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def run(self, name: str, workspace: Optional[str] = None) -> WorkflowResult:
        """
        Start workflow `name` on `workspace` (the current workspace if omitted).

        Raises:
            InputError: Unknown workflow or workspace, no workspace given or
                selected, or another workflow is active on the workspace
            ReservedAddressError: A predicted address is reserved
        """
        spec = get_workflow(name)
        target = self.registry.target(workspace)
        self._ensure_idle(target.name)

        if any(step.kind == OperationKind.INFRA_APPLY for step in spec.steps):
            for address in workspace_addresses(target, self.config.network):
                check_reserved(address, self.config.network)

        handle = self.ledger.begin_workflow(
            generate_ulid(),
            spec.name,
            target.name,
            [(step.step_id, step.kind.step_kind) for step in spec.steps],
            correlation_id=new_correlation_id(),
        )
        return self._execute(spec, handle, target)

    def resume(self, workflow_id: str) -> WorkflowResult:
        """
        Continue a failed or interrupted workflow.

        Steps left RUNNING by a crashed process are marked FAILED and run
        again; SUCCEEDED steps are skipped.
        """
        record = self.ledger.get(workflow_id)
        if record.steps_in(StepState.ROLLED_BACK):
            raise InputError(
                f"Workflow {workflow_id} was rolled back and cannot be resumed",
                remediation=f"Start a new run with 'clustra workflow run {record.name} {record.workspace}'.",
            )
        active = self.ledger.active_workflow(record.workspace)
        if active is not None and active.workflow_id != workflow_id:
            raise InputError(f"Workflow {active.workflow_id} is active on workspace {record.workspace}")

        spec = get_workflow(record.name)
        target = self.registry.resolve(record.workspace)
        return self._execute(spec, self.ledger.handle(workflow_id), target)

    def rollback(self, workflow_id: str) -> RollbackReport:
        """Run the compensations of every SUCCEEDED step in reverse order."""
        record = self.ledger.get(workflow_id)
        if record.steps_in(StepState.RUNNING):
            raise InputError(
                f"Workflow {workflow_id} has a running step",
                remediation=f"Resume it first with 'clustra workflow resume {workflow_id}'.",
            )
        spec = get_workflow(record.name)
        target = self.registry.resolve(record.workspace)
        gateway = self._gateway(self.secrets_provider.load())

        compensations = {}
        for step in spec.steps:
            if step.compensation is None:
                continue
            compensations[step.step_id] = self._compensation(gateway, step.compensation, target, record)

        logger.info(
            f"Rolling back workflow {workflow_id}",
            extra=log_extra(record.correlation_id, "rollback_started", workflow_id=workflow_id),
        )
        return self.ledger.rollback(workflow_id, compensations)

    def status(self, workflow_id: str) -> WorkflowRecord:
        return self.ledger.get(workflow_id)

    def error_report(self, workflow_id: str) -> ErrorReport:
        """Every error recorded on the workflow's steps."""
        record = self.ledger.get(workflow_id)
        report = ErrorReport(record.correlation_id)
        for step in record.steps:
            if step.last_error is not None:
                report.add(step.last_error.with_context(step_id=step.step_id))
            if step.compensation_error is not None:
                report.add(step.compensation_error.with_context(step_id=step.step_id, phase="rollback"))
        return report

    def list_workflows(self, workspace: Optional[str] = None) -> list[WorkflowRecord]:
        return self.ledger.list_workflows(workspace)

    def reconcile_nodes(self, workspace: Workspace, gateway: OperationGateway) -> list[str]:
        """
        Compare the infrastructure summary with predicted addresses.

        Addresses are handed out by DHCP, so differences are reported as
        warnings and returned, never raised.
        """
        try:
            summary = gateway.infra_summary(workspace)
        except ClustraError as e:
            logger.warning(f"Could not read infrastructure summary for {workspace.name}: {e}")
            return [f"summary unavailable: {e}"]

        mismatches = []
        predicted = {a.node.name: a for a in workspace_addresses(workspace, self.config.network)}
        for node_name, address in predicted.items():
            actual = summary.get(node_name)
            if actual is None:
                mismatches.append(f"{node_name}: missing from infrastructure summary")
                continue
            if actual.get("IP") and actual["IP"] != address.ip_address:
                mismatches.append(f"{node_name}: IP {actual['IP']} (expected {address.ip_address})")
            if actual.get("hostname") and actual["hostname"] != address.hostname:
                mismatches.append(
                    f"{node_name}: hostname {actual['hostname']} (expected {address.hostname})"
                )
        for node_name in sorted(set(summary) - set(predicted)):
            mismatches.append(f"{node_name}: not in registry")

        for mismatch in mismatches:
            logger.warning(f"Reconcile {workspace.name}: {mismatch}")
        return mismatches

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _ensure_idle(self, workspace: str) -> None:
        active = self.ledger.active_workflow(workspace)
        if active is not None:
            raise InputError(
                f"Workflow {active.workflow_id} ({active.name}) is already active on workspace {workspace}",
                remediation=f"Wait for it to finish or run 'clustra workflow resume {active.workflow_id}'.",
            )

    def _shutting_down(self) -> bool:
        return self.shutdown is not None and self.shutdown.is_set()

    def _cancel_step(self, handle: WorkflowHandle, step_record: StepRecord) -> ErrorRecord:
        """Fail a step that was never started because shutdown was requested."""
        error = OperationCancelled(
            f"{step_record.step_id} not started: shutdown requested",
            correlation_id=handle.correlation_id,
            context={"reason": "cancelled", "step_id": step_record.step_id},
        ).record
        # A step failed by an earlier run keeps its original error
        if step_record.state == StepState.PENDING:
            handle.mark(step_record.step_id, StepState.FAILED, error=error)
        logger.warning(
            f"Shutdown requested; {step_record.step_id} not started",
            extra=log_extra(handle.correlation_id, "step_cancelled", step_id=step_record.step_id),
        )
        return error

    def _compensation(self, gateway: OperationGateway, operation: Operation, workspace: Workspace, record):
        def compensate(step: StepRecord) -> None:
            gateway.run(
                operation.kind,
                workspace,
                self.parameters_for(operation, workspace),
                correlation_id=record.correlation_id,
            )
        return compensate

    def _execute(self, spec: WorkflowSpec, handle: WorkflowHandle, workspace: Workspace) -> WorkflowResult:
        correlation_id = handle.correlation_id
        remaining = self.ledger.resume(handle.workflow_id)
        secrets = self.secrets_provider.load()
        gateway = self._gateway(secrets)
        error: Optional[ErrorRecord] = None
        mismatches: list[str] = []

        for step_record in remaining:
            step = spec.get_step(step_record.step_id)
            if self._shutting_down():
                error = self._cancel_step(handle, step_record)
                break
            logger.info(
                f"[{spec.name}] {step.step_id}: {step.description}",
                extra=log_extra(correlation_id, "step_started", step_id=step.step_id),
            )
            try:
                gateway.run(
                    step.kind,
                    workspace,
                    self.parameters_for(step.operation, workspace),
                    checkpoint=handle.checkpoint(step.step_id),
                )
            except ClustraError as e:
                error = e.record
                logger.error(
                    f"[{spec.name}] {step.step_id} failed: {e}",
                    extra=log_extra(correlation_id, "step_failed", step_id=step.step_id),
                )
                break

            if step.kind == OperationKind.INFRA_APPLY and not self._shutting_down():
                mismatches.extend(self.reconcile_nodes(workspace, gateway))

        record = self.ledger.get(handle.workflow_id)
        logger.info(
            f"Workflow {spec.name} on {workspace.name}: {record.status}",
            extra=log_extra(correlation_id, "workflow_finished", workflow_id=record.workflow_id),
        )
        return WorkflowResult(
            workflow_id=record.workflow_id,
            name=record.name,
            workspace=record.workspace,
            correlation_id=record.correlation_id,
            status=record.status,
            steps=record.steps,
            error=error,
            mismatches=mismatches,
        )
