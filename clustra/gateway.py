"""
External operation gateway.

Single entry point for every external side effect. Each call:
- picks the engine for the operation kind
- runs it inside a fresh ScratchScope (secrets only live in its env)
- bounds every attempt with the timeout supervisor
- retries per the configured policy for the operation class
- marks the ledger step RUNNING before the first attempt and SUCCEEDED
  or FAILED before returning or raising
"""

import logging
import random
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from clustra.addressing import workspace_addresses
from clustra.config import ClustraConfig
from clustra.engines.base import Engine, EngineRegistry, EngineRequest, OperationKind, ScratchScope
from clustra.errors import RetriesExhaustedError, as_error_record
from clustra.ids import new_correlation_id
from clustra.ledger import StepCheckpoint
from clustra.logs import log_extra
from clustra.retry import execute, policy_from_config
from clustra.schemas import NodeRole, Workspace
from clustra.timeouts import Invocation, ShutdownSignal, with_timeout

logger = logging.getLogger(__name__)


@dataclass
class OperationResult:
    """Outcome of a successful gateway call."""
    kind: OperationKind
    workspace: str
    attempt_count: int
    returncode: int
    stdout: str = ""
    stderr: str = ""
    duration_ms: int = 0
    data: dict[str, Any] = field(default_factory=dict)


class _EngineInvocation(Invocation):
    """Routes cancellation through the engine that started the invocation."""

    def __init__(self, engine: Engine, inner: Invocation):
        self.engine = engine
        self.inner = inner

    def wait(self, timeout):
        return self.inner.wait(timeout)

    def cancel(self) -> None:
        self.engine.cancel(self.inner)

    def kill(self) -> None:
        self.inner.kill()

    def result(self):
        return self.inner.result()


def infra_parameters(workspace: Workspace) -> dict[str, Any]:
    """
    Key/value parameters handed to the infrastructure engine.

    Node counts, release letter and the settings overlay. Computed IPs are
    not passed; the engine reports actual addresses back in its summary.
    """
    params: dict[str, Any] = {key.lower(): value for key, value in workspace.settings.items()}
    params.update({
        "workspace": workspace.name,
        "release_letter": workspace.release_letter,
        "control_plane_count": workspace.node_count(NodeRole.CONTROL_PLANE),
        "worker_count": workspace.node_count(NodeRole.WORKER),
    })
    return params


class OperationGateway:
    """
    Runs external operations with timeout, retry and checkpointing.

    Args:
        config: Loaded configuration (timeouts, retry, network)
        engines: Engine registry
        shutdown: Shutdown signal shared with the orchestrator
        secrets: Decrypted secrets, exported only into scratch environments
        sleep: Sleep function for retry backoff (injected by tests)
        rng: Random source for retry jitter
    """

    def __init__(
        self,
        config: ClustraConfig,
        engines: EngineRegistry,
        *,
        shutdown: Optional[ShutdownSignal] = None,
        secrets: Optional[dict[str, str]] = None,
        sleep: Callable[[float], None] = time.sleep,
        rng: Optional[random.Random] = None,
    ):
        self.config = config
        self.engines = engines
        self.shutdown = shutdown
        self.secrets: dict[str, str] = dict(secrets or {})
        self.sleep = sleep
        self.rng = rng

    def run(
        self,
        kind: OperationKind,
        target: Workspace,
        parameters: Optional[dict[str, Any]] = None,
        *,
        checkpoint: Optional[StepCheckpoint] = None,
        correlation_id: Optional[str] = None,
    ) -> OperationResult:
        """
        Run one external operation against a workspace.

        Args:
            kind: Operation kind
            target: Target workspace
            parameters: Engine parameters (playbook, command, -var values)
            checkpoint: Ledger hooks for the step this call executes
            correlation_id: Correlation id (taken from the checkpoint if given)

        Returns:
            OperationResult of the successful attempt

        Raises:
            ClustraError: Non-retryable failure, RetriesExhaustedError or
                OperationCancelled; the step is marked FAILED first
        """
        kind = OperationKind(kind)
        if checkpoint is not None:
            correlation_id = checkpoint.correlation_id
        correlation_id = correlation_id or new_correlation_id()
        description = f"{kind.value} on {target.name}"
        attempts = 0

        def attempt() -> dict[str, Any]:
            nonlocal attempts
            attempts += 1
            with ScratchScope(target.name, env=self.secrets) as scratch:
                invocation = _EngineInvocation(engine, engine.run(request, scratch))
                completed = with_timeout(
                    invocation,
                    duration,
                    cancel_grace=cancel_grace,
                    shutdown=self.shutdown,
                    correlation_id=correlation_id,
                    description=description,
                )
            return engine.check_result(request, completed)

        if checkpoint is not None:
            checkpoint.running()

        logger.info(
            f"Starting {description}",
            extra=log_extra(correlation_id, "operation_started", kind=kind.value, workspace=target.name),
        )
        started = time.monotonic()
        try:
            # Setup failures are step failures too
            engine = self.engines.get(kind.engine_name)
            op_class = kind.operation_class
            policy = policy_from_config(self.config, op_class)
            duration = self.config.get_timeout(op_class)
            cancel_grace = self.config.get_cancel_grace()
            request = EngineRequest(
                kind=kind,
                workspace=target,
                parameters=dict(parameters or {}),
                addresses=workspace_addresses(target, self.config.network),
                correlation_id=correlation_id,
                shutdown=self.shutdown,
            )
            outcome = execute(
                attempt,
                policy,
                sleep=self.sleep,
                rng=self.rng,
                shutdown=self.shutdown,
                correlation_id=correlation_id,
                description=description,
            )
        except Exception as e:
            if checkpoint is not None:
                count = len(e.history) if isinstance(e, RetriesExhaustedError) else attempts
                checkpoint.failed(as_error_record(e, correlation_id), attempt_count=count)
            raise

        if checkpoint is not None:
            checkpoint.succeeded(attempt_count=outcome.attempt_count)

        value = outcome.value
        duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            f"Finished {description} after {outcome.attempt_count} attempt(s)",
            extra=log_extra(
                correlation_id,
                "operation_succeeded",
                attempts=outcome.attempt_count,
                duration_ms=duration_ms,
            ),
        )
        return OperationResult(
            kind=kind,
            workspace=target.name,
            attempt_count=outcome.attempt_count,
            returncode=value.get("returncode", 0),
            stdout=value.get("stdout", ""),
            stderr=value.get("stderr", ""),
            duration_ms=duration_ms,
            data={k: v for k, v in value.items() if k not in ("returncode", "stdout", "stderr")},
        )

    # ------------------------------------------------------------------
    # Infrastructure queries used by the registry and orchestrator
    # ------------------------------------------------------------------

    def infra_summary(self, workspace: Workspace) -> dict[str, dict[str, Any]]:
        """Node summary reported by the infrastructure engine."""
        return self.engines.get("tofu").status(workspace.name).nodes

    def has_live_resources(self, workspace: Workspace) -> bool:
        return self.engines.get("tofu").status(workspace.name).live

    def destroy_infrastructure(self, workspace: Workspace) -> OperationResult:
        return self.run(OperationKind.INFRA_DESTROY, workspace, infra_parameters(workspace))

    def delete_infra_workspace(self, workspace: Workspace) -> bool:
        """Remove the infrastructure engine's state for a released workspace."""
        return self.engines.get("tofu").delete_workspace(workspace.name)
