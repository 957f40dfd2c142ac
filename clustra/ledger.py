"""
Checkpoint/recovery ledger.

Persists the state of every workflow step so a workflow can be resumed
after a failure or a crash, and unwound on request.

Storage backends:
- In-memory (for testing)
- File-based: one JSON document per workflow, replaced atomically
"""

import json
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterable, Optional

from clustra.errors import (
    ErrorCategory,
    ErrorRecord,
    InputError,
    InvalidTransitionError,
    Severity,
    WorkflowNotFoundError,
    as_error_record,
)
from clustra.fileio import atomic_write
from clustra.ids import new_correlation_id
from clustra.logs import log_extra
from clustra.schemas import StepKind, StepRecord, StepState, WorkflowRecord

logger = logging.getLogger(__name__)

Compensation = Callable[[StepRecord], None]


def _utcnow() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


class LedgerStore(ABC):
    """Abstract base class for workflow record storage."""

    @abstractmethod
    def save(self, record: WorkflowRecord) -> None:
        """Create or replace a workflow record."""
        pass

    @abstractmethod
    def load(self, workflow_id: str) -> Optional[WorkflowRecord]:
        """
        Retrieve a workflow record by id.

        Returns:
            The WorkflowRecord if found, None otherwise
        """
        pass

    @abstractmethod
    def list_ids(self) -> list[str]:
        """All stored workflow ids, oldest first."""
        pass


class InMemoryLedgerStore(LedgerStore):
    """
    In-memory implementation of LedgerStore for testing.

    Records are stored serialized, so callers never share mutable state
    with the store.
    """

    def __init__(self):
        self._records: dict[str, dict] = {}

    def save(self, record: WorkflowRecord) -> None:
        self._records[record.workflow_id] = record.to_dict()

    def load(self, workflow_id: str) -> Optional[WorkflowRecord]:
        data = self._records.get(workflow_id)
        return WorkflowRecord.from_dict(data) if data is not None else None

    def list_ids(self) -> list[str]:
        return sorted(self._records)

    def clear(self) -> None:
        """Clear all stored data (for testing)."""
        self._records.clear()


class FileLedgerStore(LedgerStore):
    """
    File-based implementation of LedgerStore.

    Layout:
        store_dir/
            {workflow_id}.json
    """

    def __init__(self, store_dir: Path | str):
        self._store_dir = Path(store_dir)
        self._store_dir.mkdir(parents=True, exist_ok=True)

    def _path(self, workflow_id: str) -> Path:
        return self._store_dir / f"{workflow_id}.json"

    def save(self, record: WorkflowRecord) -> None:
        payload = json.dumps(record.to_dict(), indent=2).encode("utf-8")
        atomic_write(self._path(record.workflow_id), payload)

    def load(self, workflow_id: str) -> Optional[WorkflowRecord]:
        path = self._path(workflow_id)
        if not path.exists():
            return None
        with open(path) as f:
            data = json.load(f)
        return WorkflowRecord.from_dict(data)

    def list_ids(self) -> list[str]:
        # ULID ids sort by creation time
        return sorted(p.stem for p in self._store_dir.glob("*.json"))


@dataclass
class RollbackReport:
    """Outcome of unwinding a workflow."""
    workflow_id: str
    rolled_back: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: dict[str, ErrorRecord] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed


class StepCheckpoint:
    """
    Ledger hooks for one step, handed to the operation gateway.

    The gateway calls running() before the first attempt and exactly one
    of succeeded() or failed() before returning or raising.
    """

    def __init__(self, ledger: "CheckpointLedger", workflow_id: str, step_id: str):
        self.ledger = ledger
        self.workflow_id = workflow_id
        self.step_id = step_id

    @property
    def correlation_id(self) -> str:
        return self.ledger.get(self.workflow_id).correlation_id

    def running(self) -> StepRecord:
        return self.ledger.mark(self.workflow_id, self.step_id, StepState.RUNNING)

    def succeeded(self, attempt_count: int) -> StepRecord:
        return self.ledger.mark(
            self.workflow_id, self.step_id, StepState.SUCCEEDED, attempt_count=attempt_count
        )

    def failed(self, error: ErrorRecord, attempt_count: int) -> StepRecord:
        return self.ledger.mark(
            self.workflow_id, self.step_id, StepState.FAILED, error=error, attempt_count=attempt_count
        )


class WorkflowHandle:
    """Convenience wrapper binding a ledger to one workflow id."""

    def __init__(self, ledger: "CheckpointLedger", workflow_id: str):
        self.ledger = ledger
        self.workflow_id = workflow_id

    @property
    def record(self) -> WorkflowRecord:
        return self.ledger.get(self.workflow_id)

    @property
    def correlation_id(self) -> str:
        return self.record.correlation_id

    def mark(self, step_id: str, state: StepState, error: Optional[ErrorRecord] = None) -> StepRecord:
        return self.ledger.mark(self.workflow_id, step_id, state, error=error)

    def checkpoint(self, step_id: str) -> StepCheckpoint:
        return StepCheckpoint(self.ledger, self.workflow_id, step_id)


class CheckpointLedger:
    """
    Step state machine over a LedgerStore.

    Transitions:
        PENDING   -> RUNNING (only when every earlier step SUCCEEDED)
        FAILED    -> RUNNING (retry after resume)
        RUNNING   -> SUCCEEDED | FAILED
        PENDING   -> FAILED (cancelled before start)
        SUCCEEDED -> ROLLED_BACK
    """

    _ALLOWED = {
        StepState.RUNNING: {StepState.PENDING, StepState.FAILED},
        StepState.SUCCEEDED: {StepState.RUNNING},
        StepState.FAILED: {StepState.RUNNING, StepState.PENDING},
        StepState.ROLLED_BACK: {StepState.SUCCEEDED},
    }

    def __init__(self, store: LedgerStore):
        self.store = store
        self._lock = threading.Lock()

    def begin_workflow(
        self,
        workflow_id: str,
        name: str,
        workspace: str,
        steps: Iterable[tuple[str, StepKind]],
        correlation_id: Optional[str] = None,
    ) -> WorkflowHandle:
        """
        Record a new workflow with every step PENDING.

        Args:
            workflow_id: New workflow id
            name: Workflow definition name
            workspace: Target workspace
            steps: Ordered (step_id, kind) pairs
            correlation_id: Correlation id for the run (generated if omitted)

        Raises:
            InputError: If the id is already used or step ids repeat
        """
        with self._lock:
            if self.store.load(workflow_id) is not None:
                raise InputError(f"Workflow already exists: {workflow_id}")

            records = []
            seen = set()
            for sequence, (step_id, kind) in enumerate(steps, start=1):
                if step_id in seen:
                    raise InputError(f"Duplicate step id in workflow {name}: {step_id}")
                seen.add(step_id)
                records.append(
                    StepRecord(
                        step_id=step_id,
                        kind=StepKind(kind),
                        workflow_id=workflow_id,
                        sequence_number=sequence,
                    )
                )

            record = WorkflowRecord(
                workflow_id=workflow_id,
                name=name,
                workspace=workspace,
                correlation_id=correlation_id or new_correlation_id(),
                steps=records,
            )
            self.store.save(record)

        logger.info(
            f"Workflow {name} started for workspace {workspace} ({workflow_id})",
            extra=log_extra(record.correlation_id, "workflow_started", workflow_id=workflow_id),
        )
        return WorkflowHandle(self, workflow_id)

    def get(self, workflow_id: str) -> WorkflowRecord:
        record = self.store.load(workflow_id)
        if record is None:
            raise WorkflowNotFoundError(f"Workflow not found: {workflow_id}")
        return record

    def handle(self, workflow_id: str) -> WorkflowHandle:
        self.get(workflow_id)
        return WorkflowHandle(self, workflow_id)

    def list_workflows(self, workspace: Optional[str] = None) -> list[WorkflowRecord]:
        records = [self.store.load(wid) for wid in self.store.list_ids()]
        return [r for r in records if r is not None and (workspace is None or r.workspace == workspace)]

    def active_workflow(self, workspace: str) -> Optional[WorkflowRecord]:
        """The workflow of `workspace` that has a step RUNNING, if any."""
        for record in self.list_workflows(workspace):
            if record.steps_in(StepState.RUNNING):
                return record
        return None

    def mark(
        self,
        workflow_id: str,
        step_id: str,
        state: StepState,
        error: Optional[ErrorRecord] = None,
        attempt_count: Optional[int] = None,
    ) -> StepRecord:
        """
        Move a step to `state` and persist the workflow.

        Raises:
            WorkflowNotFoundError: Unknown workflow
            InputError: Unknown step
            InvalidTransitionError: Transition not allowed from the current
                state, or an earlier step has not SUCCEEDED
        """
        with self._lock:
            record = self.get(workflow_id)
            step = record.get_step(step_id)
            if step is None:
                raise InputError(f"Workflow {workflow_id} has no step {step_id}")

            allowed = self._ALLOWED.get(state, set())
            if step.state not in allowed:
                raise InvalidTransitionError(
                    f"Step {step_id} cannot go from {step.state.value} to {state.value}",
                    correlation_id=record.correlation_id,
                    context={"workflow_id": workflow_id, "step_id": step_id},
                )

            if state == StepState.RUNNING:
                blocking = [
                    s.step_id
                    for s in record.steps
                    if s.sequence_number < step.sequence_number and s.state != StepState.SUCCEEDED
                ]
                if blocking:
                    raise InvalidTransitionError(
                        f"Step {step_id} cannot start before {', '.join(blocking)} succeeded",
                        correlation_id=record.correlation_id,
                        context={"workflow_id": workflow_id, "step_id": step_id},
                    )
                step.started_at = _utcnow()
                step.completed_at = None
            elif state in (StepState.SUCCEEDED, StepState.FAILED):
                step.completed_at = _utcnow()

            if state == StepState.SUCCEEDED:
                step.last_error = None
            if state == StepState.FAILED:
                step.last_error = error
            if state == StepState.ROLLED_BACK:
                step.compensation_error = None
            if attempt_count is not None:
                step.attempt_count = attempt_count

            step.state = state
            record.updated_at = _utcnow()
            self.store.save(record)

        logger.debug(
            f"Step {step_id} -> {state.value}",
            extra=log_extra(record.correlation_id, "step_marked", workflow_id=workflow_id, step_id=step_id),
        )
        return step

    def resume(self, workflow_id: str) -> list[StepRecord]:
        """
        Steps still to run, in sequence order.

        A step found RUNNING was interrupted (the process died mid-step);
        it is marked FAILED with a timeout-category record first so it is
        executed again. SUCCEEDED steps are never returned.
        """
        record = self.get(workflow_id)
        for step in record.steps_in(StepState.RUNNING):
            interrupted = ErrorRecord(
                category=ErrorCategory.TIMEOUT,
                severity=Severity.MEDIUM,
                correlation_id=record.correlation_id,
                message=f"Step {step.step_id} was interrupted before completion",
                context={"reason": "interrupted", "step_id": step.step_id},
            )
            self.mark(workflow_id, step.step_id, StepState.FAILED, error=interrupted)
            logger.warning(
                f"Step {step.step_id} of {workflow_id} was left running; marked failed",
                extra=log_extra(record.correlation_id, "step_interrupted", step_id=step.step_id),
            )

        record = self.get(workflow_id)
        return sorted(
            record.steps_in(StepState.PENDING, StepState.FAILED),
            key=lambda s: s.sequence_number,
        )

    def rollback(self, workflow_id: str, compensations: dict[str, Compensation]) -> RollbackReport:
        """
        Unwind SUCCEEDED steps in reverse order.

        Each step with a compensation is marked ROLLED_BACK only if its
        compensation returns. A failing compensation is recorded on the
        step and the unwind continues with the next one.
        """
        record = self.get(workflow_id)
        report = RollbackReport(workflow_id=workflow_id)

        succeeded = sorted(
            record.steps_in(StepState.SUCCEEDED),
            key=lambda s: s.sequence_number,
            reverse=True,
        )
        for step in succeeded:
            compensation = compensations.get(step.step_id)
            if compensation is None:
                report.skipped.append(step.step_id)
                continue

            logger.info(
                f"Rolling back step {step.step_id}",
                extra=log_extra(record.correlation_id, "rollback_step", step_id=step.step_id),
            )
            try:
                compensation(step)
            except Exception as e:
                error = as_error_record(e, record.correlation_id)
                self._record_compensation_failure(workflow_id, step.step_id, error)
                report.failed[step.step_id] = error
                logger.error(
                    f"Compensation for {step.step_id} failed: {error.message}",
                    extra=log_extra(record.correlation_id, "rollback_failed", step_id=step.step_id),
                )
                continue

            self.mark(workflow_id, step.step_id, StepState.ROLLED_BACK)
            report.rolled_back.append(step.step_id)

        return report

    def _record_compensation_failure(self, workflow_id: str, step_id: str, error: ErrorRecord) -> None:
        with self._lock:
            record = self.get(workflow_id)
            step = record.get_step(step_id)
            step.compensation_error = error
            record.updated_at = _utcnow()
            self.store.save(record)
