"""
Workflow and step schemas - the records kept by the checkpoint ledger.

WorkflowRecord tracks one run of a named workflow against one workspace.
StepRecord tracks the state of a single step within that run.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from clustra.errors import ErrorRecord


def _utcnow() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


class StepKind(str, Enum):
    """Kind of external operation a step performs."""
    PROVISION = "provision"
    CONFIGURE = "configure"
    REMOTE_EXEC = "remote_exec"


class StepState(str, Enum):
    """State of a workflow step."""
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


@dataclass
class StepRecord:
    """
    State of a single step within a workflow.

    Attributes:
        step_id: Identifier of the step, unique within the workflow
        kind: Kind of external operation
        workflow_id: Owning workflow
        sequence_number: Position in the workflow (strictly increasing)
        state: Current state
        attempt_count: Number of attempts made by the last execution
        last_error: Most recent failure, if any
        compensation_error: Failure of the compensating action during rollback
        started_at: When the step last entered RUNNING
        completed_at: When the step last left RUNNING
    """
    step_id: str
    kind: StepKind
    workflow_id: str
    sequence_number: int
    state: StepState = StepState.PENDING
    attempt_count: int = 0
    last_error: Optional[ErrorRecord] = None
    compensation_error: Optional[ErrorRecord] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def duration_ms(self) -> Optional[int]:
        """Calculate execution duration in milliseconds if both timestamps present."""
        if self.started_at and self.completed_at:
            delta = self.completed_at - self.started_at
            return int(delta.total_seconds() * 1000)
        return None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        result: dict[str, Any] = {
            "step_id": self.step_id,
            "kind": self.kind.value,
            "workflow_id": self.workflow_id,
            "sequence_number": self.sequence_number,
            "state": self.state.value,
            "attempt_count": self.attempt_count,
        }
        if self.last_error is not None:
            result["last_error"] = self.last_error.to_dict()
        if self.compensation_error is not None:
            result["compensation_error"] = self.compensation_error.to_dict()
        if self.started_at is not None:
            result["started_at"] = self.started_at.isoformat()
        if self.completed_at is not None:
            result["completed_at"] = self.completed_at.isoformat()
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StepRecord":
        """Deserialize from dictionary."""
        return cls(
            step_id=data["step_id"],
            kind=StepKind(data["kind"]),
            workflow_id=data["workflow_id"],
            sequence_number=data["sequence_number"],
            state=StepState(data.get("state", "pending")),
            attempt_count=data.get("attempt_count", 0),
            last_error=ErrorRecord.from_dict(data["last_error"]) if data.get("last_error") else None,
            compensation_error=(
                ErrorRecord.from_dict(data["compensation_error"]) if data.get("compensation_error") else None
            ),
            started_at=datetime.fromisoformat(data["started_at"]) if data.get("started_at") else None,
            completed_at=datetime.fromisoformat(data["completed_at"]) if data.get("completed_at") else None,
        )


@dataclass
class WorkflowRecord:
    """
    A record of one workflow run.

    Attributes:
        workflow_id: ULID uniquely identifying this run
        name: Workflow definition name (e.g. "bootstrap")
        workspace: Workspace the workflow operates on
        correlation_id: Correlation id shared by every log line and error
        steps: Ordered step records
        created_at: When the workflow began
        updated_at: When any step was last marked
    """
    workflow_id: str
    name: str
    workspace: str
    correlation_id: str
    steps: list[StepRecord] = field(default_factory=list)
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    def get_step(self, step_id: str) -> Optional[StepRecord]:
        for step in self.steps:
            if step.step_id == step_id:
                return step
        return None

    def steps_in(self, *states: StepState) -> list[StepRecord]:
        return [s for s in self.steps if s.state in states]

    @property
    def status(self) -> str:
        """Overall status derived from step states."""
        states = [s.state for s in self.steps]
        if any(s == StepState.RUNNING for s in states):
            return "running"
        if any(s == StepState.FAILED for s in states):
            return "failed"
        if states and all(s == StepState.SUCCEEDED for s in states):
            return "succeeded"
        if any(s == StepState.ROLLED_BACK for s in states):
            return "rolled_back"
        if any(s == StepState.SUCCEEDED for s in states):
            return "incomplete"
        return "pending"

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        return {
            "workflow_id": self.workflow_id,
            "name": self.name,
            "workspace": self.workspace,
            "correlation_id": self.correlation_id,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "steps": [s.to_dict() for s in self.steps],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "WorkflowRecord":
        """Deserialize from dictionary."""
        return cls(
            workflow_id=data["workflow_id"],
            name=data["name"],
            workspace=data["workspace"],
            correlation_id=data["correlation_id"],
            steps=[StepRecord.from_dict(s) for s in data.get("steps", [])],
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data.get("updated_at", data["created_at"])),
        )
