"""
Error model for clustra.

Every failure is described by an ErrorRecord:
- category: CONFIG, INPUT, EXECUTION or TIMEOUT
- severity: LOW, MEDIUM, HIGH or CRITICAL
- correlation_id: threads one workflow run through retry, timeout,
  ledger and orchestrator logs
- message, context, and an optional remediation hint

Error handling contract:
- Errors are exceptions, not values
- Every exception raised by clustra is a ClustraError carrying its record
- CONFIG and INPUT errors are never retried
- EXECUTION errors are retryable per policy
- TIMEOUT errors are retryable with a lower attempt cap

The retry engine and the CLI classify failures by `error.category`, never
by exception type.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from clustra.ids import new_correlation_id


class ErrorCategory(str, Enum):
    """Category of an error; drives retry and exit-code decisions."""
    CONFIG = "config"
    INPUT = "input"
    EXECUTION = "execution"
    TIMEOUT = "timeout"


class Severity(str, Enum):
    """Severity of an error."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


RETRYABLE_CATEGORIES = frozenset({ErrorCategory.EXECUTION, ErrorCategory.TIMEOUT})


def _utcnow() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ErrorRecord:
    """
    Structured description of a failure.

    Attributes:
        category: Error category (config, input, execution, timeout)
        severity: Error severity
        correlation_id: Id shared by every record of one workflow run
        message: Human readable message
        context: Flat string map with diagnostic details
        remediation: Optional hint shown to the operator (config errors)
        timestamp: When the record was created
    """
    category: ErrorCategory
    severity: Severity
    correlation_id: str
    message: str
    context: dict[str, str] = field(default_factory=dict)
    remediation: Optional[str] = None
    timestamp: datetime = field(default_factory=_utcnow)

    @property
    def retryable(self) -> bool:
        return self.category in RETRYABLE_CATEGORIES

    def with_context(self, **context: Any) -> "ErrorRecord":
        """Return a copy with extra context entries (values are stringified)."""
        merged = dict(self.context)
        merged.update({k: str(v) for k, v in context.items()})
        return replace(self, context=merged)

    def annotate(self, note: str) -> "ErrorRecord":
        """Return a copy with `note` prefixed to the message."""
        return replace(self, message=f"{note}: {self.message}")

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        result: dict[str, Any] = {
            "category": self.category.value,
            "severity": self.severity.value,
            "correlation_id": self.correlation_id,
            "message": self.message,
            "context": dict(self.context),
            "timestamp": self.timestamp.isoformat(),
        }
        if self.remediation is not None:
            result["remediation"] = self.remediation
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ErrorRecord":
        """Deserialize from dictionary."""
        return cls(
            category=ErrorCategory(data["category"]),
            severity=Severity(data["severity"]),
            correlation_id=data["correlation_id"],
            message=data["message"],
            context=dict(data.get("context", {})),
            remediation=data.get("remediation"),
            timestamp=datetime.fromisoformat(data["timestamp"]) if data.get("timestamp") else _utcnow(),
        )


class ClustraError(Exception):
    """
    Base exception for clustra.

    Subclasses set `category` and `default_severity`. The record can be
    passed in directly (when re-raising a stored failure) or built from the
    message and keyword arguments.
    """

    category: ErrorCategory = ErrorCategory.EXECUTION
    default_severity: Severity = Severity.MEDIUM

    def __init__(
        self,
        message: str,
        *,
        correlation_id: Optional[str] = None,
        severity: Optional[Severity] = None,
        context: Optional[dict[str, Any]] = None,
        remediation: Optional[str] = None,
        record: Optional[ErrorRecord] = None,
    ):
        if record is None:
            record = ErrorRecord(
                category=self.category,
                severity=severity or self.default_severity,
                correlation_id=correlation_id or new_correlation_id(),
                message=message,
                context={k: str(v) for k, v in (context or {}).items()},
                remediation=remediation,
            )
        self.record = record
        super().__init__(record.message)

    @property
    def correlation_id(self) -> str:
        return self.record.correlation_id

    @property
    def retryable(self) -> bool:
        return self.record.retryable


class ConfigError(ClustraError):
    """
    Bad or missing settings.

    Never retried. Surfaced immediately, with a remediation hint when one
    is known.
    """
    category = ErrorCategory.CONFIG
    default_severity = Severity.HIGH


class InputError(ClustraError):
    """Bad caller arguments. Never retried."""
    category = ErrorCategory.INPUT
    default_severity = Severity.LOW


class ExecutionError(ClustraError):
    """
    External engine failure.

    Examples:
    - Non-zero exit status from tofu, ansible-playbook or ssh
    - Engine binary missing
    - Unparseable engine output
    """
    category = ErrorCategory.EXECUTION
    default_severity = Severity.HIGH


class OperationTimeout(ClustraError):
    """An operation exceeded its deadline."""
    category = ErrorCategory.TIMEOUT
    default_severity = Severity.HIGH


class OperationCancelled(OperationTimeout):
    """The operation was cancelled because the process is shutting down."""


class NameConflictError(InputError):
    """A live workspace already uses the requested name."""


class WorkspaceNotFoundError(InputError):
    """No live workspace with the given name."""


class ProtectedWorkspaceError(InputError):
    """Base workspaces cannot be deleted."""


class HasLiveResourcesError(InputError):
    """The workspace still has externally confirmed live nodes."""
    default_severity = Severity.HIGH


class ReservedAddressError(ConfigError):
    """A computed node address falls inside a reserved range."""


class InvalidTransitionError(InputError):
    """A ledger step transition violates workflow ordering."""


class WorkflowNotFoundError(InputError):
    """No workflow with the given id in the ledger."""


class RetriesExhaustedError(ClustraError):
    """
    All attempts failed.

    The record is the last attempt's record annotated with
    "retries exhausted"; `history` holds every attempt's record.
    """

    def __init__(self, last: ErrorRecord, history: list[ErrorRecord]):
        annotated = last.annotate(f"retries exhausted after {len(history)} attempts")
        annotated = annotated.with_context(attempts=len(history))
        self.history = list(history)
        self.last = last
        super().__init__(annotated.message, record=annotated)

    @property
    def category(self) -> ErrorCategory:  # type: ignore[override]
        return self.record.category


def as_error_record(exc: BaseException, correlation_id: Optional[str] = None) -> ErrorRecord:
    """
    Describe any exception as an ErrorRecord.

    ClustraErrors keep their own record (re-tagged with `correlation_id`
    when given); anything else is classified as an EXECUTION failure.
    """
    if isinstance(exc, ClustraError):
        record = exc.record
        if correlation_id and record.correlation_id != correlation_id:
            record = replace(record, correlation_id=correlation_id)
        return record
    return ErrorRecord(
        category=ErrorCategory.EXECUTION,
        severity=Severity.HIGH,
        correlation_id=correlation_id or new_correlation_id(),
        message=str(exc) or type(exc).__name__,
        context={"type": type(exc).__name__},
    )


class ErrorReport:
    """
    Collects the error records of one run and renders a text report.

    Used by `clustra workflow status` to show everything that went wrong in
    a workflow, correlated by id.
    """

    def __init__(self, correlation_id: str):
        self.correlation_id = correlation_id
        self._records: list[ErrorRecord] = []

    def add(self, record: ErrorRecord) -> None:
        self._records.append(record)

    @property
    def records(self) -> list[ErrorRecord]:
        return list(self._records)

    def has_critical(self) -> bool:
        return any(r.severity == Severity.CRITICAL for r in self._records)

    def render(self) -> str:
        lines = [
            "=== Error Report ===",
            f"Correlation ID: {self.correlation_id}",
            f"Total Errors: {len(self._records)}",
            "",
        ]
        if not self._records:
            lines.append("No errors recorded.")
            return "\n".join(lines)

        lines.append(f"{'TIMESTAMP':<26} {'CATEGORY':<10} {'SEVERITY':<9} MESSAGE")
        lines.append("-" * 80)
        for record in self._records:
            lines.append(
                f"{record.timestamp.isoformat(timespec='seconds'):<26} "
                f"{record.category.value:<10} {record.severity.value:<9} {record.message}"
            )
            for key in sorted(record.context):
                lines.append(f"{'':<47} {key}={record.context[key]}")
            if record.remediation:
                lines.append(f"{'':<47} hint: {record.remediation}")
        return "\n".join(lines)
