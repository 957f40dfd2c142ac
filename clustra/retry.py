"""
Retry policy engine.

Runs an operation until it succeeds, fails with a non-retryable error, or
runs out of attempts. Failures are classified by ErrorCategory:

- CONFIG / INPUT: raised after the first attempt
- EXECUTION: retried up to max_attempts
- TIMEOUT: retried up to max_timeout_attempts (a lower cap)

Backoff is exponential with jitter and can be interrupted by a shutdown
signal.
"""

import logging
import random
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from clustra.errors import (
    ClustraError,
    ErrorCategory,
    ErrorRecord,
    ExecutionError,
    OperationCancelled,
    RETRYABLE_CATEGORIES,
    RetriesExhaustedError,
    as_error_record,
)
from clustra.logs import log_extra

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """
    Retry settings for one class of operation.

    Attributes:
        max_attempts: Total attempts for retryable failures
        base_delay: Delay before the second attempt, in seconds
        max_delay: Upper bound for a single delay
        jitter_fraction: Uniform jitter applied as +/- fraction of the delay
        retryable_categories: Categories that may be retried
        max_timeout_attempts: Attempt cap once a TIMEOUT has been seen
    """
    max_attempts: int = 3
    base_delay: float = 2.0
    max_delay: float = 60.0
    jitter_fraction: float = 0.25
    retryable_categories: frozenset = field(default_factory=lambda: RETRYABLE_CATEGORIES)
    max_timeout_attempts: int = 2

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.max_timeout_attempts < 1:
            raise ValueError("max_timeout_attempts must be >= 1")


@dataclass
class RetryOutcome:
    """Result of a successful execute() call."""
    value: Any
    attempt_count: int
    history: list[ErrorRecord] = field(default_factory=list)


def compute_delay(attempt: int, policy: RetryPolicy, rng: random.Random) -> float:
    """Delay to wait after failed attempt number `attempt` (1-based)."""
    delay = min(policy.max_delay, policy.base_delay * (2 ** (attempt - 1)))
    jitter = rng.uniform(-policy.jitter_fraction, policy.jitter_fraction) * delay
    return max(0.0, delay + jitter)


def policy_from_config(config, operation_class: str) -> RetryPolicy:
    """Build the RetryPolicy configured under retry.<operation_class>."""
    settings = config.get_retry_settings(operation_class)
    defaults = RetryPolicy()
    return RetryPolicy(
        max_attempts=int(settings.get("max_attempts", defaults.max_attempts)),
        base_delay=float(settings.get("base_delay", defaults.base_delay)),
        max_delay=float(settings.get("max_delay", defaults.max_delay)),
        jitter_fraction=float(settings.get("jitter_fraction", defaults.jitter_fraction)),
        max_timeout_attempts=int(settings.get("max_timeout_attempts", defaults.max_timeout_attempts)),
    )


def execute(
    operation: Callable[[], Any],
    policy: RetryPolicy,
    *,
    sleep: Callable[[float], None] = time.sleep,
    rng: Optional[random.Random] = None,
    shutdown=None,
    correlation_id: Optional[str] = None,
    description: str = "operation",
) -> RetryOutcome:
    """
    Run `operation` under `policy`.

    Args:
        operation: Zero-argument callable
        policy: Retry policy
        sleep: Sleep function (injected by tests)
        rng: Random source for jitter
        shutdown: Optional ShutdownSignal; interrupts the backoff wait
        correlation_id: Correlation id stamped on every error record
        description: Name used in log messages

    Returns:
        RetryOutcome with the operation's value and the attempt count

    Raises:
        ClustraError: The first non-retryable failure, unchanged
        RetriesExhaustedError: When the attempt budget is used up
        OperationCancelled: When shutdown is requested during backoff
    """
    rng = rng or random.Random()
    history: list[ErrorRecord] = []
    timeout_failures = 0
    attempt = 0

    while True:
        attempt += 1
        try:
            value = operation()
        except OperationCancelled:
            raise
        except Exception as e:
            record = as_error_record(e, correlation_id)
            history.append(record)

            if record.category not in policy.retryable_categories:
                if isinstance(e, ClustraError):
                    raise
                raise ExecutionError(record.message, record=record) from e

            if record.category == ErrorCategory.TIMEOUT:
                timeout_failures += 1

            exhausted = attempt >= policy.max_attempts or (
                timeout_failures >= policy.max_timeout_attempts
            )
            if exhausted:
                logger.error(
                    f"{description} failed after {attempt} attempts: {record.message}",
                    extra=log_extra(record.correlation_id, "retries_exhausted", attempts=attempt),
                )
                raise RetriesExhaustedError(record, history) from e

            delay = compute_delay(attempt, policy, rng)
            logger.warning(
                f"{description} attempt {attempt} failed ({record.category.value}): "
                f"{record.message}. Retrying in {delay:.1f}s...",
                extra=log_extra(
                    record.correlation_id,
                    "retry_scheduled",
                    attempt=attempt,
                    delay=round(delay, 3),
                ),
            )
            _backoff(delay, sleep, shutdown, record.correlation_id)
            continue

        return RetryOutcome(value=value, attempt_count=attempt, history=history)


def _backoff(delay: float, sleep: Callable[[float], None], shutdown, correlation_id: str) -> None:
    if shutdown is None:
        sleep(delay)
        return
    if shutdown.wait(delay):
        raise OperationCancelled(
            "Cancelled during retry backoff: shutdown requested",
            correlation_id=correlation_id,
            context={"reason": "cancelled"},
        )
