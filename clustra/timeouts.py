"""
Timeout supervisor.

Bounds the wall-clock time of an invocation. On expiry the invocation is
asked to stop (cancel), given `cancel_grace` seconds to acknowledge, then
forcibly stopped (kill) with another `cancel_grace` as the hard deadline.

Two kinds of invocation:
- ProcessInvocation: an external command (terminate, then kill)
- ThreadInvocation: a Python callable that polls a cancel event
"""

import logging
import signal
import subprocess
import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional

from clustra.errors import ExecutionError, OperationCancelled, OperationTimeout
from clustra.logs import log_extra

logger = logging.getLogger(__name__)

POLL_INTERVAL = 0.1


class ShutdownSignal:
    """Process-wide shutdown flag, set from signal handlers or tests."""

    def __init__(self):
        self._event = threading.Event()

    def request(self) -> None:
        self._event.set()

    def is_set(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block up to `timeout` seconds; True if shutdown was requested."""
        return self._event.wait(timeout)


def install_signal_handlers(shutdown: ShutdownSignal) -> dict:
    """
    Route SIGINT and SIGTERM to `shutdown`.

    Must be called from the main thread. Returns the previous handlers so
    callers can restore them.
    """
    def _handler(signum, frame):
        logger.warning(f"Received {signal.Signals(signum).name}, shutting down")
        shutdown.request()

    previous = {}
    for sig in (signal.SIGINT, signal.SIGTERM):
        previous[sig] = signal.signal(sig, _handler)
    return previous


def restore_signal_handlers(previous: dict) -> None:
    for sig, handler in previous.items():
        signal.signal(sig, handler)


class Invocation(ABC):
    """A running unit of work that can be waited on and stopped."""

    @abstractmethod
    def wait(self, timeout: Optional[float]) -> bool:
        """Wait up to `timeout` seconds; True once the invocation has finished."""

    @abstractmethod
    def cancel(self) -> None:
        """Ask the invocation to stop."""

    @abstractmethod
    def kill(self) -> None:
        """Force the invocation to stop."""

    @abstractmethod
    def result(self) -> Any:
        """Return the outcome of a finished invocation (or raise its failure)."""


class ProcessInvocation(Invocation):
    """
    An external command started with subprocess.Popen.

    Output is collected by a reader thread so a chatty process cannot
    block on a full pipe. result() returns a CompletedProcess.
    """

    def __init__(
        self,
        argv: list[str],
        *,
        env: Optional[dict[str, str]] = None,
        cwd: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ):
        self.argv = list(argv)
        try:
            self.process = subprocess.Popen(
                self.argv,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                env=env,
                cwd=cwd,
            )
        except FileNotFoundError:
            raise ExecutionError(
                f"Command not found: {self.argv[0]}",
                correlation_id=correlation_id,
                context={"command": " ".join(self.argv)},
            )
        except OSError as e:
            raise ExecutionError(
                f"Failed to start {self.argv[0]}: {e}",
                correlation_id=correlation_id,
                context={"command": " ".join(self.argv)},
            )
        self._stdout = ""
        self._stderr = ""
        self._reader = threading.Thread(target=self._collect, daemon=True)
        self._reader.start()

    def _collect(self) -> None:
        self._stdout, self._stderr = self.process.communicate()

    def wait(self, timeout: Optional[float]) -> bool:
        self._reader.join(timeout)
        return not self._reader.is_alive()

    def cancel(self) -> None:
        if self.process.poll() is None:
            self.process.terminate()

    def kill(self) -> None:
        if self.process.poll() is None:
            self.process.kill()

    def result(self) -> subprocess.CompletedProcess:
        return subprocess.CompletedProcess(
            args=self.argv,
            returncode=self.process.returncode,
            stdout=self._stdout,
            stderr=self._stderr,
        )


class ThreadInvocation(Invocation):
    """
    A callable run on a worker thread.

    The callable receives a threading.Event and is expected to return
    promptly once it is set. A thread cannot be killed, so kill() only
    abandons it.
    """

    def __init__(self, func: Callable[[threading.Event], Any]):
        self.cancel_event = threading.Event()
        self.abandoned = False
        self._value: Any = None
        self._error: Optional[BaseException] = None
        self._thread = threading.Thread(target=self._run, args=(func,), daemon=True)
        self._thread.start()

    def _run(self, func: Callable[[threading.Event], Any]) -> None:
        try:
            self._value = func(self.cancel_event)
        except BaseException as e:
            self._error = e

    def wait(self, timeout: Optional[float]) -> bool:
        self._thread.join(timeout)
        return not self._thread.is_alive()

    def cancel(self) -> None:
        self.cancel_event.set()

    def kill(self) -> None:
        self.cancel_event.set()
        self.abandoned = True

    def result(self) -> Any:
        if self._error is not None:
            raise self._error
        return self._value


def with_timeout(
    invocation: Invocation,
    duration: float,
    *,
    cancel_grace: float = 10.0,
    shutdown: Optional[ShutdownSignal] = None,
    correlation_id: Optional[str] = None,
    description: str = "operation",
) -> Any:
    """
    Wait for `invocation` to finish within `duration` seconds.

    Args:
        invocation: Started invocation
        duration: Deadline in seconds
        cancel_grace: Seconds allowed for each of cancel and kill to take effect
        shutdown: Optional ShutdownSignal; cancels the invocation when set
        correlation_id: Correlation id for error records and logs
        description: Name used in messages

    Returns:
        invocation.result()

    Raises:
        OperationTimeout: The deadline passed (context says whether the
            invocation acknowledged cancellation)
        OperationCancelled: Shutdown was requested while waiting
    """
    deadline = time.monotonic() + duration

    while True:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            break
        if shutdown is not None and shutdown.is_set():
            acknowledged = _stop(invocation, cancel_grace)
            logger.warning(
                f"{description} cancelled by shutdown",
                extra=log_extra(correlation_id or "", "operation_cancelled", acknowledged=acknowledged),
            )
            raise OperationCancelled(
                f"{description} cancelled: shutdown requested",
                correlation_id=correlation_id,
                context={"reason": "cancelled", "acknowledged": acknowledged},
            )
        slice_ = remaining if shutdown is None else min(remaining, POLL_INTERVAL)
        if invocation.wait(slice_):
            return invocation.result()

    # Finished during the last slice
    if invocation.wait(0):
        return invocation.result()

    acknowledged = _stop(invocation, cancel_grace)
    logger.error(
        f"{description} timed out after {duration}s",
        extra=log_extra(
            correlation_id or "", "operation_timeout", duration=duration, acknowledged=acknowledged
        ),
    )
    raise OperationTimeout(
        f"{description} timed out after {duration}s",
        correlation_id=correlation_id,
        context={"reason": "timeout", "duration": duration, "acknowledged": acknowledged},
    )


def _stop(invocation: Invocation, cancel_grace: float) -> bool:
    """Cancel, then kill if needed. True if the invocation stopped on cancel."""
    invocation.cancel()
    if invocation.wait(cancel_grace):
        return True
    invocation.kill()
    invocation.wait(cancel_grace)
    return False
