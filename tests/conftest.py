import subprocess
import threading

import pytest

from clustra.config import ClustraConfig
from clustra.engines import Engine, EngineRegistry, EngineStatus
from clustra.ledger import CheckpointLedger, InMemoryLedgerStore
from clustra.registry import WorkspaceRegistry
from clustra.timeouts import ThreadInvocation


class FakeEngine(Engine):
    """
    Scripted engine for tests.

    Each run() pops the next scripted outcome:
    - an int: exit status of the fake process
    - an Exception instance: raised from the invocation's result()
    - "hang": blocks until cancelled
    When the script is empty every call exits 0.
    """

    def __init__(self, name, script=None, live=False, nodes=None):
        self.name = name
        self.script = list(script or [])
        self.live = live
        self.nodes = dict(nodes or {})
        self.requests = []
        self.cancelled = 0
        self.scratch_paths = []
        self.scratch_envs = []
        self.deleted = []

    def run(self, request, scratch):
        self.requests.append(request)
        self.scratch_paths.append(scratch.path)
        self.scratch_envs.append(dict(scratch.env))
        outcome = self.script.pop(0) if self.script else 0
        args = [self.name, request.kind.value, request.workspace.name]

        def work(cancel_event: threading.Event):
            if outcome == "hang":
                cancel_event.wait(5)
                return subprocess.CompletedProcess(args=args, returncode=-15, stdout="", stderr="terminated")
            if isinstance(outcome, BaseException):
                raise outcome
            return subprocess.CompletedProcess(
                args=args, returncode=outcome, stdout="ok", stderr="" if outcome == 0 else "boom"
            )

        return ThreadInvocation(work)

    def cancel(self, invocation):
        self.cancelled += 1
        invocation.cancel()

    def status(self, workspace):
        return EngineStatus(workspace=workspace, live=self.live, nodes=self.nodes)

    def delete_workspace(self, workspace):
        self.deleted.append(workspace)
        return True


def make_config(tmp_path, **overrides):
    raw = {
        "state_dir": str(tmp_path / "state"),
        "timeouts": {"provision": 5, "configure": 5, "remote_exec": 5, "cancel_grace": 0.5},
        "retry": {
            "provision": {"max_attempts": 3, "base_delay": 0, "max_delay": 0, "max_timeout_attempts": 1},
            "configure": {"max_attempts": 3, "base_delay": 0, "max_delay": 0, "max_timeout_attempts": 2},
            "remote_exec": {"max_attempts": 3, "base_delay": 0, "max_delay": 0, "max_timeout_attempts": 2},
        },
        "logging": {"output": str(tmp_path / "logs" / "clustra.log"), "console": False},
    }
    for key, value in overrides.items():
        raw[key] = value
    config = ClustraConfig(raw)
    config.validate()
    return config


# =============================================================================
# FIXTURES
# =============================================================================


@pytest.fixture
def clustra_config(tmp_path):
    """Config with a temp state dir and instant retries."""
    return make_config(tmp_path)


@pytest.fixture
def network(clustra_config):
    return clustra_config.network


@pytest.fixture
def registry(clustra_config):
    """Registry with no live-resource probe."""
    return WorkspaceRegistry(clustra_config)


@pytest.fixture
def ledger():
    return CheckpointLedger(InMemoryLedgerStore())


@pytest.fixture
def fake_engines():
    """EngineRegistry of FakeEngines that all succeed."""
    engines = EngineRegistry()
    for name in ("tofu", "ansible", "ssh"):
        engines.register(name, FakeEngine(name))
    return engines


@pytest.fixture
def no_sleep():
    """Sleep replacement recording requested delays."""
    delays = []

    def sleep(seconds):
        delays.append(seconds)

    sleep.delays = delays
    return sleep
