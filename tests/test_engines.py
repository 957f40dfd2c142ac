"""Tests for the tofu, ansible and ssh engines."""

import json
import os
import subprocess

import pytest
import yaml

from clustra.addressing import workspace_addresses
from clustra.config import ClustraConfig, EngineConfig
from clustra.engines import EngineRegistry, EngineRequest, OperationKind, ScratchScope
from clustra.engines.ansible import AnsibleEngine, build_inventory
from clustra.engines.ssh import SshEngine
from clustra.engines.tofu import TofuEngine, parse_summary
from clustra.errors import ConfigError, ExecutionError, InputError, OperationCancelled
from clustra.schemas import NodeRole, RoleRoster, StepKind, Workspace
from clustra.timeouts import ShutdownSignal


class ProcessStub:
    """Replaces ProcessInvocation; records argv and never starts a process."""

    def __init__(self, returncode=0):
        self.returncode = returncode
        self.started = []
        self.cancelled = []

    def __call__(self, argv, env=None, cwd=None, correlation_id=None):
        self.started.append(argv)
        stub = self

        class _Invocation:
            def wait(self, timeout):
                return True

            def cancel(self):
                stub.cancelled.append(argv)

            def kill(self):
                pass

            def result(self):
                return subprocess.CompletedProcess(args=argv, returncode=stub.returncode, stdout="", stderr="locked")

        return _Invocation()


def make_workspace(name="ubuntu", index=1, letter="u", workers=2):
    roster = {role: RoleRoster() for role in NodeRole}
    roster[NodeRole.CONTROL_PLANE].issue()
    for _ in range(workers):
        roster[NodeRole.WORKER].issue()
    return Workspace(name=name, index=index, release_letter=letter, ip_block_size=10, roster=roster)


def completed(returncode=0, stdout="", stderr=""):
    return subprocess.CompletedProcess(args=["tofu"], returncode=returncode, stdout=stdout, stderr=stderr)


# =============================================================================
# FIXTURES
# =============================================================================


@pytest.fixture
def workspace():
    return make_workspace()


@pytest.fixture
def addresses(workspace, network):
    return workspace_addresses(workspace, network)


@pytest.fixture
def tofu(tmp_path):
    return TofuEngine(EngineConfig("tofu", {"binary": "tofu", "working_dir": str(tmp_path)}))


class TestOperationKind:
    """Mapping of operation kinds to config classes and engines."""

    @pytest.mark.parametrize("kind,op_class,engine", [
        (OperationKind.INFRA_APPLY, "provision", "tofu"),
        (OperationKind.INFRA_DESTROY, "provision", "tofu"),
        (OperationKind.INFRA_PLAN, "provision", "tofu"),
        (OperationKind.CONFIGURE, "configure", "ansible"),
        (OperationKind.REMOTE_EXEC, "remote_exec", "ssh"),
    ])
    def test_mapping(self, kind, op_class, engine):
        assert kind.operation_class == op_class
        assert kind.engine_name == engine
        assert kind.step_kind == StepKind(op_class)


class TestScratchScope:
    """Tests for per-invocation scratch space."""

    def test_removed_on_exit(self):
        with ScratchScope("ubuntu", env={"TOKEN": "s3cret"}) as scratch:
            path = scratch.path
            secret_file = scratch.write_file("vars.env", "TOKEN=s3cret\n")
            assert oct(path.stat().st_mode & 0o777) == oct(0o700)
            assert oct(secret_file.stat().st_mode & 0o777) == oct(0o600)
            assert scratch.environment()["TOKEN"] == "s3cret"
        assert not path.exists()

    def test_removed_on_error(self):
        with pytest.raises(RuntimeError):
            with ScratchScope("ubuntu") as scratch:
                path = scratch.path
                raise RuntimeError("engine blew up")
        assert not path.exists()

    def test_overlay_does_not_touch_process_env(self):
        with ScratchScope("ubuntu", env={"CLUSTRA_TEST_ONLY": "1"}) as scratch:
            scratch.environment()
        assert "CLUSTRA_TEST_ONLY" not in os.environ

    def test_write_requires_active_scope(self):
        with pytest.raises(RuntimeError):
            ScratchScope("ubuntu").write_file("x", "y")


class TestTofuEngine:
    """Tests for TofuEngine."""

    def test_apply_command(self, tofu, workspace):
        request = EngineRequest(
            kind=OperationKind.INFRA_APPLY,
            workspace=workspace,
            parameters={"worker_count": 2, "release_letter": "u", "enable_ha": False},
        )
        assert tofu.build_command(request) == [
            "tofu", "apply", "-auto-approve", "-input=false",
            "-var", "enable_ha=false",
            "-var", "release_letter=u",
            "-var", "worker_count=2",
        ]

    def test_plan_and_destroy(self, tofu, workspace):
        plan = tofu.build_command(EngineRequest(kind=OperationKind.INFRA_PLAN, workspace=workspace))
        destroy = tofu.build_command(EngineRequest(kind=OperationKind.INFRA_DESTROY, workspace=workspace))
        assert plan == ["tofu", "plan", "-input=false"]
        assert destroy == ["tofu", "destroy", "-auto-approve", "-input=false"]

    def test_rejects_configure(self, tofu, workspace):
        with pytest.raises(InputError):
            tofu.build_command(EngineRequest(kind=OperationKind.CONFIGURE, workspace=workspace))

    def test_status_parses_summary(self, tofu, monkeypatch):
        summary = {"ubuntu-controlplane-1": {"IP": "10.10.10.110", "hostname": "cu1", "VM_ID": 301}}
        calls = []

        def fake_run(args, **kwargs):
            calls.append(args[1:])
            if args[1] == "workspace":
                return completed()
            return completed(stdout=json.dumps(summary))

        monkeypatch.setattr(subprocess, "run", fake_run)
        status = tofu.status("ubuntu")

        assert status.live
        assert status.nodes["ubuntu-controlplane-1"]["IP"] == "10.10.10.110"
        assert calls == [["workspace", "select", "ubuntu"], ["output", "-json", "cluster_summary"]]

    def test_status_missing_workspace(self, tofu, monkeypatch):
        monkeypatch.setattr(
            subprocess, "run",
            lambda args, **kwargs: completed(1, stderr="Workspace \"ghost\" doesn't exist."),
        )
        assert not tofu.status("ghost").live

    def test_status_missing_output(self, tofu, monkeypatch):
        def fake_run(args, **kwargs):
            if args[1] == "workspace":
                return completed()
            return completed(1, stderr="Output \"cluster_summary\" not found")

        monkeypatch.setattr(subprocess, "run", fake_run)
        assert not tofu.status("ubuntu").live

    def test_missing_binary(self, tofu, monkeypatch):
        def fake_run(args, **kwargs):
            raise FileNotFoundError(args[0])

        monkeypatch.setattr(subprocess, "run", fake_run)
        with pytest.raises(ExecutionError, match="Command not found"):
            tofu.status("ubuntu")

    def test_run_selects_workspace_first(self, tofu, workspace, monkeypatch):
        processes = ProcessStub()
        monkeypatch.setattr("clustra.engines.tofu.ProcessInvocation", processes)
        request = EngineRequest(kind=OperationKind.INFRA_APPLY, workspace=workspace)

        with ScratchScope("ubuntu") as scratch:
            tofu.run(request, scratch)

        assert processes.started == [
            ["tofu", "workspace", "select", "-or-create", "ubuntu"],
            ["tofu", "apply", "-auto-approve", "-input=false"],
        ]

    def test_shutdown_interrupts_workspace_select(self, tofu, workspace, monkeypatch):
        processes = ProcessStub()
        monkeypatch.setattr("clustra.engines.tofu.ProcessInvocation", processes)
        shutdown = ShutdownSignal()
        shutdown.request()
        request = EngineRequest(kind=OperationKind.INFRA_APPLY, workspace=workspace, shutdown=shutdown)

        with ScratchScope("ubuntu") as scratch:
            with pytest.raises(OperationCancelled):
                tofu.run(request, scratch)

        # only the select was started, and it was asked to stop
        assert processes.started == [["tofu", "workspace", "select", "-or-create", "ubuntu"]]
        assert processes.cancelled == processes.started

    def test_failed_select(self, tofu, workspace, monkeypatch):
        monkeypatch.setattr("clustra.engines.tofu.ProcessInvocation", ProcessStub(returncode=1))
        request = EngineRequest(kind=OperationKind.INFRA_APPLY, workspace=workspace, correlation_id="corr-s")

        with ScratchScope("ubuntu") as scratch:
            with pytest.raises(ExecutionError) as exc_info:
                tofu.run(request, scratch)
        assert exc_info.value.record.context["stderr_tail"] == "locked"

    def test_delete_workspace(self, tofu, monkeypatch):
        calls = []

        def fake_run(args, **kwargs):
            calls.append(args[1:])
            return completed()

        monkeypatch.setattr(subprocess, "run", fake_run)

        assert tofu.delete_workspace("k8s129") is True
        assert calls == [["workspace", "select", "default"], ["workspace", "delete", "k8s129"]]

    def test_delete_missing_workspace(self, tofu, monkeypatch):
        def fake_run(args, **kwargs):
            if args[2] == "delete":
                return completed(1, stderr="Workspace \"k8s129\" doesn't exist.")
            return completed()

        monkeypatch.setattr(subprocess, "run", fake_run)
        assert tofu.delete_workspace("k8s129") is False

    def test_delete_failure(self, tofu, monkeypatch):
        def fake_run(args, **kwargs):
            if args[2] == "delete":
                return completed(1, stderr="Error: state locked")
            return completed()

        monkeypatch.setattr(subprocess, "run", fake_run)
        with pytest.raises(ExecutionError, match="delete tofu workspace"):
            tofu.delete_workspace("k8s129")


class TestParseSummary:
    """Tests for parse_summary()."""

    def test_bare_mapping(self):
        assert parse_summary('{"n1": {"IP": "10.0.0.1"}}') == {"n1": {"IP": "10.0.0.1"}}

    def test_wrapped_value(self):
        text = json.dumps({"sensitive": False, "type": "object", "value": {"n1": {"IP": "10.0.0.1"}}})
        assert parse_summary(text) == {"n1": {"IP": "10.0.0.1"}}

    def test_empty(self):
        assert parse_summary("") == {}
        assert parse_summary("null") == {}

    def test_garbage(self):
        with pytest.raises(ExecutionError):
            parse_summary("{oops")
        with pytest.raises(ExecutionError):
            parse_summary("[1, 2]")


class TestAnsibleEngine:
    """Tests for AnsibleEngine and inventory generation."""

    def test_inventory_groups(self, addresses):
        inventory = build_inventory(addresses, "root")
        children = inventory["all"]["children"]

        assert inventory["all"]["vars"] == {"ansible_user": "root"}
        assert list(children["control_plane"]["hosts"]) == ["cu1"]
        assert list(children["workers"]["hosts"]) == ["wu1", "wu2"]
        assert children["workers"]["hosts"]["wu2"] == {
            "ansible_host": "10.10.10.116",
            "node_name": "ubuntu-worker-2",
            "fqdn": "wu2.cluster.local",
            "k8s_role": "worker",
        }

    def test_command(self, addresses, workspace, tmp_path):
        engine = AnsibleEngine(EngineConfig("ansible", {
            "binary": "ansible-playbook",
            "playbook_dir": str(tmp_path / "playbooks"),
            "remote_user": "ubuntu",
        }))
        request = EngineRequest(
            kind=OperationKind.CONFIGURE,
            workspace=workspace,
            parameters={
                "playbook": "pb_reset_node.yml",
                "limit": "workers",
                "extra_vars": {"release_letter": "u", "kubernetes_version": "v1.31"},
            },
            addresses=addresses,
        )
        command = engine.build_command(request, tmp_path / "inventory.yml")

        assert command[:4] == [
            "ansible-playbook", "-i", str(tmp_path / "inventory.yml"), str(tmp_path / "playbooks" / "pb_reset_node.yml"),
        ]
        assert command[command.index("--limit") + 1] == "workers"
        assert "ansible_user=ubuntu" in command
        assert command[-4:] == ["-e", "kubernetes_version=v1.31", "-e", "release_letter=u"]

    def test_inventory_written_to_scratch(self, addresses, workspace, monkeypatch):
        engine = AnsibleEngine(ClustraConfig().get_engine("ansible"))
        started = []

        class RecordingInvocation:
            def __init__(self, argv, env=None, cwd=None, correlation_id=None):
                started.append(argv)

        monkeypatch.setattr("clustra.engines.ansible.ProcessInvocation", RecordingInvocation)
        request = EngineRequest(
            kind=OperationKind.CONFIGURE,
            workspace=workspace,
            parameters={"playbook": "install_kubernetes_cluster.yml"},
            addresses=addresses,
        )
        with ScratchScope("ubuntu") as scratch:
            engine.run(request, scratch)
            inventory = yaml.safe_load((scratch.path / "inventory.yml").read_text())
        assert "cu1" in inventory["all"]["children"]["control_plane"]["hosts"]
        assert started[0][2].endswith("inventory.yml")

    def test_requires_playbook(self, addresses, workspace, tmp_path):
        engine = AnsibleEngine(ClustraConfig().get_engine("ansible"))
        request = EngineRequest(kind=OperationKind.CONFIGURE, workspace=workspace, addresses=addresses)
        with pytest.raises(InputError, match="playbook"):
            engine.build_command(request, tmp_path / "inventory.yml")

    def test_requires_nodes(self, workspace, tmp_path):
        engine = AnsibleEngine(ClustraConfig().get_engine("ansible"))
        request = EngineRequest(kind=OperationKind.CONFIGURE, workspace=workspace, parameters={"playbook": "x.yml"})
        with pytest.raises(InputError, match="no nodes"):
            engine.build_command(request, tmp_path / "inventory.yml")


class TestSshEngine:
    """Tests for SshEngine."""

    def test_defaults_to_first_control_plane(self, addresses, workspace):
        engine = SshEngine(EngineConfig("ssh", {"user": "root", "key_file": "/keys/id", "connect_timeout": 7}))
        request = EngineRequest(
            kind=OperationKind.REMOTE_EXEC,
            workspace=workspace,
            parameters={"command": "kubectl get nodes"},
            addresses=addresses,
        )
        assert engine.build_command(request) == [
            "ssh",
            "-o", "BatchMode=yes",
            "-o", "ConnectTimeout=7",
            "-o", "StrictHostKeyChecking=no",
            "-i", "/keys/id",
            "root@10.10.10.110",
            "kubectl get nodes",
        ]

    @pytest.mark.parametrize("host", ["wu2", "wu2.cluster.local", "10.10.10.116", "ubuntu-worker-2"])
    def test_named_host(self, addresses, workspace, host):
        engine = SshEngine(ClustraConfig().get_engine("ssh"))
        request = EngineRequest(
            kind=OperationKind.REMOTE_EXEC,
            workspace=workspace,
            parameters={"command": "uptime", "host": host},
            addresses=addresses,
        )
        assert engine.pick_target(request).hostname == "wu2"

    def test_unknown_host(self, addresses, workspace):
        engine = SshEngine(ClustraConfig().get_engine("ssh"))
        request = EngineRequest(
            kind=OperationKind.REMOTE_EXEC,
            workspace=workspace,
            parameters={"command": "uptime", "host": "wz9"},
            addresses=addresses,
        )
        with pytest.raises(InputError):
            engine.build_command(request)


class TestEngineRegistry:
    """Tests for EngineRegistry."""

    def test_create_default(self):
        engines = EngineRegistry.create_default(ClustraConfig())
        assert isinstance(engines.get("tofu"), TofuEngine)
        assert isinstance(engines.get("ansible"), AnsibleEngine)
        assert isinstance(engines.get("ssh"), SshEngine)

    def test_unknown_engine(self):
        with pytest.raises(ConfigError):
            EngineRegistry().get("terraform")

    def test_base_engine_has_no_workspace_state(self):
        assert SshEngine(ClustraConfig().get_engine("ssh")).delete_workspace("ubuntu") is False

    def test_check_result_nonzero(self, workspace, tofu):
        engine = tofu
        request = EngineRequest(kind=OperationKind.INFRA_APPLY, workspace=workspace, correlation_id="corr-9")
        failed = subprocess.CompletedProcess(args=["tofu", "apply"], returncode=1, stdout="", stderr="a\nb\nError: quota")
        with pytest.raises(ExecutionError) as exc_info:
            engine.check_result(request, failed)
        context = exc_info.value.record.context
        assert context["exit_code"] == "1"
        assert context["stderr_tail"].endswith("Error: quota")
        assert exc_info.value.correlation_id == "corr-9"
