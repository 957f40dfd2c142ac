"""Tests for secrets providers."""

import subprocess

import pytest

from clustra.config import ClustraConfig
from clustra.errors import ConfigError, ExecutionError
from clustra.secrets import (
    EnvSecretsProvider,
    NullSecretsProvider,
    SopsSecretsProvider,
    env_name,
    flatten,
    provider_from_config,
)


class TestFlatten:
    """Tests for flatten() and env_name()."""

    def test_nested_keys(self):
        data = {"default": {"proxmox": {"username": "root@pam", "api-token": "abc"}}, "port": 8006}
        assert flatten(data) == {
            "DEFAULT_PROXMOX_USERNAME": "root@pam",
            "DEFAULT_PROXMOX_API_TOKEN": "abc",
            "PORT": "8006",
        }

    def test_none_values_dropped(self):
        assert flatten({"a": None, "b": {"c": None}}) == {}

    def test_env_name(self):
        assert env_name("ssh.key-file") == "SSH_KEY_FILE"


class TestEnvProvider:
    """Tests for EnvSecretsProvider."""

    def test_strips_prefix(self):
        provider = EnvSecretsProvider(environ={
            "CLUSTRA_SECRET_PROXMOX_TOKEN": "t0ken",
            "CLUSTRA_SECRET_": "ignored",
            "HOME": "/root",
        })
        assert provider.load() == {"PROXMOX_TOKEN": "t0ken"}

    def test_reads_env_file(self, tmp_path):
        env_file = tmp_path / "secrets.env"
        env_file.write_text("CLUSTRA_SECRET_PROXMOX_TOKEN=from-file\nCLUSTRA_SECRET_SSH_PASS=pw\nOTHER=x\n")
        provider = EnvSecretsProvider(environ={"CLUSTRA_SECRET_SSH_PASS": "from-env"}, env_file=env_file)
        assert provider.load() == {"PROXMOX_TOKEN": "from-file", "SSH_PASS": "from-env"}

    def test_missing_env_file(self, tmp_path):
        with pytest.raises(ConfigError):
            EnvSecretsProvider(environ={}, env_file=tmp_path / "nope.env").load()

    def test_null_provider(self):
        assert NullSecretsProvider().load() == {}


class TestSopsProvider:
    """Tests for SopsSecretsProvider with a stubbed sops binary."""

    @pytest.fixture
    def secrets_file(self, tmp_path):
        path = tmp_path / "secrets.sops.yaml"
        path.write_text("encrypted: true\n")
        return path

    def test_decrypts_and_flattens(self, secrets_file, monkeypatch):
        calls = []

        def fake_run(args, **kwargs):
            calls.append(args)
            return subprocess.CompletedProcess(
                args=args, returncode=0, stdout="default:\n  proxmox:\n    password: hunter2\n", stderr=""
            )

        monkeypatch.setattr(subprocess, "run", fake_run)
        secrets = SopsSecretsProvider(secrets_file).load()

        assert secrets == {"DEFAULT_PROXMOX_PASSWORD": "hunter2"}
        assert calls == [["sops", "-d", str(secrets_file)]]

    def test_failure_hides_stderr(self, secrets_file, monkeypatch):
        monkeypatch.setattr(
            subprocess, "run",
            lambda args, **kwargs: subprocess.CompletedProcess(
                args=args, returncode=128, stdout="", stderr="password: hunter2"
            ),
        )
        with pytest.raises(ExecutionError) as exc_info:
            SopsSecretsProvider(secrets_file).load()

        record = exc_info.value.record
        assert record.context == {"exit_code": "128"}
        assert "hunter2" not in record.message

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            SopsSecretsProvider(tmp_path / "missing.yaml").load()

    def test_missing_binary(self, secrets_file):
        with pytest.raises(ConfigError, match="Command not found"):
            SopsSecretsProvider(secrets_file, binary="definitely-not-sops-xyz").load()

    def test_not_a_mapping(self, secrets_file, monkeypatch):
        monkeypatch.setattr(
            subprocess, "run",
            lambda args, **kwargs: subprocess.CompletedProcess(args=args, returncode=0, stdout="- a\n- b\n", stderr=""),
        )
        with pytest.raises(ConfigError, match="mapping"):
            SopsSecretsProvider(secrets_file).load()


class TestProviderFromConfig:
    """Tests for provider_from_config()."""

    def test_none(self):
        assert isinstance(provider_from_config(ClustraConfig()), NullSecretsProvider)

    def test_env(self):
        config = ClustraConfig({"secrets": {"provider": "env", "prefix": "K8S_"}})
        provider = provider_from_config(config)
        assert isinstance(provider, EnvSecretsProvider)
        assert provider.prefix == "K8S_"

    def test_sops(self, tmp_path):
        config = ClustraConfig({"secrets": {"provider": "sops", "path": str(tmp_path / "s.yaml")}})
        provider = provider_from_config(config)
        assert isinstance(provider, SopsSecretsProvider)
        assert provider.path == tmp_path / "s.yaml"
