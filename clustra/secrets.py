"""
Secrets provider adapters.

Secrets are loaded once per workflow run and handed to the gateway, which
only ever exports them into a per-invocation scratch environment. They are
never written to the ledger, the registry or the logs.

Nested keys are flattened to UPPER_SNAKE names:
    default: {proxmox: {username: x}}  ->  DEFAULT_PROXMOX_USERNAME=x
"""

import logging
import os
import re
import subprocess
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Optional

import yaml
from dotenv import dotenv_values

from clustra.errors import ConfigError, ExecutionError

logger = logging.getLogger(__name__)

SOPS_TIMEOUT = 60


def env_name(path: str) -> str:
    """Convert a dotted key path to an environment variable name."""
    return re.sub(r"[^A-Z0-9_]", "", path.upper().replace(".", "_").replace("-", "_"))


def flatten(data: Any, prefix: str = "") -> dict[str, str]:
    """Flatten nested mappings into UPPER_SNAKE name -> string value."""
    flat: dict[str, str] = {}
    if isinstance(data, dict):
        for key, value in data.items():
            path = f"{prefix}.{key}" if prefix else str(key)
            flat.update(flatten(value, path))
    elif data is not None and prefix:
        flat[env_name(prefix)] = str(data)
    return flat


class SecretsProvider(ABC):
    """Abstract base class for secrets sources."""

    @abstractmethod
    def load(self) -> dict[str, str]:
        """Return secrets as environment variable name -> value."""
        pass


class NullSecretsProvider(SecretsProvider):
    """No secrets."""

    def load(self) -> dict[str, str]:
        return {}


class EnvSecretsProvider(SecretsProvider):
    """
    Secrets from the environment under a prefix.

    When `env_file` is given, its entries are read first (dotenv syntax)
    and the process environment overrides them.
    """

    def __init__(
        self,
        prefix: str = "CLUSTRA_SECRET_",
        environ: Optional[dict[str, str]] = None,
        env_file: Optional[Path] = None,
    ):
        self.prefix = prefix
        self.environ = environ if environ is not None else os.environ
        self.env_file = Path(env_file).expanduser() if env_file else None

    def load(self) -> dict[str, str]:
        source: dict[str, str] = {}
        if self.env_file is not None:
            if not self.env_file.exists():
                raise ConfigError(
                    f"Secrets file not found: {self.env_file}",
                    remediation="Create the file or unset secrets.path.",
                )
            source.update({k: v for k, v in dotenv_values(self.env_file).items() if v is not None})
        source.update(self.environ)
        return {
            key[len(self.prefix):]: value
            for key, value in source.items()
            if key.startswith(self.prefix) and len(key) > len(self.prefix)
        }


class SopsSecretsProvider(SecretsProvider):
    """Decrypts a SOPS-encrypted YAML file with `sops -d`."""

    def __init__(self, path: Path, binary: str = "sops"):
        self.path = Path(path).expanduser()
        self.binary = binary

    def load(self) -> dict[str, str]:
        if not self.path.exists():
            raise ConfigError(
                f"Secrets file not found: {self.path}",
                remediation="Set secrets.path to the SOPS-encrypted secrets file.",
            )
        try:
            result = subprocess.run(
                [self.binary, "-d", str(self.path)],
                capture_output=True,
                text=True,
                timeout=SOPS_TIMEOUT,
            )
        except FileNotFoundError:
            raise ConfigError(
                f"Command not found: {self.binary}",
                remediation="Install sops or set secrets.provider to 'env' or 'none'.",
            )
        except subprocess.TimeoutExpired:
            raise ExecutionError(f"sops did not decrypt {self.path} within {SOPS_TIMEOUT}s")

        if result.returncode != 0:
            # stderr may echo key material; keep only the exit status
            raise ExecutionError(
                f"Failed to decrypt secrets file {self.path}",
                context={"exit_code": result.returncode},
            )

        try:
            data = yaml.safe_load(result.stdout) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Decrypted secrets are not valid YAML: {e}")
        if not isinstance(data, dict):
            raise ConfigError("Decrypted secrets must be a mapping")

        secrets = flatten(data)
        logger.info(f"Loaded {len(secrets)} secrets from {self.path.name}")
        return secrets


def provider_from_config(config) -> SecretsProvider:
    """Build the provider selected by secrets.provider."""
    settings = config.secrets
    provider = settings.get("provider", "none")
    if provider == "sops":
        return SopsSecretsProvider(Path(settings["path"]), binary=settings.get("binary", "sops"))
    if provider == "env":
        return EnvSecretsProvider(
            prefix=settings.get("prefix", "CLUSTRA_SECRET_"),
            env_file=settings.get("path"),
        )
    if provider == "none":
        return NullSecretsProvider()
    raise ConfigError(f"Unknown secrets.provider: {provider}")
