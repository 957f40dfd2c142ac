"""
Configuration management for clustra.

Loads and validates config.yaml from the clustra home directory
($CLUSTRA_HOME, default ~/.clustra).
"""

import ipaddress
import os
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from clustra.errors import ConfigError


DEFAULT_CONFIG: Dict[str, Any] = {
    "state_dir": "~/.clustra/state",
    "network": {
        "base_ip": "10.10.10.100",
        "ip_block_size": 10,
        "first_index": 0,
        "control_plane_slots": 5,
        "worker_slots": 5,
        "domain_suffix": ".cluster.local",
        "role_prefixes": {"control_plane": "c", "worker": "w"},
        "reserved_ranges": [
            {"name": "dhcp", "start": "10.10.10.2", "end": "10.10.10.99"},
        ],
    },
    "defaults": {
        "control_planes": 1,
        "workers": 2,
    },
    "timeouts": {
        "provision": 3600,
        "configure": 1800,
        "remote_exec": 300,
        "cancel_grace": 10,
    },
    "retry": {
        "provision": {"max_attempts": 3, "base_delay": 5, "max_delay": 60, "max_timeout_attempts": 1},
        "configure": {"max_attempts": 3, "base_delay": 2, "max_delay": 60, "max_timeout_attempts": 2},
        "remote_exec": {"max_attempts": 5, "base_delay": 5, "max_delay": 60, "max_timeout_attempts": 2},
    },
    "engines": {
        "tofu": {"binary": "tofu", "working_dir": "terraform"},
        "ansible": {"binary": "ansible-playbook", "playbook_dir": "ansible/playbooks", "remote_user": "root"},
        "ssh": {"binary": "ssh", "user": "root", "key_file": None, "connect_timeout": 10},
    },
    "secrets": {
        "provider": "none",
        "path": None,
    },
    "logging": {
        "level": "INFO",
        "format": "pretty",
        "console": True,
        "output": "~/.clustra/logs/clustra-{date}.log",
    },
}

OPERATION_CLASSES = ("provision", "configure", "remote_exec")


def get_clustra_home() -> Path:
    """Return the clustra home directory ($CLUSTRA_HOME or ~/.clustra)."""
    return Path(os.environ.get("CLUSTRA_HOME", "~/.clustra")).expanduser()


def _config_error(message: str, remediation: Optional[str] = None) -> ConfigError:
    return ConfigError(
        message,
        remediation=remediation or "Fix the value in config.yaml or re-run 'clustra init --force'.",
    )


class ReservedRange:
    """An inclusive IPv4 range that node addresses must never fall into."""

    def __init__(self, name: str, start: str, end: str):
        self.name = name
        try:
            self.start = ipaddress.IPv4Address(start)
            self.end = ipaddress.IPv4Address(end)
        except ipaddress.AddressValueError as e:
            raise _config_error(f"Reserved range '{name}': invalid address: {e}")
        if self.end < self.start:
            raise _config_error(f"Reserved range '{name}': end {end} is before start {start}")

    def contains(self, address: ipaddress.IPv4Address) -> bool:
        return self.start <= address <= self.end

    def __repr__(self) -> str:
        return f"ReservedRange(name={self.name}, start={self.start}, end={self.end})"


class NetworkConfig:
    """Addressing settings shared by the registry and the resolver."""

    def __init__(self, data: Dict[str, Any]):
        try:
            self.base_ip = ipaddress.IPv4Address(str(data.get("base_ip", "")))
        except ipaddress.AddressValueError:
            raise _config_error(
                f"network.base_ip is not a valid IPv4 address: {data.get('base_ip')!r}",
                "Set network.base_ip to the first address of block 0, e.g. 10.10.10.100.",
            )
        self.ip_block_size = int(data.get("ip_block_size", 10))
        self.first_index = int(data.get("first_index", 0))
        self.control_plane_slots = int(data.get("control_plane_slots", 5))
        self.worker_slots = int(data.get("worker_slots", 5))
        self.domain_suffix = data.get("domain_suffix") or ""
        prefixes = data.get("role_prefixes", {})
        self.control_plane_prefix = prefixes.get("control_plane", "c")
        self.worker_prefix = prefixes.get("worker", "w")
        self.reserved_ranges: List[ReservedRange] = [
            ReservedRange(r.get("name", f"range{i}"), r.get("start", ""), r.get("end", ""))
            for i, r in enumerate(data.get("reserved_ranges") or [])
        ]

    @property
    def slots_per_block(self) -> int:
        return self.control_plane_slots + self.worker_slots

    def validate(self) -> None:
        if self.first_index < 0:
            raise _config_error("network.first_index must be >= 0")
        if self.control_plane_slots < 1 or self.worker_slots < 1:
            raise _config_error("network.control_plane_slots and network.worker_slots must be >= 1")
        if self.ip_block_size < self.slots_per_block:
            raise _config_error(
                f"network.ip_block_size ({self.ip_block_size}) is smaller than the "
                f"{self.slots_per_block} role slots it must hold",
                f"Raise network.ip_block_size to at least {self.slots_per_block}.",
            )
        for prefix in (self.control_plane_prefix, self.worker_prefix):
            if len(prefix) != 1:
                raise _config_error(f"Role prefix must be a single character: {prefix!r}")
        if self.control_plane_prefix == self.worker_prefix:
            raise _config_error("Control-plane and worker role prefixes must differ")

    def __repr__(self) -> str:
        return (
            f"NetworkConfig(base_ip={self.base_ip}, ip_block_size={self.ip_block_size}, "
            f"first_index={self.first_index})"
        )


class EngineConfig:
    """Settings for one external engine (tofu, ansible, ssh)."""

    def __init__(self, name: str, data: Dict[str, Any]):
        self.name = name
        self.binary = data.get("binary", name)
        self.extra = {k: v for k, v in data.items() if k != "binary"}

    def get(self, key: str, default: Any = None) -> Any:
        """Get extra configuration value."""
        return self.extra.get(key, default)

    def __repr__(self) -> str:
        return f"EngineConfig(name={self.name}, binary={self.binary})"


class ClustraConfig:
    """Complete clustra configuration."""

    def __init__(self, raw_config: Optional[Dict[str, Any]] = None, config_path: Optional[Path] = None):
        self.config_path = config_path
        self.raw_config = _merge(DEFAULT_CONFIG, raw_config or {})

        self.state_dir = Path(self.raw_config["state_dir"]).expanduser()
        self.network = NetworkConfig(self.raw_config.get("network", {}))
        self.defaults = self.raw_config.get("defaults", {})
        self.timeouts = self.raw_config.get("timeouts", {})
        self.retry = self.raw_config.get("retry", {})
        self.engines: Dict[str, EngineConfig] = {
            name: EngineConfig(name, data or {})
            for name, data in self.raw_config.get("engines", {}).items()
        }
        self.secrets = self.raw_config.get("secrets", {})
        self.logging = self.raw_config.get("logging", {})

    @classmethod
    def from_file(cls, config_path: Path) -> "ClustraConfig":
        """Load and parse a YAML configuration file."""
        if not config_path.exists():
            raise ConfigError(
                f"Configuration file not found: {config_path}",
                remediation="Run 'clustra init' to create a configuration file.",
            )

        try:
            with open(config_path, "r") as f:
                config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise _config_error(f"Invalid YAML syntax: {e}")

        if not config:
            raise _config_error("Configuration file is empty")
        if not isinstance(config, dict):
            raise _config_error("Configuration file must contain a mapping at the top level")
        return cls(config, config_path=config_path)

    def get_timeout(self, operation_class: str) -> float:
        """Default deadline in seconds for an operation class."""
        if operation_class not in self.timeouts:
            raise _config_error(f"No timeout configured for '{operation_class}'")
        return float(self.timeouts[operation_class])

    def get_cancel_grace(self) -> float:
        return float(self.timeouts.get("cancel_grace", 10))

    def get_retry_settings(self, operation_class: str) -> Dict[str, Any]:
        return dict(self.retry.get(operation_class, {}))

    def get_engine(self, name: str) -> EngineConfig:
        if name not in self.engines:
            raise _config_error(f"No engine configured under engines.{name}")
        return self.engines[name]

    def get_default_node_count(self, role: str) -> int:
        return int(self.defaults.get(role, 0))

    def get_log_file_path(self) -> Path:
        """Get log file path with date interpolation."""
        log_output = self.logging.get("output", "~/.clustra/logs/clustra-{date}.log")
        log_output = log_output.replace("{date}", datetime.now().strftime("%Y-%m-%d"))
        return Path(log_output).expanduser()

    def get_log_level(self) -> str:
        """Get logging level."""
        return str(self.logging.get("level", "INFO")).upper()

    def get_log_format(self) -> str:
        """Get log format (structured or pretty)."""
        return self.logging.get("format", "pretty")

    def should_log_to_console(self) -> bool:
        """Check if console logging is enabled."""
        return bool(self.logging.get("console", True))

    def validate(self) -> None:
        """Validate entire configuration."""
        self.network.validate()

        for op_class in OPERATION_CLASSES:
            timeout = self.get_timeout(op_class)
            if timeout <= 0:
                raise _config_error(f"timeouts.{op_class} must be positive")
            settings = self.get_retry_settings(op_class)
            if int(settings.get("max_attempts", 1)) < 1:
                raise _config_error(f"retry.{op_class}.max_attempts must be >= 1")

        for role in ("control_planes", "workers"):
            if self.get_default_node_count(role) < 0:
                raise _config_error(f"defaults.{role} must be >= 0")
        if self.get_default_node_count("control_planes") > self.network.control_plane_slots:
            raise _config_error("defaults.control_planes exceeds network.control_plane_slots")
        if self.get_default_node_count("workers") > self.network.worker_slots:
            raise _config_error("defaults.workers exceeds network.worker_slots")

        provider = self.secrets.get("provider", "none")
        if provider not in ("none", "env", "sops"):
            raise _config_error(f"Unknown secrets.provider: {provider}")
        if provider == "sops" and not self.secrets.get("path"):
            raise _config_error(
                "secrets.provider is 'sops' but secrets.path is not set",
                "Point secrets.path at the encrypted secrets file.",
            )

    def __repr__(self) -> str:
        return f"ClustraConfig(state_dir={self.state_dir}, network={self.network!r})"


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge `override` onto a copy of `base`."""
    merged: Dict[str, Any] = {}
    for key, value in base.items():
        merged[key] = _merge(value, {}) if isinstance(value, dict) else value
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(config_path: Optional[Path] = None) -> ClustraConfig:
    """
    Load clustra configuration from YAML file.

    Args:
        config_path: Path to config file. Defaults to $CLUSTRA_HOME/config.yaml

    Returns:
        Validated ClustraConfig instance

    Raises:
        ConfigError: If config is invalid or missing
    """
    if config_path is None:
        config_path = get_clustra_home() / "config.yaml"

    config = ClustraConfig.from_file(Path(config_path))
    config.validate()
    return config


__all__ = [
    "ClustraConfig",
    "ConfigError",
    "EngineConfig",
    "NetworkConfig",
    "ReservedRange",
    "DEFAULT_CONFIG",
    "get_clustra_home",
    "load_config",
]
