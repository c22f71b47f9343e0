"""
Configuration management for sandboxer.

Loads and validates the sandbox YAML configuration: volume layout, the ordered
install stages, fetch behaviour, ownership repair, runtime services, logging.

String values may reference the volume layout with ``{workspace_root}``,
``{deps_root}``, ``{runtime_dir}`` and ``{marker_dir}`` placeholders, plus
``{date}`` for log paths.
"""

import os
import re
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv

from sandboxer.errors import ConfigError

CONFIG_ENV_VAR = "SANDBOXER_CONFIG"
DEFAULT_CONFIG_PATH = Path(__file__).parent / "defaults" / "sandbox.yaml"

# Keep in sync with sandboxer.stages.STAGE_TYPES
STAGE_TYPES = ("prep", "archive", "command", "git", "copy", "identity")

MARKER_ID_PATTERN = re.compile(r"^[A-Za-z0-9._-]+$")

_PLACEHOLDER = re.compile(r"\{(workspace_root|deps_root|runtime_dir|marker_dir|date)\}")


class StageConfig:
    """Configuration for a single install stage."""

    def __init__(self, name: str, data: Dict[str, Any]):
        data = data or {}
        self.name = name
        self.type = data.get("type")
        self.enabled = data.get("enabled", True)
        self.marker = str(data.get("marker", name))
        self.description = data.get("description", "")
        self.env: Dict[str, str] = {
            str(k): "" if v is None else str(v) for k, v in (data.get("env") or {}).items()
        }
        self.outputs: List[str] = [str(p) for p in data.get("outputs", []) or []]

        # Stage-specific config
        self.extra = {k: v for k, v in data.items() if k not in [
            "type", "enabled", "marker", "description", "env", "outputs"
        ]}

    def get(self, key: str, default: Any = None) -> Any:
        """Get extra configuration value."""
        return self.extra.get(key, default)

    def validate(self) -> None:
        """Validate stage configuration."""
        if not self.type:
            raise ConfigError(f"Stage {self.name}: missing 'type'")

        if self.type not in STAGE_TYPES:
            raise ConfigError(
                f"Stage {self.name}: unknown type '{self.type}' "
                f"(expected one of: {', '.join(STAGE_TYPES)})"
            )

        if not MARKER_ID_PATTERN.match(self.marker):
            raise ConfigError(
                f"Stage {self.name}: marker '{self.marker}' must be a plain file name"
            )

    def __repr__(self) -> str:
        return f"StageConfig(name={self.name}, type={self.type}, enabled={self.enabled})"


class ServiceConfig:
    """Configuration for a runtime service (network identity, remote access)."""

    def __init__(self, name: str, data: Dict[str, Any], config: "Config"):
        data = data or {}
        self.name = name
        self.enabled = data.get("enabled", True)
        self._config = config
        self.extra = {k: v for k, v in data.items() if k != "enabled"}

    def get(self, key: str, default: Any = None) -> Any:
        """Get a service setting, expanding layout placeholders in strings."""
        value = self.extra.get(key, default)
        if isinstance(value, str):
            return self._config.expand(value)
        return value

    def path(self, key: str, default: Optional[str] = None) -> Optional[Path]:
        """Get a service setting as a Path."""
        value = self.get(key, default)
        return Path(value) if value else None

    def section(self, key: str) -> Dict[str, Any]:
        """Get a nested mapping (e.g. readiness, watcher)."""
        return dict(self.extra.get(key) or {})

    def __repr__(self) -> str:
        return f"ServiceConfig(name={self.name}, enabled={self.enabled})"


class Config:
    """Complete sandbox configuration."""

    def __init__(self, raw_config: Dict[str, Any], config_path: Optional[Path] = None):
        if not raw_config:
            raise ConfigError("Configuration is empty")

        self.config_path = config_path
        self.raw_config = raw_config

        # Metadata
        sandbox = self.raw_config.get("sandbox", {}) or {}
        self.name = sandbox.get("name", "sandbox")
        self.version = str(sandbox.get("version", "0.0.0"))

        # Volume layout
        volume = self.raw_config.get("volume", {}) or {}
        self.workspace_root = Path(volume.get("workspace_root", "/workspace"))
        self.deps_root = Path(
            self._expand_layout(volume.get("deps_root", "{workspace_root}/deps"))
        )
        self.marker_dir = Path(
            self._expand_layout(volume.get("marker_dir", "{deps_root}/.installed"))
        )
        self.runtime_dir = Path(
            self._expand_layout(volume.get("runtime_dir", "{deps_root}/runtime"))
        )
        self.env_file = Path(self.expand(volume.get("env_file", "{deps_root}/env.sh")))
        self.fragments_file = Path(
            self.expand(volume.get("fragments_file", "{deps_root}/env.fragments.yaml"))
        )
        self.download_dir = Path(self.expand(volume.get("download_dir", "/tmp")))

        # Stages (YAML order is the fixed install order)
        stages_data = self.raw_config.get("stages", {}) or {}
        if not isinstance(stages_data, dict):
            raise ConfigError("'stages' must be a mapping of stage name to settings")
        self.stages: Dict[str, StageConfig] = {}
        for stage_name, stage_data in stages_data.items():
            self.stages[stage_name] = StageConfig(stage_name, stage_data)

        self.fetch = self.raw_config.get("fetch", {}) or {}
        self.ownership = self.raw_config.get("ownership", {}) or {}
        self.links: Dict[str, str] = self.raw_config.get("links", {}) or {}

        services_data = self.raw_config.get("services", {}) or {}
        self.services: Dict[str, ServiceConfig] = {
            name: ServiceConfig(name, data, self) for name, data in services_data.items()
        }

        self.logging = self.raw_config.get("logging", {}) or {}
        self.behavior = self.raw_config.get("behavior", {}) or {}
        self.runtime = self.raw_config.get("runtime", {}) or {}
        self.env_file_dotenv = self.raw_config.get("env_file")

    @classmethod
    def from_file(cls, config_path: Path) -> "Config":
        """Load and parse a YAML configuration file."""
        if not config_path.exists():
            raise ConfigError(f"Configuration file not found: {config_path}")

        try:
            with open(config_path, "r") as f:
                raw = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML syntax: {e}")

        if not raw:
            raise ConfigError("Configuration file is empty")
        if not isinstance(raw, dict):
            raise ConfigError("Configuration file must contain a mapping")

        return cls(raw, config_path)

    def _expand_layout(self, value: str) -> str:
        # Layout keys resolve in declaration order, so only earlier ones are usable
        known = {"workspace_root": str(self.workspace_root)}
        for attr in ("deps_root", "marker_dir", "runtime_dir"):
            if hasattr(self, attr):
                known[attr] = str(getattr(self, attr))
        return _PLACEHOLDER.sub(lambda m: known.get(m.group(1), m.group(0)), str(value))

    def expand(self, value: str) -> str:
        """Expand layout placeholders in a configuration string."""
        known = {
            "workspace_root": str(self.workspace_root),
            "deps_root": str(self.deps_root),
            "marker_dir": str(self.marker_dir),
            "runtime_dir": str(getattr(self, "runtime_dir", "")),
            "date": datetime.now().strftime("%Y-%m-%d"),
        }
        return _PLACEHOLDER.sub(lambda m: known[m.group(1)], str(value))

    def get_stage(self, name: str) -> Optional[StageConfig]:
        """Get stage configuration by name."""
        return self.stages.get(name)

    def get_enabled_stages(self) -> List[StageConfig]:
        """Get list of enabled stages in declared order."""
        return [stage for stage in self.stages.values() if stage.enabled]

    def get_service(self, name: str) -> Optional[ServiceConfig]:
        """Get service configuration by name."""
        return self.services.get(name)

    def get_log_file_path(self) -> Optional[Path]:
        """Get log file path with placeholder interpolation."""
        log_output = self.logging.get("output", "{deps_root}/logs/sandboxer-{date}.log")
        if not log_output:
            return None
        return Path(self.expand(log_output))

    def get_log_level(self) -> str:
        """Get logging level."""
        return str(self.logging.get("level", "INFO")).upper()

    def get_log_format(self) -> str:
        """Get log format (structured or pretty)."""
        return self.logging.get("format", "structured")

    def should_log_to_console(self) -> bool:
        """Check if console logging is enabled."""
        return self.logging.get("console", True)

    def get_state_file(self) -> Path:
        """Get path to the last-run summary file."""
        return self.deps_root / "logs" / "state.json"

    def get_ownership_paths(self) -> List[Path]:
        """Get paths whose ownership is reconciled at startup."""
        paths = self.ownership.get("paths") or [str(self.workspace_root)]
        return [Path(self.expand(p)) for p in paths]

    def load_env_file(self) -> bool:
        """Load the optional dotenv file into os.environ (existing values win)."""
        if not self.env_file_dotenv:
            return False
        env_path = Path(os.path.expanduser(self.expand(self.env_file_dotenv)))
        if not env_path.exists():
            return False
        return load_dotenv(env_path, override=False)

    def validate(self) -> None:
        """Validate entire configuration."""
        if not self.name:
            raise ConfigError("Sandbox name is required")

        if self.behavior.get("fail_fast", True) is not True:
            raise ConfigError(
                "behavior.fail_fast must be true: install stages depend on each other"
            )

        if not self.stages:
            raise ConfigError("No stages configured")

        markers: Dict[str, str] = {}
        for stage_name, stage in self.stages.items():
            try:
                stage.validate()
            except ConfigError as e:
                raise ConfigError(f"Stage '{stage_name}' validation failed: {e}")

            if stage.marker in markers:
                raise ConfigError(
                    f"Stages '{markers[stage.marker]}' and '{stage_name}' "
                    f"share marker '{stage.marker}'"
                )
            markers[stage.marker] = stage_name

        fetch_order = self.fetch.get("strategies")
        if fetch_order is not None and not isinstance(fetch_order, list):
            raise ConfigError("fetch.strategies must be a list")

        for key in ("uid", "gid"):
            value = self.ownership.get(key)
            if value is not None and (not isinstance(value, int) or value < 0):
                raise ConfigError(f"ownership.{key} must be a non-negative integer")

    def __repr__(self) -> str:
        return f"Config(name={self.name}, version={self.version}, stages={len(self.stages)})"


def load_config(config_path: Optional[Path] = None) -> Config:
    """
    Load sandbox configuration from YAML file.

    Args:
        config_path: Path to config file. Defaults to $SANDBOXER_CONFIG,
            then the packaged defaults/sandbox.yaml

    Returns:
        Config instance

    Raises:
        ConfigError: If config is invalid or missing
    """
    if config_path is None:
        env_path = os.environ.get(CONFIG_ENV_VAR)
        config_path = Path(env_path) if env_path else DEFAULT_CONFIG_PATH

    config = Config.from_file(Path(config_path))
    config.load_env_file()
    return config
