"""Configuration loader for nvdoctor.

Supports /etc/nvdoctor/config.toml or /etc/nvdoctor/config.yaml for
overriding driver names, paths and timings. Every key is optional; missing
keys keep the defaults below.
"""

from __future__ import annotations

import dataclasses
import os

# Use tomllib for 3.11+
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

NVDOCTOR_CONFIG_ENV = "NVDOCTOR_CONFIG"
SYSTEM_CONFIG_PATHS: tuple[Path, ...] = (
    Path("/etc/nvdoctor/config.toml"),
    Path("/etc/nvdoctor/config.yaml"),
)


class ConfigError(RuntimeError):
    """Raised when a config file is malformed or invalid."""


@dataclass(frozen=True)
class DriverConfig:
    """Names, paths and timings used by probes and remediations."""

    vendor_id: str = "10de"
    vendor_keyword: str = "nvidia"
    target_module: str = "nvidia"
    # Load order; unloads run in reverse.
    module_set: tuple[str, ...] = ("nvidia", "nvidia_modeset", "nvidia_drm")
    competing_driver: str = "nouveau"
    blacklist_path: Path = Path("/etc/modprobe.d/blacklist-nvidia-nouveau.conf")
    display_services: tuple[str, ...] = ("lightdm", "gdm3", "sddm")
    settle_seconds: float = 5.0
    driver_package: str = "nvidia-driver"
    purge_patterns: tuple[str, ...] = ("^nvidia-.*",)
    capability_command: str = "nvidia-smi"
    install_log: Path = Path("/var/log/dpkg.log")
    headers_root: Path = Path("/usr/src")
    modules_root: Path = Path("/lib/modules")
    boot_image_template: str = "/boot/initrd.img-{kernel}"
    command_timeout: float = 600.0
    connectivity_host: str = "google.com"

    def boot_image_path(self, kernel: str) -> Path:
        return Path(self.boot_image_template.format(kernel=kernel))

    @classmethod
    def from_dict(cls, data: dict) -> "DriverConfig":
        """Parse and validate config dict into DriverConfig."""
        known = {f.name for f in dataclasses.fields(cls)}
        unknown = sorted(set(data) - set(known))
        if unknown:
            raise ValueError(f"unknown keys: {', '.join(unknown)}")

        defaults = cls()
        values: dict[str, Any] = {}
        for name, raw in data.items():
            current = getattr(defaults, name)
            values[name] = _coerce(name, raw, current)
        return cls(**values)


def _coerce(name: str, raw: Any, current: Any) -> Any:
    if isinstance(current, Path):
        if not isinstance(raw, str):
            raise TypeError(f"{name} must be a path string")
        return Path(raw)
    if isinstance(current, tuple):
        if isinstance(raw, str) or not isinstance(raw, list | tuple):
            raise TypeError(f"{name} must be a list of strings")
        if not all(isinstance(item, str) for item in raw):
            raise TypeError(f"{name} must be a list of strings")
        return tuple(raw)
    if isinstance(current, float):
        if isinstance(raw, bool) or not isinstance(raw, int | float):
            raise TypeError(f"{name} must be a number")
        if raw < 0:
            raise ValueError(f"{name} must not be negative")
        return float(raw)
    if not isinstance(raw, str):
        raise TypeError(f"{name} must be a string")
    return raw


def _read_config_file(path: Path) -> dict:
    suffix = path.suffix.lower()
    if suffix == ".toml":
        try:
            with open(path, "rb") as f:
                return tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ConfigError(f"Malformed TOML config at {path}: {e}") from e
    if suffix in {".yaml", ".yml"}:
        try:
            with open(path, encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Malformed YAML config at {path}: {e}") from e
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ConfigError(f"Invalid config structure in {path}: top level must be a mapping")
        return data
    raise ConfigError(f"Unsupported config format for {path} (expected .toml or .yaml)")


def resolve_config_path(explicit: Path | None = None) -> Path | None:
    """Find the config file to load.

    Priority order:
    1. explicit path (--config)
    2. $NVDOCTOR_CONFIG
    3. /etc/nvdoctor/config.toml
    4. /etc/nvdoctor/config.yaml
    """
    if explicit is not None:
        if not explicit.exists():
            raise ConfigError(f"Config file not found: {explicit}")
        return explicit

    env_path = os.getenv(NVDOCTOR_CONFIG_ENV, "").strip()
    if env_path:
        path = Path(env_path).expanduser()
        if not path.exists():
            raise ConfigError(f"Config file from ${NVDOCTOR_CONFIG_ENV} not found: {path}")
        return path

    for candidate in SYSTEM_CONFIG_PATHS:
        if candidate.exists():
            return candidate
    return None


def load_config(explicit: Path | None = None) -> DriverConfig:
    """Load DriverConfig from the first config file found, or defaults.

    Raises:
        ConfigError: If the config file is missing, malformed or invalid
    """
    path = resolve_config_path(explicit)
    if path is None:
        return DriverConfig()

    data = _read_config_file(path)
    try:
        return DriverConfig.from_dict(data)
    except (KeyError, TypeError, ValueError) as e:
        raise ConfigError(f"Invalid config structure in {path}: {e}") from e
